import httpx
import pytest

from collector.app.core.settings import Settings
from collector.app.services.page_client import PageClient, PageFetchError, PageFetchRetryableError


class FakeTransport:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    async def get(self, url, headers, timeout):
        if not self._responses:
            raise AssertionError("No more responses configured")
        response = self._responses.pop(0)
        self.calls.append((url, headers, timeout))
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        return None


def make_response(status_code: int, body: str = "<html></html>", url: str = "https://bringatrailer.com/") -> httpx.Response:
    request = httpx.Request("GET", url)
    return httpx.Response(status_code=status_code, text=body, request=request)


def make_client(responses) -> tuple[PageClient, FakeTransport]:
    transport = FakeTransport(responses)
    settings = Settings(min_host_interval_ms=0, request_timeout=7.5, user_agent="collector-test")
    return PageClient(settings, transport=transport), transport


@pytest.mark.asyncio
async def test_fetch_html_sends_browser_headers_and_timeout():
    client, transport = make_client([make_response(200, "<p>ok</p>")])
    body = await client.fetch_html("https://bringatrailer.com/listing/a/")
    assert body == "<p>ok</p>"
    url, headers, timeout = transport.calls[0]
    assert headers["User-Agent"] == "collector-test"
    assert timeout == 7.5
    await client.aclose()


@pytest.mark.asyncio
async def test_fetch_html_serves_repeat_requests_from_cache():
    client, transport = make_client([make_response(200, "first"), make_response(200, "second")])
    assert await client.fetch_html("https://bringatrailer.com/listing/a/") == "first"
    assert await client.fetch_html("https://bringatrailer.com/listing/a/") == "first"
    assert len(transport.calls) == 1
    assert await client.fetch_html("https://bringatrailer.com/listing/a/", force_refresh=True) == "second"
    assert len(transport.calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 503])
async def test_retryable_status_raises_retryable_error(status):
    client, _ = make_client([make_response(status)])
    with pytest.raises(PageFetchRetryableError):
        await client.fetch_html("https://carsandbids.com/auctions/x")


@pytest.mark.asyncio
async def test_not_found_is_a_permanent_failure():
    client, _ = make_client([make_response(404)])
    with pytest.raises(PageFetchError) as excinfo:
        await client.fetch_html("https://carsandbids.com/auctions/x")
    assert not isinstance(excinfo.value, PageFetchRetryableError)


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    client, _ = make_client([httpx.ReadTimeout("slow")])
    with pytest.raises(PageFetchRetryableError, match="timed out"):
        await client.fetch_html("https://collectingcars.com/cars/x")


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached():
    client, transport = make_client([make_response(503), make_response(200, "recovered")])
    with pytest.raises(PageFetchRetryableError):
        await client.fetch_html("https://collectingcars.com/cars/x")
    assert await client.fetch_html("https://collectingcars.com/cars/x") == "recovered"
    assert len(transport.calls) == 2
