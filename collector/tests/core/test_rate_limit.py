import pytest

from collector.app.core.rate_limit import HostRateLimiter, RetryPolicy, host_from_url, with_retry
from collector.app.services.page_client import PageFetchRetryableError


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_host_from_url_handles_missing_host():
    assert host_from_url("https://bringatrailer.com/listing/x/") == "bringatrailer.com"
    assert host_from_url("not a url") == "unknown"


@pytest.mark.asyncio
async def test_limiter_spaces_requests_per_host():
    sleep = FakeSleep()
    limiter = HostRateLimiter(1000, clock=lambda: 100.0, sleep=sleep)

    assert await limiter.wait_for_host("bringatrailer.com") == 0
    assert await limiter.wait_for_host("bringatrailer.com") == pytest.approx(1.0)
    assert await limiter.wait_for_host("carsandbids.com") == 0
    assert await limiter.wait_for_host("bringatrailer.com") == pytest.approx(2.0)
    assert sleep.delays == [pytest.approx(1.0), pytest.approx(2.0)]


def test_retry_policy_backs_off_exponentially():
    policy = RetryPolicy(retries=3, base_delay=0.5)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_retries_empty_results_until_data():
    sleep = FakeSleep()
    seen = []

    async def operation(attempt):
        seen.append(attempt)
        return [] if attempt < 2 else ["row"]

    outcome = await with_retry(operation, RetryPolicy(retries=2), lambda value: not value, sleep=sleep)
    assert outcome.value == ["row"]
    assert outcome.attempts == 2
    assert outcome.retried
    assert seen == [1, 2]
    assert sleep.delays == [0.5]


@pytest.mark.asyncio
async def test_with_retry_returns_last_value_when_still_empty():
    async def operation(attempt):
        return []

    outcome = await with_retry(operation, RetryPolicy(retries=2), lambda value: not value, sleep=FakeSleep())
    assert outcome.value == []
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_with_retry_reraises_after_final_attempt():
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        raise PageFetchRetryableError("timeout")

    with pytest.raises(PageFetchRetryableError):
        await with_retry(operation, RetryPolicy(retries=1), retry_on=(PageFetchRetryableError,), sleep=FakeSleep())
    assert calls == [1, 2]


@pytest.mark.asyncio
async def test_with_retry_does_not_catch_unlisted_errors():
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await with_retry(operation, RetryPolicy(retries=2), retry_on=(PageFetchRetryableError,), sleep=FakeSleep())
    assert calls == [1]
