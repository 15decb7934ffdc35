from __future__ import annotations

from typing import Dict, Optional, Protocol

import httpx

from collector.app.core.rate_limit import HostRateLimiter, host_from_url
from collector.app.core.settings import Settings

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class PageFetchError(Exception):
    """Base exception for page fetch failures."""


class PageFetchRetryableError(PageFetchError):
    """Raised for timeouts, connection failures and retryable HTTP statuses."""


class AsyncTransport(Protocol):
    async def get(
        self,
        url: str,
        headers: Dict[str, str],
        timeout: float,
    ) -> httpx.Response: ...

    async def close(self) -> None: ...


class HttpxTransport:
    """httpx-based transport with connection pooling."""

    def __init__(self):
        self._client = httpx.AsyncClient(follow_redirects=True, timeout=None)

    async def get(
        self,
        url: str,
        headers: Dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        return await self._client.get(url, headers=headers, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()


def _browser_headers(user_agent: str) -> Dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
    }


class PageClient:
    """Fetches public marketplace pages, one attempt per call.

    Requests are spaced per host through the shared limiter. Retrying is left to
    the caller (see ``with_retry``) so it can decide what counts as a failure.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        limiter: Optional[HostRateLimiter] = None,
        transport: Optional[AsyncTransport] = None,
    ):
        self.timeout = settings.request_timeout
        self.limiter = limiter or HostRateLimiter(settings.min_host_interval_ms)
        self._transport = transport or HttpxTransport()
        self._owns_transport = transport is None
        self._headers = _browser_headers(settings.user_agent)
        self._cache: Dict[str, str] = {}

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.close()

    async def fetch_html(self, url: str, *, force_refresh: bool = False) -> str:
        if not force_refresh and url in self._cache:
            return self._cache[url]

        await self.limiter.wait_for_host(host_from_url(url))
        try:
            response = await self._transport.get(url, headers=self._headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise PageFetchRetryableError(f"timed out after {self.timeout}s fetching {url}") from exc
        except httpx.RequestError as exc:
            raise PageFetchRetryableError(f"request failed for {url}: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS:
            raise PageFetchRetryableError(f"{url} returned {response.status_code}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PageFetchError(str(exc)) from exc

        body = response.text
        self._cache[url] = body
        return body
