from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Protocol, Set

from collector.app.core.rate_limit import RetryPolicy, with_retry
from collector.app.services.page_client import PageFetchRetryableError
from collector.app.sources._common import SourceAdapter

logger = logging.getLogger(__name__)


class PageProgress(Protocol):
    """Told about each discovery page once its candidates have been handled."""

    async def page_done(self, page: int) -> None: ...


class NullProgress:
    async def page_done(self, page: int) -> None:
        return None


@dataclass
class DiscoveredPage:
    page: int
    urls: List[str]
    attempts: int = 1


@dataclass
class ListingDiscovery:
    """Pages through one adapter's search results in increasing page order.

    Links already yielded on an earlier page are dropped; paging stops at the
    first page that contributes nothing new or when ``max_pages`` is reached.
    """

    run_id: str
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    async def iter_pages(
        self,
        adapter: SourceAdapter,
        query: str,
        *,
        start_page: int = 1,
        max_pages: int = 5,
    ) -> AsyncIterator[DiscoveredPage]:
        start_page = max(1, start_page)
        base = await adapter.resolve_search_base(query)
        if base is None:
            logger.warning(
                "discover.no_base_url",
                extra={"run_id": self.run_id, "source": adapter.source, "candidates": adapter.search_urls(query)},
            )
            return

        seen: Set[str] = set()
        for page in range(start_page, start_page + max(0, max_pages)):
            outcome = await with_retry(
                lambda attempt, page=page: adapter.discover_candidate_urls(page, query),
                self.policy,
                retry_on=(PageFetchRetryableError,),
            )
            fresh = [url for url in outcome.value if url not in seen]
            seen.update(fresh)
            logger.info(
                "discover.page_fetched",
                extra={
                    "run_id": self.run_id,
                    "source": adapter.source,
                    "page": page,
                    "attempts": outcome.attempts,
                    "found": len(outcome.value),
                    "new": len(fresh),
                },
            )
            yield DiscoveredPage(page=page, urls=fresh, attempts=outcome.attempts)
            if not fresh:
                break

