from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Type

from collector.app.core.rate_limit import RetryPolicy, with_retry
from collector.app.core.run_config import RunConfig, ScrapeMeta
from collector.app.core.settings import Settings, load_settings
from collector.app.services.checkpoint import Checkpoint, advance_checkpoint, load_checkpoint, save_checkpoint
from collector.app.services.discovery import ListingDiscovery, NullProgress, PageProgress
from collector.app.services.identity import canonicalize_url
from collector.app.services.normalize import CanonicalListing, build_canonical_listing, is_target_listing
from collector.app.services.page_client import PageClient, PageFetchRetryableError
from collector.app.services.writer import DryRunWriter, SqlListingWriter, WriteResult
from collector.app.sources._common import RawFields, SourceAdapter
from collector.app.sources.bring_a_trailer import BringATrailerAdapter
from collector.app.sources.cars_and_bids import CarsAndBidsAdapter
from collector.app.sources.collecting_cars import CollectingCarsAdapter

logger = logging.getLogger(__name__)

ADAPTER_REGISTRY: Dict[str, Type[SourceAdapter]] = {
    "BaT": BringATrailerAdapter,
    "CarsAndBids": CarsAndBidsAdapter,
    "CollectingCars": CollectingCarsAdapter,
}


class ListingWriter(Protocol):
    def has_terminal_status(self, source: str, source_id: str) -> bool: ...

    def upsert_all(self, record: CanonicalListing, meta: ScrapeMeta, dry_run: bool = False) -> WriteResult: ...


def _camel(value: str) -> str:
    head, *rest = value.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class SourceCounts:
    discovered: int = 0
    kept: int = 0
    skipped_missing_required: int = 0
    skipped_terminal: int = 0
    written: int = 0
    errored: int = 0
    retried: int = 0

    def add(self, other: "SourceCounts") -> None:
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)

    def to_dict(self) -> Dict[str, int]:
        return {_camel(key): value for key, value in asdict(self).items()}


@dataclass
class RunResult:
    run_id: str
    source_counts: Dict[str, SourceCounts] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def totals(self) -> SourceCounts:
        total = SourceCounts()
        for counts in self.source_counts.values():
            total.add(counts)
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "sourceCounts": {source: counts.to_dict() for source, counts in self.source_counts.items()},
            "totals": self.totals.to_dict(),
            "errors": list(self.errors),
        }


def _summary_is_empty(summary: RawFields) -> bool:
    return not summary.has_any_data()


class _BackfillProgress:
    """Advances and flushes the backfill cursor each time a page is done."""

    def __init__(self, orchestrator: "CollectorOrchestrator", source: str, date_from: date, date_to: date, now: datetime):
        self.orchestrator = orchestrator
        self.source = source
        self.date_from = date_from
        self.date_to = date_to
        self.now = now

    async def page_done(self, page: int) -> None:
        self.orchestrator.update_checkpoint(
            advance_checkpoint(
                self.orchestrator.checkpoint,
                self.source,
                "backfill",
                self.now,
                date_from=self.date_from,
                date_to=self.date_to,
                last_processed_page=page,
            )
        )


class CollectorOrchestrator:
    """Runs the checkpointed collection, one source at a time.

    Within a source, discovery pages are processed in order and each page's
    candidates in the order the marketplace returned them. Errors are caught at
    listing, page and source granularity and folded into the run result.
    """

    def __init__(
        self,
        adapters: Dict[str, SourceAdapter],
        writer: ListingWriter,
        *,
        policy: Optional[RetryPolicy] = None,
        clock=None,
    ):
        self.adapters = adapters
        self.writer = writer
        self.policy = policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.checkpoint = Checkpoint()
        self._checkpoint_path: Optional[str] = None

    def update_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoint = checkpoint
        if self._checkpoint_path:
            self.checkpoint = save_checkpoint(self._checkpoint_path, checkpoint)

    async def run(self, config: RunConfig) -> RunResult:
        now = self._clock()
        # Configuration problems surface before any page is fetched.
        date_from, date_to = config.ended_range(now)
        meta = ScrapeMeta(run_id=str(uuid.uuid4()), scrape_timestamp=now)
        result = RunResult(run_id=meta.run_id)

        logger.info(
            "collector.start",
            extra={
                "run_id": meta.run_id,
                "mode": config.mode,
                "make": config.make,
                "date_from": date_from.isoformat(),
                "date_to": date_to.isoformat(),
                "sources": list(config.sources),
                "dry_run": config.dry_run,
                "checkpoint_path": config.checkpoint_path,
            },
        )

        self._checkpoint_path = config.checkpoint_path
        self.checkpoint = load_checkpoint(config.checkpoint_path)

        for source in config.sources:
            counts = SourceCounts()
            result.source_counts[source] = counts
            adapter = self.adapters.get(source)
            try:
                if adapter is None:
                    raise ValueError(f"no adapter registered for {source}")
                await self._run_source(adapter, config, meta, counts, date_from, date_to)
                logger.info("collector.source_done", extra={"run_id": meta.run_id, "source": source, **counts.to_dict()})
            except Exception as exc:
                result.errors.append(f"{source}: {exc}")
                logger.error(
                    "collector.source_error", extra={"run_id": meta.run_id, "source": source, "error": str(exc)}
                )

            cursor = self._cursor_for(source, date_from, date_to)
            self.update_checkpoint(
                advance_checkpoint(
                    self.checkpoint,
                    source,
                    config.mode,
                    now,
                    date_from=date_from if config.mode == "backfill" else None,
                    date_to=date_to if config.mode == "backfill" else None,
                    last_processed_page=cursor.last_processed_page if cursor else 0,
                )
            )

        logger.info("collector.done", extra={"run_id": meta.run_id, "errors": len(result.errors), **result.totals.to_dict()})
        return result

    def _cursor_for(self, source: str, date_from: date, date_to: date):
        state = self.checkpoint.sources.get(source)
        if state is None or state.backfill is None or not state.backfill.covers(date_from, date_to):
            return None
        return state.backfill

    async def _run_source(
        self,
        adapter: SourceAdapter,
        config: RunConfig,
        meta: ScrapeMeta,
        counts: SourceCounts,
        date_from: date,
        date_to: date,
    ) -> None:
        handled: Set[str] = set()
        if config.mode == "daily":
            handled = await self._collect_active(adapter, config, meta, counts)

        start_page = 1
        progress: PageProgress = NullProgress()
        if config.mode == "backfill":
            cursor = self._cursor_for(adapter.source, date_from, date_to)
            start_page = (cursor.last_processed_page or 0) + 1 if cursor else 1
            progress = _BackfillProgress(self, adapter.source, date_from, date_to, meta.scrape_timestamp)

        discovery = ListingDiscovery(run_id=meta.run_id, policy=self.policy)
        async for page in discovery.iter_pages(
            adapter,
            config.make.lower(),
            start_page=start_page,
            max_pages=config.max_ended_pages_per_source,
        ):
            # Listings already handled from the active index are not processed twice.
            urls = [url for url in page.urls if canonicalize_url(url) not in handled]
            counts.discovered += len(urls)
            if page.attempts > 1:
                counts.retried += 1
            for url in urls:
                await self._process_candidate(adapter, url, None, config, meta, counts, date_from, date_to)
            await progress.page_done(page.page)

    async def _collect_active(self, adapter: SourceAdapter, config: RunConfig, meta: ScrapeMeta, counts: SourceCounts) -> Set[str]:
        seen: Set[str] = set()
        for page in range(1, config.max_active_pages_per_source + 1):
            try:
                outcome = await with_retry(
                    lambda attempt, page=page: adapter.list_active(page),
                    self.policy,
                    retry_on=(PageFetchRetryableError,),
                )
            except Exception as exc:
                counts.errored += 1
                logger.error(
                    "collector.listing_error",
                    extra={"run_id": meta.run_id, "source": adapter.source, "page": page, "error": str(exc)},
                )
                break
            cards = [card for card in outcome.value if card.url and canonicalize_url(card.url) not in seen]
            if not cards:
                break
            seen.update(canonicalize_url(card.url) for card in cards)
            counts.discovered += len(cards)
            for card in cards:
                if not is_target_listing(card.make, card.title, config.make):
                    continue
                counts.kept += 1
                await self._process_candidate(adapter, card.url, card, config, meta, counts, None, None)
        return seen

    async def _fetch_summary(self, adapter: SourceAdapter, url: str, counts: SourceCounts) -> RawFields:
        outcome = await with_retry(
            lambda attempt: adapter.fetch_summary(url, force_refresh=attempt > 1),
            self.policy,
            _summary_is_empty,
            retry_on=(PageFetchRetryableError,),
        )
        if outcome.retried:
            counts.retried += 1
        return outcome.value

    async def _process_candidate(
        self,
        adapter: SourceAdapter,
        url: str,
        base: Optional[RawFields],
        config: RunConfig,
        meta: ScrapeMeta,
        counts: SourceCounts,
        date_from: Optional[date],
        date_to: Optional[date],
    ) -> None:
        from_active_index = base is not None
        try:
            summary = await self._fetch_summary(adapter, url, counts)
            title = summary.title or (base.title if base else None)
            if not from_active_index and title and not is_target_listing(summary.make, title, config.make):
                return
            detail = await adapter.fetch_detail(url) if config.scrape_details else None
            record = build_canonical_listing(adapter.source, url, summary, base, detail, config.make, meta)
            if record is None:
                counts.skipped_missing_required += 1
                return

            if not from_active_index:
                if not self._accepts(record, config, date_from, date_to):
                    return
                counts.kept += 1

            outcome = self.writer.upsert_all(record, meta, config.dry_run)
            if outcome.skipped_terminal:
                counts.skipped_terminal += 1
                logger.info(
                    "collector.skip_terminal",
                    extra={"run_id": meta.run_id, "source": adapter.source, "url": url, "source_id": record.source_id},
                )
                return
            if outcome.wrote:
                counts.written += 1
        except Exception as exc:
            counts.errored += 1
            logger.error(
                "collector.listing_error",
                extra={"run_id": meta.run_id, "source": adapter.source, "url": url, "error": str(exc)},
            )

    @staticmethod
    def _accepts(
        record: CanonicalListing, config: RunConfig, date_from: Optional[date], date_to: Optional[date]
    ) -> bool:
        """Backfill keeps finished auctions inside the window; daily keeps only live ones."""
        if config.mode == "backfill":
            if record.status == "active":
                return False
            return date_from is not None and date_to is not None and date_from <= record.sale_date <= date_to
        return record.status == "active"


async def scrape_active_snapshot(adapters: Iterable[SourceAdapter], max_pages: int = 2) -> Dict[str, Any]:
    """Scrape every source's active index concurrently; nothing is checkpointed or written."""
    adapters = list(adapters)

    async def _scrape(adapter: SourceAdapter) -> List[RawFields]:
        listings: List[RawFields] = []
        for page in range(1, max_pages + 1):
            cards = await adapter.list_active(page)
            if not cards:
                break
            listings.extend(cards)
        return listings

    results = await asyncio.gather(*(_scrape(adapter) for adapter in adapters), return_exceptions=True)

    listings: Dict[str, List[RawFields]] = {}
    errors: List[str] = []
    for adapter, outcome in zip(adapters, results):
        if isinstance(outcome, BaseException):
            errors.append(f"{adapter.source}: {outcome}")
            listings[adapter.source] = []
        else:
            listings[adapter.source] = outcome
    return {"listings": listings, "errors": errors, "total": sum(len(items) for items in listings.values())}


def build_adapters(client: PageClient, sources: Sequence[str]) -> Dict[str, SourceAdapter]:
    return {source: ADAPTER_REGISTRY[source](client) for source in sources if source in ADAPTER_REGISTRY}


async def run_collector(
    *,
    settings: Optional[Settings] = None,
    writer: Optional[ListingWriter] = None,
    client: Optional[PageClient] = None,
    **overrides: Any,
) -> RunResult:
    """Build a config from defaults plus ``overrides`` and run it end to end."""
    settings = settings or load_settings()
    overrides.setdefault("checkpoint_path", settings.checkpoint_path)
    config = RunConfig(**overrides)

    if writer is None:
        if config.dry_run:
            writer = DryRunWriter()
        else:
            from collector.app.db.session import build_session_factory, create_db_engine

            writer = SqlListingWriter(build_session_factory(create_db_engine(settings)))

    owns_client = client is None
    client = client or PageClient(settings)
    try:
        orchestrator = CollectorOrchestrator(build_adapters(client, config.sources), writer)
        return await orchestrator.run(config)
    finally:
        if owns_client:
            await client.aclose()
