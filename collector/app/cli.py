"""Command-line entry point for collector runs.

Usage:
  collector-run --mode=daily --make=Ferrari
  collector-run --mode=backfill --dateFrom=2024-01-01 --dateTo=2024-03-31 --maxEndedPages=20
  collector-run --snapshot --sources=BaT,CarsAndBids
  collector-run --initDb

The run result is printed as JSON on stdout; logs go to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import date
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from collector.app.core.logging import configure_logging
from collector.app.core.run_config import DEFAULT_SOURCES, ConfigurationError
from collector.app.core.settings import load_settings
from collector.app.services import orchestrator
from collector.app.services.page_client import PageClient


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def _source_list(value: str) -> List[str]:
    sources = [item.strip() for item in value.split(",") if item.strip()]
    unknown = [item for item in sources if item not in orchestrator.ADAPTER_REGISTRY]
    if unknown:
        raise argparse.ArgumentTypeError(f"unknown source(s): {', '.join(unknown)}")
    return sources


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="collector-run", description="Collect auction listings into the database.")
    ap.add_argument("--mode", choices=("daily", "backfill"), default="daily")
    ap.add_argument("--make", type=str, default="Ferrari")
    ap.add_argument("--endedWindowDays", type=int, default=90, help="Daily look-back window for ended listings")
    ap.add_argument("--dateFrom", type=_iso_date, help="Backfill range start (YYYY-MM-DD)")
    ap.add_argument("--dateTo", type=_iso_date, help="Backfill range end (YYYY-MM-DD)")
    ap.add_argument("--maxActivePages", type=int, default=5)
    ap.add_argument("--maxEndedPages", type=int, default=5)
    ap.add_argument("--checkpointPath", type=str, help="Checkpoint file location")
    ap.add_argument("--dryRun", action="store_true", help="Parse and normalize without writing")
    ap.add_argument("--noDetails", action="store_true", help="Skip detail-page fetches")
    ap.add_argument("--sources", type=_source_list, default=list(DEFAULT_SOURCES))
    ap.add_argument("--initDb", action="store_true", help="Create tables and exit")
    ap.add_argument("--snapshot", action="store_true", help="Scrape active listings only, nothing written")
    return ap


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "mode": args.mode,
        "make": args.make,
        "ended_window_days": args.endedWindowDays,
        "date_from": args.dateFrom,
        "date_to": args.dateTo,
        "max_active_pages_per_source": args.maxActivePages,
        "max_ended_pages_per_source": args.maxEndedPages,
        "scrape_details": not args.noDetails,
        "dry_run": args.dryRun,
        "sources": tuple(args.sources),
    }
    if args.checkpointPath:
        overrides["checkpoint_path"] = args.checkpointPath
    return overrides


async def _snapshot(settings, sources: List[str], max_pages: int) -> Dict[str, Any]:
    client = PageClient(settings)
    try:
        adapters = orchestrator.build_adapters(client, sources)
        snapshot = await orchestrator.scrape_active_snapshot(adapters.values(), max_pages)
    finally:
        await client.aclose()
    return {
        "total": snapshot["total"],
        "errors": snapshot["errors"],
        "listings": {
            source: [{"url": card.url, "title": card.title, "currentBid": card.current_bid} for card in cards]
            for source, cards in snapshot["listings"].items()
        },
    }


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(".env.local", override=False)
    load_dotenv(".env", override=False)

    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    if args.initDb:
        from collector.app.db.session import create_db_engine, create_schema

        create_schema(create_db_engine(settings))
        print(json.dumps({"initialized": True}))
        return 0

    if args.snapshot:
        print(json.dumps(asyncio.run(_snapshot(settings, args.sources, args.maxActivePages)), indent=2))
        return 0

    try:
        result = asyncio.run(orchestrator.run_collector(settings=settings, **overrides_from_args(args)))
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
