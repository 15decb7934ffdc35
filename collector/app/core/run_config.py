from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

CollectorMode = Literal["daily", "backfill"]

DEFAULT_SOURCES: Tuple[str, ...] = ("BaT", "CarsAndBids", "CollectingCars")


class ConfigurationError(ValueError):
    """Raised before any network activity when a run cannot be configured."""


class RunConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: CollectorMode = "daily"
    make: str = "Ferrari"
    ended_window_days: int = 90
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    max_active_pages_per_source: int = 5
    max_ended_pages_per_source: int = 5
    scrape_details: bool = True
    checkpoint_path: str = "/tmp/ferrari_collector/checkpoint.json"
    dry_run: bool = False
    sources: Tuple[str, ...] = DEFAULT_SOURCES

    def ended_range(self, now: datetime) -> Tuple[date, date]:
        """Date window for ended/backfill discovery.

        Daily runs look back ``ended_window_days`` from ``now``; backfill runs
        require an explicit, ordered range.
        """
        if self.mode == "backfill":
            if self.date_from is None or self.date_to is None:
                raise ConfigurationError("backfill mode requires --dateFrom and --dateTo (YYYY-MM-DD)")
            if self.date_from > self.date_to:
                raise ConfigurationError(
                    f"dateFrom {self.date_from.isoformat()} is after dateTo {self.date_to.isoformat()}"
                )
            return self.date_from, self.date_to
        date_to = now.date()
        return (now - timedelta(days=self.ended_window_days)).date(), date_to


@dataclass(frozen=True)
class ScrapeMeta:
    """Run-scoped stamp shared by every row written in one run."""

    run_id: str
    scrape_timestamp: datetime
