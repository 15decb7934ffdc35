from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from collector.app.core.run_config import CollectorMode

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BackfillCursor(_CamelModel):
    date_from: date = Field(alias="dateFrom")
    date_to: date = Field(alias="dateTo")
    last_processed_page: Optional[int] = Field(default=None, alias="lastProcessedPage")

    def covers(self, date_from: date, date_to: date) -> bool:
        return self.date_from == date_from and self.date_to == date_to


class SourceCheckpoint(_CamelModel):
    last_daily_run_at: Optional[datetime] = Field(default=None, alias="lastDailyRunAt")
    backfill: Optional[BackfillCursor] = None


class Checkpoint(_CamelModel):
    version: Literal[1] = 1
    updated_at: datetime = Field(default=EPOCH, alias="updatedAt")
    sources: Dict[str, SourceCheckpoint] = Field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2) + "\n"


def load_checkpoint(path: str | Path) -> Checkpoint:
    """Read the checkpoint file; a missing, unreadable or foreign file yields a fresh one."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
        return Checkpoint.model_validate_json(raw)
    except FileNotFoundError:
        return Checkpoint()
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning("checkpoint.reset", extra={"path": str(path), "error": str(exc)})
        return Checkpoint()


def save_checkpoint(path: str | Path, checkpoint: Checkpoint, *, now: Optional[datetime] = None) -> Checkpoint:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    stamped = checkpoint.model_copy(update={"updated_at": now or datetime.now(timezone.utc)})
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(stamped.to_json())
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    return stamped


def advance_checkpoint(
    checkpoint: Checkpoint,
    source: str,
    mode: CollectorMode,
    now: datetime,
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    last_processed_page: Optional[int] = None,
) -> Checkpoint:
    """Return a new checkpoint with ``source`` advanced; ``checkpoint`` is left untouched."""
    existing = checkpoint.sources.get(source) or SourceCheckpoint()
    if mode == "daily":
        updated = existing.model_copy(update={"last_daily_run_at": now})
    else:
        previous = existing.backfill
        cursor = BackfillCursor(
            date_from=date_from or (previous.date_from if previous else now.date()),
            date_to=date_to or (previous.date_to if previous else now.date()),
            last_processed_page=(
                last_processed_page
                if last_processed_page is not None
                else (previous.last_processed_page if previous else None)
            ),
        )
        updated = existing.model_copy(update={"backfill": cursor})
    sources = dict(checkpoint.sources)
    sources[source] = updated
    return checkpoint.model_copy(update={"sources": sources})
