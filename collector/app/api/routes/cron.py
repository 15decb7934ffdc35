from __future__ import annotations

import logging
import secrets
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from collector.app.core.settings import Settings, load_settings
from collector.app.services import orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings() -> Settings:
    return load_settings()


def _authorized(authorization: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    return scheme.lower() == "bearer" and secrets.compare_digest(token.strip(), secret)


@router.get("/collector")
async def run_daily_collector(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
):
    if not _authorized(authorization, settings.cron_secret):
        return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized"})

    started = time.monotonic()
    try:
        result = await orchestrator.run_collector(settings=settings, mode="daily")
    except Exception as exc:
        logger.exception("cron.collector_failed", extra={"error": str(exc)})
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    totals = result.totals
    return {
        "success": True,
        "runId": result.run_id,
        "discovered": totals.discovered,
        "written": totals.written,
        "sourceCounts": {source: counts.to_dict() for source, counts in result.source_counts.items()},
        "errors": result.errors,
        "duration": round(time.monotonic() - started, 3),
    }
