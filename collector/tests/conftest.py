from __future__ import annotations

from datetime import datetime, timezone

import pytest

from collector.app.core.run_config import ScrapeMeta
from collector.app.core.settings import Settings
from collector.app.db.session import build_session_factory, create_db_engine, create_schema

RUN_STARTED = datetime(2024, 6, 15, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'collector.db'}",
        checkpoint_path=str(tmp_path / "checkpoint.json"),
        min_host_interval_ms=0,
    )


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings)
    create_schema(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def meta():
    return ScrapeMeta(run_id="run-1", scrape_timestamp=RUN_STARTED)
