import pytest
from fastapi.testclient import TestClient

from collector.app.api.main import app
from collector.app.api.routes import cron
from collector.app.core.settings import Settings
from collector.app.services import orchestrator
from collector.app.services.orchestrator import RunResult, SourceCounts

client = TestClient(app)


@pytest.fixture(autouse=True)
def cron_settings():
    app.dependency_overrides[cron.get_settings] = lambda: Settings(cron_secret="s3cret")
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def fake_run(monkeypatch):
    calls = []

    async def run_collector(**kwargs):
        calls.append(kwargs)
        return RunResult(
            run_id="run-cron",
            source_counts={
                "BaT": SourceCounts(discovered=10, kept=4, written=3),
                "CarsAndBids": SourceCounts(discovered=2, kept=1, written=1, errored=1),
            },
            errors=["CollectingCars: blocked"],
        )

    monkeypatch.setattr(orchestrator, "run_collector", run_collector)
    return calls


def test_missing_token_is_rejected(fake_run):
    response = client.get("/cron/collector")
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Unauthorized"}
    assert fake_run == []


def test_wrong_token_is_rejected(fake_run):
    response = client.get("/cron/collector", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert fake_run == []


def test_unset_secret_rejects_everything(fake_run):
    app.dependency_overrides[cron.get_settings] = lambda: Settings(cron_secret=None)
    response = client.get("/cron/collector", headers={"Authorization": "Bearer anything"})
    assert response.status_code == 401


def test_authorized_call_runs_daily_collection(fake_run):
    response = client.get("/cron/collector", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["runId"] == "run-cron"
    assert body["discovered"] == 12
    assert body["written"] == 4
    assert body["sourceCounts"]["CarsAndBids"]["errored"] == 1
    assert body["errors"] == ["CollectingCars: blocked"]
    assert body["duration"] >= 0
    assert fake_run[0]["mode"] == "daily"


def test_unexpected_failure_returns_500(monkeypatch):
    async def explode(**kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(orchestrator, "run_collector", explode)
    response = client.get("/cron/collector", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "database unavailable"}
