"""Tests for the FastAPI admin API."""

import sys
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, InMemoryStore, task_row
from taskloop import __version__
from taskloop.api.app import create_app
from taskloop.monitor import ResourceLimits, ResourceMonitor
from taskloop.scheduler.scheduler import TaskScheduler
from taskloop.scheduler.tracker import ProcessedExecutionTracker


@pytest.fixture
def api_monitor():
    monitor = ResourceMonitor(ResourceLimits(max_concurrent_llm_calls=2), start_background=False)
    yield monitor
    monitor.destroy()


@pytest.fixture
def scheduler(tracker):
    scheduler = TaskScheduler(
        FakeProvider(),
        tracker=tracker,
        clock=lambda: datetime(2026, 1, 2, tzinfo=timezone.utc),
    )
    yield scheduler
    scheduler.stop()


@pytest.fixture
def client(scheduler, api_monitor):
    return TestClient(create_app(scheduler=scheduler, monitor=api_monitor))


def test_health_and_version(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["version"] == __version__

    assert client.get("/version").json()["name"] == "taskloop"


def test_resource_report(client, api_monitor):
    api_monitor.track_llm_call_start()

    report = client.get("/resources").json()

    assert report["limits"]["max_concurrent_llm_calls"] == 2
    assert report["current"]["active_llm_calls"] == 1
    assert set(report) == {"limits", "current", "alerts", "trends"}


def test_stress_endpoint(client, api_monitor):
    for _ in range(2):
        api_monitor.track_llm_call_start()
    assert client.get("/resources/stress").json() == {"under_stress": True}


def test_update_limits(client, api_monitor):
    response = client.patch("/resources/limits", json={"max_concurrent_llm_calls": 5})

    assert response.status_code == 200
    assert response.json()["max_concurrent_llm_calls"] == 5
    assert api_monitor.limits.max_concurrent_llm_calls == 5


def test_update_limits_validation(client):
    assert client.patch("/resources/limits", json={}).status_code == 400
    assert client.patch("/resources/limits", json={"max_concurrent_llm_calls": 0}).status_code == 422


def test_scheduler_stats_and_cleanup(client, scheduler):
    scheduler.check_and_execute_tasks("s1", InMemoryStore([task_row("t1"), task_row("t2")]))
    scheduler.check_and_execute_tasks("s2", InMemoryStore([task_row("t1")]))

    assert client.get("/scheduler/stats").json() == {"processedExecutions": 3}
    assert client.get("/scheduler/stats", params={"store_id": "s1"}).json() == {
        "processedExecutions": 2,
        "storeId": "s1",
    }
    assert set(client.get("/scheduler/ticks").json()) == {"s1", "s2"}

    # Claims were just made, so a 30 day cleanup keeps them
    kept = client.post("/scheduler/cleanup", json={}).json()
    assert kept == {"deleted": 0, "max_age_days": 30}

    cleared = client.post("/scheduler/cleanup", json={"max_age_days": 0}).json()
    assert cleared["deleted"] == 3
    assert client.get("/scheduler/stats").json() == {"processedExecutions": 0}


def test_standalone_app_needs_no_provider_and_releases_what_it_built(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STORE_DATA_PATH", str(tmp_path / "data"))
    monkeypatch.setenv("LLM_PROVIDER", "http")  # and no LLM_API_KEY
    destroyed = []

    class RecordingMonitor(ResourceMonitor):
        def __init__(self, limits=None):
            super().__init__(limits, start_background=False)

        def destroy(self):
            destroyed.append(self)
            super().destroy()

    monkeypatch.setattr(sys.modules["taskloop.api.app"], "ResourceMonitor", RecordingMonitor)
    with ProcessedExecutionTracker(str(tmp_path / "data")) as tracker:
        tracker.try_claim("s1", "t1", datetime(2026, 1, 1, tzinfo=timezone.utc))

    with TestClient(create_app()) as client:
        assert client.get("/scheduler/stats").json() == {"processedExecutions": 1}
        assert client.get("/scheduler/ticks").json() == {}
        assert client.get("/resources").status_code == 200
        assert client.post("/scheduler/cleanup", json={"max_age_days": 0}).json()["deleted"] == 1

    assert len(destroyed) == 1
