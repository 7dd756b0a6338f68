"""Tests for store events, JsonFileStore and recurring task rows."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from taskloop.scheduler.models import RecurringTaskDefinition
from taskloop.store import RECURRING_TASKS_QUERY, JsonFileStore, QueryDescriptor, StoreEvent

WHEN = datetime(2026, 5, 4, 10, 30, tzinfo=timezone.utc)


def test_recurring_tasks_query_filters_enabled_rows():
    assert RECURRING_TASKS_QUERY.table == "recurringTasks"
    assert RECURRING_TASKS_QUERY.matches({"enabled": True})
    assert not RECURRING_TASKS_QUERY.matches({"enabled": False})
    assert not RECURRING_TASKS_QUERY.matches({})


def test_lifecycle_event_payloads():
    start = StoreEvent.task_execution_started("t1", "s1", "exec_1", started_at=WHEN)
    complete = StoreEvent.task_execution_completed("t1", "s1", "exec_1", completed_at=WHEN)
    fail = StoreEvent.task_execution_failed("t1", "s1", "exec_1", "boom", failed_at=WHEN)

    assert start.to_dict() == {
        "name": "task_execution.start",
        "payload": {"taskId": "t1", "storeId": "s1", "startedAt": WHEN, "executionId": "exec_1"},
    }
    assert complete.name == "task_execution.complete"
    assert "nextExecutionAt" not in complete.payload
    assert fail.payload == {
        "taskId": "t1",
        "storeId": "s1",
        "status": "failed",
        "error": "boom",
        "failedAt": WHEN,
        "executionId": "exec_1",
    }


def test_started_event_generates_execution_id():
    event = StoreEvent.task_execution_started("t1", "s1")
    assert event.payload["executionId"]
    assert event.payload["startedAt"].tzinfo is not None


def test_json_file_store_round_trip(tmp_path):
    store_dir = tmp_path / "acme"
    store_dir.mkdir()
    rows = [
        {"id": "t1", "enabled": True},
        {"id": "t2", "enabled": False},
    ]
    (store_dir / "recurringTasks.json").write_text(json.dumps(rows), encoding="utf-8")
    store = JsonFileStore(str(store_dir))

    assert store.store_id == "acme"
    assert store.query(RECURRING_TASKS_QUERY) == [{"id": "t1", "enabled": True}]
    assert store.query(QueryDescriptor("missingTable")) == []

    store.commit(StoreEvent.task_execution_started("t1", "acme", "exec_1", started_at=WHEN))
    events = store.read_events()
    assert events == [{
        "name": "task_execution.start",
        "payload": {
            "taskId": "t1",
            "storeId": "acme",
            "startedAt": WHEN.isoformat(),
            "executionId": "exec_1",
        },
    }]


def test_json_file_store_rejects_non_list(tmp_path):
    (tmp_path / "recurringTasks.json").write_text('{"id": "t1"}', encoding="utf-8")
    with pytest.raises(ValueError, match="JSON list"):
        JsonFileStore(str(tmp_path)).query(RECURRING_TASKS_QUERY)


def test_discover_stores(tmp_path):
    (tmp_path / "b").mkdir()
    (tmp_path / "a").mkdir()
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    assert list(JsonFileStore.discover(str(tmp_path))) == ["a", "b"]
    assert JsonFileStore.discover(str(tmp_path / "missing")) == {}


# ============================================================================
# RECURRING TASK ROWS
# ============================================================================

def test_task_definition_accepts_camel_and_snake_case():
    camel = RecurringTaskDefinition.model_validate({
        "id": "t1", "name": "Digest", "prompt": "Summarize",
        "intervalHours": 12, "nextExecutionAt": "2026-05-04T10:30:00Z", "projectId": "p1",
    })
    snake = RecurringTaskDefinition(
        id="t1", name="Digest", prompt="Summarize",
        interval_hours=12, next_execution_at=WHEN, project_id="p1",
    )

    assert camel.next_execution_at == WHEN
    assert camel == snake


def test_task_definition_normalizes_timestamps():
    epoch_ms = int(WHEN.timestamp() * 1000)
    naive = WHEN.replace(tzinfo=None)

    from_ms = RecurringTaskDefinition(id="a", name="a", prompt="p", intervalHours=1, nextExecutionAt=epoch_ms)
    from_naive = RecurringTaskDefinition(id="a", name="a", prompt="p", intervalHours=1, nextExecutionAt=naive)
    empty = RecurringTaskDefinition(id="a", name="a", prompt="p", intervalHours=1, nextExecutionAt="")

    assert from_ms.next_execution_at == WHEN
    assert from_naive.next_execution_at == WHEN
    assert empty.next_execution_at is None


def test_task_definition_requires_positive_interval():
    with pytest.raises(ValidationError):
        RecurringTaskDefinition(id="a", name="a", prompt="p", intervalHours=0)


def test_is_due_and_next_execution():
    task = RecurringTaskDefinition(id="a", name="a", prompt="p", intervalHours=1.5, nextExecutionAt=WHEN)

    assert task.is_due(WHEN)
    assert not task.is_due(WHEN - timedelta(seconds=1))
    assert task.next_execution_after(WHEN) == WHEN + timedelta(minutes=90)

    unscheduled = RecurringTaskDefinition(id="b", name="b", prompt="p", intervalHours=1)
    assert not unscheduled.is_due(WHEN)


def test_task_system_prompt():
    task = RecurringTaskDefinition(id="a", name="Standup", prompt="p", intervalHours=24)
    prompt = task.build_system_prompt()

    assert prompt.startswith("You are executing a recurring task.")
    assert "- Name: Standup" in prompt
    assert "- Description: No description provided" in prompt
    assert "- Recurring Interval: 24 hours" in prompt
    assert "Project ID" not in prompt
