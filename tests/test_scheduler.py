"""Tests for TaskScheduler claim-and-execute ticks."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeProvider, InMemoryStore, task_row, tool_response
from taskloop.config.loader import GlobalConfig
from taskloop.loop import AgenticLoop
from taskloop.monitor import ResourceLimits, ResourceMonitor
from taskloop.providers.base import LLMResponse
from taskloop.scheduler.scheduler import TaskScheduler
from taskloop.tools.base import ToolDefinition

NOW = datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def provider():
    return FakeProvider([LLMResponse(message="task finished")])


@pytest.fixture
def make_scheduler(tracker, provider):
    created = []

    def factory(**kwargs):
        kwargs.setdefault("tracker", tracker)
        kwargs.setdefault("clock", lambda: NOW)
        scheduler = TaskScheduler(kwargs.pop("llm_provider", provider), **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.stop()


def test_due_task_runs_and_commits_lifecycle(make_scheduler, provider):
    store = InMemoryStore([task_row("t1", intervalHours=6, description="Weekly digest")])

    tick = make_scheduler().check_and_execute_tasks("s1", store)

    assert tick.executed == ["t1"]
    assert store.event_names() == ["task_execution.start", "task_execution.complete"]
    start, complete = (e.payload for e in store.events)
    assert start["taskId"] == "t1" and start["storeId"] == "s1"
    assert start["startedAt"] == NOW
    assert start["executionId"].startswith("exec_")
    assert complete["executionId"] == start["executionId"]
    assert complete["completedAt"] == NOW
    assert complete["nextExecutionAt"] == NOW + timedelta(hours=6)

    call = provider.calls[0]
    assert call["messages"][-1].content == "Run t1"
    assert call["worker_context"].name == "Recurring Task: Task t1"
    assert "Description: Weekly digest" in call["worker_context"].system_prompt
    assert "Recurring Interval: 6 hours" in call["worker_context"].system_prompt
    assert call["board_context"] is None


def test_same_due_time_runs_once_across_ticks(make_scheduler, provider):
    store = InMemoryStore([task_row("t1")])
    scheduler = make_scheduler()

    scheduler.check_and_execute_tasks("s1", store)
    second = scheduler.check_and_execute_tasks("s1", store)

    assert second.skipped == ["t1"]
    assert second.executed == []
    assert store.event_names().count("task_execution.start") == 1
    assert len(provider.calls) == 1


def test_new_due_time_runs_again(make_scheduler):
    store = InMemoryStore([task_row("t1")])
    scheduler = make_scheduler()
    scheduler.check_and_execute_tasks("s1", store)

    store.rows[0]["nextExecutionAt"] = NOW - timedelta(minutes=5)
    tick = scheduler.check_and_execute_tasks("s1", store)

    assert tick.executed == ["t1"]
    assert store.event_names().count("task_execution.start") == 2


def test_only_enabled_due_tasks_run(make_scheduler):
    store = InMemoryStore([
        task_row("due"),
        task_row("future", next_execution_at=NOW + timedelta(hours=1)),
        task_row("unscheduled", nextExecutionAt=None),
        task_row("disabled", enabled=False),
        task_row("exactly-now", next_execution_at=NOW),
    ])

    tick = make_scheduler().check_and_execute_tasks("s1", store)

    assert sorted(tick.executed) == ["due", "exactly-now"]
    assert tick.due == 2


def test_due_tasks_run_in_due_order(make_scheduler):
    store = InMemoryStore([
        task_row("later", next_execution_at=NOW - timedelta(hours=1)),
        task_row("earlier", next_execution_at=NOW - timedelta(days=2)),
    ])

    make_scheduler().check_and_execute_tasks("s1", store)

    started = [e.payload["taskId"] for e in store.events if e.name == "task_execution.start"]
    assert started == ["earlier", "later"]


def test_timestamps_in_store_formats(make_scheduler):
    epoch_ms = int((NOW - timedelta(hours=1)).timestamp() * 1000)
    store = InMemoryStore([
        task_row("iso", nextExecutionAt="2026-01-01T08:00:00Z"),
        task_row("epoch", nextExecutionAt=epoch_ms),
    ])

    tick = make_scheduler().check_and_execute_tasks("s1", store)

    assert sorted(tick.executed) == ["epoch", "iso"]


def test_invalid_rows_are_skipped(make_scheduler):
    bad = task_row("bad")
    del bad["prompt"]
    store = InMemoryStore([bad, task_row("good"), task_row("zero", intervalHours=0)])

    tick = make_scheduler().check_and_execute_tasks("s1", store)

    assert tick.executed == ["good"]
    assert tick.invalid == 2


def test_out_of_range_epoch_is_an_invalid_row(make_scheduler):
    store = InMemoryStore([task_row("huge", nextExecutionAt=10**30), task_row("good")])

    tick = make_scheduler().check_and_execute_tasks("s1", store)

    assert tick.error is None
    assert tick.invalid == 1
    assert tick.executed == ["good"]


def test_project_becomes_board_context(make_scheduler, provider):
    store = InMemoryStore([task_row("t1", projectId="proj-9")])

    make_scheduler().check_and_execute_tasks("s1", store)

    board = provider.calls[0]["board_context"]
    assert (board.id, board.name) == ("proj-9", "proj-9")
    assert "Project ID: proj-9" in provider.calls[0]["worker_context"].system_prompt


def test_run_exception_commits_fail_event(make_scheduler):
    def broken_factory(task, store_id):
        raise RuntimeError("could not build loop")

    store = InMemoryStore([task_row("t1"), task_row("t2")])

    tick = make_scheduler(loop_factory=broken_factory).check_and_execute_tasks("s1", store)

    assert set(tick.failed) == {"t1", "t2"}
    assert store.event_names() == [
        "task_execution.start", "task_execution.fail",
        "task_execution.start", "task_execution.fail",
    ]
    fail = store.events[1].payload
    assert fail["status"] == "failed"
    assert fail["error"] == "could not build loop"
    assert fail["failedAt"] == NOW
    assert fail["executionId"] == store.events[0].payload["executionId"]


def test_resource_exhaustion_fails_task_but_keeps_claim(make_scheduler, tracker, provider):
    monitor = ResourceMonitor(ResourceLimits(max_concurrent_llm_calls=1), start_background=False)
    held = monitor.track_llm_call_start()
    store = InMemoryStore([task_row("t1")])
    scheduler = make_scheduler(resource_monitor=monitor)
    try:
        tick = scheduler.check_and_execute_tasks("s1", store)
        again = scheduler.check_and_execute_tasks("s1", store)
    finally:
        monitor.track_llm_call_complete(held)
        monitor.destroy()

    assert tick.failed == {"t1": "LLM call rejected: Resource limit exceeded"}
    assert store.event_names() == ["task_execution.start", "task_execution.fail"]
    assert again.skipped == ["t1"]
    assert provider.calls == []


def test_loop_error_status_still_completes(make_scheduler):
    store = InMemoryStore([task_row("t1")])
    scheduler = make_scheduler(llm_provider=FakeProvider([RuntimeError("model exploded")]))

    tick = scheduler.check_and_execute_tasks("s1", store)

    assert tick.executed == ["t1"]
    assert store.event_names() == ["task_execution.start", "task_execution.complete"]


def test_stop_during_run_commits_fail_event(make_scheduler):
    holder = {}

    def stop_mid_run(messages):
        holder["scheduler"].stop()
        return tool_response("echo")

    scheduler = make_scheduler(llm_provider=FakeProvider([stop_mid_run]))
    holder["scheduler"] = scheduler
    store = InMemoryStore([task_row("t1"), task_row("t2")])

    tick = scheduler.check_and_execute_tasks("s1", store)

    assert tick.executed == []
    assert tick.failed == {"t1": "Execution cancelled"}
    assert store.event_names() == ["task_execution.start", "task_execution.fail"]
    fail = store.events[1].payload
    assert fail["error"] == "Execution cancelled"
    assert "nextExecutionAt" not in fail


def test_store_query_failure_ends_tick(make_scheduler):
    store = InMemoryStore(fail_query=OSError("store offline"))

    tick = make_scheduler().check_and_execute_tasks("s1", store)

    assert tick.error == "store offline"
    assert store.events == []


def test_sync_delay_waits_before_query(make_scheduler):
    config = GlobalConfig()
    config.scheduler.sync_delay_seconds = 2
    sleeps = []
    store = InMemoryStore([task_row("t1")])

    make_scheduler(config=config, sleep=sleeps.append).check_and_execute_tasks("s1", store)

    assert sleeps == [2]


def test_iteration_cap_per_task(make_scheduler, registry):
    config = GlobalConfig()
    config.scheduler.max_iterations_per_task = 2
    counter = {"n": 0}

    def new_call(messages):
        counter["n"] += 1
        return tool_response("echo", f'{{"text": "{counter["n"]}"}}')

    provider = FakeProvider([new_call])
    store = InMemoryStore([task_row("t1")])

    make_scheduler(llm_provider=provider, config=config, tool_registry=registry).check_and_execute_tasks("s1", store)

    assert len(provider.calls) == 2


def test_concurrent_ticks_execute_once(make_scheduler, provider):
    store = InMemoryStore([task_row("t1")])
    scheduler = make_scheduler()
    barrier = threading.Barrier(4)

    def tick():
        barrier.wait()
        scheduler.check_and_execute_tasks("s1", store)

    threads = [threading.Thread(target=tick) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.event_names().count("task_execution.start") == 1
    assert len(provider.calls) == 1


def test_process_stores_runs_every_store(make_scheduler):
    stores = {
        "a": InMemoryStore([task_row("t1")]),
        "b": InMemoryStore([task_row("t1"), task_row("t2")]),
    }
    scheduler = make_scheduler()

    results = scheduler.process_stores(stores)

    assert results["a"].executed == ["t1"]
    assert sorted(results["b"].executed) == ["t1", "t2"]
    assert scheduler.get_stats() == {"processedExecutions": 3}
    assert scheduler.get_stats("b") == {"processedExecutions": 2, "storeId": "b"}
    assert set(scheduler.get_last_ticks()) == {"a", "b"}


def test_cleanup_uses_tracker(make_scheduler):
    scheduler = make_scheduler()
    scheduler.check_and_execute_tasks("s1", InMemoryStore([task_row("t1")]))

    assert scheduler.cleanup(0) == 1
    assert scheduler.get_stats() == {"processedExecutions": 0}


def test_custom_loop_factory_receives_task(make_scheduler, provider):
    seen = []

    def factory(task, store_id):
        seen.append((task.id, store_id))
        return AgenticLoop(provider)

    make_scheduler(loop_factory=factory).check_and_execute_tasks("s1", InMemoryStore([task_row("t1")]))

    assert seen == [("t1", "s1")]


def test_background_start_and_stop(tmp_path, provider):
    store = InMemoryStore([task_row("t1")])
    config = GlobalConfig()
    config.scheduler.data_path = str(tmp_path / "bg")
    scheduler = TaskScheduler(provider, config=config, clock=lambda: NOW)

    ticked = threading.Event()
    original = scheduler.process_stores

    def process_and_signal(stores):
        result = original(stores)
        ticked.set()
        return result

    scheduler.process_stores = process_and_signal
    scheduler.start({"s1": store}, interval_seconds=30)
    try:
        assert ticked.wait(5)
        assert scheduler.is_running()
    finally:
        scheduler.close()

    assert not scheduler.is_running()
    assert store.event_names() == ["task_execution.start", "task_execution.complete"]


def test_close_shuts_down_only_its_own_registry(tracker, provider, registry):
    owned = TaskScheduler(provider, tracker=tracker)
    owned.tool_registry.register_function(lambda: "ok", ToolDefinition(name="ping", description="Ping"))
    owned.close()

    shared = TaskScheduler(provider, tracker=tracker, tool_registry=registry)
    shared.close()

    assert "shut down" in owned.tool_registry.execute("ping", {}).error
    assert registry.execute("echo", {"text": "hi"}).output == "echo: hi"
