"""Shared fixtures for the taskloop test suite."""

from datetime import datetime, timezone
from typing import Dict, List

import pytest

from taskloop.config.loader import reset_config_manager
from taskloop.conversation import ToolCall
from taskloop.logging_config import reset_logging
from taskloop.monitor import ResourceLimits, ResourceMonitor
from taskloop.providers.base import LLMProvider, LLMResponse
from taskloop.scheduler.tracker import ProcessedExecutionTracker
from taskloop.store import Store, StoreEvent
from taskloop.tools.base import ToolDefinition, ToolParameter, ToolRegistry

ENV_VARS = (
    "LLM_MAX_ITERATIONS",
    "DEFAULT_MODEL",
    "STORE_DATA_PATH",
    "LOG_LEVEL",
    "TASKLOOP_CONFIG",
    "TASKLOOP_API_HOST",
    "TASKLOOP_API_PORT",
    "LLM_PROVIDER",
    "LLM_API_KEY",
    "LLM_BASE_URL",
    "LLM_STUB_RESPONSES",
    "LLM_STUB_FIXTURE_PATH",
    "LLM_STUB_DEFAULT_RESPONSE",
) + tuple(ResourceLimits.ENV_VARS.values())


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    reset_config_manager()
    yield
    reset_config_manager()
    reset_logging()


# ============================================================================
# FAKES
# ============================================================================

class FakeProvider(LLMProvider):
    """
    Replays scripted steps. A step is an LLMResponse, an Exception (raised),
    or a callable taking the messages. The last step repeats once exhausted.
    """

    def __init__(self, steps=None):
        self.steps = list(steps or [LLMResponse(message="done")])
        self.calls: List[Dict] = []

    def call(self, messages, board_context=None, model=None, worker_context=None, options=None):
        self.calls.append({
            "messages": messages,
            "board_context": board_context,
            "model": model,
            "worker_context": worker_context,
            "options": options,
        })
        index = min(len(self.calls) - 1, len(self.steps) - 1)
        step = self.steps[index]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(messages)
        return step


def tool_response(name: str, arguments: str = "{}", call_id: str = None) -> LLMResponse:
    return LLMResponse(
        message="",
        tool_calls=[ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments)],
    )


class InMemoryStore(Store):
    def __init__(self, rows=None, fail_query: Exception = None):
        self.rows = list(rows or [])
        self.events: List[StoreEvent] = []
        self.queries = []
        self.fail_query = fail_query

    def query(self, descriptor):
        self.queries.append(descriptor)
        if self.fail_query is not None:
            raise self.fail_query
        return [dict(r) for r in self.rows if descriptor.matches(r)]

    def commit(self, event):
        self.events.append(event)

    def event_names(self) -> List[str]:
        return [e.name for e in self.events]


def task_row(task_id="task-1", next_execution_at=None, **overrides) -> Dict:
    row = {
        "id": task_id,
        "name": f"Task {task_id}",
        "prompt": f"Run {task_id}",
        "intervalHours": 24,
        "nextExecutionAt": next_execution_at or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc),
        "enabled": True,
    }
    row.update(overrides)
    return row


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def tracker(tmp_path):
    t = ProcessedExecutionTracker(str(tmp_path / "data"))
    t.initialize()
    yield t
    t.close()


@pytest.fixture
def monitor():
    m = ResourceMonitor(start_background=False)
    yield m
    m.destroy()


@pytest.fixture
def registry():
    reg = ToolRegistry(default_timeout=5)

    def echo(text: str = ""):
        return f"echo: {text}"

    def explode():
        raise RuntimeError("kaboom")

    reg.register_function(echo, ToolDefinition(
        name="echo",
        description="Echo the given text",
        parameters=[ToolParameter("text", "string", "Text to echo", required=False)],
    ))
    reg.register_function(explode, ToolDefinition(name="explode", description="Always fails"))
    yield reg
    reg.shutdown()
