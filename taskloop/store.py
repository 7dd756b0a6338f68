"""
STORE
=====

The narrow data-store interface the scheduler consumes.

A store answers ``query(descriptor)`` with plain row dicts and accepts
``commit(event)`` for lifecycle events. The event-sourced store and its sync
transport live outside taskloop; ``JsonFileStore`` is a directory-backed
implementation used by the CLI and for local runs:

    <stores-dir>/<store-id>/
    ├── recurringTasks.json   - list of task rows
    └── events.jsonl          - committed events, one JSON object per line
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# QUERIES & EVENTS
# ============================================================================

@dataclass(frozen=True)
class QueryDescriptor:
    """Table name plus equality filters."""
    table: str
    filters: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None

    def matches(self, row: Dict) -> bool:
        return all(row.get(k) == v for k, v in self.filters.items())


RECURRING_TASKS_QUERY = QueryDescriptor(
    table="recurringTasks",
    filters={"enabled": True},
    label="getRecurringTasks",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoreEvent:
    name: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {"name": self.name, "payload": self.payload}

    @classmethod
    def task_execution_started(cls, task_id: str, store_id: str, execution_id: str = None,
                               started_at: datetime = None) -> "StoreEvent":
        return cls("task_execution.start", {
            "taskId": task_id,
            "storeId": store_id,
            "startedAt": started_at or _utc_now(),
            "executionId": execution_id or str(uuid.uuid4()),
        })

    @classmethod
    def task_execution_completed(cls, task_id: str, store_id: str, execution_id: str,
                                 completed_at: datetime = None,
                                 next_execution_at: datetime = None) -> "StoreEvent":
        payload = {
            "taskId": task_id,
            "storeId": store_id,
            "completedAt": completed_at or _utc_now(),
            "executionId": execution_id,
        }
        if next_execution_at is not None:
            payload["nextExecutionAt"] = next_execution_at
        return cls("task_execution.complete", payload)

    @classmethod
    def task_execution_failed(cls, task_id: str, store_id: str, execution_id: str, error: str,
                              failed_at: datetime = None) -> "StoreEvent":
        return cls("task_execution.fail", {
            "taskId": task_id,
            "storeId": store_id,
            "status": "failed",
            "error": error,
            "failedAt": failed_at or _utc_now(),
            "executionId": execution_id,
        })


# ============================================================================
# STORE INTERFACE
# ============================================================================

class Store(ABC):
    """Base class for data stores."""

    @abstractmethod
    def query(self, descriptor: QueryDescriptor) -> List[Dict]:
        """Return rows matching ``descriptor``."""
        pass

    @abstractmethod
    def commit(self, event: StoreEvent) -> None:
        """Persist one event."""
        pass


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class JsonFileStore(Store):
    """Directory-backed store: ``<table>.json`` rows and an ``events.jsonl`` log."""

    EVENTS_FILE = "events.jsonl"

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.store_id = self.directory.name
        self._lock = threading.Lock()

    def query(self, descriptor: QueryDescriptor) -> List[Dict]:
        path = self.directory / f"{descriptor.table}.json"
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError(f"{path} must contain a JSON list")
        return [row for row in rows if isinstance(row, dict) and descriptor.matches(row)]

    def commit(self, event: StoreEvent) -> None:
        line = json.dumps(event.to_dict(), default=_json_default)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(self.directory / self.EVENTS_FILE, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_events(self) -> List[Dict]:
        path = self.directory / self.EVENTS_FILE
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    @classmethod
    def discover(cls, stores_dir: str) -> Dict[str, "JsonFileStore"]:
        """One store per sub-directory of ``stores_dir``, keyed by directory name."""
        root = Path(stores_dir)
        if not root.is_dir():
            return {}
        return {p.name: cls(str(p)) for p in sorted(root.iterdir()) if p.is_dir()}
