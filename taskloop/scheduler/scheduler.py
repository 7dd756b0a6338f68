"""
TASK_SCHEDULER
==============

Recurring task scheduler for taskloop.

The scheduler:
- Queries each store for enabled recurring tasks whose ``next_execution_at``
  is at or before now (a null ``next_execution_at`` means "not yet scheduled")
- Claims each due occurrence through the ProcessedExecutionTracker, so a due
  time runs exactly once no matter how many ticks or processes observe it
- Drives one AgenticLoop run per claim and commits lifecycle events
  (``task_execution.start`` / ``.complete`` / ``.fail``) back to the store

Usage:
    from taskloop.scheduler import TaskScheduler

    with TaskScheduler(provider, resource_monitor=monitor) as scheduler:
        result = scheduler.check_and_execute_tasks("store-1", store)

    # or as a background service over several stores
    scheduler.start(stores, interval_seconds=60)
    ...
    scheduler.stop()
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..config.loader import GlobalConfig
from ..loop import AgenticLoop, LoopContext, LoopResult
from ..monitor import ResourceMonitor
from ..providers.base import BoardContext, LLMProvider, WorkerContext
from ..store import RECURRING_TASKS_QUERY, Store, StoreEvent
from ..tools.base import ToolRegistry
from .models import RecurringTaskDefinition
from .tracker import ProcessedExecutionTracker

logger = logging.getLogger(__name__)

LoopFactory = Callable[[RecurringTaskDefinition, str], AgenticLoop]
StoreSource = Union[Mapping[str, Store], Callable[[], Mapping[str, Store]]]


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class SchedulerTickResult:
    """What one ``check_and_execute_tasks`` call did for one store."""
    store_id: str
    due: int = 0
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # already claimed
    failed: Dict[str, str] = field(default_factory=dict)  # task_id -> error
    invalid: int = 0
    error: Optional[str] = None  # store query failure

    def to_dict(self) -> Dict:
        return {
            "store_id": self.store_id,
            "due": self.due,
            "executed": self.executed,
            "skipped": self.skipped,
            "failed": self.failed,
            "invalid": self.invalid,
            "error": self.error,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# TASK SCHEDULER
# ============================================================================

class TaskScheduler:
    """
    Claims and executes due recurring tasks.

    One scheduler may serve many stores; ticks for different stores can run
    concurrently and share the same tracker and resource monitor.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        tracker: Optional[ProcessedExecutionTracker] = None,
        tool_registry: Optional[ToolRegistry] = None,
        resource_monitor: Optional[ResourceMonitor] = None,
        config: Optional[GlobalConfig] = None,
        loop_factory: Optional[LoopFactory] = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the scheduler.

        Args:
            llm_provider: Provider for every task run
            tracker: Claim registry (created from config.scheduler.data_path if None)
            tool_registry: Tools available to task runs
            resource_monitor: Shared admission control for LLM calls
            config: Global configuration (defaults to GlobalConfig())
            loop_factory: Builds the AgenticLoop for a task (for custom wiring/tests)
            clock: Current UTC time
            sleep: Used for the optional sync delay
        """
        self.llm_provider = llm_provider
        self.config = config or GlobalConfig()
        self.tracker = tracker or ProcessedExecutionTracker(self.config.scheduler.data_path)
        # A registry passed in belongs to the caller; only our own is shut down on close()
        self._owns_registry = tool_registry is None
        self.tool_registry = tool_registry or ToolRegistry()
        self.resource_monitor = resource_monitor
        self.loop_factory = loop_factory or self._default_loop_factory
        self._clock = clock
        self._sleep = sleep

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._last_tick: Dict[str, SchedulerTickResult] = {}

    @property
    def sync_delay_seconds(self) -> float:
        return self.config.scheduler.sync_delay_seconds

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def initialize(self) -> None:
        self._stop_event.clear()
        self.tracker.initialize()

    def close(self) -> None:
        """Stop any background thread, then release the tracker and our own tool registry."""
        self.stop()
        self.tracker.close()
        if self._owns_registry:
            self.tool_registry.shutdown()

    def __enter__(self) -> "TaskScheduler":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self, stores: StoreSource, interval_seconds: float = 60.0) -> None:
        """
        Run ``process_stores`` now and then every ``interval_seconds`` in a
        background thread.

        Args:
            stores: Mapping of store id to store, or a callable returning one
                (re-evaluated each tick so new stores are picked up)
            interval_seconds: Pause between ticks
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self.initialize()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(stores, interval_seconds),
                daemon=True,
                name="taskloop-scheduler",
            )
            self._thread.start()
        logger.info(f"Task scheduler started (interval={interval_seconds}s)")

    def stop(self) -> None:
        """Stop the background thread; in-flight runs see cancellation."""
        self._stop_event.set()
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
            logger.info("Task scheduler stopped")

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def _run_loop(self, stores: StoreSource, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                current = stores() if callable(stores) else stores
                self.process_stores(current)
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            if self._stop_event.wait(interval_seconds):
                break

    # ========================================================================
    # TICKS
    # ========================================================================

    def process_stores(self, stores: Mapping[str, Store]) -> Dict[str, SchedulerTickResult]:
        """Run one tick for every store, stores in parallel."""
        if not stores:
            return {}

        workers = max(1, min(len(stores), self.config.scheduler.max_parallel_stores))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taskloop-store") as pool:
            futures = {
                store_id: pool.submit(self.check_and_execute_tasks, store_id, store)
                for store_id, store in stores.items()
            }
            return {store_id: future.result() for store_id, future in futures.items()}

    def check_and_execute_tasks(self, store_id: str, store: Store) -> SchedulerTickResult:
        """
        Claim and run every due task in one store.

        Never raises for task or store failures; see the returned result.
        """
        tick = SchedulerTickResult(store_id=store_id)
        logger.info(f"Checking for due tasks in store: {store_id}")

        if self.sync_delay_seconds > 0:
            self._sleep(self.sync_delay_seconds)

        try:
            due_tasks = self._get_due_tasks(store, tick)
        except Exception as e:
            logger.error(f"Error checking tasks in store {store_id}: {e}", exc_info=True)
            tick.error = str(e)
            self._record_tick(tick)
            return tick

        tick.due = len(due_tasks)
        if not due_tasks:
            logger.info(f"No due tasks found in store: {store_id}")

        for task in due_tasks:
            if self._stop_event.is_set():
                logger.info(f"Scheduler stopping, leaving {store_id} tick early")
                break
            try:
                self._process_task(task, store_id, store, tick)
            except Exception as e:
                logger.error(f"Failed to process task {task.id} in store {store_id}: {e}", exc_info=True)
                tick.failed.setdefault(task.id, str(e))

        logger.info(
            f"Store {store_id}: {len(tick.executed)} executed, {len(tick.skipped)} skipped, "
            f"{len(tick.failed)} failed"
        )
        self._record_tick(tick)
        return tick

    def _get_due_tasks(self, store: Store, tick: SchedulerTickResult) -> List[RecurringTaskDefinition]:
        now = self._clock()
        rows = store.query(RECURRING_TASKS_QUERY)

        due: List[RecurringTaskDefinition] = []
        for row in rows:
            try:
                task = RecurringTaskDefinition.model_validate(row)
            except ValidationError as e:
                tick.invalid += 1
                logger.warning(f"Skipping invalid recurring task row {row.get('id', '?')}: {e}")
                continue
            if task.is_due(now):
                due.append(task)

        due.sort(key=lambda t: t.next_execution_at)
        logger.debug(f"{len(rows)} enabled recurring tasks, {len(due)} due")
        return due

    def _process_task(self, task: RecurringTaskDefinition, store_id: str, store: Store,
                      tick: SchedulerTickResult) -> None:
        if not self.tracker.try_claim(store_id, task.id, task.next_execution_at):
            logger.debug(f"Task {task.id} already processed for {task.next_execution_at.isoformat()}")
            tick.skipped.append(task.id)
            return

        execution_id = f"exec_{uuid.uuid4()}"
        logger.info(f"Executing task: {task.name} ({task.id}) as {execution_id}")

        try:
            store.commit(StoreEvent.task_execution_started(
                task.id, store_id, execution_id, started_at=self._clock(),
            ))
            result = self._execute_task(task, store_id, execution_id)
        except Exception as e:
            logger.error(f"Task {task.id} execution failed: {e}")
            tick.failed[task.id] = str(e)
            store.commit(StoreEvent.task_execution_failed(
                task.id, store_id, execution_id, str(e), failed_at=self._clock(),
            ))
            return

        if result.status == "cancelled":
            error = result.error or "Execution cancelled"
            logger.warning(f"Task {task.id} cancelled after {result.iterations} iterations")
            tick.failed[task.id] = error
            store.commit(StoreEvent.task_execution_failed(
                task.id, store_id, execution_id, error, failed_at=self._clock(),
            ))
            return

        completed_at = self._clock()
        store.commit(StoreEvent.task_execution_completed(
            task.id, store_id, execution_id,
            completed_at=completed_at,
            next_execution_at=task.next_execution_after(completed_at),
        ))
        tick.executed.append(task.id)
        logger.info(f"Task {task.id} completed ({result.status}, {result.iterations} iterations)")

    def _execute_task(self, task: RecurringTaskDefinition, store_id: str, execution_id: str) -> LoopResult:
        loop = self.loop_factory(task, store_id)
        context = LoopContext(
            model=self.config.loop.default_model,
            max_iterations=self.config.scheduler.max_iterations_per_task,
            board_context=BoardContext(id=task.project_id, name=task.project_id) if task.project_id else None,
            worker_context=WorkerContext(
                name=f"Recurring Task: {task.name}",
                system_prompt=task.build_system_prompt(),
            ),
            correlation_id=execution_id,
            message_id=task.id,
            store_id=store_id,
            cancel_check=self._stop_event.is_set,
        )
        return loop.run(task.prompt, context)

    def _default_loop_factory(self, task: RecurringTaskDefinition, store_id: str) -> AgenticLoop:
        return AgenticLoop(
            self.llm_provider,
            tool_registry=self.tool_registry,
            resource_monitor=self.resource_monitor,
            config=self.config.loop,
        )

    def _record_tick(self, tick: SchedulerTickResult) -> None:
        with self._lock:
            self._last_tick[tick.store_id] = tick

    # ========================================================================
    # STATS & MAINTENANCE
    # ========================================================================

    def get_stats(self, store_id: Optional[str] = None) -> Dict:
        return self.tracker.get_stats(store_id)

    def get_last_ticks(self) -> Dict[str, Dict]:
        with self._lock:
            return {store_id: tick.to_dict() for store_id, tick in self._last_tick.items()}

    def cleanup(self, max_age_days: Optional[float] = None) -> int:
        """Delete claims older than ``max_age_days`` (config default 30)."""
        if max_age_days is None:
            max_age_days = self.config.scheduler.cleanup_max_age_days
        return self.tracker.cleanup(max_age_days)
