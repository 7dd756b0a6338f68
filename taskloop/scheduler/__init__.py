"""
SCHEDULER MODULE
================

Recurring task execution for taskloop.

Due recurring tasks are read from a store, claimed exactly once per due time
through a SQLite-backed ProcessedExecutionTracker, and executed as one
AgenticLoop run each.

Features:
- Interval schedules (every N hours, next run = completion + interval)
- Idempotent claims shared across ticks, threads and processes
- Lifecycle events committed back to the store
- Parallel ticks over many stores
"""

from .models import RecurringTaskDefinition
from .scheduler import SchedulerTickResult, TaskScheduler
from .tracker import DB_FILENAME, ProcessedExecutionTracker, to_epoch_ms

__all__ = [
    'TaskScheduler',
    'SchedulerTickResult',
    'RecurringTaskDefinition',
    'ProcessedExecutionTracker',
    'DB_FILENAME',
    'to_epoch_ms',
]
