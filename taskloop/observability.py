"""
OBSERVABILITY
=============

Correlation plumbing for taskloop.

Provides contextvars-based access to the current correlation id and worker id
anywhere in the call stack, without threading them through every function
signature.

Usage::

    from taskloop.observability import get_current_worker_id

    worker_id = get_current_worker_id()
    if worker_id:
        ...
"""

import contextvars
import logging
from typing import Any, Optional

# Current correlation id for this execution context.
# Set by AgenticLoop.run(), read anywhere deeper in the stack.
_current_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "taskloop_correlation_id", default=None
)

# Current worker id for this execution context.
# Set by ToolExecutor, read by tools that act on behalf of a worker.
_current_worker_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "taskloop_worker_id", default=None
)


def set_current_correlation_id(correlation_id: Optional[str]) -> contextvars.Token:
    """Set the correlation id for the current execution context."""
    return _current_correlation_id.set(correlation_id)


def get_current_correlation_id() -> Optional[str]:
    """Get the current correlation id, or None outside a run."""
    return _current_correlation_id.get()


def reset_current_correlation_id(token: contextvars.Token) -> None:
    _current_correlation_id.reset(token)


def set_current_worker_id(worker_id: Optional[str]) -> contextvars.Token:
    """Set the worker id for the current execution context."""
    return _current_worker_id.set(worker_id)


def get_current_worker_id() -> Optional[str]:
    """Get the current worker id, or None if no worker is acting."""
    return _current_worker_id.get()


def reset_current_worker_id(token: contextvars.Token) -> None:
    _current_worker_id.reset(token)


# ============================================================================
# CORRELATED LOGGING
# ============================================================================

class CorrelatedLogger(logging.LoggerAdapter):
    """Prefixes log lines with ``[correlation/message/store]`` identifiers."""

    def process(self, msg: Any, kwargs: Any):
        parts = [
            self.extra.get("correlation_id") or "-",
            self.extra.get("message_id") or "-",
            self.extra.get("store_id") or "-",
        ]
        return f"[{'/'.join(parts)}] {msg}", kwargs


def correlated_logger(
    logger: logging.Logger,
    correlation_id: Optional[str] = None,
    message_id: Optional[str] = None,
    store_id: Optional[str] = None,
) -> CorrelatedLogger:
    """Wrap ``logger`` so every line carries the run's identifiers."""
    return CorrelatedLogger(logger, {
        "correlation_id": correlation_id,
        "message_id": message_id,
        "store_id": store_id,
    })
