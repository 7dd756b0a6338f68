"""
ERRORS
======

Exception hierarchy for taskloop.

Only ``ResourceLimitExceeded`` is expected to escape ``AgenticLoop.run()``;
everything else raised during a run is absorbed into the loop's event stream.
"""

from typing import Optional


class TaskLoopError(Exception):
    """Base class for all taskloop errors."""


class ResourceLimitExceeded(TaskLoopError):
    """An LLM call or message was rejected by admission control."""

    def __init__(self, message: str, retry_after: float = None):
        self.retry_after = retry_after
        super().__init__(message)


class StuckLoopError(TaskLoopError):
    """The agent repeated an identical tool call too many times."""

    def __init__(self, tool_name: str, message: str = "Stuck loop detected: Repeating same tool calls"):
        self.tool_name = tool_name
        super().__init__(message)


class MaxIterationsError(TaskLoopError):
    """The loop ran out of iterations before reaching a final answer."""

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(
            f"Maximum iterations reached ({max_iterations}). The operation may be incomplete. "
            "Consider breaking down complex requests into smaller parts."
        )


class LLMProviderError(TaskLoopError):
    """The LLM provider returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TrackerError(TaskLoopError):
    """Processed-execution tracker storage failure."""


class TrackerNotInitializedError(TrackerError):
    """The tracker was used before initialize() or after close()."""

    def __init__(self, message: str = "Database not initialized"):
        super().__init__(message)


class ConfigError(TaskLoopError):
    """Invalid or unreadable configuration."""
