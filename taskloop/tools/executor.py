"""
TOOL_EXECUTOR
=============

Runs a batch of LLM tool calls against a ToolRegistry.

Calls execute sequentially, in the order the LLM requested them. Every call
yields exactly one ToolMessage carrying the originating ``tool_call_id``;
failures (malformed arguments, unknown tools, exceptions, timeouts,
``success=False`` results) become a message with an ``{"error": ...}`` JSON
body so one failing tool never aborts the batch.
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..conversation import ToolCall, ToolMessage
from ..observability import reset_current_worker_id, set_current_worker_id
from .base import ToolRegistry, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ToolExecutionHooks:
    """Observer hooks, called for logging and metrics only."""
    on_tool_start: Optional[Callable[[ToolCall], None]] = None
    on_tool_complete: Optional[Callable[[ToolCall, ToolResult], None]] = None
    on_tool_error: Optional[Callable[[ToolCall, str], None]] = None


def _error_content(message: str) -> str:
    return json.dumps({"error": message})


class ToolExecutor:
    """Dispatches tool calls to a registry on behalf of one worker."""

    def __init__(self, registry: ToolRegistry, hooks: Optional[ToolExecutionHooks] = None):
        self.registry = registry
        self.hooks = hooks or ToolExecutionHooks()
        self.worker_id: Optional[str] = None

    def set_worker_id(self, worker_id: Optional[str]) -> None:
        """Worker on whose behalf subsequent tool calls act."""
        self.worker_id = worker_id

    def execute_tools(self, tool_calls: List[ToolCall]) -> List[ToolMessage]:
        """
        Execute each tool call in order.

        Returns:
            One ToolMessage per call, same order as ``tool_calls``
        """
        token = set_current_worker_id(self.worker_id)
        try:
            return [self._execute_one(tc) for tc in tool_calls]
        finally:
            reset_current_worker_id(token)

    def _execute_one(self, tool_call: ToolCall) -> ToolMessage:
        self._call_hook("on_tool_start", tool_call)

        try:
            parameters = json.loads(tool_call.arguments) if tool_call.arguments else {}
        except json.JSONDecodeError as e:
            return self._failed(tool_call, f"Invalid JSON arguments for {tool_call.name}: {e}")
        if not isinstance(parameters, dict):
            return self._failed(tool_call, f"Arguments for {tool_call.name} must be a JSON object")

        result = self.registry.execute(tool_call.name, parameters)
        if not result.success:
            return self._failed(tool_call, result.error or "Unknown error")

        self._call_hook("on_tool_complete", tool_call, result)
        logger.debug(f"Tool {tool_call.name} ({tool_call.id}) succeeded")
        return ToolMessage(content=result.output, tool_call_id=tool_call.id)

    def _failed(self, tool_call: ToolCall, error: str) -> ToolMessage:
        logger.warning(f"Tool {tool_call.name} ({tool_call.id}) failed: {error}")
        self._call_hook("on_tool_error", tool_call, error)
        return ToolMessage(content=_error_content(error), tool_call_id=tool_call.id)

    def _call_hook(self, name: str, *args) -> None:
        hook = getattr(self.hooks, name)
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.error(f"Tool hook {name} failed: {e}", exc_info=True)
