"""
TOOL_BASE
=========

Tool contract and registry used by agentic runs.

A tool pairs a ToolDefinition (what the model sees in its function list) with
an ``execute(**kwargs)`` body. Task, project and contact tool bodies live in
the host application; taskloop only needs to describe, look up and run them.

::

    BaseTool (abstract)
    ├── definition -> ToolDefinition
    └── execute(**kwargs) -> ToolResult

    FunctionTool(BaseTool)   - wraps a plain callable

    ToolRegistry
    ├── register / register_function / unregister
    ├── get_schemas()        - function-calling list sent with each LLM call
    └── execute(name, params)
        - runs on its own daemon thread with the caller's contextvars
        - bounded by a timeout (30s default)
        - output capped at 100KB
        - never raises: failures come back as ToolResult.fail(...)

Usage::

    registry = ToolRegistry()
    registry.register_function(
        create_task,
        ToolDefinition("create_task", "Create a task", [ToolParameter("title", "string", "Task title")]),
    )
    result = registry.execute("create_task", {"title": "Weekly review"})
"""

import contextvars
import json
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# DEFINITIONS
# ============================================================================

@dataclass
class ToolParameter:
    name: str
    type: str  # JSON Schema type
    description: str
    required: bool = True
    enum: Optional[List[str]] = None
    items: Optional[Dict] = None  # element schema when type == "array"

    def to_property(self) -> Dict:
        prop: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            prop["enum"] = list(self.enum)
        if self.type == "array" and self.items:
            prop["items"] = self.items
        return prop


@dataclass
class ToolDefinition:
    """Name, description and parameters of one tool as the model sees it."""
    name: str
    description: str
    parameters: List[ToolParameter] = field(default_factory=list)

    def to_openai_tool(self) -> Dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.to_property() for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


@dataclass
class ToolResult:
    success: bool
    output: str
    error: Optional[str] = None
    metadata: Optional[Dict] = None

    @classmethod
    def ok(cls, output: str, **metadata) -> "ToolResult":
        return cls(success=True, output=output, metadata=metadata or None)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, output="", error=error)

    def truncated(self, limit: int) -> "ToolResult":
        """Copy with output cut to ``limit`` characters, or self when it fits."""
        if not self.output or len(self.output) <= limit:
            return self
        return replace(
            self,
            output=f"{self.output[:limit]}\n\n[TRUNCATED - output exceeded {limit} characters]",
            metadata={**(self.metadata or {}), "truncated": True, "original_size": len(self.output)},
        )


# ============================================================================
# TOOLS
# ============================================================================

class BaseTool(ABC):
    """Subclasses provide ``definition`` and ``execute``."""

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        pass

    @abstractmethod
    def execute(self, **kwargs) -> ToolResult:
        pass

    @property
    def name(self) -> str:
        return self.definition.name


class FunctionTool(BaseTool):
    """
    Adapts a plain callable into a tool.

    Strings become the output unchanged, a ToolResult is passed through and
    anything else is JSON-encoded.
    """

    def __init__(self, func: Callable[..., Any], definition: ToolDefinition):
        self._func = func
        self._definition = definition

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    def execute(self, **kwargs) -> ToolResult:
        value = self._func(**kwargs)
        if isinstance(value, ToolResult):
            return value
        if not isinstance(value, str):
            value = json.dumps(value, default=str)
        return ToolResult.ok(value)


# ============================================================================
# REGISTRY
# ============================================================================

class ToolRegistry:
    """
    Named tools, each call run on its own daemon thread under a timeout.

    A tool that hangs past its timeout keeps only its own thread; later calls
    are unaffected.
    """

    DEFAULT_TIMEOUT = 30  # seconds
    MAX_OUTPUT_SIZE = 100_000  # characters

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT, max_output_size: int = MAX_OUTPUT_SIZE):
        self.default_timeout = default_timeout
        self.max_output_size = max_output_size
        self._tools: Dict[str, BaseTool] = {}
        self._closed = False

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            logger.debug(f"Replacing registered tool {tool.name}")
        self._tools[tool.name] = tool

    def register_function(self, func: Callable[..., Any], definition: ToolDefinition) -> None:
        self.register(FunctionTool(func, definition))

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> List[str]:
        return list(self._tools)

    def get_schemas(self) -> List[Dict]:
        return [tool.definition.to_openai_tool() for tool in self._tools.values()]

    def execute(self, tool_name: str, parameters: Dict, timeout: float = None) -> ToolResult:
        """
        Run ``tool_name`` with ``parameters``.

        The tool sees the caller's contextvars (worker id, correlation id).
        Unknown tools, bad parameters, exceptions and timeouts all come back
        as failed results.
        """
        if self._closed:
            return ToolResult.fail(f"Tool registry is shut down; cannot run {tool_name}")
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResult.fail(f"Unknown tool: {tool_name}")

        timeout = timeout or self.default_timeout
        future = self._start(tool, parameters)
        try:
            result = future.result(timeout=timeout)
        except FuturesTimeoutError:
            logger.warning(f"Tool {tool_name} still running after {timeout}s; abandoning its thread")
            return ToolResult.fail(f"Tool '{tool_name}' timed out after {timeout} seconds")
        except TypeError as e:
            return ToolResult.fail(f"Invalid parameters for {tool_name}: {e}")
        except Exception as e:
            logger.debug(f"Tool {tool_name} raised", exc_info=True)
            return ToolResult.fail(f"Tool execution error: {e}")

        return result.truncated(self.max_output_size)

    @staticmethod
    def _start(tool: BaseTool, parameters: Dict) -> Future:
        future: Future = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(tool.execute(**parameters))
            except Exception as e:
                future.set_exception(e)

        context = contextvars.copy_context()
        threading.Thread(
            target=context.run,
            args=(target,),
            daemon=True,
            name=f"taskloop-tool-{tool.name}",
        ).start()
        return future

    def shutdown(self) -> None:
        """Refuse further calls. Threads of hung tools are daemons and die with the process."""
        self._closed = True
