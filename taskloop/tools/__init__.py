"""
Tool system for taskloop: registry contract and batch executor.
"""

from .base import (
    BaseTool,
    FunctionTool,
    ToolDefinition,
    ToolParameter,
    ToolRegistry,
    ToolResult,
)
from .executor import ToolExecutionHooks, ToolExecutor

__all__ = [
    "BaseTool",
    "FunctionTool",
    "ToolDefinition",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "ToolExecutionHooks",
    "ToolExecutor",
]
