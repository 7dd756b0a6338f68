"""
TASKLOOP
========

Agent task-execution orchestrator.

Features:
- Bounded agentic loop with tool calling, retries and stuck-loop detection
- Process-wide resource monitor gating concurrent LLM calls
- Recurring task scheduler with exactly-once execution per due time
- Admin API and CLI

Usage:
    from taskloop import AgenticLoop, LoopContext, ResourceMonitor
    from taskloop.tools import ToolRegistry

    registry = ToolRegistry()
    monitor = ResourceMonitor()

    loop = AgenticLoop(provider, tool_registry=registry, resource_monitor=monitor)
    result = loop.run("What changed today?", LoopContext(max_iterations=10))
"""

__version__ = "1.0.0"

# Core loop
from .loop import (
    AgenticLoop,
    LoopContext,
    LoopEvents,
    LoopResult,
    LoopDetector,
    IterationOutcome,
    classify_error,
)

# Conversation
from .conversation import ConversationHistory, LLMMessage, ToolCall, ToolMessage

# Errors
from .errors import (
    TaskLoopError,
    ResourceLimitExceeded,
    StuckLoopError,
    MaxIterationsError,
    LLMProviderError,
    TrackerError,
    ConfigError,
)

# Resources
from .monitor import ResourceMonitor, ResourceLimits

# Configuration
from .config import ConfigManager, GlobalConfig, LoopConfig, get_config_manager, load_global_config

# Tools
from .tools import ToolRegistry, ToolExecutor, ToolResult

# Providers
from .providers import LLMProvider, LLMResponse, ChatCompletionsProvider, StubLLMProvider

# Scheduler
from .scheduler import TaskScheduler, ProcessedExecutionTracker, RecurringTaskDefinition

__all__ = [
    # Version
    '__version__',

    # Core
    'AgenticLoop',
    'LoopContext',
    'LoopEvents',
    'LoopResult',
    'LoopDetector',
    'IterationOutcome',
    'classify_error',

    # Conversation
    'ConversationHistory',
    'LLMMessage',
    'ToolCall',
    'ToolMessage',

    # Errors
    'TaskLoopError',
    'ResourceLimitExceeded',
    'StuckLoopError',
    'MaxIterationsError',
    'LLMProviderError',
    'TrackerError',
    'ConfigError',

    # Resources
    'ResourceMonitor',
    'ResourceLimits',

    # Configuration
    'ConfigManager',
    'GlobalConfig',
    'LoopConfig',
    'get_config_manager',
    'load_global_config',

    # Tools
    'ToolRegistry',
    'ToolExecutor',
    'ToolResult',

    # Providers
    'LLMProvider',
    'LLMResponse',
    'ChatCompletionsProvider',
    'StubLLMProvider',

    # Scheduler
    'TaskScheduler',
    'ProcessedExecutionTracker',
    'RecurringTaskDefinition',
]
