"""
LLM providers for taskloop.
"""

from .base import BoardContext, LLMCallOptions, LLMProvider, LLMResponse, WorkerContext
from .http import ChatCompletionsProvider, build_system_prompt
from .stub import StubConfig, StubLLMProvider, StubRule
from .factory import PROVIDER_KINDS, create_provider, default_provider_kind

__all__ = [
    "BoardContext",
    "LLMCallOptions",
    "LLMProvider",
    "LLMResponse",
    "WorkerContext",
    "ChatCompletionsProvider",
    "build_system_prompt",
    "StubConfig",
    "StubLLMProvider",
    "StubRule",
    "PROVIDER_KINDS",
    "create_provider",
    "default_provider_kind",
]
