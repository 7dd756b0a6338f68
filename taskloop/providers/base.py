"""
PROVIDER_BASE
=============

The narrow LLM interface consumed by AgenticLoop.

A provider receives the full conversation plus optional board/worker context
and returns either final text or a list of tool calls. Providers raise on
failure; the loop classifies the exception text (timeouts, 429, 5xx,
401/403, …) to decide whether to retry.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..conversation import LLMMessage, ToolCall


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class BoardContext:
    """The project the conversation is scoped to."""
    id: str
    name: str

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name}


@dataclass
class WorkerContext:
    """Persona the LLM acts as."""
    name: str
    system_prompt: str
    role_description: Optional[str] = None

    def to_dict(self) -> Dict:
        d = {"name": self.name, "system_prompt": self.system_prompt}
        if self.role_description:
            d["role_description"] = self.role_description
        return d


@dataclass
class LLMCallOptions:
    # (attempt, max_retries, delay_ms, error)
    on_retry: Optional[Callable[[int, int, int, Exception], None]] = None
    navigation_context: Optional[Dict] = None
    tools: Optional[List[Dict]] = None  # function-calling schemas offered to the model


@dataclass
class LLMResponse:
    message: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    model_used: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict:
        return {
            "message": self.message,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "model_used": self.model_used,
        }


# ============================================================================
# PROVIDER INTERFACE
# ============================================================================

class LLMProvider(ABC):
    """Base class for LLM providers."""

    @abstractmethod
    def call(
        self,
        messages: List[LLMMessage],
        board_context: Optional[BoardContext] = None,
        model: Optional[str] = None,
        worker_context: Optional[WorkerContext] = None,
        options: Optional[LLMCallOptions] = None,
    ) -> LLMResponse:
        """
        Run one completion.

        Args:
            messages: Full conversation, oldest first
            board_context: Current project, if any
            model: Model override
            worker_context: Persona / system prompt, if any
            options: Retry callback passthrough and navigation context

        Returns:
            LLMResponse with text and/or tool calls
        """
        pass
