"""
CONVERSATION
============

Message types and the per-run conversation history.

A ``ConversationHistory`` is owned by exactly one AgenticLoop run. Messages are
kept as ``LLMMessage`` dataclasses and converted to the OpenAI chat format on
demand (``to_openai_format``) when a provider needs wire dicts.
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ToolCall:
    """A tool invocation requested by the LLM. ``arguments`` is a JSON string."""
    id: str
    name: str
    arguments: str = "{}"
    type: str = "function"

    @property
    def signature(self) -> str:
        """Identical calls share a ``name:arguments`` signature."""
        return f"{self.name}:{self.arguments}"

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ToolCall":
        """Accept OpenAI-shaped (``function: {name, arguments}``) or flat dicts."""
        function = data.get("function") or {}
        name = function.get("name", data.get("name", ""))
        arguments = function.get("arguments", data.get("arguments", "{}"))
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=data.get("id", ""),
            name=name,
            arguments=arguments,
            type=data.get("type", "function"),
        )


@dataclass
class LLMMessage:
    role: str  # system | user | assistant | tool
    content: Optional[str]
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict:
        d: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        return d

    @classmethod
    def from_dict(cls, data: Dict) -> "LLMMessage":
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass
class ToolMessage:
    """Result of one tool call, fed back to the LLM."""
    content: str
    tool_call_id: Optional[str] = None
    role: str = "tool"

    def to_message(self) -> LLMMessage:
        return LLMMessage(role="tool", content=self.content, tool_call_id=self.tool_call_id)

    def to_dict(self) -> Dict:
        return {"role": self.role, "content": self.content, "tool_call_id": self.tool_call_id}


# ============================================================================
# CONVERSATION HISTORY
# ============================================================================

class ConversationHistory:
    """Ordered message list for a single agentic run."""

    def __init__(self, messages: Optional[Iterable] = None):
        self._messages: List[LLMMessage] = []
        for message in messages or []:
            self._messages.append(
                LLMMessage.from_dict(message) if isinstance(message, dict) else copy.deepcopy(message)
            )

    def add_user_message(self, content: str) -> None:
        self._messages.append(LLMMessage(role="user", content=content))

    def add_assistant_message(self, content: Optional[str], tool_calls: Optional[List[ToolCall]] = None) -> None:
        self._messages.append(LLMMessage(
            role="assistant",
            content=content,
            tool_calls=list(tool_calls or []),
        ))

    def add_system_message(self, content: str) -> None:
        self._messages.append(LLMMessage(role="system", content=content))

    def add_tool_messages(self, tool_messages: Iterable[ToolMessage]) -> None:
        for tm in tool_messages:
            if isinstance(tm, dict):
                tm = ToolMessage(content=tm["content"], tool_call_id=tm.get("tool_call_id"))
            self._messages.append(tm.to_message())

    def get_messages(self) -> List[LLMMessage]:
        """Copy of all messages, oldest first."""
        return copy.deepcopy(self._messages)

    def get_last_messages(self, count: int) -> List[LLMMessage]:
        if count <= 0:
            return []
        return copy.deepcopy(self._messages[-count:])

    def get_message_count(self) -> int:
        return len(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def clear(self) -> None:
        self._messages = []

    def clone(self) -> "ConversationHistory":
        return ConversationHistory(self._messages)

    def to_openai_format(self) -> List[Dict]:
        """
        Messages as OpenAI chat dicts.

        Empty assistant content is sent as ``None`` (the API rejects empty
        strings alongside tool calls).
        """
        result = []
        for message in self._messages:
            d = message.to_dict()
            if message.role == "assistant" and not message.content:
                d["content"] = None
            result.append(d)
        return result
