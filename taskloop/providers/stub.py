"""
Rule-based stub LLM provider for local runs and end-to-end tests.

Configuration (first match wins):

    {
      "defaultResponse": "Stubbed response",
      "responses": [
        {"match": "hello", "response": "Hi! You said {{message}}", "matchType": "includes"},
        {"match": "^create", "response": "", "matchType": "regex",
         "toolCalls": [{"id": "c1", "function": {"name": "create_task", "arguments": "{}"}}]}
      ]
    }

A plain ``{"match": "response"}`` mapping is accepted as exact-match rules.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..conversation import LLMMessage, ToolCall
from ..errors import ConfigError
from .base import BoardContext, LLMCallOptions, LLMProvider, LLMResponse, WorkerContext

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE = "Stubbed response"
MATCH_TYPES = ("exact", "includes", "regex")

_TEMPLATE = re.compile(r"\{\{\s*message\s*\}\}")


@dataclass
class StubRule:
    match: str
    response: str
    match_type: str = "exact"
    tool_calls: List[ToolCall] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "StubRule":
        match_type = data.get("matchType", data.get("match_type", "exact"))
        if match_type not in MATCH_TYPES:
            raise ConfigError(f"Unknown stub matchType: {match_type}")
        return cls(
            match=data["match"],
            response=data["response"],
            match_type=match_type,
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("toolCalls", data.get("tool_calls")) or []],
        )

    def matches(self, message: str) -> bool:
        if self.match_type == "regex":
            try:
                return re.search(self.match, message) is not None
            except re.error as e:
                logger.warning(f"Invalid regex in stub rule {self.match!r}: {e}")
                return False
        if self.match_type == "includes":
            return self.match in message
        return message == self.match


@dataclass
class StubConfig:
    default_response: Optional[str] = None
    responses: List[StubRule] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> "StubConfig":
        if not isinstance(raw, dict):
            return cls()
        if "responses" in raw or "defaultResponse" in raw:
            default = raw.get("defaultResponse")
            rules = [
                StubRule.from_dict(r) for r in raw.get("responses") or []
                if isinstance(r, dict) and r.get("match") and isinstance(r.get("response"), str)
            ]
            return cls(default_response=default if isinstance(default, str) else None, responses=rules)
        return cls(responses=[
            StubRule(match=k, response=v) for k, v in raw.items() if isinstance(v, str)
        ])

    @classmethod
    def from_env(cls, environ=None) -> "StubConfig":
        """Read LLM_STUB_RESPONSES, else LLM_STUB_FIXTURE_PATH; LLM_STUB_DEFAULT_RESPONSE overrides the default."""
        environ = os.environ if environ is None else environ
        raw = None
        raw_json = environ.get("LLM_STUB_RESPONSES")
        fixture_path = environ.get("LLM_STUB_FIXTURE_PATH")

        if raw_json:
            try:
                raw = json.loads(raw_json)
            except json.JSONDecodeError as e:
                raise ConfigError(f"LLM_STUB_RESPONSES is not valid JSON: {e}") from e
        elif fixture_path:
            path = Path(fixture_path).resolve()
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ConfigError(f"LLM_STUB_FIXTURE_PATH JSON invalid: {e}") from e

        config = cls.from_raw(raw)
        if environ.get("LLM_STUB_DEFAULT_RESPONSE"):
            config.default_response = environ["LLM_STUB_DEFAULT_RESPONSE"]
        return config


class StubLLMProvider(LLMProvider):
    """Answers the latest user message from canned rules."""

    def __init__(self, config: Optional[StubConfig] = None):
        self.config = config or StubConfig()

    @classmethod
    def from_env(cls) -> "StubLLMProvider":
        return cls(StubConfig.from_env())

    def call(
        self,
        messages: List[LLMMessage],
        board_context: Optional[BoardContext] = None,
        model: Optional[str] = None,
        worker_context: Optional[WorkerContext] = None,
        options: Optional[LLMCallOptions] = None,
    ) -> LLMResponse:
        user_content = ""
        for message in reversed(messages):
            if message.role == "user" and isinstance(message.content, str):
                user_content = message.content
                break

        for rule in self.config.responses:
            if rule.matches(user_content):
                return LLMResponse(
                    message=self._render(rule.response, user_content),
                    tool_calls=list(rule.tool_calls),
                    model_used="stub",
                )

        fallback = self.config.default_response or DEFAULT_RESPONSE
        return LLMResponse(message=self._render(fallback, user_content), model_used="stub")

    @staticmethod
    def _render(template: str, message: str) -> str:
        return _TEMPLATE.sub(lambda _: message, template)
