"""
OpenAI-compatible chat-completions provider over ``requests``.

Error messages carry the HTTP status (``LLM API call failed: 503 ...``) or
the transport failure (``timeout``, ``network error``) so AgenticLoop's
classifier can tell transient failures from fatal ones.
"""

import logging
import os
from typing import Dict, List, Optional

import requests

from ..conversation import LLMMessage, ToolCall
from ..errors import LLMProviderError
from .base import BoardContext, LLMCallOptions, LLMProvider, LLMResponse, WorkerContext

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT = 30  # seconds

DEFAULT_SYSTEM_PROMPT = (
    "You are an assistant for a personal productivity workspace. You help plan work, "
    "break requests into tasks and keep projects organized. Use the available tools to "
    "act on the workspace instead of describing what you would do."
)


def build_system_prompt(
    worker_context: Optional[WorkerContext] = None,
    board_context: Optional[BoardContext] = None,
) -> str:
    """Compose the system prompt from the worker persona and current project."""
    if board_context:
        current = (
            f'\n\nCURRENT CONTEXT:\nYou are currently viewing the "{board_context.name}" project '
            f"(ID: {board_context.id}). New tasks are created on this project automatically."
        )
    else:
        current = (
            "\n\nCURRENT CONTEXT:\nNo specific project is currently selected. "
            "List projects first if you need one."
        )

    if worker_context:
        profile = f"\n\nWORKER PROFILE:\n- Name: {worker_context.name}"
        if worker_context.role_description:
            profile += f"\n- Role: {worker_context.role_description}"
        return f"{worker_context.system_prompt}{profile}{current}"

    return f"{DEFAULT_SYSTEM_PROMPT}{current}"


class ChatCompletionsProvider(LLMProvider):
    """POSTs to ``{base_url}/chat/completions``; tools come from the call options, else ``tool_schemas``."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        default_model: str = DEFAULT_MODEL,
        tool_schemas: Optional[List[Dict]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.tool_schemas = tool_schemas or []
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls, tool_schemas: Optional[List[Dict]] = None) -> "ChatCompletionsProvider":
        """Build from LLM_API_KEY, LLM_BASE_URL and DEFAULT_MODEL."""
        api_key = os.environ.get("LLM_API_KEY")
        if not api_key:
            raise LLMProviderError("LLM_API_KEY is not set")
        return cls(
            api_key=api_key,
            base_url=os.environ.get("LLM_BASE_URL", DEFAULT_BASE_URL),
            default_model=os.environ.get("DEFAULT_MODEL", DEFAULT_MODEL),
            tool_schemas=tool_schemas,
        )

    def call(
        self,
        messages: List[LLMMessage],
        board_context: Optional[BoardContext] = None,
        model: Optional[str] = None,
        worker_context: Optional[WorkerContext] = None,
        options: Optional[LLMCallOptions] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": [{"role": "system", "content": build_system_prompt(worker_context, board_context)}]
                        + [self._message_dict(m) for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        tools = (options.tools if options else None) or self.tool_schemas
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        try:
            resp = self.session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise LLMProviderError(f"LLM request timeout after {self.timeout}s: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise LLMProviderError(f"LLM network error: {e}") from e

        if not resp.ok:
            raise LLMProviderError(
                f"LLM API call failed: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )

        data = resp.json()
        choices = data.get("choices") or []
        message = choices[0].get("message") if choices else None
        if not message:
            raise LLMProviderError("No response generated from LLM")

        return LLMResponse(
            message=message.get("content") or "",
            tool_calls=[ToolCall.from_dict(tc) for tc in message.get("tool_calls") or []],
            model_used=data.get("model", model),
        )

    @staticmethod
    def _message_dict(message: LLMMessage) -> Dict:
        d = message.to_dict()
        if message.role == "assistant" and not message.content:
            d["content"] = None
        return d
