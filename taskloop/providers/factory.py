"""
Provider selection for the CLI and admin API.
"""

import logging
import os
from typing import Optional

from ..errors import ConfigError
from .base import LLMProvider
from .http import ChatCompletionsProvider
from .stub import StubLLMProvider

logger = logging.getLogger(__name__)

PROVIDER_KINDS = ("http", "stub")


def default_provider_kind() -> str:
    """LLM_PROVIDER if set, otherwise "http" when LLM_API_KEY is present, else "stub"."""
    kind = os.environ.get("LLM_PROVIDER")
    if kind:
        return kind.strip().lower()
    return "http" if os.environ.get("LLM_API_KEY") else "stub"


def create_provider(kind: Optional[str] = None) -> LLMProvider:
    kind = kind or default_provider_kind()
    if kind == "http":
        provider = ChatCompletionsProvider.from_env()
    elif kind == "stub":
        provider = StubLLMProvider.from_env()
    else:
        raise ConfigError(f"Unknown LLM provider '{kind}' (expected one of: {', '.join(PROVIDER_KINDS)})")
    logger.info(f"Using {kind} LLM provider")
    return provider
