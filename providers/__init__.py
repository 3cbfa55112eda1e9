"""LLM Provider interface and shared types.

Defines the contract between the daemon (chat replies, gating decisions)
and any LLM backend. Provider-specific features (prompt caching) are
handled inside implementations, not in the interface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

log = logging.getLogger(__name__)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    text: str | None
    stop_reason: str  # "end_turn" | "max_tokens"
    usage: Usage
    raw: Any = None


class LLMProvider(Protocol):
    """Protocol for LLM provider implementations."""

    def format_system(self, blocks: list[dict]) -> Any:
        """Convert system prompt blocks to provider format."""
        ...

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal message format to provider's API format."""
        ...

    async def complete(self, system: Any, messages: list[dict], **kwargs) -> LLMResponse:
        """Send to LLM, return normalized response."""
        ...


def create_provider(model_config: dict, api_key: str = "") -> LLMProvider:
    """Factory: create provider from model config section."""
    provider_type = model_config.get("provider", "")

    if provider_type == "anthropic-compat":
        from .anthropic_compat import AnthropicCompatProvider
        return AnthropicCompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 1024),
            base_url=model_config.get("base_url", ""),
            cache_control=model_config.get("cache_control", False),
        )
    if provider_type == "openai-compat":
        from .openai_compat import OpenAICompatProvider
        return OpenAICompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 1024),
            base_url=model_config.get("base_url", "https://api.openai.com/v1"),
        )
    raise ValueError(f"Unknown provider type: {provider_type!r}")
