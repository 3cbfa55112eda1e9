"""Anthropic-compatible provider.

Works with any model accessible through the Anthropic Messages API.
Supports prompt caching (cache_control) on stable system blocks.
Conditional import — fails with clear message if anthropic SDK not installed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from . import LLMResponse, Usage

log = logging.getLogger(__name__)

try:
    import anthropic
except ImportError:
    anthropic = None  # type: ignore[assignment]


class AnthropicCompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 1024,
        base_url: str = "",
        cache_control: bool = False,
    ):
        if anthropic is None:
            raise RuntimeError(
                "Anthropic provider requires: pip install anthropic"
            )
        if base_url:
            self.client = anthropic.Anthropic(api_key=api_key, base_url=base_url)
        else:
            self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.cache_control = cache_control

    def format_system(self, blocks: list[dict]) -> list[dict]:
        """Convert cache-tier blocks to Anthropic system format.

        Each block: {"text": str, "tier": "stable"|"dynamic"}
        """
        result = []
        for block in blocks:
            entry: dict[str, Any] = {"type": "text", "text": block["text"]}
            if self.cache_control and block.get("tier") == "stable":
                entry["cache_control"] = {"type": "ephemeral"}
            result.append(entry)
        return result

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal format to Anthropic API format.

        Consecutive turns with the same role are merged; the API rejects
        two user (or two assistant) messages in a row.
        """
        result: list[dict] = []
        for msg in messages:
            role = msg.get("role", "")
            if role not in ("user", "assistant"):
                continue
            text = msg.get("content", msg.get("text", "")) or ""
            if result and result[-1]["role"] == role:
                result[-1]["content"] += "\n\n" + text
            else:
                result.append({"role": role, "content": text})
        return result

    async def complete(self, system: Any, messages: list[dict], **kwargs) -> LLMResponse:
        """Call Anthropic Messages API."""
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "system": system,
            "messages": messages,
        }
        response = await asyncio.to_thread(self.client.messages.create, **params)

        text_parts = [block.text for block in response.content if block.type == "text"]

        usage = Usage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            cache_read_tokens=getattr(response.usage, "cache_read_input_tokens", 0) or 0,
            cache_write_tokens=getattr(response.usage, "cache_creation_input_tokens", 0) or 0,
        )

        stop = "max_tokens" if response.stop_reason == "max_tokens" else "end_turn"

        return LLMResponse(
            text="\n".join(text_parts) if text_parts else None,
            stop_reason=stop,
            usage=usage,
            raw=response,
        )
