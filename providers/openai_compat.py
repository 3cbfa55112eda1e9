"""OpenAI-compatible provider.

Works with OpenAI cloud, Ollama, vLLM, llama.cpp server, LM Studio, LocalAI,
or any server implementing the OpenAI chat completions API.
Conditional import — fails with clear message if openai SDK not installed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from . import LLMResponse, Usage

log = logging.getLogger(__name__)

try:
    import openai
except ImportError:
    openai = None  # type: ignore[assignment]


class OpenAICompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 1024,
        base_url: str = "",
    ):
        if openai is None:
            raise RuntimeError(
                "OpenAI-compatible provider requires: pip install openai"
            )
        kwargs: dict = {"api_key": api_key or "not-needed"}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.OpenAI(**kwargs)
        self.model = model
        self.max_tokens = max_tokens

    def format_system(self, blocks: list[dict]) -> str:
        """Concatenate system blocks into a single string.

        OpenAI doesn't support cache_control — caching is server-side.
        """
        return "\n\n".join(b["text"] for b in blocks)

    def format_messages(self, messages: list[dict]) -> list[dict]:
        result = []
        for msg in messages:
            role = msg.get("role", "")
            if role not in ("user", "assistant"):
                continue
            result.append({
                "role": role,
                "content": msg.get("content", msg.get("text", "")) or "",
            })
        return result

    async def complete(self, system: Any, messages: list[dict], **kwargs) -> LLMResponse:
        """Call OpenAI-compatible chat completions API."""
        api_messages = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend(messages)

        params: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
        }

        response = await asyncio.to_thread(
            self.client.chat.completions.create, **params
        )

        choice = response.choices[0]

        u = response.usage
        usage = Usage(
            input_tokens=u.prompt_tokens if u else 0,
            output_tokens=u.completion_tokens if u else 0,
        )

        stop = "max_tokens" if choice.finish_reason == "length" else "end_turn"

        return LLMResponse(
            text=choice.message.content,
            stop_reason=stop,
            usage=usage,
            raw=response,
        )
