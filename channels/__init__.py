"""Channel interface and shared types.

Defines the contract between the daemon and messaging transports.
Each channel implements receive/send for its transport; the proactive
scheduler uses the same send() to deliver check-ins.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config


@dataclass
class InboundMessage:
    text: str
    sender: str           # username, first name, "cli", etc.
    timestamp: float
    source: str           # "telegram", "cli"
    chat_id: str = ""     # where replies go
    user_id: str = ""


class Channel(Protocol):
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    def receive(self) -> AsyncIterator[InboundMessage]: ...
    async def send(self, target: str, text: str) -> int | None: ...
    async def send_typing(self, target: str) -> None: ...


def create_channel(config: Config) -> Channel:
    """Factory: create channel from config."""
    ch_type = config.channel_type

    if ch_type == "cli":
        from .cli import CLIChannel
        return CLIChannel()
    if ch_type == "telegram":
        from .telegram import TelegramChannel
        tg = config.telegram_config
        token_env = tg.get("token_env", "NUDGED_TELEGRAM_TOKEN")
        token = os.environ.get(token_env, "")
        if not token:
            raise ValueError(f"Telegram token not found in env var: {token_env}")
        return TelegramChannel(
            token=token,
            allow_from=tg.get("allow_from", []),
            chunk_limit=tg.get("text_chunk_limit", 4000),
        )
    raise ValueError(f"Unknown channel type: {ch_type!r}")
