"""CLI channel — stdin/stdout for local testing.

No Telegram setup needed. Every line typed is one message from chat "cli".
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import AsyncIterator

from . import InboundMessage

CLI_CHAT_ID = "cli"


class CLIChannel:
    def __init__(self):
        self._message_ids = itertools.count(1)

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def receive(self) -> AsyncIterator[InboundMessage]:
        while True:
            try:
                text = await asyncio.to_thread(input, "You> ")
            except (EOFError, KeyboardInterrupt):
                return
            if not text.strip():
                continue
            yield InboundMessage(
                text=text,
                sender="cli",
                timestamp=time.time(),
                source="cli",
                chat_id=CLI_CHAT_ID,
                user_id=CLI_CHAT_ID,
            )

    async def send(self, target: str, text: str) -> int | None:
        if not text:
            return None
        print(f"Agent> {text}", flush=True)
        return next(self._message_ids)

    async def send_typing(self, target: str) -> None:
        pass
