"""Telegram channel via Bot API (long polling).

Inbound: getUpdates long polling (httpx async), text messages only.
Outbound: sendMessage, chunked on line boundaries.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator

import httpx

from . import InboundMessage

log = logging.getLogger(__name__)

# Reconnect policy: 1s initial -> 10s max, factor 2, 20% jitter
_RECONNECT_INITIAL = 1.0
_RECONNECT_MAX = 10.0
_RECONNECT_FACTOR = 2.0
_RECONNECT_JITTER = 0.2

_API_BASE = "https://api.telegram.org/bot{token}"


class TelegramChannel:
    def __init__(
        self,
        token: str,
        allow_from: list[int] | None = None,
        chunk_limit: int = 4000,
    ):
        self.token = token
        self.base_url = _API_BASE.format(token=token)
        self.allow_from = set(allow_from) if allow_from else set()
        self.chunk_limit = chunk_limit

        self._bot_id: int = 0
        self._bot_username: str = ""
        self._offset: int = 0  # getUpdates offset

        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        return self._client

    async def _api(self, method: str, **params) -> dict:
        """Call Telegram Bot API method."""
        client = await self._get_client()
        resp = await client.post(f"{self.base_url}/{method}", json=params)

        # Parse JSON first; Telegram returns error descriptions even on 4xx.
        try:
            data = resp.json()
        except (ValueError, KeyError) as exc:
            resp.raise_for_status()
            raise RuntimeError(f"Telegram API error ({method}): non-JSON response {resp.status_code}") from exc

        if not data.get("ok"):
            desc = data.get("description", f"HTTP {resp.status_code}")
            raise RuntimeError(f"Telegram API error ({method}): {desc}")

        return data.get("result", {})

    async def connect(self) -> None:
        """Verify bot token and log identity."""
        try:
            me = await self._api("getMe")
            self._bot_id = me.get("id", 0)
            self._bot_username = me.get("username", "")
            log.info("Telegram bot connected: @%s (id=%d)", self._bot_username, self._bot_id)
        except Exception as e:
            log.error("Cannot connect to Telegram Bot API: %s", e)
            raise ConnectionError(f"Telegram Bot API unreachable: {e}") from e

    async def disconnect(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def receive(self) -> AsyncIterator[InboundMessage]:
        """Long-polling loop. Auto-reconnects on failure."""
        backoff = _RECONNECT_INITIAL
        while True:
            try:
                async for msg in self._poll_loop():
                    yield msg
                    backoff = _RECONNECT_INITIAL
            except asyncio.CancelledError:
                return
            except Exception as e:
                jitter = backoff * _RECONNECT_JITTER * (random.random() * 2 - 1)  # noqa: S311 - timing jitter, not cryptographic
                wait = backoff + jitter
                log.warning("Telegram poll disconnected (%s), reconnecting in %.1fs", e, wait)
                await asyncio.sleep(wait)
                backoff = min(backoff * _RECONNECT_FACTOR, _RECONNECT_MAX)

    async def _poll_loop(self) -> AsyncIterator[InboundMessage]:
        """Single polling session — yields messages until error."""
        while True:
            updates = await self._api(
                "getUpdates",
                offset=self._offset,
                timeout=30,
                allowed_updates=["message"],
            )

            for update in updates:
                update_id = update.get("update_id", 0)
                if update_id >= self._offset:
                    self._offset = update_id + 1

                message = update.get("message")
                if not message:
                    continue

                parsed = self._parse_message(message)
                if parsed is not None:
                    yield parsed

    def _parse_message(self, message: dict) -> InboundMessage | None:
        """Parse a Telegram message dict into InboundMessage, or None to skip."""
        from_user = message.get("from", {})
        user_id = from_user.get("id", 0)
        chat_id = message.get("chat", {}).get("id", 0)

        if user_id == self._bot_id:
            return None

        if self.allow_from and user_id not in self.allow_from:
            log.debug("Ignoring message from non-allowed user: %d", user_id)
            return None

        text = message.get("text", "") or ""
        if not text:
            return None

        sender = from_user.get("username") or from_user.get("first_name") or str(user_id)

        return InboundMessage(
            text=text,
            sender=sender,
            timestamp=float(message.get("date", 0)),
            source="telegram",
            chat_id=str(chat_id),
            user_id=str(user_id),
        )

    async def send(self, target: str, text: str) -> int | None:
        """Send text, chunked. Returns the message_id of the last chunk."""
        chat_id = int(target)
        if chat_id == self._bot_id:
            raise ValueError(
                f"Self-send blocked — target resolves to bot's own ID ({self._bot_id})."
            )
        message_id = None
        for chunk in self._chunk_text(text):
            result = await self._api("sendMessage", chat_id=chat_id, text=chunk)
            message_id = result.get("message_id")
        return message_id

    async def send_typing(self, target: str) -> None:
        """Send typing indicator."""
        try:
            await self._api("sendChatAction", chat_id=int(target), action="typing")
        except Exception as e:
            log.debug("Typing indicator failed (non-critical): %s", e)

    def _chunk_text(self, text: str) -> list[str]:
        """Split text on newline boundaries within chunk limit."""
        if not text:
            return []
        if len(text) <= self.chunk_limit:
            return [text]

        chunks = []
        current = ""
        for line in text.split("\n"):
            if current and len(current) + len(line) + 1 > self.chunk_limit:
                chunks.append(current)
                current = line
            else:
                current = current + "\n" + line if current else line

        if current:
            while len(current) > self.chunk_limit:
                chunks.append(current[:self.chunk_limit])
                current = current[self.chunk_limit:]
            if current:
                chunks.append(current)

        return chunks
