"""Live chat path — slash commands and LLM replies.

Every inbound message becomes one task on the MessageQueue lane, so chat
turns run strictly in arrival order and never overlap a proactive check.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from datetime import date, datetime, timezone as dt_timezone
from typing import Any
from zoneinfo import ZoneInfo

from channels import InboundMessage
from gating import LANGUAGE_NAMES

log = logging.getLogger(__name__)

DEFAULT_QUIET_HOURS = 4
MAX_QUIET_HOURS = 48

HELP_TEXT = (
    "Commands:\n"
    "/status — what I'm tracking\n"
    "/quiet [hours|off] — pause check-ins (default 4h)\n"
    "/goal YYYY-MM-DD title — add a goal with a deadline\n"
    "/goals — list active goals\n"
    "/done <id> — mark a goal completed\n"
    "/reset — start a fresh conversation\n"
    "/help — this message"
)

_TRANSIENT_STATUS = {408, 409, 429, 500, 502, 503, 504, 529}
_TRANSIENT_NAMES = ("RateLimit", "Timeout", "Connection", "Overloaded", "InternalServer")


def is_transient_error(exc: BaseException) -> bool:
    """Whether a provider error is worth retrying (rate limit, 5xx, network)."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in _TRANSIENT_STATUS
    name = type(exc).__name__
    return any(part in name for part in _TRANSIENT_NAMES)


class ChatHandler:
    def __init__(
        self,
        *,
        channel: Any,
        queue: Any,
        sessions: Any,
        message_log: Any,
        goals: Any,
        checkins: Any,
        provider: Any,
        agent_name: str = "nudged",
        system_prompt: str = "",
        language: str = "en",
        timezone: str = "UTC",
        history_limit: int = 20,
        api_retries: int = 2,
        api_retry_base_delay: float = 2.0,
        error_message: str = "I'm having trouble connecting right now. Try again in a moment.",
        get_status: Callable[[], dict] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.channel = channel
        self.queue = queue
        self.sessions = sessions
        self.message_log = message_log
        self.goals = goals
        self.checkins = checkins
        self.provider = provider
        self.agent_name = agent_name
        self.system_prompt = system_prompt
        self.language = language
        self.timezone = timezone
        self.history_limit = history_limit
        self.api_retries = api_retries
        self.api_retry_base_delay = api_retry_base_delay
        self.error_message = error_message
        self._get_status = get_status
        self._clock = clock

        self._commands: dict[str, Callable[[InboundMessage, str], str]] = {
            "/start": self._cmd_start,
            "/help": self._cmd_help,
            "/status": self._cmd_status,
            "/quiet": self._cmd_quiet,
            "/goal": self._cmd_goal,
            "/goals": self._cmd_goals,
            "/done": self._cmd_done,
            "/reset": self._cmd_reset,
        }

    def submit(self, msg: InboundMessage) -> None:
        """Queue a message for processing on the serialized lane."""
        self.queue.enqueue(lambda: self.handle(msg))

    async def handle(self, msg: InboundMessage) -> None:
        chat_id = msg.chat_id or msg.sender
        session_id = self.sessions.get_session_id(chat_id)
        text = msg.text.strip()

        if text.startswith("/"):
            cmd, _, args = text.partition(" ")
            cmd = cmd.split("@", 1)[0].lower()
            handler = self._commands.get(cmd)
            if handler is not None:
                log.info("Command %s from %s", cmd, msg.sender)
                await self._reply(chat_id, handler(msg, args.strip()))
                self.sessions.touch(chat_id)
                return

        reply = await self._complete(session_id, chat_id, text)
        if reply is None:
            await self._reply(chat_id, self.error_message)
            return

        self.message_log.save(session_id, "user", text)
        self.message_log.save(session_id, "assistant", reply)
        await self._reply(chat_id, reply)
        self.sessions.touch(chat_id)

    async def _reply(self, chat_id: str, text: str) -> None:
        try:
            await self.channel.send(chat_id, text)
        except Exception as e:
            log.error("Failed to deliver reply to %s: %s", chat_id, e)

    # ─── LLM Reply ───────────────────────────────────────────────

    def _system_blocks(self) -> list[dict]:
        now = datetime.fromtimestamp(self._clock(), dt_timezone.utc).astimezone(ZoneInfo(self.timezone))
        language = LANGUAGE_NAMES.get(self.language, self.language)
        dynamic = (
            f"Current time: {now.strftime('%A, %Y-%m-%d %H:%M')} ({self.timezone}).\n"
            f"Reply in {language}."
        )
        return [
            {"text": self.system_prompt, "tier": "stable"},
            {"text": dynamic, "tier": "dynamic"},
        ]

    async def _complete(self, session_id: str, chat_id: str, text: str) -> str | None:
        history = self.message_log.recent(session_id, self.history_limit)
        history.append({"role": "user", "content": text})
        system = self.provider.format_system(self._system_blocks())
        messages = self.provider.format_messages(history)

        await self.channel.send_typing(chat_id)
        for attempt in range(1 + self.api_retries):
            try:
                response = await self.provider.complete(system, messages)
                return response.text or ""
            except Exception as e:
                if not is_transient_error(e) or attempt >= self.api_retries:
                    log.error("Chat completion failed for session %s: %s", session_id, e)
                    return None
                delay = self.api_retry_base_delay * (2 ** attempt) * (0.5 + random.random())  # noqa: S311
                log.warning("API retry (%d/%d): %s — waiting %.1fs",
                            attempt + 1, self.api_retries, e, delay)
                await asyncio.sleep(delay)
        return None

    # ─── Commands ────────────────────────────────────────────────

    def _cmd_start(self, msg: InboundMessage, args: str) -> str:
        return (
            f"Hi, I'm {self.agent_name}. Talk to me any time; I'll also check in "
            "on my own when something needs your attention.\n\n" + HELP_TEXT
        )

    def _cmd_help(self, msg: InboundMessage, args: str) -> str:
        return HELP_TEXT

    def _cmd_status(self, msg: InboundMessage, args: str) -> str:
        user_id = msg.user_id or msg.chat_id
        lines = [f"Active goals: {self.goals.count_active()}"]

        until = self.checkins.quiet_until(user_id)
        lines.append(f"Quiet mode: until {self._local_time(until)}" if until else "Quiet mode: off")

        last_sent = self.checkins.get_last_sent_time()
        lines.append(f"Last check-in: {self._local_time(last_sent)}" if last_sent
                     else "Last check-in: never")

        if self._get_status is not None:
            status = self._get_status()
            proactive = status.get("proactive", {})
            state = "on" if proactive.get("running") else "off"
            lines.append(f"Proactive check-ins: {state}")
            lines.append(f"Messages today: {status.get('messages_today', 0)}")
        return "\n".join(lines)

    def _cmd_quiet(self, msg: InboundMessage, args: str) -> str:
        user_id = msg.user_id or msg.chat_id
        if args.lower() == "off":
            self.checkins.clear_quiet_mode(user_id)
            return "Quiet mode off. Check-ins resume."

        hours: float = DEFAULT_QUIET_HOURS
        if args:
            try:
                hours = float(args)
            except ValueError:
                return "Usage: /quiet [hours|off]"
            if not 0 < hours <= MAX_QUIET_HOURS:
                return f"Hours must be between 0 and {MAX_QUIET_HOURS}."

        until = self._clock() + hours * 3600
        self.checkins.set_quiet_mode(user_id, until)
        return f"Quiet mode on until {self._local_time(until)}. /quiet off to resume."

    def _cmd_goal(self, msg: InboundMessage, args: str) -> str:
        first, _, rest = args.partition(" ")
        deadline = None
        title = args
        try:
            date.fromisoformat(first)
            deadline, title = first, rest.strip()
        except ValueError:
            pass
        if not title:
            return "Usage: /goal YYYY-MM-DD title"

        goal_id = self.goals.add_goal(title, deadline=deadline)
        due = f" (due {deadline})" if deadline else ""
        return f"Goal #{goal_id} added: {title}{due}"

    def _cmd_goals(self, msg: InboundMessage, args: str) -> str:
        active = self.goals.get_active_goals()
        if not active:
            return "No active goals. Add one with /goal YYYY-MM-DD title"
        lines = ["Active goals:"]
        for g in active:
            due = f" — due {g['deadline']}" if g.get("deadline") else ""
            lines.append(f"#{g['id']} {g['title']}{due}")
        return "\n".join(lines)

    def _cmd_done(self, msg: InboundMessage, args: str) -> str:
        try:
            goal_id = int(args.lstrip("#"))
        except ValueError:
            return "Usage: /done <id>"
        if not self.goals.set_status(goal_id, "completed"):
            return f"No goal #{goal_id}."
        return f"Goal #{goal_id} completed."

    def _cmd_reset(self, msg: InboundMessage, args: str) -> str:
        self.sessions.clear_session(msg.chat_id or msg.sender)
        return "Conversation reset."

    def _local_time(self, ts: float) -> str:
        local = datetime.fromtimestamp(ts, dt_timezone.utc).astimezone(ZoneInfo(self.timezone))
        return local.strftime("%Y-%m-%d %H:%M")
