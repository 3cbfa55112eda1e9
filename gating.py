"""Gating oracle — ask the LLM whether collected data is worth a message.

The model replies with a small JSON object:
    {"action": "text"|"call"|"skip", "urgency": 1-10,
     "message": "...", "reason": "..."}
Any failure degrades to a low-urgency skip so the scheduler never has to
handle provider errors itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any
from zoneinfo import ZoneInfo

log = logging.getLogger(__name__)

ACTIONS = ("text", "call", "skip")

LANGUAGE_NAMES = {
    "en": "English",
    "ru": "Russian",
    "ar": "Arabic",
    "zh": "Chinese",
    "de": "German",
    "es": "Spanish",
    "fr": "French",
    "hi": "Hindi",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "pl": "Polish",
    "pt": "Portuguese",
    "tr": "Turkish",
    "uk": "Ukrainian",
}

_SYSTEM_PROMPT = (
    "You triage a personal assistant's background data feed. "
    "Respond with ONLY a JSON object with the keys action, urgency, "
    "message and reason. No prose, no markdown."
)

_CALL_OPTION = (
    '\n- "call" = send text AND make a phone call (use ONLY for true '
    "emergencies: missed critical deadlines, urgent calendar conflicts, "
    "health/safety)"
)


class GatingError(Exception):
    """Raised when the model's reply is not a valid gating decision."""


@dataclass
class GatingDecision:
    action: str
    urgency: int
    message: str | None = None
    reason: str | None = None
    tokens_used: int | None = None


def format_utc_for_tz(utc_text: str, tz: str) -> str:
    """SQLite UTC timestamp → "YYYY-MM-DD HH:MM" in the user's timezone."""
    dt = datetime.strptime(utc_text[:19], "%Y-%m-%d %H:%M:%S").replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(ZoneInfo(tz)).strftime("%Y-%m-%d %H:%M")


def build_gating_prompt(
    data: dict[str, Any],
    recent_logs: list,
    language: str = "en",
    tz: str = "UTC",
    can_escalate: bool = False,
    now: datetime | None = None,
) -> str:
    language_name = LANGUAGE_NAMES.get(language, language)
    now = now or datetime.now(dt_timezone.utc)
    current_time = now.astimezone(ZoneInfo(tz)).strftime("%A, %m/%d/%Y, %H:%M")

    sections = "\n\n".join(
        f'<external-data source="{source}">\n'
        f"{json.dumps(payload, indent=2, ensure_ascii=False, default=str)}\n"
        f"</external-data>"
        for source, payload in data.items()
    )

    history = []
    for entry in recent_logs:
        when = format_utc_for_tz(entry.created_at, tz) if entry.created_at else "?"
        history.append(f"- {when}: {entry.message_sent or 'skipped'}")
    history_text = "\n".join(history) or "- No recent check-ins"
    reply_actions = '"text" or "call"' if can_escalate else '"text"'

    return (
        "You are a triage assistant. Review the collected data and decide:\n"
        f"1. Should I send a proactive message to the user? "
        f"(text{'/call' if can_escalate else ''}/skip)\n"
        "2. Urgency level (1-10)\n"
        f"3. If {reply_actions}, provide a SHORT "
        f"message (2-3 sentences max) in {language_name}\n"
        '4. If "skip", provide reason in English\n'
        "\n"
        "Actions:\n"
        '- "text" = send a Telegram message\n'
        f'- "skip" = do nothing{_CALL_OPTION if can_escalate else ""}\n'
        "\n"
        f"Current time: {current_time} ({tz})\n"
        "\n"
        "Recent check-ins (last 3):\n"
        f"{history_text}\n"
        "\n"
        "Collected data:\n"
        f"{sections}"
    )


def _strip_json_fences(text: str) -> str:
    """Strip markdown code fences from JSON text."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_decision(raw: str) -> GatingDecision:
    """Validate the model's JSON reply. Raises GatingError on bad shape."""
    try:
        data = json.loads(_strip_json_fences(raw))
    except json.JSONDecodeError as e:
        raise GatingError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise GatingError("reply is not a JSON object")

    action = data.get("action")
    if action not in ACTIONS:
        raise GatingError(f"invalid action: {action!r}")

    urgency = data.get("urgency")
    if isinstance(urgency, bool) or not isinstance(urgency, (int, float)):
        raise GatingError(f"invalid urgency: {urgency!r}")
    if not 1 <= urgency <= 10:
        raise GatingError(f"urgency out of range: {urgency}")

    for key in ("message", "reason"):
        if data.get(key) is not None and not isinstance(data[key], str):
            raise GatingError(f"{key} must be a string")

    return GatingDecision(
        action=action,
        urgency=int(urgency),
        message=data.get("message"),
        reason=data.get("reason"),
    )


class GatingOracle:
    def __init__(self, provider: Any, timeout: float | None = None):
        self.provider = provider
        self.timeout = timeout

    async def decide(
        self,
        data: dict[str, Any],
        recent_logs: list,
        language: str = "en",
        timezone: str = "UTC",
        can_escalate: bool = False,
    ) -> GatingDecision:
        prompt = build_gating_prompt(data, recent_logs, language, timezone, can_escalate)
        try:
            system = self.provider.format_system([{"text": _SYSTEM_PROMPT, "tier": "stable"}])
            messages = self.provider.format_messages([{"role": "user", "content": prompt}])
            coro = self.provider.complete(system, messages)
            if self.timeout:
                response = await asyncio.wait_for(coro, timeout=self.timeout)
            else:
                response = await coro
            decision = parse_decision(response.text or "")
            decision.tokens_used = response.usage.total_tokens
            return decision
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Gating query failed: %s", e)
            return GatingDecision(
                action="skip",
                urgency=1,
                reason=f"Gating query error: {str(e) or type(e).__name__}",
            )
