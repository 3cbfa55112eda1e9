"""Proactive scheduler — decides when the assistant speaks first.

Every check_interval_minutes a tick runs through cheap hard gates (busy
chat lane, quiet hours, cooldown, do-not-disturb, recent chat activity).
Only when all pass does it take the shared query lock, collect data from
every collector, deduplicate against the last check-in, ask the gating
oracle, and deliver the message. An optional phone call is placed after
the lock is released so telephony latency never blocks chat.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from checkins import CheckInLog
from collectors.goals import GOALS_SOURCE

if TYPE_CHECKING:
    from config import Config

log = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Check-in notification"


# ─── Pure Helpers ────────────────────────────────────────────────


def hash_data(data: Any) -> str:
    """Stable SHA-256 fingerprint of a JSON-like structure.

    Dict keys are sorted at every depth; list order is preserved.
    """
    payload = json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _parse_hhmm(value: str) -> int:
    hours, _, minutes = value.partition(":")
    return int(hours) * 60 + int(minutes or 0)


def is_quiet_hours(now: datetime, start: str, end: str, tz: str = "UTC") -> bool:
    """True when `now` falls inside [start, end) in the given timezone.

    start > end wraps past midnight ("22:00"-"08:00"); start == end is an
    empty window. Naive datetimes are taken as already local.
    """
    if now.tzinfo is not None:
        now = now.astimezone(ZoneInfo(tz))
    current = now.hour * 60 + now.minute
    start_min = _parse_hhmm(start)
    end_min = _parse_hhmm(end)

    if start_min > end_min:
        return current >= start_min or current < end_min
    return start_min <= current < end_min


def is_empty_data(collected: dict[str, Any]) -> bool:
    """True when no source has anything to report."""
    def _empty(value: Any) -> bool:
        if isinstance(value, list):
            return len(value) == 0
        if isinstance(value, dict):
            return all(isinstance(v, list) and len(v) == 0 for v in value.values())
        return not value

    return all(_empty(v) for v in collected.values())


# ─── Configuration ───────────────────────────────────────────────


@dataclass
class ProactiveConfig:
    enabled: bool = False
    check_interval_minutes: float = 5
    cooldown_minutes: float = 15
    reminder_cooldown_minutes: float = 180
    defer_minutes: float = 5
    quiet_start: str = "22:00"
    quiet_end: str = "08:00"
    target_chat_id: str = ""
    target_user_id: str = ""
    language: str = "en"
    timezone: str = "UTC"
    escalation_enabled: bool = False
    urgency_threshold: int = 8
    escalation_destination: str = ""

    @classmethod
    def from_config(cls, config: Config) -> ProactiveConfig:
        return cls(
            enabled=config.proactive_enabled,
            check_interval_minutes=config.check_interval_minutes,
            cooldown_minutes=config.cooldown_minutes,
            reminder_cooldown_minutes=config.reminder_cooldown_minutes,
            defer_minutes=config.defer_minutes,
            quiet_start=config.quiet_hours_start,
            quiet_end=config.quiet_hours_end,
            target_chat_id=config.proactive_target_chat_id,
            target_user_id=config.proactive_target_user_id,
            language=config.agent_language,
            timezone=config.agent_timezone,
            escalation_enabled=config.escalation_enabled,
            urgency_threshold=config.escalation_urgency_threshold,
            escalation_destination=config.escalation_destination,
        )


# ─── Scheduler ───────────────────────────────────────────────────


class ProactiveScheduler:
    def __init__(
        self,
        config: ProactiveConfig,
        *,
        collectors: list,
        checkins: Any,
        oracle: Any,
        messenger: Any,
        queue: Any,
        sessions: Any,
        caller: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.collectors = collectors
        self.checkins = checkins
        self.oracle = oracle
        self.messenger = messenger
        self.queue = queue
        self.sessions = sessions
        self.caller = caller
        self._clock = clock

        self._timer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._deferred: set[asyncio.Task] = set()
        self._shutting_down = False
        self._checking = False
        self.last_check_at: float | None = None

    @property
    def checking(self) -> bool:
        return self._checking

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _spawn(self, coro, bucket: set[asyncio.Task] | None = None) -> asyncio.Task:
        bucket = self._tasks if bucket is None else bucket
        task = asyncio.create_task(coro)
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task

    # ─── Lifecycle ───────────────────────────────────────────────

    def start(self) -> None:
        if not self.config.enabled:
            log.info("Proactive check-ins disabled")
            return
        if self.running or self._shutting_down:
            return
        self._timer = asyncio.create_task(self._timer_loop())
        log.info("Proactive scheduler started (every %s min)",
                 self.config.check_interval_minutes)

    def stop(self) -> None:
        self._shutting_down = True
        for task in list(self._deferred):
            task.cancel()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            log.info("Proactive scheduler stopped")

    async def wait_stopped(self) -> None:
        """Wait for in-flight checks and escalation calls to finish."""
        pending = list(self._tasks) + list(self._deferred)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _timer_loop(self) -> None:
        interval = self.config.check_interval_minutes * 60
        while not self._shutting_down:
            await asyncio.sleep(interval)
            if self._shutting_down:
                break
            self._spawn(self.tick())

    async def _deferred_tick(self) -> None:
        await asyncio.sleep(self.config.defer_minutes * 60)
        if self._shutting_down:
            return
        await self.tick()

    def trigger(self) -> bool:
        """Run a tick now (outside the timer). False when shutting down."""
        if self._shutting_down:
            return False
        self._spawn(self.tick())
        return True

    def status(self) -> dict:
        return {
            "enabled": self.config.enabled,
            "running": self.running,
            "checking": self._checking,
            "shutting_down": self._shutting_down,
            "interval_minutes": self.config.check_interval_minutes,
            "last_check_at": self.last_check_at,
            "deferred": len(self._deferred),
        }

    # ─── Tick ────────────────────────────────────────────────────

    async def tick(self) -> None:
        if self._shutting_down or self._checking:
            return
        try:
            if not self._gates_pass():
                return
            self._checking = True
            try:
                await self.perform_check()
            finally:
                self._checking = False
        except Exception:
            log.exception("Proactive tick failed")

    def _gates_pass(self) -> bool:
        cfg = self.config
        now = self._clock()

        if self.queue.is_processing():
            log.debug("Proactive tick: message queue busy, deferring %s min", cfg.defer_minutes)
            self._spawn(self._deferred_tick(), self._deferred)
            return False

        if is_quiet_hours(datetime.fromtimestamp(now, timezone.utc),
                          cfg.quiet_start, cfg.quiet_end, cfg.timezone):
            log.debug("Proactive tick: quiet hours, skipping")
            return False

        last_sent = self.checkins.get_last_sent_time()
        if last_sent is not None:
            mins_since = (now - last_sent) / 60
            if mins_since < cfg.cooldown_minutes:
                log.debug("Proactive tick: cooldown active (%.1f min), skipping", mins_since)
                return False

        if self.checkins.is_quiet_mode(cfg.target_user_id):
            log.debug("Proactive tick: user in quiet mode, skipping")
            return False

        last_activity = self.sessions.get_last_activity(cfg.target_chat_id)
        if last_activity is not None and now - last_activity < cfg.defer_minutes * 60:
            log.debug("Proactive tick: active chat, skipping")
            return False

        return True

    # ─── Check ───────────────────────────────────────────────────

    async def perform_check(self) -> None:
        release = await self.queue.acquire_lock()
        call: tuple[str, int] | None = None
        try:
            call = await self._check()
        except Exception:
            log.exception("Proactive check failed")
        finally:
            release()
            self.last_check_at = self._clock()

        if call is not None:
            message, urgency = call
            self._spawn(self._escalate(message, urgency))

    async def _collect(self) -> tuple[dict[str, Any], list[str]]:
        results = await asyncio.gather(
            *(c.collect() for c in self.collectors), return_exceptions=True,
        )
        collected: dict[str, Any] = {}
        sources: list[str] = []
        for collector, result in zip(self.collectors, results):
            if isinstance(result, BaseException):
                log.warning("Collector %s failed: %s", collector.name, result)
                continue
            collected[collector.name] = result
            sources.append(collector.name)
        return collected, sources

    def _filter_reminded(self, collected: dict[str, Any]) -> tuple[dict[str, Any], list[int]]:
        """Drop goals reminded within the reminder cooldown.

        Returns a filtered copy plus the ids of the goals that survived.
        """
        goals_data = collected.get(GOALS_SOURCE)
        if not isinstance(goals_data, dict) or not isinstance(goals_data.get("approaching"), list):
            return collected, []

        reminded = set(self.checkins.get_recently_reminded_goal_ids(
            self.config.reminder_cooldown_minutes))
        kept = [g for g in goals_data["approaching"] if g.get("id") not in reminded]
        dropped = len(goals_data["approaching"]) - len(kept)
        if dropped:
            log.debug("Filtered %d recently-reminded goals, %d remaining", dropped, len(kept))

        filtered = dict(collected)
        filtered[GOALS_SOURCE] = {**goals_data, "approaching": kept}
        return filtered, [g["id"] for g in kept]

    async def _check(self) -> tuple[str, int] | None:
        """Body of a check, run while holding the query lock.

        Returns (message, urgency) when a phone call should follow.
        """
        cfg = self.config
        collected, sources = await self._collect()

        if is_empty_data(collected):
            log.debug("All collectors returned empty data, skipping")
            return None

        data_hash = hash_data(collected)
        latest = self.checkins.get_recent_logs(1)
        if latest and latest[0].data_hash == data_hash:
            log.info("Data unchanged, skipping check-in")
            self.checkins.save_log(CheckInLog(
                user_id=cfg.target_user_id,
                data_hash=data_hash,
                sources=sources,
                gating_result="skip",
                skip_reason="Data unchanged",
            ))
            return None

        goal_ids: list[int] = []
        if cfg.reminder_cooldown_minutes > 0:
            collected, goal_ids = self._filter_reminded(collected)
            if is_empty_data(collected):
                log.debug("All data empty after filtering reminded goals, skipping")
                return None

        can_escalate = self.caller is not None and cfg.escalation_enabled
        decision = await self.oracle.decide(
            collected,
            self.checkins.get_recent_logs(3),
            language=cfg.language,
            timezone=cfg.timezone,
            can_escalate=can_escalate,
        )

        if decision.action == "skip":
            log.info("Gating query: skip (%s)", decision.reason)
            self.checkins.save_log(CheckInLog(
                user_id=cfg.target_user_id,
                data_hash=data_hash,
                sources=sources,
                gating_result="skip",
                skip_reason=decision.reason,
                urgency=decision.urgency,
                tokens_used=decision.tokens_used,
            ))
            return None

        message = decision.message or FALLBACK_MESSAGE
        await self.messenger.send(cfg.target_chat_id, message)
        log.info("Proactive message sent (urgency %d)", decision.urgency)

        escalate = bool(
            can_escalate
            and cfg.escalation_destination
            and (decision.action == "call"
                 or (decision.action == "text" and decision.urgency >= cfg.urgency_threshold))
        )

        # Recorded under the lock: intent, not the telephony outcome.
        self.checkins.save_log(CheckInLog(
            user_id=cfg.target_user_id,
            data_hash=data_hash,
            sources=sources,
            gating_result="call" if escalate else "text",
            urgency=decision.urgency,
            message_sent=message,
            tokens_used=decision.tokens_used,
        ))

        if goal_ids:
            self.checkins.mark_goals_reminded(goal_ids)
            log.debug("Marked goals as reminded: %s", goal_ids)

        return (message, decision.urgency) if escalate else None

    async def _escalate(self, message: str, urgency: int) -> None:
        try:
            result = await self.caller.make_call(
                self.config.escalation_destination, message, self.config.language,
            )
            log.info("Proactive phone call initiated: %s (urgency %d)", result.call_sid, urgency)
        except Exception:
            log.exception("Proactive phone call failed")
