"""Tests for proactive.py — fingerprinting, quiet hours, tick gates,
the check pipeline, reminder suppression, escalation, lifecycle."""

import asyncio
import time
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from checkins import CheckInLog
from collectors.goals import GoalsCollector
from escalation import CallResult
from gating import GatingDecision
from message_queue import MessageQueue
from proactive import (
    FALLBACK_MESSAGE,
    ProactiveConfig,
    ProactiveScheduler,
    hash_data,
    is_empty_data,
    is_quiet_hours,
)
from session import SessionManager


class FakeCollector:
    def __init__(self, name, data=None, error=None):
        self.name = name
        self.data = data
        self.error = error
        self.calls = 0

    async def collect(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.data


def _config(**overrides):
    defaults = {
        "enabled": True,
        "check_interval_minutes": 5,
        "cooldown_minutes": 15,
        "reminder_cooldown_minutes": 180,
        "defer_minutes": 5,
        "quiet_start": "00:00",
        "quiet_end": "00:00",
        "target_chat_id": "100",
        "target_user_id": "100",
        "language": "en",
        "timezone": "UTC",
    }
    defaults.update(overrides)
    return ProactiveConfig(**defaults)


def _oracle(decision=None):
    oracle = MagicMock()
    oracle.decide = AsyncMock(return_value=decision or GatingDecision(
        action="text", urgency=5, message="Your report is due tomorrow.",
    ))
    return oracle


def _scheduler(checkins, collectors=None, oracle=None, channel=None, caller=None,
               queue=None, sessions=None, **cfg):
    channel = channel or MagicMock(send=AsyncMock(return_value=1))
    return ProactiveScheduler(
        _config(**cfg),
        collectors=collectors if collectors is not None else [
            FakeCollector("vault", {"recently_modified": [{"title": "Plan"}]}),
        ],
        checkins=checkins,
        oracle=oracle or _oracle(),
        messenger=channel,
        queue=queue or MessageQueue(),
        sessions=sessions or SessionManager(),
        caller=caller,
    )


# ─── hash_data ────────────────────────────────────────────────────


class TestHashData:
    def test_key_order_irrelevant(self):
        a = {"b": 1, "a": {"y": [1, 2], "x": "s"}}
        b = {"a": {"x": "s", "y": [1, 2]}, "b": 1}
        assert hash_data(a) == hash_data(b)

    def test_list_order_matters(self):
        assert hash_data({"k": [1, 2]}) != hash_data({"k": [2, 1]})

    def test_value_change_changes_hash(self):
        assert hash_data({"k": "a"}) != hash_data({"k": "b"})

    def test_hex_sha256(self):
        h = hash_data({})
        assert len(h) == 64
        int(h, 16)

    def test_unicode_stable(self):
        assert hash_data({"t": "Привет"}) == hash_data({"t": "Привет"})

    def test_non_json_values_stringified(self):
        assert hash_data({"d": date(2026, 3, 1)}) == hash_data({"d": "2026-03-01"})


# ─── is_quiet_hours ───────────────────────────────────────────────


class TestQuietHours:
    def _utc(self, hh, mm):
        return datetime(2026, 1, 15, hh, mm, tzinfo=timezone.utc)

    def test_wrapping_window_late(self):
        assert is_quiet_hours(self._utc(23, 0), "22:00", "08:00")

    def test_wrapping_window_early(self):
        assert is_quiet_hours(self._utc(7, 59), "22:00", "08:00")

    def test_wrapping_window_end_exclusive(self):
        assert not is_quiet_hours(self._utc(8, 0), "22:00", "08:00")

    def test_wrapping_window_start_inclusive(self):
        assert is_quiet_hours(self._utc(22, 0), "22:00", "08:00")

    def test_daytime_outside(self):
        assert not is_quiet_hours(self._utc(12, 0), "22:00", "08:00")

    def test_same_day_window(self):
        assert is_quiet_hours(self._utc(13, 30), "13:00", "14:00")
        assert not is_quiet_hours(self._utc(14, 0), "13:00", "14:00")

    def test_equal_bounds_is_empty(self):
        for hh in (0, 6, 12, 23):
            assert not is_quiet_hours(self._utc(hh, 0), "09:00", "09:00")

    def test_timezone_conversion(self):
        # 21:30 UTC is 22:30 in Vienna (CET, UTC+1 in January)
        now = self._utc(21, 30)
        assert not is_quiet_hours(now, "22:00", "08:00", "UTC")
        assert is_quiet_hours(now, "22:00", "08:00", "Europe/Vienna")

    def test_naive_is_local(self):
        assert is_quiet_hours(datetime(2026, 1, 15, 23, 0), "22:00", "08:00", "Asia/Tokyo")


# ─── is_empty_data ────────────────────────────────────────────────


class TestIsEmptyData:
    def test_no_sources(self):
        assert is_empty_data({})

    def test_all_lists_empty(self):
        assert is_empty_data({"goals": {"approaching": []}, "vault": {"recently_modified": []}})

    def test_one_non_empty(self):
        assert not is_empty_data({"goals": {"approaching": [{"id": 1}]}, "vault": []})

    def test_non_list_value_counts_as_content(self):
        assert not is_empty_data({"x": {"summary": "text"}})

    def test_falsy_scalars(self):
        assert is_empty_data({"a": None, "b": "", "c": []})


# ─── Tick Gates ───────────────────────────────────────────────────


class TestGates:
    @pytest.mark.asyncio
    async def test_busy_queue_defers(self, checkins):
        queue = MessageQueue()
        gate = asyncio.Event()

        async def busy():
            await gate.wait()

        queue.enqueue(busy)
        await asyncio.sleep(0)
        sched = _scheduler(checkins, queue=queue)

        await sched.tick()
        sched.oracle.decide.assert_not_called()
        assert sched.status()["deferred"] == 1

        sched.stop()
        gate.set()
        await queue.drain()
        await sched.wait_stopped()

    @pytest.mark.asyncio
    async def test_deferred_tick_runs_after_delay(self, checkins):
        queue = MessageQueue()
        gate = asyncio.Event()

        async def busy():
            await gate.wait()

        queue.enqueue(busy)
        await asyncio.sleep(0)
        sched = _scheduler(checkins, queue=queue, defer_minutes=0.0005)

        await sched.tick()
        gate.set()
        await queue.drain()
        await asyncio.sleep(0.1)
        sched.oracle.decide.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deferred_tick_exits_after_stop(self, checkins):
        queue = MessageQueue()
        gate = asyncio.Event()

        async def busy():
            await gate.wait()

        queue.enqueue(busy)
        await asyncio.sleep(0)
        sched = _scheduler(checkins, queue=queue, defer_minutes=0.0005)
        await sched.tick()
        sched.stop()
        gate.set()
        await queue.drain()
        await asyncio.sleep(0.1)
        sched.oracle.decide.assert_not_called()

    @pytest.mark.asyncio
    async def test_quiet_hours_skip(self, checkins):
        sched = _scheduler(checkins, quiet_start="00:00", quiet_end="23:59")
        sched._clock = lambda: datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc).timestamp()
        await sched.tick()
        sched.oracle.decide.assert_not_called()
        assert checkins.get_recent_logs(5) == []

    @pytest.mark.asyncio
    async def test_busy_queue_defers_even_in_quiet_hours(self, checkins):
        queue = MessageQueue()
        gate = asyncio.Event()

        async def busy():
            await gate.wait()

        queue.enqueue(busy)
        await asyncio.sleep(0)
        sched = _scheduler(checkins, queue=queue, quiet_start="00:00", quiet_end="23:59")
        sched._clock = lambda: datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc).timestamp()

        await sched.tick()
        sched.oracle.decide.assert_not_called()
        assert sched.status()["deferred"] == 1

        sched.stop()
        gate.set()
        await queue.drain()
        await sched.wait_stopped()

    @pytest.mark.asyncio
    async def test_quiet_hours_checked_before_cooldown_and_quiet_mode(self, checkins):
        checkins.save_log(CheckInLog(data_hash="h", gating_result="text", message_sent="hi"))
        checkins.set_quiet_mode("100", time.time() + 3600)
        checkins.get_last_sent_time = MagicMock(wraps=checkins.get_last_sent_time)
        checkins.is_quiet_mode = MagicMock(wraps=checkins.is_quiet_mode)
        sched = _scheduler(checkins, quiet_start="00:00", quiet_end="23:59")
        sched._clock = lambda: datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc).timestamp()

        await sched.tick()
        sched.oracle.decide.assert_not_called()
        checkins.get_last_sent_time.assert_not_called()
        checkins.is_quiet_mode.assert_not_called()

    @pytest.mark.asyncio
    async def test_cooldown_skip(self, checkins):
        checkins.save_log(CheckInLog(data_hash="h", gating_result="text", message_sent="hi"))
        sched = _scheduler(checkins)
        await sched.tick()
        sched.oracle.decide.assert_not_called()

    @pytest.mark.asyncio
    async def test_skip_logs_do_not_start_cooldown(self, checkins):
        checkins.save_log(CheckInLog(data_hash="h", gating_result="skip", skip_reason="meh"))
        sched = _scheduler(checkins)
        await sched.tick()
        sched.oracle.decide.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cooldown_expired(self, checkins):
        checkins.save_log(CheckInLog(data_hash="h", gating_result="text", message_sent="hi"))
        sched = _scheduler(checkins)
        sched._clock = lambda: time.time() + 16 * 60
        await sched.tick()
        sched.oracle.decide.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_quiet_mode_skip(self, checkins):
        checkins.set_quiet_mode("100", time.time() + 3600)
        sched = _scheduler(checkins)
        await sched.tick()
        sched.oracle.decide.assert_not_called()

    @pytest.mark.asyncio
    async def test_active_chat_skip(self, checkins):
        sessions = SessionManager()
        sessions.get_session_id("100")
        sched = _scheduler(checkins, sessions=sessions)
        await sched.tick()
        sched.oracle.decide.assert_not_called()
        assert sched.status()["deferred"] == 0

    @pytest.mark.asyncio
    async def test_other_chat_activity_ignored(self, checkins):
        sessions = SessionManager()
        sessions.get_session_id("999")
        sched = _scheduler(checkins, sessions=sessions)
        await sched.tick()
        sched.oracle.decide.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_tick_while_shutting_down(self, checkins):
        sched = _scheduler(checkins)
        sched.stop()
        await sched.tick()
        sched.oracle.decide.assert_not_called()

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_noop(self, checkins):
        sched = _scheduler(checkins)
        sched._checking = True
        await sched.tick()
        sched.oracle.decide.assert_not_called()

    @pytest.mark.asyncio
    async def test_tick_swallows_gate_errors(self, checkins):
        broken = MagicMock()
        broken.get_last_sent_time.side_effect = RuntimeError("db gone")
        sched = _scheduler(broken)
        await sched.tick()  # must not raise
        assert not sched.checking


# ─── Check Pipeline ───────────────────────────────────────────────


class TestPerformCheck:
    @pytest.mark.asyncio
    async def test_sends_and_logs(self, checkins):
        sched = _scheduler(checkins)
        await sched.perform_check()

        sched.messenger.send.assert_awaited_once_with("100", "Your report is due tomorrow.")
        logs = checkins.get_recent_logs(5)
        assert len(logs) == 1
        assert logs[0].gating_result == "text"
        assert logs[0].urgency == 5
        assert logs[0].message_sent == "Your report is due tomorrow."
        assert logs[0].sources == ["vault"]
        assert logs[0].user_id == "100"
        assert not sched.queue.is_locked()

    @pytest.mark.asyncio
    async def test_empty_data_writes_no_log(self, checkins):
        sched = _scheduler(checkins, collectors=[
            FakeCollector("vault", {"recently_modified": []}),
            FakeCollector("goals", {"approaching": []}),
        ])
        await sched.perform_check()
        sched.oracle.decide.assert_not_called()
        assert checkins.get_recent_logs(5) == []

    @pytest.mark.asyncio
    async def test_unchanged_data_logged_as_skip(self, checkins):
        sched = _scheduler(checkins)
        await sched.perform_check()
        await sched.perform_check()

        assert sched.oracle.decide.await_count == 1
        logs = checkins.get_recent_logs(5)
        assert logs[0].gating_result == "skip"
        assert logs[0].skip_reason == "Data unchanged"
        assert logs[0].data_hash == logs[1].data_hash

    @pytest.mark.asyncio
    async def test_unchanged_data_is_idempotent(self, checkins):
        sched = _scheduler(checkins)
        for _ in range(4):
            await sched.perform_check()
        assert sched.messenger.send.await_count == 1
        assert [e.skip_reason for e in checkins.get_recent_logs(10)][:3] == ["Data unchanged"] * 3

    @pytest.mark.asyncio
    async def test_oracle_skip_logged(self, checkins):
        oracle = _oracle(GatingDecision(action="skip", urgency=2, reason="Nothing new",
                                        tokens_used=33))
        sched = _scheduler(checkins, oracle=oracle)
        await sched.perform_check()

        sched.messenger.send.assert_not_called()
        [entry] = checkins.get_recent_logs(5)
        assert entry.gating_result == "skip"
        assert entry.skip_reason == "Nothing new"
        assert entry.urgency == 2
        assert entry.tokens_used == 33

    @pytest.mark.asyncio
    async def test_failing_collector_isolated(self, checkins):
        bad = FakeCollector("goals", error=RuntimeError("boom"))
        sched = _scheduler(checkins, collectors=[
            bad, FakeCollector("vault", {"recently_modified": [{"title": "x"}]}),
        ])
        await sched.perform_check()

        data = sched.oracle.decide.call_args.args[0]
        assert list(data) == ["vault"]
        assert checkins.get_recent_logs(1)[0].sources == ["vault"]

    @pytest.mark.asyncio
    async def test_all_collectors_failing_is_empty(self, checkins):
        sched = _scheduler(checkins, collectors=[FakeCollector("vault", error=OSError("x"))])
        await sched.perform_check()
        sched.oracle.decide.assert_not_called()
        assert checkins.get_recent_logs(5) == []

    @pytest.mark.asyncio
    async def test_oracle_receives_context(self, checkins):
        checkins.save_log(CheckInLog(data_hash="old", gating_result="skip"))
        sched = _scheduler(checkins, language="de", timezone="Europe/Berlin")
        await sched.perform_check()

        call = sched.oracle.decide.call_args
        assert len(call.args[1]) == 1
        assert call.kwargs["language"] == "de"
        assert call.kwargs["timezone"] == "Europe/Berlin"
        assert call.kwargs["can_escalate"] is False

    @pytest.mark.asyncio
    async def test_fallback_message(self, checkins):
        oracle = _oracle(GatingDecision(action="text", urgency=4, message=None))
        sched = _scheduler(checkins, oracle=oracle)
        await sched.perform_check()
        sched.messenger.send.assert_awaited_once_with("100", FALLBACK_MESSAGE)

    @pytest.mark.asyncio
    async def test_send_failure_releases_lock(self, checkins):
        channel = MagicMock(send=AsyncMock(side_effect=RuntimeError("network")))
        sched = _scheduler(checkins, channel=channel)
        await sched.perform_check()

        assert not sched.queue.is_locked()
        assert checkins.get_recent_logs(5) == []

    @pytest.mark.asyncio
    async def test_waits_for_lock_holder(self, checkins):
        queue = MessageQueue()
        release = await queue.acquire_lock()
        sched = _scheduler(checkins, queue=queue)

        task = asyncio.create_task(sched.perform_check())
        await asyncio.sleep(0.01)
        sched.messenger.send.assert_not_called()
        release()
        await task
        sched.messenger.send.assert_awaited_once()


# ─── Goal Reminders ───────────────────────────────────────────────


class TestReminderSuppression:
    def _goals_collector(self, goals, *titles):
        today = date.today().isoformat()
        ids = [goals.add_goal(t, deadline=today) for t in titles]
        return GoalsCollector(goals), ids

    @pytest.mark.asyncio
    async def test_reminded_goals_filtered_from_oracle_input(self, checkins, goals):
        collector, (g1, g2) = self._goals_collector(goals, "Taxes", "Dentist")
        checkins.mark_goals_reminded([g1])
        sched = _scheduler(checkins, collectors=[collector])

        await sched.perform_check()

        data = sched.oracle.decide.call_args.args[0]
        assert [g["id"] for g in data["goals"]["approaching"]] == [g2]
        # Fingerprint covers the raw, unfiltered data
        raw = await collector.collect()
        assert checkins.get_recent_logs(1)[0].data_hash == hash_data({"goals": raw})

    @pytest.mark.asyncio
    async def test_all_reminded_writes_no_log(self, checkins, goals):
        collector, (g1,) = self._goals_collector(goals, "Taxes")
        checkins.mark_goals_reminded([g1])
        sched = _scheduler(checkins, collectors=[collector])

        await sched.perform_check()

        sched.oracle.decide.assert_not_called()
        assert checkins.get_recent_logs(5) == []

    @pytest.mark.asyncio
    async def test_sent_goals_marked_reminded(self, checkins, goals):
        collector, (g1, g2) = self._goals_collector(goals, "Taxes", "Dentist")
        sched = _scheduler(checkins, collectors=[collector])

        await sched.perform_check()

        assert sorted(checkins.get_recently_reminded_goal_ids(180)) == sorted([g1, g2])

    @pytest.mark.asyncio
    async def test_skip_does_not_mark_reminded(self, checkins, goals):
        collector, _ = self._goals_collector(goals, "Taxes")
        oracle = _oracle(GatingDecision(action="skip", urgency=1, reason="later"))
        sched = _scheduler(checkins, collectors=[collector], oracle=oracle)

        await sched.perform_check()

        assert checkins.get_recently_reminded_goal_ids(180) == []

    @pytest.mark.asyncio
    async def test_zero_cooldown_disables_filtering(self, checkins, goals):
        collector, (g1,) = self._goals_collector(goals, "Taxes")
        checkins.mark_goals_reminded([g1])
        sched = _scheduler(checkins, collectors=[collector], reminder_cooldown_minutes=0)

        await sched.perform_check()

        data = sched.oracle.decide.call_args.args[0]
        assert [g["id"] for g in data["goals"]["approaching"]] == [g1]


# ─── Escalation ───────────────────────────────────────────────────


class TestEscalation:
    def _caller(self):
        caller = MagicMock()
        caller.make_call = AsyncMock(return_value=CallResult(call_sid="CA123", status="queued"))
        return caller

    def _escalating(self, checkins, decision, caller, **cfg):
        cfg.setdefault("escalation_enabled", True)
        cfg.setdefault("escalation_destination", "+15550001111")
        cfg.setdefault("urgency_threshold", 8)
        return _scheduler(checkins, oracle=_oracle(decision), caller=caller, **cfg)

    @pytest.mark.asyncio
    async def test_high_urgency_text_calls(self, checkins):
        caller = self._caller()
        sched = self._escalating(
            checkins, GatingDecision(action="text", urgency=9, message="Flight in 1h!"), caller,
        )
        await sched.perform_check()
        await sched.wait_stopped()

        caller.make_call.assert_awaited_once_with("+15550001111", "Flight in 1h!", "en")
        assert checkins.get_recent_logs(1)[0].gating_result == "call"
        assert sched.oracle.decide.call_args.kwargs["can_escalate"] is True

    @pytest.mark.asyncio
    async def test_urgency_equal_threshold_calls(self, checkins):
        caller = self._caller()
        sched = self._escalating(
            checkins, GatingDecision(action="text", urgency=8, message="Due now"), caller,
        )
        await sched.perform_check()
        await sched.wait_stopped()

        caller.make_call.assert_awaited_once_with("+15550001111", "Due now", "en")
        assert checkins.get_recent_logs(1)[0].gating_result == "call"

    @pytest.mark.asyncio
    async def test_below_threshold_texts_only(self, checkins):
        caller = self._caller()
        sched = self._escalating(
            checkins, GatingDecision(action="text", urgency=7, message="fyi"), caller,
        )
        await sched.perform_check()
        await sched.wait_stopped()

        caller.make_call.assert_not_called()
        assert checkins.get_recent_logs(1)[0].gating_result == "text"

    @pytest.mark.asyncio
    async def test_call_action_always_calls(self, checkins):
        caller = self._caller()
        sched = self._escalating(
            checkins, GatingDecision(action="call", urgency=3, message="Call me"), caller,
        )
        await sched.perform_check()
        await sched.wait_stopped()

        caller.make_call.assert_awaited_once()
        sched.messenger.send.assert_awaited_once_with("100", "Call me")

    @pytest.mark.asyncio
    async def test_no_destination_no_call(self, checkins):
        caller = self._caller()
        sched = self._escalating(
            checkins, GatingDecision(action="call", urgency=10, message="!"), caller,
            escalation_destination="",
        )
        await sched.perform_check()
        await sched.wait_stopped()

        caller.make_call.assert_not_called()
        assert checkins.get_recent_logs(1)[0].gating_result == "text"

    @pytest.mark.asyncio
    async def test_disabled_escalation_hides_call_option(self, checkins):
        caller = self._caller()
        sched = self._escalating(
            checkins, GatingDecision(action="text", urgency=10, message="!"), caller,
            escalation_enabled=False,
        )
        await sched.perform_check()
        await sched.wait_stopped()

        assert sched.oracle.decide.call_args.kwargs["can_escalate"] is False
        caller.make_call.assert_not_called()

    @pytest.mark.asyncio
    async def test_call_placed_after_lock_release(self, checkins):
        queue = MessageQueue()
        locked_during_call = []
        caller = MagicMock()

        async def make_call(*args):
            locked_during_call.append(queue.is_locked())
            return CallResult(call_sid="CA1", status="queued")

        caller.make_call = make_call
        sched = self._escalating(
            checkins, GatingDecision(action="call", urgency=9, message="!"), caller, queue=queue,
        )
        await sched.perform_check()
        await sched.wait_stopped()
        assert locked_during_call == [False]

    @pytest.mark.asyncio
    async def test_call_failure_only_logged(self, checkins):
        caller = MagicMock()
        caller.make_call = AsyncMock(side_effect=RuntimeError("twilio down"))
        sched = self._escalating(
            checkins, GatingDecision(action="call", urgency=9, message="!"), caller,
        )
        await sched.perform_check()
        await sched.wait_stopped()

        assert checkins.get_recent_logs(1)[0].gating_result == "call"


# ─── Lifecycle ────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_disabled_does_not_start(self, checkins):
        sched = _scheduler(checkins, enabled=False)
        sched.start()
        assert not sched.running

    @pytest.mark.asyncio
    async def test_start_twice_single_timer(self, checkins):
        sched = _scheduler(checkins)
        sched.start()
        timer = sched._timer
        sched.start()
        assert sched._timer is timer
        sched.stop()
        assert not sched.running

    @pytest.mark.asyncio
    async def test_start_after_stop_stays_stopped(self, checkins):
        sched = _scheduler(checkins)
        sched.start()
        sched.stop()
        sched.start()
        assert not sched.running
        assert sched._timer is None
        assert sched.trigger() is False

    @pytest.mark.asyncio
    async def test_timer_fires_ticks(self, checkins):
        sched = _scheduler(checkins, check_interval_minutes=0.0002)
        sched.tick = AsyncMock()
        sched.start()
        await asyncio.sleep(0.1)
        sched.stop()
        await sched.wait_stopped()
        assert sched.tick.await_count >= 2

    @pytest.mark.asyncio
    async def test_trigger_runs_check(self, checkins):
        sched = _scheduler(checkins)
        assert sched.trigger() is True
        await sched.wait_stopped()
        sched.oracle.decide.assert_awaited_once()
        assert sched.status()["last_check_at"] is not None

    @pytest.mark.asyncio
    async def test_trigger_refused_after_stop(self, checkins):
        sched = _scheduler(checkins)
        sched.stop()
        assert sched.trigger() is False

    def test_status_snapshot(self, checkins):
        sched = _scheduler(checkins)
        status = sched.status()
        assert status["enabled"] is True
        assert status["running"] is False
        assert status["checking"] is False
        assert status["interval_minutes"] == 5
