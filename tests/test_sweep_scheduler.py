from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest

from booking_service.db import models as m
from booking_service.services import live_log
from booking_service.services import sweep_scheduler
from booking_service.services.readiness_reminders import send_readiness_checks, send_readiness_reminders
from booking_service.services.sweep_scheduler import run_sweep_once, run_sweeps, sweep_report


@pytest.mark.asyncio
async def test_one_tick_runs_every_sweep(repo, notifier, policy):
    broken = repo.add_order(status=m.OrderStatus.CANCELLED, tracking_stage=m.TrackingStage.WORKING)
    reminded = repo.add_order(
        status=m.OrderStatus.UPCOMING, specialist_readiness_status=m.ReadinessStatus.PENDING
    )
    repo.add_assignment(reminded, 4)

    outcome = await run_sweep_once(repo, notifier, policy=policy)

    assert outcome == {"readiness_check": True, "escalate": True, "reconcile": True}
    assert repo.order(broken).tracking_stage is None
    assert repo.order(reminded).readiness_reminder_count == 1


@pytest.mark.asyncio
async def test_failing_sweep_does_not_stop_the_others(repo, notifier, policy, monkeypatch):
    order_id = repo.add_order(status=m.OrderStatus.PENDING, tracking_stage=m.TrackingStage.MOVING)

    async def exploding(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(sweep_scheduler, "send_readiness_reminders", exploding)

    outcome = await run_sweep_once(repo, notifier, policy=policy)

    assert outcome == {"readiness_check": True, "escalate": False, "reconcile": True}
    assert repo.order(order_id).tracking_stage is None
    [entry] = [e for e in live_log.snapshot(source="sweeps") if e.level == "ERROR"]
    assert "escalate failed: boom" in entry.message


@pytest.mark.asyncio
async def test_loop_honours_iterations(repo, notifier, policy):
    ticks = await run_sweeps(repo, notifier, interval_seconds=0, iterations=3, policy=policy)

    assert ticks == 3


@pytest.mark.asyncio
async def test_loop_stops_on_event(repo, notifier, policy):
    stop = asyncio.Event()
    task = asyncio.create_task(
        run_sweeps(repo, notifier, interval_seconds=3600, stop_event=stop, policy=policy)
    )
    await asyncio.sleep(0.05)
    stop.set()

    ticks = await asyncio.wait_for(task, timeout=2)

    assert ticks == 1


@pytest.mark.asyncio
async def test_readiness_check_then_first_reminder_after_cooldown(repo, notifier, policy, now):
    order_id = repo.add_order(
        status=m.OrderStatus.UPCOMING, booking_date=date(2026, 10, 19), booking_time="morning"
    )
    repo.add_assignment(order_id, 4)
    early = now - timedelta(minutes=30)

    await send_readiness_checks(repo, notifier, now=early, policy=policy)
    await send_readiness_reminders(repo, notifier, now=early + timedelta(minutes=6), policy=policy)

    order = repo.order(order_id)
    assert order.specialist_readiness_status == m.ReadinessStatus.PENDING
    assert order.readiness_reminder_count == 1
    assert [c["data"]["type"] for c in notifier.calls] == ["readiness_check", "readiness_reminder"]


class _RecordingBot:
    def __init__(self) -> None:
        self.messages: list[tuple[int, str, dict]] = []

    async def send_message(self, chat_id, text, **kwargs):
        self.messages.append((chat_id, text, kwargs))


@pytest.mark.asyncio
async def test_tick_summary_goes_to_logs_channel(repo, notifier, policy):
    repo.add_order(status=m.OrderStatus.CANCELLED, tracking_stage=m.TrackingStage.WORKING)
    bot = _RecordingBot()

    await run_sweep_once(repo, notifier, bot=bot, alerts_chat_id=-1, logs_chat_id=-2, policy=policy)

    assert bot.messages == [
        (-2, "reconcile: totalFixed=1, totalErrors=0, pointersCleared=0", {"disable_notification": True})
    ]
    assert any(e.message.startswith("reconcile: totalFixed=1") for e in live_log.snapshot(source="sweeps"))


@pytest.mark.asyncio
async def test_quiet_tick_sends_nothing(repo, notifier, policy):
    bot = _RecordingBot()

    await run_sweep_once(repo, notifier, bot=bot, alerts_chat_id=-1, logs_chat_id=-2, policy=policy)

    assert bot.messages == []


def test_sweep_report_lines():
    assert sweep_report("escalate", {"pendingReminders": 2, "movementReminders": 0}) == (
        "escalate: pendingReminders=2, movementReminders=0"
    )
    assert sweep_report("readiness_check", {"checked": 4, "notified": 0}) is None
