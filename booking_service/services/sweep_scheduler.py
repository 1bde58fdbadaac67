"""
Owned periodic loop for the sweeps: readiness checks, escalation and reconciliation.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from aiogram import Bot

from booking_service.config import settings
from booking_service.infra.notify import send_alert, send_log
from booking_service.infra.structured_logging import SweepEvent, log_sweep_event
from booking_service.services import live_log
from booking_service.services.push_notifications import Notifier
from booking_service.services.readiness_reminders import (
    ReminderPolicy,
    send_readiness_checks,
    send_readiness_reminders,
)
from booking_service.services.reconciler import reconcile_orders
from booking_service.services.repository import OrderRepository

logger = logging.getLogger("sweeps")

__all__ = ["run_sweep_once", "run_sweeps", "sweep_report"]

# Счётчики из payload'а sweep'а, которые уходят в канал логов
_REPORT_KEYS: dict[str, tuple[str, ...]] = {
    "readiness_check": ("notified",),
    "escalate": ("pendingReminders", "movementReminders"),
    "reconcile": ("totalFixed", "totalErrors", "pointersCleared"),
}


def sweep_report(name: str, payload: dict[str, Any]) -> str | None:
    """One-line summary of a sweep payload, or None when the sweep did nothing."""
    counters = {key: payload.get(key, 0) for key in _REPORT_KEYS.get(name, ())}
    if not any(counters.values()):
        return None
    line = ", ".join(f"{key}={value}" for key, value in counters.items())
    return f"{name}: {line}"


async def _isolated(
    name: str,
    sweep: Callable[[], Awaitable[Any]],
    *,
    bot: Bot | None,
    alerts_chat_id: int | None,
    logs_chat_id: int | None,
) -> bool:
    try:
        result = await sweep()
    except Exception as exc:
        logger.exception("Sweep %s failed: %s", name, exc)
        log_sweep_event(SweepEvent.SWEEP_FAILED, sweep=name, reason=str(exc), level="ERROR")
        live_log.push("sweeps", f"{name} failed: {exc}", level="ERROR")
        await send_alert(bot, f"Sweep {name} failed", chat_id=alerts_chat_id, exc=exc)
        return False

    report = sweep_report(name, result.as_dict())
    if report:
        live_log.push("sweeps", report)
        await send_log(bot, report, chat_id=logs_chat_id)
    return True


async def run_sweep_once(
    repository: OrderRepository,
    notifier: Notifier,
    *,
    bot: Bot | None = None,
    alerts_chat_id: int | None = None,
    logs_chat_id: int | None = None,
    policy: ReminderPolicy | None = None,
) -> dict[str, bool]:
    """One tick; each sweep runs even when an earlier one failed."""
    policy = policy or ReminderPolicy.from_settings()
    channels = {"bot": bot, "alerts_chat_id": alerts_chat_id, "logs_chat_id": logs_chat_id}
    return {
        "readiness_check": await _isolated(
            "readiness_check",
            lambda: send_readiness_checks(repository, notifier, policy=policy),
            **channels,
        ),
        "escalate": await _isolated(
            "escalate",
            lambda: send_readiness_reminders(
                repository, notifier, policy=policy, bot=bot, alerts_chat_id=alerts_chat_id
            ),
            **channels,
        ),
        "reconcile": await _isolated(
            "reconcile",
            lambda: reconcile_orders(repository),
            **channels,
        ),
    }


async def run_sweeps(
    repository: OrderRepository,
    notifier: Notifier,
    *,
    bot: Bot | None = None,
    alerts_chat_id: int | None = None,
    logs_chat_id: int | None = None,
    interval_seconds: int | None = None,
    iterations: int | None = None,
    stop_event: Optional[asyncio.Event] = None,
    policy: ReminderPolicy | None = None,
) -> int:
    """
    Фоновый цикл для всех sweep'ов.

    Args:
        logs_chat_id: канал для сводок тиков, в которых что-то изменилось
        interval_seconds: пауза между тиками (по умолчанию из настроек)
        iterations: количество тиков (None = бесконечно)
        stop_event: установленный event завершает цикл после текущего тика

    Returns:
        Количество выполненных тиков
    """
    sleep_for = max(0, settings.sweep_interval_seconds if interval_seconds is None else interval_seconds)
    stop_event = stop_event or asyncio.Event()
    loops_done = 0

    logger.info("Sweep scheduler started, interval=%ss", sleep_for)
    while not stop_event.is_set():
        outcome = await run_sweep_once(
            repository,
            notifier,
            bot=bot,
            alerts_chat_id=alerts_chat_id,
            logs_chat_id=logs_chat_id,
            policy=policy,
        )
        loops_done += 1
        if not all(outcome.values()):
            logger.warning("Sweep tick %s finished with failures: %s", loops_done, outcome)

        if iterations is not None and loops_done >= iterations:
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Sweep scheduler stopped after %s ticks", loops_done)
    return loops_done
