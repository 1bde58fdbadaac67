"""
Trigger surface for the sweeps.

Each ``*_trigger`` returns the JSON payload of one invocation; a fatal failure
(the store cannot be read) becomes ``{"success": false, "timestamp", "error"}``.
The CLI wires them to the database and prints the payload::

    python -m booking_service.triggers reconcile
    python -m booking_service.triggers escalate
    python -m booking_service.triggers readiness-check
    python -m booking_service.triggers live-status --company 7
    python -m booking_service.triggers run --iterations 1
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from aiogram import Bot

from booking_service.config import settings
from booking_service.services import live_log
from booking_service.services.live_status import derive_live_status
from booking_service.services.push_notifications import Notifier
from booking_service.services.readiness_reminders import (
    ReminderPolicy,
    send_readiness_checks,
    send_readiness_reminders,
)
from booking_service.services.reconciler import reconcile_orders
from booking_service.services.repository import OrderRepository

UTC = timezone.utc
logger = logging.getLogger("triggers")

__all__ = [
    "reconcile_trigger",
    "escalation_trigger",
    "readiness_check_trigger",
    "live_status_trigger",
    "setup_logging",
    "main",
]


def _failure(exc: BaseException, now: datetime) -> dict[str, Any]:
    return {
        "success": False,
        "timestamp": now.isoformat(),
        "error": str(exc) or type(exc).__name__,
    }


async def reconcile_trigger(
    repository: OrderRepository,
    *,
    order_ids: Optional[Sequence[int]] = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(UTC)
    try:
        summary = await reconcile_orders(repository, order_ids=order_ids, now=now)
    except Exception as exc:
        logger.exception("Reconcile pass failed: %s", exc)
        live_log.push("reconcile", f"pass failed: {exc}", level="ERROR")
        return _failure(exc, now)
    return summary.as_dict()


async def escalation_trigger(
    repository: OrderRepository,
    notifier: Notifier,
    *,
    now: datetime | None = None,
    policy: ReminderPolicy | None = None,
    bot: Bot | None = None,
    alerts_chat_id: int | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(UTC)
    try:
        result = await send_readiness_reminders(
            repository,
            notifier,
            now=now,
            policy=policy,
            bot=bot,
            alerts_chat_id=alerts_chat_id,
        )
    except Exception as exc:
        logger.exception("Escalation sweep failed: %s", exc)
        live_log.push("readiness", f"escalation failed: {exc}", level="ERROR")
        return _failure(exc, now)
    return result.as_dict()


async def readiness_check_trigger(
    repository: OrderRepository,
    notifier: Notifier,
    *,
    now: datetime | None = None,
    policy: ReminderPolicy | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(UTC)
    try:
        result = await send_readiness_checks(repository, notifier, now=now, policy=policy)
    except Exception as exc:
        logger.exception("Readiness check sweep failed: %s", exc)
        live_log.push("readiness", f"readiness check failed: {exc}", level="ERROR")
        return _failure(exc, now)
    return result.as_dict()


async def live_status_trigger(
    repository: OrderRepository,
    specialist_ids: Optional[Sequence[int]] = None,
    *,
    company_id: Optional[int] = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(UTC)
    try:
        statuses = await derive_live_status(
            repository, specialist_ids, company_id=company_id, now=now
        )
    except Exception as exc:
        logger.exception("Live status read failed: %s", exc)
        return _failure(exc, now)
    return {
        "success": True,
        "timestamp": now.isoformat(),
        "specialists": [status.as_dict() for status in statuses],
    }


# ===== CLI =====


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="booking-sweeps", description="Run booking order sweeps"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    reconcile = sub.add_parser("reconcile", help="Repair inconsistent order state")
    reconcile.add_argument("--order", dest="order_ids", type=int, action="append",
                           help="Restrict the pass to this order id (repeatable)")
    sub.add_parser("escalate", help="Send readiness/movement reminders")
    sub.add_parser("readiness-check", help="Send readiness checks for upcoming bookings")

    live = sub.add_parser("live-status", help="Print specialists' live status")
    live.add_argument("--specialist", dest="specialist_ids", type=int, action="append")
    live.add_argument("--company", dest="company_id", type=int, default=None)

    run = sub.add_parser("run", help="Run the sweep loop")
    run.add_argument("--interval", type=int, default=None,
                     help="Seconds between ticks (default from SWEEP_INTERVAL_SECONDS)")
    run.add_argument("--iterations", type=int, default=None)
    return parser


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    from booking_service.db.session import SessionLocal, engine
    from booking_service.infra.notify import make_ops_bot
    from booking_service.services.push_notifications import OutboxNotifier
    from booking_service.services.repository import SqlOrderRepository
    from booking_service.services.sweep_scheduler import run_sweeps

    repository = SqlOrderRepository(SessionLocal)
    notifier = OutboxNotifier(SessionLocal)
    bot = make_ops_bot()
    try:
        if args.command == "reconcile":
            return await reconcile_trigger(repository, order_ids=args.order_ids)
        if args.command == "escalate":
            return await escalation_trigger(
                repository, notifier, bot=bot, alerts_chat_id=settings.alerts_channel_id
            )
        if args.command == "readiness-check":
            return await readiness_check_trigger(repository, notifier)
        if args.command == "live-status":
            return await live_status_trigger(
                repository, args.specialist_ids, company_id=args.company_id
            )
        ticks = await run_sweeps(
            repository,
            notifier,
            bot=bot,
            alerts_chat_id=settings.alerts_channel_id,
            logs_chat_id=settings.logs_channel_id,
            interval_seconds=args.interval,
            iterations=args.iterations,
        )
        return {"success": True, "timestamp": datetime.now(UTC).isoformat(), "ticks": ticks}
    finally:
        if bot is not None:
            await bot.session.close()
        await engine.dispose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging()
    payload: dict[str, Any] = {"success": False}
    with suppress(KeyboardInterrupt):
        payload = asyncio.run(_run(args))
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    return 0 if payload.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
