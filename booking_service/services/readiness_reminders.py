"""
Readiness escalation: readiness checks ahead of a booking, then up to three
reminders per track and a penalty once the reminders run out.

Two independent tracks per upcoming order with an accepted specialist:

* readiness: ``specialist_readiness_status = pending`` -> ``no_response`` after the last reminder
* movement:  ``ready`` and no tracking stage yet -> ``needs_reassignment`` after the last reminder

Counters are advanced with a compare-and-set write before the notification goes out,
so overlapping sweeps cannot send the same reminder twice and a lost notification
is never retried (no durable queue behind this).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo

from aiogram import Bot

from booking_service.config import settings
from booking_service.db import models as m
from booking_service.infra.notify import send_alert
from booking_service.infra.structured_logging import SweepEvent, log_sweep_event
from booking_service.services import live_log
from booking_service.services.order_state import OrderSnapshot
from booking_service.services.push_notifications import (
    DeliveryResult,
    NotificationEvent,
    Notifier,
    all_delivered,
    render,
)
from booking_service.services.repository import (
    BookingCandidate,
    OrderRepository,
    StoreError,
    StoreWriteError,
)

UTC = timezone.utc
logger = logging.getLogger("readiness")

__all__ = [
    "ReminderPolicy",
    "ReminderTrack",
    "READINESS_TRACK",
    "MOVEMENT_TRACK",
    "ReminderResult",
    "ReminderSweepResult",
    "ReadinessCheckResult",
    "send_readiness_reminders",
    "send_readiness_checks",
    "booking_starts_at",
]


@dataclass(frozen=True, slots=True)
class ReminderPolicy:
    cooldown: timedelta = timedelta(minutes=5)
    max_reminders: int = 3
    readiness_penalty: Decimal = Decimal("10")
    movement_penalty: Decimal = Decimal("5")
    notify_timeout_seconds: float = 10.0
    store_timeout_seconds: float = 10.0
    readiness_lead: timedelta = timedelta(minutes=60)
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls) -> "ReminderPolicy":
        return cls(
            cooldown=timedelta(minutes=settings.reminder_cooldown_minutes),
            max_reminders=settings.max_reminders,
            readiness_penalty=Decimal(settings.readiness_penalty_percent),
            movement_penalty=Decimal(settings.movement_penalty_percent),
            notify_timeout_seconds=float(settings.notify_timeout_seconds),
            store_timeout_seconds=float(settings.store_timeout_seconds),
            readiness_lead=timedelta(minutes=settings.readiness_lead_minutes),
            timezone=settings.timezone,
        )


@dataclass(frozen=True, slots=True)
class ReminderTrack:
    type: str
    event: NotificationEvent
    count_field: str
    last_field: str
    awaiting: m.ReadinessStatus
    escalated: m.ReadinessStatus
    penalty_attr: str
    needs_empty_stage: bool = False

    def is_eligible(self, order: OrderSnapshot, now: datetime, policy: ReminderPolicy) -> bool:
        if order.status != m.OrderStatus.UPCOMING:
            return False
        if order.specialist_readiness_status != self.awaiting:
            return False
        if self.needs_empty_stage and order.tracking_stage is not None:
            return False
        if getattr(order, self.count_field) >= policy.max_reminders:
            return False
        last = getattr(order, self.last_field)
        return last is None or last < now - policy.cooldown

    def guard(self, order: OrderSnapshot) -> dict[str, Any]:
        expected = {
            "status": m.OrderStatus.UPCOMING,
            "specialist_readiness_status": self.awaiting,
            self.count_field: getattr(order, self.count_field),
            self.last_field: getattr(order, self.last_field),
        }
        if self.needs_empty_stage:
            expected["tracking_stage"] = None
        return expected


READINESS_TRACK = ReminderTrack(
    type="readiness_reminder",
    event=NotificationEvent.READINESS_REMINDER,
    count_field="readiness_reminder_count",
    last_field="readiness_last_reminder_at",
    awaiting=m.ReadinessStatus.PENDING,
    escalated=m.ReadinessStatus.NO_RESPONSE,
    penalty_attr="readiness_penalty",
)

MOVEMENT_TRACK = ReminderTrack(
    type="movement_reminder",
    event=NotificationEvent.MOVEMENT_REMINDER,
    count_field="movement_reminder_count",
    last_field="movement_last_reminder_at",
    awaiting=m.ReadinessStatus.READY,
    escalated=m.ReadinessStatus.NEEDS_REASSIGNMENT,
    penalty_attr="movement_penalty",
    needs_empty_stage=True,
)


@dataclass(frozen=True, slots=True)
class ReminderResult:
    order_id: int
    type: str
    reminder_count: int
    success: bool
    escalated: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "type": self.type,
            "reminderCount": self.reminder_count,
            "success": self.success,
        }


@dataclass
class ReminderSweepResult:
    pending_reminders: int = 0
    movement_reminders: int = 0
    results: list[ReminderResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "pendingReminders": self.pending_reminders,
            "movementReminders": self.movement_reminders,
            "results": [result.as_dict() for result in self.results],
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


@dataclass
class ReadinessCheckResult:
    checked: int = 0
    notified: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "checked": self.checked,
            "notified": self.notified,
            "results": list(self.results),
        }


async def _dispatch(
    notifier: Notifier,
    recipients: list[int],
    title: str,
    body: str,
    data: dict[str, str],
    *,
    timeout: float,
) -> list[DeliveryResult]:
    """Call the notifier with a deadline; failures come back as unsuccessful results."""
    try:
        return await asyncio.wait_for(
            notifier.notify(recipients, title, body, data), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning("Notifier timed out after %ss for %s", timeout, data.get("orderId"))
        return [DeliveryResult(rid, False, "timeout") for rid in recipients]
    except Exception as exc:
        logger.warning("Notifier failed for %s: %s", data.get("orderId"), exc, exc_info=True)
        return [DeliveryResult(rid, False, str(exc)) for rid in recipients]


async def _bounded_update(
    repository: OrderRepository,
    order_id: int,
    values: dict[str, Any],
    *,
    expected: dict[str, Any],
    now: datetime,
    timeout: float,
) -> bool:
    """Compare-and-set write with a deadline; a timeout is reported as a write error."""
    try:
        return await asyncio.wait_for(
            repository.update_order(order_id, values, expected=expected, now=now),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise StoreWriteError(order_id, f"order#{order_id} update timed out after {timeout}s") from exc


async def _remind(
    repository: OrderRepository,
    notifier: Notifier,
    track: ReminderTrack,
    order: OrderSnapshot,
    *,
    now: datetime,
    policy: ReminderPolicy,
    sweep: ReminderSweepResult,
    bot: Bot | None,
    alerts_chat_id: int | None,
) -> None:
    recipients = list(order.accepted_specialist_ids)
    if not recipients or not track.is_eligible(order, now, policy):
        return

    new_count = getattr(order, track.count_field) + 1
    escalate = new_count >= policy.max_reminders
    values: dict[str, Any] = {track.count_field: new_count, track.last_field: now}
    if escalate:
        values["specialist_readiness_status"] = track.escalated
        values["readiness_penalty_percentage"] = getattr(policy, track.penalty_attr)

    try:
        applied = await _bounded_update(
            repository,
            order.id,
            values,
            expected=track.guard(order),
            now=now,
            timeout=policy.store_timeout_seconds,
        )
    except StoreError as exc:
        logger.error("Error updating order %s: %s", order.id, exc)
        sweep.errors.append({"orderId": order.id, "type": track.type, "error": str(exc)})
        live_log.push("readiness", f"order#{order.id} {track.type} write failed: {exc}", level="ERROR")
        return
    if not applied:
        log_sweep_event(
            SweepEvent.REMINDER_SKIPPED,
            sweep="escalate",
            order_id=order.id,
            reminder_type=track.type,
            reason="row changed concurrently",
            level="DEBUG",
        )
        return

    title, body = render(
        track.event,
        count=new_count,
        total=policy.max_reminders,
        order_number=order.order_number or order.id,
    )
    data = {
        "type": track.type,
        "orderId": str(order.id),
        "orderNumber": str(order.order_number),
        "reminderCount": str(new_count),
        "requiresAction": "true",
        "route": "/specialist/home",
    }
    delivered = all_delivered(
        await _dispatch(
            notifier, recipients, title, body, data, timeout=policy.notify_timeout_seconds
        )
    )
    sweep.results.append(
        ReminderResult(order.id, track.type, new_count, delivered, escalated=escalate)
    )
    log_sweep_event(
        SweepEvent.REMINDER_SENT,
        sweep="escalate",
        order_id=order.id,
        reminder_type=track.type,
        reminder_count=new_count,
        success=delivered,
    )

    if escalate:
        logger.info(
            "Order %s marked as %s after %s %ss",
            order.id,
            track.escalated.value,
            new_count,
            track.type,
        )
        log_sweep_event(
            SweepEvent.ESCALATED,
            sweep="escalate",
            order_id=order.id,
            reminder_type=track.type,
            reason=track.escalated.value,
            level="WARNING",
        )
        live_log.push(
            "readiness",
            f"order#{order.id} escalated to {track.escalated.value}",
            level="WARN",
        )
        await send_alert(
            bot,
            f"Order {order.order_number or order.id}: {track.escalated.value} "
            f"after {new_count} reminders, penalty {values['readiness_penalty_percentage']}%",
            chat_id=alerts_chat_id,
        )


async def send_readiness_reminders(
    repository: OrderRepository,
    notifier: Notifier,
    *,
    now: datetime | None = None,
    policy: ReminderPolicy | None = None,
    bot: Bot | None = None,
    alerts_chat_id: int | None = None,
) -> ReminderSweepResult:
    """One escalation sweep over both reminder tracks.

    Raises:
        StoreUnavailableError: candidates could not be read.
    """
    if now is None:
        now = datetime.now(UTC)
    if policy is None:
        policy = ReminderPolicy.from_settings()
    log_sweep_event(SweepEvent.SWEEP_START, sweep="escalate")

    pending = await repository.list_readiness_reminder_candidates(
        now=now, cooldown=policy.cooldown, max_reminders=policy.max_reminders
    )
    moving = await repository.list_movement_reminder_candidates(
        now=now, cooldown=policy.cooldown, max_reminders=policy.max_reminders
    )
    sweep = ReminderSweepResult(pending_reminders=len(pending), movement_reminders=len(moving))

    for track, batch in ((READINESS_TRACK, pending), (MOVEMENT_TRACK, moving)):
        for order in batch:
            try:
                await _remind(
                    repository,
                    notifier,
                    track,
                    order,
                    now=now,
                    policy=policy,
                    sweep=sweep,
                    bot=bot,
                    alerts_chat_id=alerts_chat_id,
                )
            except Exception as exc:
                logger.exception("Error processing %s for order %s", track.type, order.id)
                sweep.errors.append({"orderId": order.id, "type": track.type, "error": str(exc)})

    log_sweep_event(
        SweepEvent.SWEEP_END,
        sweep="escalate",
        details={
            "pending": sweep.pending_reminders,
            "movement": sweep.movement_reminders,
            "sent": len(sweep.results),
            "errors": len(sweep.errors),
        },
    )
    return sweep


# ===== Readiness check (first contact, one hour before the booking) =====


def booking_starts_at(
    booking_date: date | str | None, booking_time: str | None, tz_name: str
) -> Optional[datetime]:
    """Booking start in UTC from a calendar date and a slot name."""
    if booking_date is None:
        return None
    if isinstance(booking_date, datetime):
        booking_date = booking_date.date()
    elif isinstance(booking_date, str):
        booking_date = date.fromisoformat(booking_date[:10])
    local = datetime.combine(
        booking_date, time(m.BookingSlot.hour_for(booking_time)), tzinfo=ZoneInfo(tz_name)
    )
    return local.astimezone(UTC)


async def _send_readiness_check(
    repository: OrderRepository,
    notifier: Notifier,
    candidate: BookingCandidate,
    *,
    now: datetime,
    policy: ReminderPolicy,
) -> dict[str, Any]:
    order = candidate.order
    try:
        applied = await _bounded_update(
            repository,
            order.id,
            {
                "readiness_check_sent_at": now,
                "specialist_readiness_status": m.ReadinessStatus.PENDING,
            },
            expected={"status": m.OrderStatus.UPCOMING, "readiness_check_sent_at": None},
            now=now,
            timeout=policy.store_timeout_seconds,
        )
    except StoreError as exc:
        logger.error("Error updating order %s: %s", order.id, exc)
        return {"orderId": order.id, "success": False, "error": str(exc)}
    if not applied:
        return {"orderId": order.id, "success": False, "error": "changed concurrently"}

    title, body = render(
        NotificationEvent.READINESS_CHECK, order_number=order.order_number or order.id
    )
    data = {
        "type": NotificationEvent.READINESS_CHECK.value,
        "orderId": str(order.id),
        "orderNumber": str(order.order_number),
        "requiresAction": "true",
        "route": "/specialist/home",
    }
    sent = all_delivered(
        await _dispatch(
            notifier,
            list(order.accepted_specialist_ids),
            title,
            body,
            data,
            timeout=policy.notify_timeout_seconds,
        )
    )
    log_sweep_event(
        SweepEvent.READINESS_CHECK_SENT,
        sweep="readiness_check",
        order_id=order.id,
        success=sent,
    )
    return {"orderId": order.id, "success": True, "notificationSent": sent}


async def send_readiness_checks(
    repository: OrderRepository,
    notifier: Notifier,
    *,
    now: datetime | None = None,
    policy: ReminderPolicy | None = None,
) -> ReadinessCheckResult:
    """Open the readiness track for bookings starting within the lead window."""
    if now is None:
        now = datetime.now(UTC)
    if policy is None:
        policy = ReminderPolicy.from_settings()

    candidates = await repository.list_readiness_check_candidates()
    outcome = ReadinessCheckResult(checked=len(candidates))

    due: list[BookingCandidate] = []
    for candidate in candidates:
        if not candidate.order.accepted_specialist_ids:
            continue
        starts_at = booking_starts_at(
            candidate.booking_date, candidate.booking_time, policy.timezone
        )
        if starts_at is None:
            continue
        if starts_at - policy.readiness_lead <= now < starts_at:
            due.append(candidate)
    outcome.notified = len(due)

    for candidate in due:
        try:
            outcome.results.append(
                await _send_readiness_check(
                    repository, notifier, candidate, now=now, policy=policy
                )
            )
        except Exception as exc:
            logger.exception("Error processing readiness check for order %s", candidate.order.id)
            outcome.results.append(
                {"orderId": candidate.order.id, "success": False, "error": str(exc)}
            )
    if due:
        live_log.push("readiness", f"readiness checks sent={len(due)}")
    return outcome
