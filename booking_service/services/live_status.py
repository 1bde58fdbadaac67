"""
Live status of specialists, derived from indirect signals.

Precedence: manual ``is_active`` (and ``offline_until``) -> active accepted
assignment -> device/activity recency. An active order always wins over recency.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from booking_service.config import settings
from booking_service.db import models as m
from booking_service.services.repository import (
    ActiveAssignment,
    AssignmentRecord,
    OrderRepository,
    SpecialistRecord,
)

UTC = timezone.utc
logger = logging.getLogger("live_status")

__all__ = [
    "NotificationResponse",
    "SpecialistLiveStatus",
    "status_for_assignment",
    "pick_active_assignment",
    "resolve_presence",
    "last_notification_response",
    "start_of_day",
    "derive_live_status",
]

_WORKING_STAGES = frozenset(
    {
        m.TrackingStage.ARRIVED,
        m.TrackingStage.WAITING,
        m.TrackingStage.WORKING,
        m.TrackingStage.INVOICE_REQUESTED,
    }
)
# Для выбора одного заказа, если активных несколько
_PRESENCE_RANK = {
    m.PresenceStatus.WORKING: 3,
    m.PresenceStatus.ON_THE_WAY: 2,
    m.PresenceStatus.BUSY: 1,
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class NotificationResponse:
    time: Optional[datetime] = None
    action: Optional[m.NotificationAction] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "time": _iso(self.time),
            "action": self.action.value if self.action else None,
        }


@dataclass(frozen=True, slots=True)
class SpecialistLiveStatus:
    id: int
    name: str
    phone: Optional[str]
    is_active: bool
    current_order_id: Optional[int]
    active_order_id: Optional[int]
    last_token_used: Optional[datetime]
    has_device_token: bool
    status: m.PresenceStatus
    accepted_today: int = 0
    rejected_today: int = 0
    last_notification_status: NotificationResponse = field(default_factory=NotificationResponse)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "is_active": self.is_active,
            "current_order_id": self.current_order_id,
            "active_order_id": self.active_order_id,
            "last_token_used": _iso(self.last_token_used),
            "has_device_token": self.has_device_token,
            "status": self.status.value,
            "accepted_today": self.accepted_today,
            "rejected_today": self.rejected_today,
            "last_notification_status": self.last_notification_status.as_dict(),
        }


def status_for_assignment(assignment: ActiveAssignment) -> m.PresenceStatus:
    stage = assignment.tracking_stage
    if stage == m.TrackingStage.MOVING:
        return m.PresenceStatus.ON_THE_WAY
    if stage in _WORKING_STAGES:
        return m.PresenceStatus.WORKING
    if stage is None and assignment.status == m.OrderStatus.IN_PROGRESS:
        return m.PresenceStatus.WORKING
    return m.PresenceStatus.BUSY


def pick_active_assignment(
    assignments: Iterable[ActiveAssignment],
) -> Optional[ActiveAssignment]:
    """The most advanced active assignment; ties go to the lowest order id."""
    best: Optional[ActiveAssignment] = None
    best_key: tuple[int, int] | None = None
    for assignment in assignments:
        key = (_PRESENCE_RANK[status_for_assignment(assignment)], -assignment.order_id)
        if best_key is None or key > best_key:
            best, best_key = assignment, key
    return best


def resolve_presence(
    *,
    is_active: bool,
    offline_until: Optional[datetime],
    active: Optional[ActiveAssignment],
    has_device_token: bool,
    last_seen: Optional[datetime],
    now: datetime,
    freshness: timedelta,
) -> m.PresenceStatus:
    if not is_active:
        return m.PresenceStatus.OFFLINE
    if offline_until is not None and offline_until > now:
        return m.PresenceStatus.OFFLINE
    if active is not None:
        return status_for_assignment(active)
    if not has_device_token:
        return m.PresenceStatus.NOT_LOGGED_IN
    if last_seen is not None and now - last_seen <= freshness:
        return m.PresenceStatus.ONLINE
    return m.PresenceStatus.OFFLINE


def _response_time(record: AssignmentRecord) -> Optional[datetime]:
    return record.quoted_at or record.rejected_at


def last_notification_response(records: Sequence[AssignmentRecord]) -> NotificationResponse:
    """Kind and time of the latest response among today's offers."""
    if not records:
        return NotificationResponse()
    responded = [r for r in records if _response_time(r) is not None]
    if not responded:
        return NotificationResponse(None, m.NotificationAction.NO_RESPONSE)
    latest = max(responded, key=lambda r: (_response_time(r), r.id))
    if latest.is_accepted is False:
        return NotificationResponse(_response_time(latest), m.NotificationAction.IGNORED)
    return NotificationResponse(_response_time(latest), m.NotificationAction.RECEIVED)


def start_of_day(now: datetime, tz_name: str) -> datetime:
    """Local midnight of *now*'s calendar day, as UTC."""
    tz = ZoneInfo(tz_name)
    local = now.astimezone(tz)
    return datetime.combine(local.date(), time(0), tzinfo=tz).astimezone(UTC)


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


async def derive_live_status(
    repository: OrderRepository,
    specialist_ids: Optional[Sequence[int]] = None,
    *,
    company_id: Optional[int] = None,
    now: Optional[datetime] = None,
    freshness: Optional[timedelta] = None,
    tz_name: Optional[str] = None,
) -> list[SpecialistLiveStatus]:
    """Presence for the given specialists, or for everyone in *company_id*.

    Pure read. Missing related rows (no device, no offers) are normal input.
    """
    if now is None:
        now = datetime.now(UTC)
    if freshness is None:
        freshness = timedelta(minutes=settings.presence_freshness_minutes)
    since = start_of_day(now, tz_name or settings.timezone)

    specialists: list[SpecialistRecord] = await repository.list_specialists(
        specialist_ids, company_id=company_id
    )
    ids = [s.id for s in specialists]
    devices = await repository.latest_device_activity(ids)
    today = await repository.list_assignments_since(ids, since)
    active = await repository.list_active_assignments(ids)

    today_by_specialist: dict[int, list[AssignmentRecord]] = {}
    for record in today:
        today_by_specialist.setdefault(record.specialist_id, []).append(record)
    active_by_specialist: dict[int, list[ActiveAssignment]] = {}
    for assignment in active:
        active_by_specialist.setdefault(assignment.specialist_id, []).append(assignment)

    result: list[SpecialistLiveStatus] = []
    for spec in specialists:
        records = today_by_specialist.get(spec.id, [])
        current = pick_active_assignment(active_by_specialist.get(spec.id, ()))
        has_token = spec.id in devices
        last_used = devices.get(spec.id)
        last_activity = _latest(*(_response_time(r) for r in records))
        status = resolve_presence(
            is_active=spec.is_active,
            offline_until=spec.offline_until,
            active=current,
            has_device_token=has_token,
            last_seen=_latest(last_used, last_activity),
            now=now,
            freshness=freshness,
        )
        if current is not None and spec.current_order_id != current.order_id:
            logger.debug(
                "specialist#%s pointer %s differs from active order %s",
                spec.id,
                spec.current_order_id,
                current.order_id,
            )
        result.append(
            SpecialistLiveStatus(
                id=spec.id,
                name=spec.name,
                phone=spec.phone,
                is_active=spec.is_active,
                current_order_id=spec.current_order_id,
                active_order_id=current.order_id if current else None,
                last_token_used=last_used,
                has_device_token=has_token,
                status=status,
                accepted_today=sum(1 for r in records if r.is_accepted is True),
                rejected_today=sum(1 for r in records if r.rejected_at is not None),
                last_notification_status=last_notification_response(records),
            )
        )
    return result
