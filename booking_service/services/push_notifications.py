"""
Push notifications for specialists.

The core only needs ``notify(recipient_ids, title, body, data)``; transport,
retries and delivery receipts belong to whoever drains the outbox.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from booking_service.db import models as m
from booking_service.services import live_log

logger = logging.getLogger(__name__)

__all__ = [
    "NotificationEvent",
    "DeliveryResult",
    "Notifier",
    "OutboxNotifier",
    "NOTIFICATION_TEMPLATES",
    "render",
    "all_delivered",
]


class NotificationEvent(str, Enum):
    """События для уведомлений специалистов."""
    READINESS_CHECK = "readiness_check"
    READINESS_REMINDER = "readiness_reminder"
    MOVEMENT_REMINDER = "movement_reminder"


# (title, body) templates
NOTIFICATION_TEMPLATES: dict[NotificationEvent, tuple[str, str]] = {
    NotificationEvent.READINESS_CHECK: (
        "Readiness check ⏰",
        "Are you ready for order {order_number} in one hour? Please confirm now.",
    ),
    NotificationEvent.READINESS_REMINDER: (
        "Reminder {count}/{total} - confirm readiness ⏰",
        "Please confirm your readiness for order {order_number}. "
        "This is reminder {count} of {total}.",
    ),
    NotificationEvent.MOVEMENT_REMINDER: (
        "Reminder {count}/{total} - start moving 🚗",
        'Please tap "Start moving" for order {order_number}. '
        "This is reminder {count} of {total}.",
    ),
}


def render(event: NotificationEvent, **kwargs: Any) -> tuple[str, str]:
    title, body = NOTIFICATION_TEMPLATES[event]
    try:
        return title.format(**kwargs), body.format(**kwargs)
    except KeyError as exc:
        live_log.push(
            "notifications",
            f"Template error for {event.value}: missing key {exc}",
            level="ERROR",
        )
        return event.value, event.value


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    recipient_id: int
    success: bool
    error: Optional[str] = None


class Notifier(Protocol):
    async def notify(
        self,
        recipient_ids: Sequence[int],
        title: str,
        body: str,
        data: Mapping[str, str],
    ) -> list[DeliveryResult]: ...


def all_delivered(results: Sequence[DeliveryResult]) -> bool:
    return bool(results) and all(result.success for result in results)


class OutboxNotifier:
    """Queue one ``notifications_outbox`` row per recipient."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def notify(
        self,
        recipient_ids: Sequence[int],
        title: str,
        body: str,
        data: Mapping[str, str],
    ) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        event = str(data.get("type") or "notification")
        for recipient_id in recipient_ids:
            try:
                async with self._session_factory() as session:
                    await session.execute(
                        insert(m.notifications_outbox).values(
                            specialist_id=recipient_id,
                            event=event,
                            payload={"title": title, "body": body, "data": dict(data)},
                        )
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.warning(
                    "Failed to queue %s for specialist#%s: %s", event, recipient_id, exc
                )
                results.append(DeliveryResult(recipient_id, False, str(exc)))
                continue
            live_log.push("notifications", f"Queued {event} for specialist#{recipient_id}")
            results.append(DeliveryResult(recipient_id, True))
        return results
