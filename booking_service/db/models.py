from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, metadata

__all__ = [
    "metadata",
    "OrderStatus",
    "TrackingStage",
    "ReadinessStatus",
    "BookingSlot",
    "PresenceStatus",
    "NotificationAction",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "orders",
    "order_specialists",
    "specialists",
    "device_tokens",
    "notifications_outbox",
]


# ===== Enums =====


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    UPCOMING = "upcoming"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TrackingStage(str, enum.Enum):
    MOVING = "moving"
    ARRIVED = "arrived"
    WAITING = "waiting"
    WORKING = "working"
    INVOICE_REQUESTED = "invoice_requested"
    PAYMENT_RECEIVED = "payment_received"


class ReadinessStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    NOT_READY = "not_ready"
    NO_RESPONSE = "no_response"
    NEEDS_REASSIGNMENT = "needs_reassignment"


class BookingSlot(str, enum.Enum):
    """Named booking slots and the local hour each one starts at."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @property
    def hour(self) -> int:
        return _SLOT_HOURS[self]

    @classmethod
    def hour_for(cls, value: str | None) -> int:
        try:
            return cls(value).hour
        except ValueError:
            return DEFAULT_SLOT_HOUR


_SLOT_HOURS = {
    BookingSlot.MORNING: 9,
    BookingSlot.AFTERNOON: 15,
    BookingSlot.EVENING: 20,
}
DEFAULT_SLOT_HOUR = 12


class PresenceStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    NOT_LOGGED_IN = "not_logged_in"
    ON_THE_WAY = "on_the_way"
    WORKING = "working"


class NotificationAction(str, enum.Enum):
    RECEIVED = "received"
    IGNORED = "ignored"
    NO_RESPONSE = "no_response"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({OrderStatus.UPCOMING, OrderStatus.IN_PROGRESS})


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Store lowercase values, not member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


# ===== Specialists =====


class specialists(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    company_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    offline_until: Mapped[Optional[datetime]]
    # Denormalized cache of the active assignment; order_specialists is authoritative
    current_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    device_tokens: Mapped[list["device_tokens"]] = relationship(
        back_populates="specialist", cascade="all, delete-orphan"
    )


class device_tokens(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    specialist_id: Mapped[int] = mapped_column(
        ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(16))
    last_used_at: Mapped[Optional[datetime]]
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    specialist: Mapped["specialists"] = relationship(back_populates="device_tokens")


# ===== Orders =====


class orders(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    company_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        server_default=OrderStatus.PENDING.value,
    )
    tracking_stage: Mapped[Optional[TrackingStage]] = mapped_column(
        _enum(TrackingStage, "tracking_stage"), nullable=True
    )
    waiting_started_at: Mapped[Optional[datetime]]
    waiting_ends_at: Mapped[Optional[datetime]]

    # Readiness / movement escalation
    specialist_readiness_status: Mapped[Optional[ReadinessStatus]] = mapped_column(
        _enum(ReadinessStatus, "readiness_status"), nullable=True
    )
    readiness_check_sent_at: Mapped[Optional[datetime]]
    readiness_reminder_count: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, server_default=text("0")
    )
    readiness_last_reminder_at: Mapped[Optional[datetime]]
    movement_reminder_count: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, server_default=text("0")
    )
    movement_last_reminder_at: Mapped[Optional[datetime]]
    readiness_penalty_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))

    # Слот визита; по нему считается момент отправки readiness check
    booking_date: Mapped[Optional[date]] = mapped_column(Date)
    booking_time: Mapped[Optional[str]] = mapped_column(String(16))

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    assignments: Mapped[list["order_specialists"]] = relationship(
        back_populates="order", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_orders__status_readiness", "status", "specialist_readiness_status"),
        Index("ix_orders__tracking_stage", "tracking_stage"),
    )


class order_specialists(Base):
    """Assignment of an order to a specialist (offer, quote, acceptance)."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    specialist_id: Mapped[int] = mapped_column(
        ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_accepted: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    quoted_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    quoted_at: Mapped[Optional[datetime]]
    rejected_at: Mapped[Optional[datetime]]
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), index=True)

    order: Mapped["orders"] = relationship(back_populates="assignments")

    __table_args__ = (
        Index("ix_order_specialists__specialist_accepted", "specialist_id", "is_accepted"),
    )


# ===== Notifications =====


class notifications_outbox(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    specialist_id: Mapped[int] = mapped_column(
        ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), index=True)
    processed_at: Mapped[Optional[datetime]]
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
