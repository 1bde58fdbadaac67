"""
Order state model and the invariant set checked by the reconciler.

Every invariant is a pure function ``check_*(snapshot, now) -> InvariantCheck``.
A violated check carries the minimal corrective write; applying the fixes in
``INVARIANT_ORDER`` to a snapshot leaves it with no violations.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional

from booking_service.db import models as m

UTC = timezone.utc

__all__ = [
    "OrderSnapshot",
    "InvariantCheck",
    "Category",
    "INVARIANT_ORDER",
    "CATEGORY_NAMES",
    "POOL_RESET",
    "check_stuck_waiting",
    "check_waiting_without_times",
    "check_cancelled_with_tracking",
    "check_pending_with_tracking",
    "check_working_with_waiting",
    "check_payment_not_completed",
    "check_completed_without_payment",
    "evaluate",
    "violations",
    "as_utc",
]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive datetimes (sqlite drivers) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _coerce_enum(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    return enum_cls(value)


@dataclass(frozen=True, slots=True)
class OrderSnapshot:
    id: int
    order_number: str = ""
    status: m.OrderStatus = m.OrderStatus.PENDING
    tracking_stage: Optional[m.TrackingStage] = None
    waiting_started_at: Optional[datetime] = None
    waiting_ends_at: Optional[datetime] = None
    specialist_readiness_status: Optional[m.ReadinessStatus] = None
    readiness_check_sent_at: Optional[datetime] = None
    readiness_reminder_count: int = 0
    readiness_last_reminder_at: Optional[datetime] = None
    movement_reminder_count: int = 0
    movement_last_reminder_at: Optional[datetime] = None
    readiness_penalty_percentage: Optional[Decimal] = None
    company_id: Optional[int] = None
    updated_at: Optional[datetime] = None
    # Accepted specialists, attached by the repository when the read joins assignments
    accepted_specialist_ids: tuple[int, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", _coerce_enum(m.OrderStatus, self.status))
        object.__setattr__(
            self, "tracking_stage", _coerce_enum(m.TrackingStage, self.tracking_stage)
        )
        object.__setattr__(
            self,
            "specialist_readiness_status",
            _coerce_enum(m.ReadinessStatus, self.specialist_readiness_status),
        )
        for name in (
            "waiting_started_at",
            "waiting_ends_at",
            "readiness_check_sent_at",
            "readiness_last_reminder_at",
            "movement_last_reminder_at",
            "updated_at",
        ):
            object.__setattr__(self, name, as_utc(getattr(self, name)))
        object.__setattr__(self, "readiness_reminder_count", int(self.readiness_reminder_count or 0))
        object.__setattr__(self, "movement_reminder_count", int(self.movement_reminder_count or 0))

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.name != "accepted_specialist_ids")

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        accepted_specialist_ids: Iterable[int] = (),
    ) -> "OrderSnapshot":
        values = {name: data[name] for name in cls.field_names() if name in data}
        return cls(**values, accepted_specialist_ids=tuple(accepted_specialist_ids))

    @classmethod
    def from_row(cls, row: Any, **kwargs: Any) -> "OrderSnapshot":
        """Build a snapshot from an ORM instance or a result row."""
        mapping = getattr(row, "_mapping", None)
        if mapping is None:
            mapping = {name: getattr(row, name) for name in cls.field_names() if hasattr(row, name)}
        return cls.from_mapping(mapping, **kwargs)

    def apply(self, values: Mapping[str, Any]) -> "OrderSnapshot":
        known = {k: v for k, v in values.items() if k in self.field_names()}
        return replace(self, **known)

    @property
    def is_terminal(self) -> bool:
        return self.status in m.TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class InvariantCheck:
    category: str
    violated: bool
    fix: Mapping[str, Any] = field(default_factory=dict)
    reason: str = ""
    # Fields read by the predicate; used as the compare-and-set guard of the fix
    guard: tuple[str, ...] = ()
    # Accepted assignments of the order must be released together with the fix
    release_acceptance: bool = False

    @classmethod
    def ok(cls, category: str) -> "InvariantCheck":
        return cls(category=category, violated=False)


class Category:
    STUCK_WAITING = "stuck_waiting"
    WAITING_WITHOUT_TIMES = "waiting_without_times"
    CANCELLED_WITH_TRACKING = "cancelled_with_tracking"
    PENDING_WITH_TRACKING = "pending_with_tracking"
    WORKING_WITH_WAITING = "working_with_waiting"
    PAYMENT_NOT_COMPLETED = "payment_not_completed"
    COMPLETED_WITHOUT_PAYMENT = "completed_without_payment"


# ===== Invariants =====


def check_cancelled_with_tracking(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """A cancelled order carries no tracking stage."""
    if order.status == m.OrderStatus.CANCELLED and order.tracking_stage is not None:
        return InvariantCheck(
            Category.CANCELLED_WITH_TRACKING,
            True,
            {"tracking_stage": None},
            "Cancelled order should not have tracking_stage",
            guard=("status", "tracking_stage"),
        )
    return InvariantCheck.ok(Category.CANCELLED_WITH_TRACKING)


def check_working_with_waiting(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """Working orders have no waiting window."""
    if order.tracking_stage == m.TrackingStage.WORKING and (
        order.waiting_started_at is not None or order.waiting_ends_at is not None
    ):
        return InvariantCheck(
            Category.WORKING_WITH_WAITING,
            True,
            {"waiting_started_at": None, "waiting_ends_at": None},
            "Working order should not have waiting times",
            guard=("tracking_stage", "waiting_started_at", "waiting_ends_at"),
        )
    return InvariantCheck.ok(Category.WORKING_WITH_WAITING)


def check_payment_not_completed(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """Stage -> status: payment received means the order is completed."""
    if (
        order.tracking_stage == m.TrackingStage.PAYMENT_RECEIVED
        and order.status != m.OrderStatus.COMPLETED
    ):
        return InvariantCheck(
            Category.PAYMENT_NOT_COMPLETED,
            True,
            {"status": m.OrderStatus.COMPLETED},
            "Payment received but order not completed",
            guard=("status", "tracking_stage"),
        )
    return InvariantCheck.ok(Category.PAYMENT_NOT_COMPLETED)


def check_completed_without_payment(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """Status -> stage: a completed order sits at payment_received."""
    if (
        order.status == m.OrderStatus.COMPLETED
        and order.tracking_stage != m.TrackingStage.PAYMENT_RECEIVED
    ):
        return InvariantCheck(
            Category.COMPLETED_WITHOUT_PAYMENT,
            True,
            {"tracking_stage": m.TrackingStage.PAYMENT_RECEIVED},
            "Completed order should be at payment_received",
            guard=("status", "tracking_stage"),
        )
    return InvariantCheck.ok(Category.COMPLETED_WITHOUT_PAYMENT)


def check_pending_with_tracking(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """A pending order has not started tracking."""
    if order.status == m.OrderStatus.PENDING and order.tracking_stage is not None:
        return InvariantCheck(
            Category.PENDING_WITH_TRACKING,
            True,
            {"tracking_stage": None},
            "Pending order should not have tracking_stage",
            guard=("status", "tracking_stage"),
        )
    return InvariantCheck.ok(Category.PENDING_WITH_TRACKING)


def check_waiting_without_times(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """The waiting stage needs both window timestamps, otherwise fall back to arrived."""
    if order.tracking_stage == m.TrackingStage.WAITING and (
        order.waiting_started_at is None or order.waiting_ends_at is None
    ):
        return InvariantCheck(
            Category.WAITING_WITHOUT_TIMES,
            True,
            {
                "tracking_stage": m.TrackingStage.ARRIVED,
                "waiting_started_at": None,
                "waiting_ends_at": None,
            },
            "Waiting order is missing start or end time",
            guard=("tracking_stage", "waiting_started_at", "waiting_ends_at"),
        )
    return InvariantCheck.ok(Category.WAITING_WITHOUT_TIMES)


# Escalation fields back to their initial values when an order returns to the pool
POOL_RESET: dict[str, Any] = {
    "specialist_readiness_status": None,
    "readiness_check_sent_at": None,
    "readiness_reminder_count": 0,
    "readiness_last_reminder_at": None,
    "movement_reminder_count": 0,
    "movement_last_reminder_at": None,
    "readiness_penalty_percentage": None,
}


def check_stuck_waiting(order: OrderSnapshot, now: datetime) -> InvariantCheck:
    """A non-terminal order past its waiting deadline goes back to the pool.

    The order starts over: readiness and movement escalation state is reset so the
    next acceptance gets a fresh readiness check. Releasing the abandoned acceptance
    is an assignment write, so the check only flags it with ``release_acceptance``.

    Terminal orders are left to the cancelled and completed checks, so a cancelled order is never revived.
    """
    if (
        order.tracking_stage == m.TrackingStage.WAITING
        and order.waiting_ends_at is not None
        and order.waiting_ends_at < now
        and not order.is_terminal
    ):
        return InvariantCheck(
            Category.STUCK_WAITING,
            True,
            {
                "status": m.OrderStatus.PENDING,
                "tracking_stage": None,
                "waiting_started_at": None,
                "waiting_ends_at": None,
                **POOL_RESET,
            },
            "Order stuck in waiting past the deadline",
            guard=("status", "tracking_stage", "waiting_ends_at"),
            release_acceptance=True,
        )
    return InvariantCheck.ok(Category.STUCK_WAITING)


Check = Callable[[OrderSnapshot, datetime], InvariantCheck]

# Порядок важен: stuck_waiting раньше pending_with_tracking, cancelled раньше payment
INVARIANT_ORDER: tuple[Check, ...] = (
    check_stuck_waiting,
    check_waiting_without_times,
    check_cancelled_with_tracking,
    check_pending_with_tracking,
    check_working_with_waiting,
    check_payment_not_completed,
    check_completed_without_payment,
)

CATEGORY_NAMES: tuple[str, ...] = (
    Category.STUCK_WAITING,
    Category.WAITING_WITHOUT_TIMES,
    Category.CANCELLED_WITH_TRACKING,
    Category.PENDING_WITH_TRACKING,
    Category.WORKING_WITH_WAITING,
    Category.PAYMENT_NOT_COMPLETED,
    Category.COMPLETED_WITHOUT_PAYMENT,
)


def evaluate(order: OrderSnapshot, now: datetime) -> list[InvariantCheck]:
    """Run every invariant against *order* without folding fixes in."""
    return [check(order, now) for check in INVARIANT_ORDER]


def violations(order: OrderSnapshot, now: datetime) -> list[str]:
    return [result.category for result in evaluate(order, now) if result.violated]
