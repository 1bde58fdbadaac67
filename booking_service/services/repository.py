"""
Order Record Store access.

Components never reach for a global session: they receive an ``OrderRepository``.
``SqlOrderRepository`` is the production implementation over SQLAlchemy async
sessions; every write is a single row-scoped UPDATE committed on its own.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from booking_service.db import models as m
from booking_service.services.order_state import OrderSnapshot, as_utc

UTC = timezone.utc
logger = logging.getLogger(__name__)

__all__ = [
    "StoreError",
    "StoreUnavailableError",
    "StoreWriteError",
    "AssignmentRecord",
    "SpecialistRecord",
    "ActiveAssignment",
    "BookingCandidate",
    "OrderRepository",
    "SqlOrderRepository",
]


class StoreError(Exception):
    """Base error of the order store."""


class StoreUnavailableError(StoreError):
    """The store could not be read at all; fatal for a sweep invocation."""


class StoreWriteError(StoreError):
    """A single row could not be written."""

    def __init__(self, order_id: int | None, message: str) -> None:
        super().__init__(message)
        self.order_id = order_id


@dataclass(frozen=True, slots=True)
class AssignmentRecord:
    id: int
    order_id: int
    specialist_id: int
    is_accepted: Optional[bool] = None
    quoted_price: Optional[Decimal] = None
    quoted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class SpecialistRecord:
    id: int
    name: str
    phone: Optional[str] = None
    company_id: Optional[int] = None
    is_active: bool = True
    offline_until: Optional[datetime] = None
    current_order_id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class ActiveAssignment:
    specialist_id: int
    order_id: int
    status: m.OrderStatus
    tracking_stage: Optional[m.TrackingStage]
    accepted_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class BookingCandidate:
    """Upcoming order waiting for its readiness check to be sent."""

    order: OrderSnapshot
    booking_date: Any
    booking_time: Optional[str]


class OrderRepository(Protocol):
    async def list_orders(
        self, order_ids: Optional[Sequence[int]] = None
    ) -> list[OrderSnapshot]: ...

    async def update_order(
        self,
        order_id: int,
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool: ...

    async def list_readiness_reminder_candidates(
        self, *, now: datetime, cooldown: timedelta, max_reminders: int
    ) -> list[OrderSnapshot]: ...

    async def list_movement_reminder_candidates(
        self, *, now: datetime, cooldown: timedelta, max_reminders: int
    ) -> list[OrderSnapshot]: ...

    async def list_readiness_check_candidates(self) -> list[BookingCandidate]: ...

    async def list_specialists(
        self,
        specialist_ids: Optional[Sequence[int]] = None,
        *,
        company_id: Optional[int] = None,
    ) -> list[SpecialistRecord]: ...

    async def latest_device_activity(
        self, specialist_ids: Sequence[int]
    ) -> dict[int, Optional[datetime]]: ...

    async def list_assignments_since(
        self, specialist_ids: Sequence[int], since: datetime
    ) -> list[AssignmentRecord]: ...

    async def list_active_assignments(
        self, specialist_ids: Sequence[int]
    ) -> list[ActiveAssignment]: ...

    async def list_assignments(self, order_id: int) -> list[AssignmentRecord]: ...

    async def insert_assignment(
        self, order_id: int, specialist_id: int, *, now: datetime
    ) -> AssignmentRecord: ...

    async def update_assignment(
        self,
        assignment_id: int,
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> bool: ...

    async def release_acceptances(
        self, order_id: int, specialist_ids: Sequence[int]
    ) -> int: ...

    async def set_current_order(
        self,
        specialist_id: int,
        order_id: Optional[int],
        *,
        expected: Any = ...,
    ) -> bool: ...

    async def list_stale_current_orders(self) -> list[tuple[int, int]]: ...


# ===== SQLAlchemy implementation =====

_ORDER_COLUMNS = tuple(
    getattr(m.orders, name) for name in OrderSnapshot.field_names()
)


def _snapshot_from_row(row: Any, accepted: dict[int, list[int]] | None = None) -> OrderSnapshot:
    ids = (accepted or {}).get(row.id, ())
    return OrderSnapshot.from_row(row, accepted_specialist_ids=ids)


def _guard_clause(table: Any, expected: Mapping[str, Any]) -> list[Any]:
    clauses = []
    for name, value in expected.items():
        column = getattr(table, name)
        if value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == value)
    return clauses


class SqlOrderRepository:
    """``OrderRepository`` over an ``async_sessionmaker``."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    # ---- orders ----

    async def list_orders(
        self, order_ids: Optional[Sequence[int]] = None
    ) -> list[OrderSnapshot]:
        stmt = select(*_ORDER_COLUMNS).order_by(m.orders.id.asc())
        if order_ids is not None:
            stmt = stmt.where(m.orders.id.in_(list(order_ids)))
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                accepted = await self._accepted_by_order(session, [row.id for row in rows])
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"orders read failed: {exc}") from exc
        return [_snapshot_from_row(row, accepted) for row in rows]

    async def update_order(
        self,
        order_id: int,
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        stamp = now or datetime.now(UTC)
        stmt = (
            update(m.orders)
            .where(m.orders.id == order_id, *_guard_clause(m.orders, expected or {}))
            .values(**dict(values), updated_at=stamp)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(order_id, f"order#{order_id} update failed: {exc}") from exc
        return (result.rowcount or 0) > 0

    async def _accepted_by_order(self, session, order_ids: list[int]) -> dict[int, list[int]]:
        if not order_ids:
            return {}
        rows = await session.execute(
            select(m.order_specialists.order_id, m.order_specialists.specialist_id)
            .where(
                m.order_specialists.order_id.in_(order_ids),
                m.order_specialists.is_accepted.is_(True),
            )
            .order_by(m.order_specialists.id.asc())
        )
        accepted: dict[int, list[int]] = {}
        for order_id, specialist_id in rows.all():
            accepted.setdefault(order_id, []).append(specialist_id)
        return accepted

    async def _reminder_candidates(self, *conditions: Any) -> list[OrderSnapshot]:
        has_accepted = (
            select(m.order_specialists.id)
            .where(
                m.order_specialists.order_id == m.orders.id,
                m.order_specialists.is_accepted.is_(True),
            )
            .exists()
        )
        stmt = (
            select(*_ORDER_COLUMNS)
            .where(m.orders.status == m.OrderStatus.UPCOMING, has_accepted, *conditions)
            .order_by(m.orders.id.asc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                accepted = await self._accepted_by_order(session, [row.id for row in rows])
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"reminder candidates read failed: {exc}") from exc
        return [_snapshot_from_row(row, accepted) for row in rows]

    async def list_readiness_reminder_candidates(
        self, *, now: datetime, cooldown: timedelta, max_reminders: int
    ) -> list[OrderSnapshot]:
        threshold = now - cooldown
        return await self._reminder_candidates(
            m.orders.specialist_readiness_status == m.ReadinessStatus.PENDING,
            m.orders.readiness_reminder_count < max_reminders,
            or_(
                m.orders.readiness_last_reminder_at.is_(None),
                m.orders.readiness_last_reminder_at < threshold,
            ),
        )

    async def list_movement_reminder_candidates(
        self, *, now: datetime, cooldown: timedelta, max_reminders: int
    ) -> list[OrderSnapshot]:
        threshold = now - cooldown
        return await self._reminder_candidates(
            m.orders.specialist_readiness_status == m.ReadinessStatus.READY,
            m.orders.tracking_stage.is_(None),
            m.orders.movement_reminder_count < max_reminders,
            or_(
                m.orders.movement_last_reminder_at.is_(None),
                m.orders.movement_last_reminder_at < threshold,
            ),
        )

    async def list_readiness_check_candidates(self) -> list[BookingCandidate]:
        has_accepted = (
            select(m.order_specialists.id)
            .where(
                m.order_specialists.order_id == m.orders.id,
                m.order_specialists.is_accepted.is_(True),
            )
            .exists()
        )
        stmt = (
            select(*_ORDER_COLUMNS, m.orders.booking_date, m.orders.booking_time)
            .where(
                m.orders.status == m.OrderStatus.UPCOMING,
                m.orders.booking_date.is_not(None),
                m.orders.booking_time.is_not(None),
                m.orders.readiness_check_sent_at.is_(None),
                has_accepted,
            )
            .order_by(m.orders.id.asc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                accepted = await self._accepted_by_order(session, [row.id for row in rows])
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"readiness check read failed: {exc}") from exc
        return [
            BookingCandidate(
                order=_snapshot_from_row(row, accepted),
                booking_date=row.booking_date,
                booking_time=row.booking_time,
            )
            for row in rows
        ]

    # ---- specialists / presence ----

    async def list_specialists(
        self,
        specialist_ids: Optional[Sequence[int]] = None,
        *,
        company_id: Optional[int] = None,
    ) -> list[SpecialistRecord]:
        stmt = select(
            m.specialists.id,
            m.specialists.name,
            m.specialists.phone,
            m.specialists.company_id,
            m.specialists.is_active,
            m.specialists.offline_until,
            m.specialists.current_order_id,
        ).order_by(m.specialists.name.asc(), m.specialists.id.asc())
        if specialist_ids is not None:
            stmt = stmt.where(m.specialists.id.in_(list(specialist_ids)))
        if company_id is not None:
            stmt = stmt.where(m.specialists.company_id == company_id)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"specialists read failed: {exc}") from exc
        return [
            SpecialistRecord(
                id=row.id,
                name=row.name,
                phone=row.phone,
                company_id=row.company_id,
                is_active=bool(row.is_active),
                offline_until=as_utc(row.offline_until),
                current_order_id=row.current_order_id,
            )
            for row in rows
        ]

    async def latest_device_activity(
        self, specialist_ids: Sequence[int]
    ) -> dict[int, Optional[datetime]]:
        """Most recent ``last_used_at`` per specialist; only specialists with a token appear."""
        if not specialist_ids:
            return {}
        stmt = (
            select(
                m.device_tokens.specialist_id,
                func.max(m.device_tokens.last_used_at).label("last_used_at"),
            )
            .where(m.device_tokens.specialist_id.in_(list(specialist_ids)))
            .group_by(m.device_tokens.specialist_id)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"device tokens read failed: {exc}") from exc
        return {row.specialist_id: as_utc(row.last_used_at) for row in rows}

    async def list_assignments_since(
        self, specialist_ids: Sequence[int], since: datetime
    ) -> list[AssignmentRecord]:
        if not specialist_ids:
            return []
        stmt = select(m.order_specialists).where(
            m.order_specialists.specialist_id.in_(list(specialist_ids)),
            m.order_specialists.created_at >= since,
        )
        return await self._read_assignments(stmt)

    async def list_assignments(self, order_id: int) -> list[AssignmentRecord]:
        stmt = (
            select(m.order_specialists)
            .where(m.order_specialists.order_id == order_id)
            .order_by(m.order_specialists.id.asc())
        )
        return await self._read_assignments(stmt)

    async def _read_assignments(self, stmt: Any) -> list[AssignmentRecord]:
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"assignments read failed: {exc}") from exc
        return [
            AssignmentRecord(
                id=row.id,
                order_id=row.order_id,
                specialist_id=row.specialist_id,
                is_accepted=row.is_accepted,
                quoted_price=row.quoted_price,
                quoted_at=as_utc(row.quoted_at),
                rejected_at=as_utc(row.rejected_at),
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]

    async def list_active_assignments(
        self, specialist_ids: Sequence[int]
    ) -> list[ActiveAssignment]:
        if not specialist_ids:
            return []
        stmt = (
            select(
                m.order_specialists.specialist_id,
                m.orders.id.label("order_id"),
                m.orders.status,
                m.orders.tracking_stage,
                m.order_specialists.quoted_at,
            )
            .join(m.orders, m.orders.id == m.order_specialists.order_id)
            .where(
                m.order_specialists.specialist_id.in_(list(specialist_ids)),
                m.order_specialists.is_accepted.is_(True),
                m.orders.status.in_(tuple(m.ACTIVE_STATUSES)),
            )
            .order_by(m.order_specialists.id.asc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"active assignments read failed: {exc}") from exc
        return [
            ActiveAssignment(
                specialist_id=row.specialist_id,
                order_id=row.order_id,
                status=m.OrderStatus(row.status),
                tracking_stage=m.TrackingStage(row.tracking_stage) if row.tracking_stage else None,
                accepted_at=as_utc(row.quoted_at),
            )
            for row in rows
        ]

    # ---- assignment writes ----

    async def insert_assignment(
        self, order_id: int, specialist_id: int, *, now: datetime
    ) -> AssignmentRecord:
        try:
            async with self._session_factory() as session:
                row = m.order_specialists(
                    order_id=order_id, specialist_id=specialist_id, created_at=now
                )
                session.add(row)
                await session.commit()
                assignment_id = row.id
        except SQLAlchemyError as exc:
            raise StoreWriteError(order_id, f"assignment insert failed: {exc}") from exc
        return AssignmentRecord(
            id=assignment_id, order_id=order_id, specialist_id=specialist_id, created_at=now
        )

    async def update_assignment(
        self,
        assignment_id: int,
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        stmt = (
            update(m.order_specialists)
            .where(
                m.order_specialists.id == assignment_id,
                *_guard_clause(m.order_specialists, expected or {}),
            )
            .values(**dict(values))
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(None, f"assignment#{assignment_id} update failed: {exc}") from exc
        return (result.rowcount or 0) > 0

    async def release_acceptances(self, order_id: int, specialist_ids: Sequence[int]) -> int:
        """Mark the listed acceptances of *order_id* as abandoned (``is_accepted = false``).

        Only rows still accepted are touched; returns the number released.
        """
        if not specialist_ids:
            return 0
        stmt = (
            update(m.order_specialists)
            .where(
                m.order_specialists.order_id == order_id,
                m.order_specialists.specialist_id.in_(tuple(specialist_ids)),
                m.order_specialists.is_accepted.is_(True),
            )
            .values(is_accepted=False)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(order_id, f"order#{order_id} acceptance release failed: {exc}") from exc
        return result.rowcount or 0

    async def set_current_order(
        self,
        specialist_id: int,
        order_id: Optional[int],
        *,
        expected: Any = ...,
    ) -> bool:
        conditions = [m.specialists.id == specialist_id]
        if expected is not ...:
            conditions.extend(_guard_clause(m.specialists, {"current_order_id": expected}))
        stmt = (
            update(m.specialists)
            .where(*conditions)
            .values(current_order_id=order_id, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(order_id, f"specialist#{specialist_id} pointer update failed: {exc}") from exc
        return (result.rowcount or 0) > 0

    async def list_stale_current_orders(self) -> list[tuple[int, int]]:
        """(specialist_id, current_order_id) pairs whose pointer no longer matches an active acceptance."""
        accepted_active = (
            select(m.order_specialists.id)
            .join(m.orders, m.orders.id == m.order_specialists.order_id)
            .where(
                m.order_specialists.specialist_id == m.specialists.id,
                m.order_specialists.order_id == m.specialists.current_order_id,
                m.order_specialists.is_accepted.is_(True),
                m.orders.status.in_(tuple(m.ACTIVE_STATUSES)),
            )
            .exists()
        )
        stmt = (
            select(m.specialists.id, m.specialists.current_order_id)
            .where(and_(m.specialists.current_order_id.is_not(None), ~accepted_active))
            .order_by(m.specialists.id.asc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"specialist pointers read failed: {exc}") from exc
        return [(row.id, row.current_order_id) for row in rows]


def accepted_ids(assignments: Iterable[AssignmentRecord]) -> list[int]:
    return [a.specialist_id for a in assignments if a.is_accepted is True]
