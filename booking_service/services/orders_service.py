"""
Client-side order actions.

Accept / reject an assignment, confirm readiness, move the tracking stage and cancel.
Every write goes through the repository as a guarded single-row update, so the
reconciler has nothing to repair after these actions.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from booking_service.config import settings
from booking_service.db import models as m
from booking_service.services.order_state import OrderSnapshot
from booking_service.services.repository import (
    AssignmentRecord,
    OrderRepository,
    accepted_ids,
)

UTC = timezone.utc
_log = logging.getLogger("orders")

__all__ = ["OrdersService", "OrderActionError"]

_IN_PROGRESS_STAGES = frozenset(
    {
        m.TrackingStage.MOVING,
        m.TrackingStage.ARRIVED,
        m.TrackingStage.WAITING,
        m.TrackingStage.WORKING,
        m.TrackingStage.INVOICE_REQUESTED,
    }
)
_AWAITING_READINESS = frozenset({m.ReadinessStatus.PENDING, m.ReadinessStatus.NO_RESPONSE})


class OrderActionError(Exception):
    """Client action refused; ``code`` is machine-readable."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code


class OrdersService:
    """Сервис для действий специалиста и диспетчера над заказом."""

    def __init__(
        self,
        repository: OrderRepository,
        *,
        waiting_window: Optional[timedelta] = None,
    ) -> None:
        self.repository = repository
        self.waiting_window = waiting_window or timedelta(
            minutes=settings.waiting_window_minutes
        )

    async def _load(self, order_id: int) -> OrderSnapshot:
        found = await self.repository.list_orders([order_id])
        if not found:
            raise OrderActionError("order_not_found", f"order#{order_id} not found")
        return found[0]

    async def _write(
        self,
        order: OrderSnapshot,
        values: dict[str, Any],
        expected: dict[str, Any],
        now: datetime,
    ) -> OrderSnapshot:
        applied = await self.repository.update_order(
            order.id, values, expected=expected, now=now
        )
        if not applied:
            _log.info("order#%s changed concurrently, write refused", order.id)
            raise OrderActionError("conflict", f"order#{order.id} changed concurrently")
        return order.apply(values)

    async def _own_assignment(
        self, order_id: int, specialist_id: int, now: datetime
    ) -> tuple[AssignmentRecord, list[AssignmentRecord]]:
        assignments = await self.repository.list_assignments(order_id)
        for assignment in assignments:
            if assignment.specialist_id == specialist_id:
                return assignment, assignments
        created = await self.repository.insert_assignment(order_id, specialist_id, now=now)
        return created, assignments + [created]

    async def _clear_pointers(self, order_id: int) -> None:
        for specialist_id in accepted_ids(await self.repository.list_assignments(order_id)):
            await self.repository.set_current_order(specialist_id, None, expected=order_id)

    async def accept_assignment(
        self,
        order_id: int,
        specialist_id: int,
        quoted_price: Optional[Decimal] = None,
        *,
        now: Optional[datetime] = None,
    ) -> OrderSnapshot:
        """Specialist accepts the order; only one acceptance per order."""
        now = now or datetime.now(UTC)
        _log.info("accept_assignment START: order=%s specialist=%s", order_id, specialist_id)
        order = await self._load(order_id)
        if order.is_terminal:
            raise OrderActionError("order_closed", f"order#{order_id} is {order.status.value}")

        own, assignments = await self._own_assignment(order_id, specialist_id, now)
        taken_by = [sid for sid in accepted_ids(assignments) if sid != specialist_id]
        if taken_by:
            _log.info("accept_assignment: order=%s already accepted by %s", order_id, taken_by)
            raise OrderActionError("already_accepted", f"order#{order_id} is taken")

        if own.is_accepted is not True:
            values: dict[str, Any] = {"is_accepted": True, "quoted_at": now, "rejected_at": None}
            if quoted_price is not None:
                values["quoted_price"] = quoted_price
            if not await self.repository.update_assignment(
                own.id, values, expected={"is_accepted": own.is_accepted}
            ):
                raise OrderActionError("conflict", f"assignment#{own.id} changed concurrently")

        if order.status == m.OrderStatus.PENDING:
            order = await self._write(
                order,
                {"status": m.OrderStatus.UPCOMING},
                {"status": m.OrderStatus.PENDING},
                now,
            )
        await self.repository.set_current_order(specialist_id, order_id)
        _log.info("accept_assignment SUCCESS: order=%s specialist=%s", order_id, specialist_id)
        return order

    async def reject_assignment(
        self,
        order_id: int,
        specialist_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> AssignmentRecord:
        now = now or datetime.now(UTC)
        await self._load(order_id)
        own, _ = await self._own_assignment(order_id, specialist_id, now)
        if own.is_accepted is True:
            raise OrderActionError("already_accepted", "accepted assignment cannot be rejected")
        if not await self.repository.update_assignment(
            own.id,
            {"is_accepted": False, "rejected_at": now},
            expected={"is_accepted": own.is_accepted},
        ):
            raise OrderActionError("conflict", f"assignment#{own.id} changed concurrently")
        _log.info("reject_assignment: order=%s specialist=%s", order_id, specialist_id)
        return AssignmentRecord(
            id=own.id,
            order_id=order_id,
            specialist_id=specialist_id,
            is_accepted=False,
            quoted_price=own.quoted_price,
            quoted_at=own.quoted_at,
            rejected_at=now,
            created_at=own.created_at,
        )

    async def confirm_readiness(
        self,
        order_id: int,
        ready: bool,
        *,
        now: Optional[datetime] = None,
    ) -> OrderSnapshot:
        now = now or datetime.now(UTC)
        order = await self._load(order_id)
        if order.specialist_readiness_status not in _AWAITING_READINESS:
            raise OrderActionError(
                "readiness_not_requested",
                f"order#{order_id} readiness is {order.specialist_readiness_status}",
            )
        target = m.ReadinessStatus.READY if ready else m.ReadinessStatus.NOT_READY
        return await self._write(
            order,
            {"specialist_readiness_status": target},
            {"specialist_readiness_status": order.specialist_readiness_status},
            now,
        )

    async def update_tracking_stage(
        self,
        order_id: int,
        stage: m.TrackingStage | str,
        *,
        now: Optional[datetime] = None,
    ) -> OrderSnapshot:
        """Move the order along the tracking stages keeping status and window consistent."""
        now = now or datetime.now(UTC)
        stage = m.TrackingStage(stage)
        order = await self._load(order_id)
        if order.is_terminal:
            raise OrderActionError("order_closed", f"order#{order_id} is {order.status.value}")
        if order.status == m.OrderStatus.PENDING:
            raise OrderActionError("not_assigned", f"order#{order_id} has no accepted specialist")

        values: dict[str, Any] = {"tracking_stage": stage}
        if stage == m.TrackingStage.WAITING:
            values["waiting_started_at"] = now
            values["waiting_ends_at"] = now + self.waiting_window
        else:
            values["waiting_started_at"] = None
            values["waiting_ends_at"] = None
        if stage in _IN_PROGRESS_STAGES:
            values["status"] = m.OrderStatus.IN_PROGRESS
        elif stage == m.TrackingStage.PAYMENT_RECEIVED:
            values["status"] = m.OrderStatus.COMPLETED

        updated = await self._write(
            order,
            values,
            {"status": order.status, "tracking_stage": order.tracking_stage},
            now,
        )
        if updated.status == m.OrderStatus.COMPLETED:
            await self._clear_pointers(order_id)
        _log.info("order#%s stage %s -> %s", order_id, order.tracking_stage, stage.value)
        return updated

    async def cancel_order(
        self,
        order_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> OrderSnapshot:
        now = now or datetime.now(UTC)
        order = await self._load(order_id)
        if order.status == m.OrderStatus.CANCELLED and order.tracking_stage is None:
            return order
        if order.status == m.OrderStatus.COMPLETED:
            raise OrderActionError("order_closed", f"order#{order_id} is completed")
        updated = await self._write(
            order,
            {
                "status": m.OrderStatus.CANCELLED,
                "tracking_stage": None,
                "waiting_started_at": None,
                "waiting_ends_at": None,
            },
            {"status": order.status, "tracking_stage": order.tracking_stage},
            now,
        )
        await self._clear_pointers(order_id)
        _log.info("order#%s cancelled", order_id)
        return updated
