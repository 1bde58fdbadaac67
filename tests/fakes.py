"""In-memory doubles for the order store and the notification dispatcher."""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

from booking_service.db import models as m
from booking_service.services.order_state import OrderSnapshot
from booking_service.services.push_notifications import DeliveryResult
from booking_service.services.repository import (
    ActiveAssignment,
    AssignmentRecord,
    BookingCandidate,
    SpecialistRecord,
    StoreUnavailableError,
    StoreWriteError,
)

UTC = timezone.utc
_MISSING = object()


class FakeOrderRepository:
    """``OrderRepository`` over dicts with the same compare-and-set semantics as SQL.

    Every method yields to the event loop once, so concurrent sweeps interleave
    between the read and the write the same way they would against a database.
    """

    def __init__(self) -> None:
        self.orders: dict[int, dict[str, Any]] = {}
        self.assignments: dict[int, AssignmentRecord] = {}
        self.specialists: dict[int, SpecialistRecord] = {}
        self.devices: dict[int, list[Optional[datetime]]] = {}
        self.writes: list[tuple[int, dict[str, Any]]] = []
        self.fail_reads = False
        self.fail_writes: set[int] = set()
        self._order_ids = itertools.count(1)
        self._assignment_ids = itertools.count(1)

    # ---- builders ----

    def add_order(self, **fields: Any) -> int:
        order_id = fields.pop("id", None) or next(self._order_ids)
        row: dict[str, Any] = {
            name: getattr(OrderSnapshot(id=order_id), name)
            for name in OrderSnapshot.field_names()
        }
        row["order_number"] = f"ORD-{order_id:04d}"
        row["booking_date"] = None
        row["booking_time"] = None
        row.update(fields)
        row["id"] = order_id
        normalized = OrderSnapshot.from_mapping(row)
        for name in OrderSnapshot.field_names():
            row[name] = getattr(normalized, name)
        self.orders[order_id] = row
        return order_id

    def add_specialist(self, specialist_id: int, name: str = "", **fields: Any) -> SpecialistRecord:
        record = SpecialistRecord(id=specialist_id, name=name or f"Specialist {specialist_id}", **fields)
        self.specialists[specialist_id] = record
        return record

    def add_assignment(
        self,
        order_id: int,
        specialist_id: int,
        *,
        is_accepted: Optional[bool] = True,
        quoted_at: Optional[datetime] = None,
        rejected_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> AssignmentRecord:
        record = AssignmentRecord(
            id=next(self._assignment_ids),
            order_id=order_id,
            specialist_id=specialist_id,
            is_accepted=is_accepted,
            quoted_at=quoted_at,
            rejected_at=rejected_at,
            created_at=created_at or datetime.now(UTC),
        )
        self.assignments[record.id] = record
        return record

    def add_device(self, specialist_id: int, last_used_at: Optional[datetime]) -> None:
        self.devices.setdefault(specialist_id, []).append(last_used_at)

    def order(self, order_id: int) -> OrderSnapshot:
        return self._snapshot(self.orders[order_id])

    # ---- helpers ----

    async def _tick(self) -> None:
        await asyncio.sleep(0)
        if self.fail_reads:
            raise StoreUnavailableError("store is down")

    def _accepted(self, order_id: int) -> tuple[int, ...]:
        return tuple(
            a.specialist_id
            for a in sorted(self.assignments.values(), key=lambda a: a.id)
            if a.order_id == order_id and a.is_accepted is True
        )

    def _snapshot(self, row: Mapping[str, Any]) -> OrderSnapshot:
        return OrderSnapshot.from_mapping(row, accepted_specialist_ids=self._accepted(row["id"]))

    @staticmethod
    def _matches(row: Mapping[str, Any], expected: Optional[Mapping[str, Any]]) -> bool:
        return all(row.get(name, _MISSING) == value for name, value in (expected or {}).items())

    # ---- orders ----

    async def list_orders(self, order_ids: Optional[Sequence[int]] = None) -> list[OrderSnapshot]:
        await self._tick()
        ids = sorted(self.orders) if order_ids is None else [i for i in sorted(order_ids) if i in self.orders]
        return [self._snapshot(self.orders[i]) for i in ids]

    async def update_order(
        self,
        order_id: int,
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        await asyncio.sleep(0)
        if order_id in self.fail_writes:
            raise StoreWriteError(order_id, f"order#{order_id} update failed: injected")
        row = self.orders.get(order_id)
        if row is None or not self._matches(row, expected):
            return False
        row.update(values)
        row["updated_at"] = now or datetime.now(UTC)
        self.writes.append((order_id, dict(values)))
        return True

    def _reminder_candidates(self, predicate) -> list[OrderSnapshot]:
        result = []
        for order_id in sorted(self.orders):
            row = self.orders[order_id]
            if row["status"] != m.OrderStatus.UPCOMING or not self._accepted(order_id):
                continue
            if predicate(row):
                result.append(self._snapshot(row))
        return result

    async def list_readiness_reminder_candidates(
        self, *, now: datetime, cooldown: timedelta, max_reminders: int
    ) -> list[OrderSnapshot]:
        await self._tick()
        threshold = now - cooldown
        return self._reminder_candidates(
            lambda row: row["specialist_readiness_status"] == m.ReadinessStatus.PENDING
            and row["readiness_reminder_count"] < max_reminders
            and (row["readiness_last_reminder_at"] is None or row["readiness_last_reminder_at"] < threshold)
        )

    async def list_movement_reminder_candidates(
        self, *, now: datetime, cooldown: timedelta, max_reminders: int
    ) -> list[OrderSnapshot]:
        await self._tick()
        threshold = now - cooldown
        return self._reminder_candidates(
            lambda row: row["specialist_readiness_status"] == m.ReadinessStatus.READY
            and row["tracking_stage"] is None
            and row["movement_reminder_count"] < max_reminders
            and (row["movement_last_reminder_at"] is None or row["movement_last_reminder_at"] < threshold)
        )

    async def list_readiness_check_candidates(self) -> list[BookingCandidate]:
        await self._tick()
        return [
            BookingCandidate(
                order=self._snapshot(row),
                booking_date=row["booking_date"],
                booking_time=row["booking_time"],
            )
            for row in (self.orders[i] for i in sorted(self.orders))
            if row["status"] == m.OrderStatus.UPCOMING
            and row["booking_date"] is not None
            and row["booking_time"] is not None
            and row["readiness_check_sent_at"] is None
            and self._accepted(row["id"])
        ]

    # ---- specialists / presence ----

    async def list_specialists(
        self,
        specialist_ids: Optional[Sequence[int]] = None,
        *,
        company_id: Optional[int] = None,
    ) -> list[SpecialistRecord]:
        await self._tick()
        records = [
            s
            for s in self.specialists.values()
            if (specialist_ids is None or s.id in specialist_ids)
            and (company_id is None or s.company_id == company_id)
        ]
        return sorted(records, key=lambda s: (s.name, s.id))

    async def latest_device_activity(self, specialist_ids: Sequence[int]) -> dict[int, Optional[datetime]]:
        await self._tick()
        result: dict[int, Optional[datetime]] = {}
        for specialist_id in specialist_ids:
            if specialist_id not in self.devices:
                continue
            used = [v for v in self.devices[specialist_id] if v is not None]
            result[specialist_id] = max(used) if used else None
        return result

    async def list_assignments_since(
        self, specialist_ids: Sequence[int], since: datetime
    ) -> list[AssignmentRecord]:
        await self._tick()
        return [
            a
            for a in self.assignments.values()
            if a.specialist_id in specialist_ids and a.created_at is not None and a.created_at >= since
        ]

    async def list_active_assignments(self, specialist_ids: Sequence[int]) -> list[ActiveAssignment]:
        await self._tick()
        result = []
        for a in sorted(self.assignments.values(), key=lambda a: a.id):
            row = self.orders.get(a.order_id)
            if a.specialist_id not in specialist_ids or a.is_accepted is not True or row is None:
                continue
            if row["status"] not in m.ACTIVE_STATUSES:
                continue
            result.append(
                ActiveAssignment(
                    specialist_id=a.specialist_id,
                    order_id=a.order_id,
                    status=m.OrderStatus(row["status"]),
                    tracking_stage=m.TrackingStage(row["tracking_stage"]) if row["tracking_stage"] else None,
                    accepted_at=a.quoted_at,
                )
            )
        return result

    # ---- assignments ----

    async def list_assignments(self, order_id: int) -> list[AssignmentRecord]:
        await self._tick()
        return [a for a in sorted(self.assignments.values(), key=lambda a: a.id) if a.order_id == order_id]

    async def insert_assignment(self, order_id: int, specialist_id: int, *, now: datetime) -> AssignmentRecord:
        await asyncio.sleep(0)
        return self.add_assignment(order_id, specialist_id, is_accepted=None, created_at=now)

    async def update_assignment(
        self,
        assignment_id: int,
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        await asyncio.sleep(0)
        current = self.assignments.get(assignment_id)
        if current is None:
            return False
        if not all(getattr(current, name) == value for name, value in (expected or {}).items()):
            return False
        self.assignments[assignment_id] = replace(current, **dict(values))
        return True

    async def release_acceptances(self, order_id: int, specialist_ids: Sequence[int]) -> int:
        await asyncio.sleep(0)
        if order_id in self.fail_writes:
            raise StoreWriteError(order_id, f"order#{order_id} acceptance release failed: injected")
        released = 0
        for assignment_id, a in list(self.assignments.items()):
            if a.order_id == order_id and a.specialist_id in specialist_ids and a.is_accepted is True:
                self.assignments[assignment_id] = replace(a, is_accepted=False)
                released += 1
        return released

    async def set_current_order(
        self,
        specialist_id: int,
        order_id: Optional[int],
        *,
        expected: Any = ...,
    ) -> bool:
        await asyncio.sleep(0)
        current = self.specialists.get(specialist_id)
        if current is None:
            return False
        if expected is not ... and current.current_order_id != expected:
            return False
        self.specialists[specialist_id] = replace(current, current_order_id=order_id)
        return True

    async def list_stale_current_orders(self) -> list[tuple[int, int]]:
        await self._tick()
        stale = []
        for s in sorted(self.specialists.values(), key=lambda s: s.id):
            if s.current_order_id is None:
                continue
            row = self.orders.get(s.current_order_id)
            backed = (
                row is not None
                and row["status"] in m.ACTIVE_STATUSES
                and s.id in self._accepted(s.current_order_id)
            )
            if not backed:
                stale.append((s.id, s.current_order_id))
        return stale


class FakeNotifier:
    """Records every ``notify`` call; can fail recipients, raise or hang."""

    def __init__(
        self,
        *,
        fail_for: Iterable[int] = (),
        raise_error: Optional[Exception] = None,
        hang_for: Iterable[str] = (),
    ) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail_for = set(fail_for)
        self.raise_error = raise_error
        # orderId values whose notification never completes
        self.hang_for = set(hang_for)

    async def notify(
        self,
        recipient_ids: Sequence[int],
        title: str,
        body: str,
        data: Mapping[str, str],
    ) -> list[DeliveryResult]:
        self.calls.append(
            {"recipients": list(recipient_ids), "title": title, "body": body, "data": dict(data)}
        )
        await asyncio.sleep(0)
        if data.get("orderId") in self.hang_for:
            await asyncio.sleep(3600)
        if self.raise_error is not None:
            raise self.raise_error
        return [
            DeliveryResult(rid, rid not in self.fail_for, "failed" if rid in self.fail_for else None)
            for rid in recipient_ids
        ]

    def calls_for(self, order_id: int) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["data"].get("orderId") == str(order_id)]
