"""
Consistency reconciler: detect and repair order state left half-written by clients.

A pass reads every order (or a targeted subset), runs the invariant set and applies
each corrective write on its own. A failed write is recorded and the pass moves on;
only a store that cannot be read at all aborts the pass.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from booking_service.infra.structured_logging import SweepEvent, log_sweep_event
from booking_service.services import live_log
from booking_service.services.order_state import (
    CATEGORY_NAMES,
    INVARIANT_ORDER,
    OrderSnapshot,
)
from booking_service.services.repository import OrderRepository, StoreError

UTC = timezone.utc
logger = logging.getLogger("reconciler")

__all__ = ["ReconcileSummary", "FixRecord", "FixError", "reconcile_orders"]


@dataclass(frozen=True, slots=True)
class FixRecord:
    order_id: int
    order_number: str
    category: str
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "category": self.category,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class FixError:
    order_id: Optional[int]
    order_number: str
    category: str
    error: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "category": self.category,
            "error": self.error,
        }


@dataclass
class ReconcileSummary:
    timestamp: datetime
    categories: dict[str, int] = field(
        default_factory=lambda: {name: 0 for name in CATEGORY_NAMES}
    )
    fixes: list[FixRecord] = field(default_factory=list)
    errors: list[FixError] = field(default_factory=list)
    pointers_cleared: int = 0
    scanned: int = 0

    @property
    def total_fixed(self) -> int:
        return len(self.fixes)

    @property
    def total_errors(self) -> int:
        return len(self.errors)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "timestamp": self.timestamp.isoformat(),
            "scanned": self.scanned,
            "totalFixed": self.total_fixed,
            "totalErrors": self.total_errors,
            "categories": dict(self.categories),
            "pointersCleared": self.pointers_cleared,
        }
        if self.fixes:
            payload["fixes"] = [fix.as_dict() for fix in self.fixes]
        if self.errors:
            payload["errors"] = [error.as_dict() for error in self.errors]
        return payload


async def _release_acceptances(
    repository: OrderRepository,
    order: OrderSnapshot,
    category: str,
    summary: ReconcileSummary,
) -> None:
    """Return a reset order to the pool: drop its acceptances and the pointers to it."""
    specialist_ids = order.accepted_specialist_ids
    if not specialist_ids:
        return
    try:
        released = await repository.release_acceptances(order.id, specialist_ids)
        for specialist_id in specialist_ids:
            if await repository.set_current_order(specialist_id, None, expected=order.id):
                summary.pointers_cleared += 1
    except StoreError as exc:
        summary.errors.append(FixError(order.id, order.order_number, category, str(exc)))
        live_log.push(
            "reconcile",
            f"order#{order.id} acceptance release failed: {exc}",
            level="ERROR",
        )
        return
    log_sweep_event(
        SweepEvent.ACCEPTANCE_RELEASED,
        sweep="reconcile",
        order_id=order.id,
        category=category,
        details={"specialists": list(specialist_ids), "released": released},
    )


async def _reconcile_order(
    repository: OrderRepository,
    order: OrderSnapshot,
    now: datetime,
    summary: ReconcileSummary,
) -> None:
    current = order
    for check in INVARIANT_ORDER:
        result = check(current, now)
        if not result.violated:
            continue
        expected = {name: getattr(current, name) for name in result.guard}
        try:
            applied = await repository.update_order(
                order.id, result.fix, expected=expected, now=now
            )
        except StoreError as exc:
            summary.errors.append(FixError(order.id, order.order_number, result.category, str(exc)))
            log_sweep_event(
                SweepEvent.FIX_FAILED,
                sweep="reconcile",
                order_id=order.id,
                category=result.category,
                reason=str(exc),
                level="WARNING",
            )
            live_log.push(
                "reconcile",
                f"order#{order.id} {result.category} fix failed: {exc}",
                level="ERROR",
            )
            continue
        if not applied:
            # Строка изменилась между чтением и записью; следующий проход перепроверит
            logger.debug(
                "order#%s %s skipped: row changed concurrently", order.id, result.category
            )
            continue
        current = current.apply(result.fix)
        summary.categories[result.category] += 1
        summary.fixes.append(FixRecord(order.id, order.order_number, result.category, result.reason))
        log_sweep_event(
            SweepEvent.FIX_APPLIED,
            sweep="reconcile",
            order_id=order.id,
            category=result.category,
            reason=result.reason,
        )
        live_log.push("reconcile", f"order#{order.id} fixed {result.category}")
        if result.release_acceptance:
            await _release_acceptances(repository, order, result.category, summary)


async def _clear_stale_pointers(repository: OrderRepository, summary: ReconcileSummary) -> None:
    """Drop ``current_order_id`` cache entries no active acceptance backs."""
    try:
        stale = await repository.list_stale_current_orders()
    except StoreError as exc:
        # Исправления заказов уже записаны; сводку не теряем
        summary.errors.append(FixError(None, "", "stale_current_order", str(exc)))
        live_log.push("reconcile", f"pointer cache read failed: {exc}", level="ERROR")
        return
    for specialist_id, order_id in stale:
        try:
            cleared = await repository.set_current_order(specialist_id, None, expected=order_id)
        except StoreError as exc:
            summary.errors.append(FixError(order_id, "", "stale_current_order", str(exc)))
            continue
        if cleared:
            summary.pointers_cleared += 1
            log_sweep_event(
                SweepEvent.POINTER_CLEARED,
                sweep="reconcile",
                order_id=order_id,
                specialist_id=specialist_id,
            )


async def reconcile_orders(
    repository: OrderRepository,
    *,
    order_ids: Optional[Sequence[int]] = None,
    now: datetime | None = None,
) -> ReconcileSummary:
    """Run one reconciliation pass.

    Args:
        repository: order store
        order_ids: restrict the pass to these orders (targeted re-check)
        now: reference time for deadline checks

    Raises:
        StoreUnavailableError: the orders could not be read at all.
    """
    if now is None:
        now = datetime.now(UTC)
    summary = ReconcileSummary(timestamp=now)
    log_sweep_event(SweepEvent.SWEEP_START, sweep="reconcile")

    orders = await repository.list_orders(order_ids)
    summary.scanned = len(orders)
    for order in orders:
        await _reconcile_order(repository, order, now, summary)

    if order_ids is None:
        await _clear_stale_pointers(repository, summary)

    log_sweep_event(
        SweepEvent.SWEEP_END,
        sweep="reconcile",
        details={
            "scanned": summary.scanned,
            "fixed": summary.total_fixed,
            "errors": summary.total_errors,
            "pointers_cleared": summary.pointers_cleared,
        },
    )
    if summary.total_fixed or summary.total_errors:
        logger.info(
            "Reconcile pass fixed=%s errors=%s scanned=%s",
            summary.total_fixed,
            summary.total_errors,
            summary.scanned,
        )
    return summary
