from __future__ import annotations

from datetime import timedelta

import pytest

from booking_service import triggers
from booking_service.db import models as m
from booking_service.services import live_log
from booking_service.services.order_state import CATEGORY_NAMES


@pytest.mark.asyncio
async def test_reconcile_trigger_payload(repo, now):
    repo.add_order(status=m.OrderStatus.CANCELLED, tracking_stage=m.TrackingStage.ARRIVED)

    payload = await triggers.reconcile_trigger(repo, now=now)

    assert payload["success"] is True
    assert payload["timestamp"] == now.isoformat()
    assert payload["totalFixed"] == 1
    assert payload["totalErrors"] == 0
    assert list(payload["categories"]) == list(CATEGORY_NAMES)
    assert payload["categories"]["cancelled_with_tracking"] == 1


@pytest.mark.asyncio
async def test_fatal_read_failure_becomes_error_payload(repo, notifier, now, policy):
    repo.fail_reads = True

    reconcile = await triggers.reconcile_trigger(repo, now=now)
    escalate = await triggers.escalation_trigger(repo, notifier, now=now, policy=policy)
    checks = await triggers.readiness_check_trigger(repo, notifier, now=now, policy=policy)
    live = await triggers.live_status_trigger(repo, now=now)

    for payload in (reconcile, escalate, checks, live):
        assert payload == {"success": False, "timestamp": now.isoformat(), "error": "store is down"}
    assert any(entry.level == "ERROR" for entry in live_log.snapshot())


@pytest.mark.asyncio
async def test_escalation_trigger_payload(repo, notifier, now, policy):
    order_id = repo.add_order(
        status=m.OrderStatus.UPCOMING,
        specialist_readiness_status=m.ReadinessStatus.READY,
        movement_last_reminder_at=now - timedelta(minutes=30),
    )
    repo.add_assignment(order_id, 7)

    payload = await triggers.escalation_trigger(repo, notifier, now=now, policy=policy)

    assert payload == {
        "success": True,
        "pendingReminders": 0,
        "movementReminders": 1,
        "results": [
            {"orderId": order_id, "type": "movement_reminder", "reminderCount": 1, "success": True}
        ],
    }


@pytest.mark.asyncio
async def test_live_status_trigger_payload(repo, now):
    repo.add_specialist(1, name="Amal", phone="+966500000001")

    payload = await triggers.live_status_trigger(repo, [1], now=now)

    assert payload["success"] is True
    [record] = payload["specialists"]
    assert record == {
        "id": 1,
        "name": "Amal",
        "phone": "+966500000001",
        "is_active": True,
        "current_order_id": None,
        "active_order_id": None,
        "last_token_used": None,
        "has_device_token": False,
        "status": "not_logged_in",
        "accepted_today": 0,
        "rejected_today": 0,
        "last_notification_status": {"time": None, "action": None},
    }


def test_cli_requires_a_command():
    with pytest.raises(SystemExit):
        triggers.main([])
