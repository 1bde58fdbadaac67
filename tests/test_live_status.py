from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from booking_service.db import models as m
from booking_service.services.live_status import (
    derive_live_status,
    last_notification_response,
    resolve_presence,
    start_of_day,
)
from booking_service.services.repository import ActiveAssignment, AssignmentRecord, StoreUnavailableError

UTC = timezone.utc
FRESH = timedelta(minutes=30)


async def _status_of(repo, specialist_id, now):
    [status] = await derive_live_status(repo, [specialist_id], now=now, freshness=FRESH, tz_name="UTC")
    return status


@pytest.mark.asyncio
async def test_not_logged_in_without_devices(repo, now):
    repo.add_specialist(1)

    status = await _status_of(repo, 1, now)

    assert status.status == m.PresenceStatus.NOT_LOGGED_IN
    assert status.has_device_token is False
    assert status.last_token_used is None
    assert status.as_dict()["last_notification_status"] == {"time": None, "action": None}


@pytest.mark.asyncio
async def test_active_work_beats_stale_device(repo, now):
    repo.add_specialist(1)
    repo.add_device(1, now - timedelta(hours=6))
    order_id = repo.add_order(status=m.OrderStatus.IN_PROGRESS, tracking_stage=m.TrackingStage.WORKING)
    repo.add_assignment(order_id, 1, quoted_at=now - timedelta(hours=7))

    status = await _status_of(repo, 1, now)

    assert status.status == m.PresenceStatus.WORKING
    assert status.active_order_id == order_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("order_status", "stage", "expected"),
    [
        (m.OrderStatus.IN_PROGRESS, m.TrackingStage.MOVING, m.PresenceStatus.ON_THE_WAY),
        (m.OrderStatus.IN_PROGRESS, m.TrackingStage.ARRIVED, m.PresenceStatus.WORKING),
        (m.OrderStatus.IN_PROGRESS, m.TrackingStage.WAITING, m.PresenceStatus.WORKING),
        (m.OrderStatus.IN_PROGRESS, m.TrackingStage.INVOICE_REQUESTED, m.PresenceStatus.WORKING),
        (m.OrderStatus.IN_PROGRESS, None, m.PresenceStatus.WORKING),
        (m.OrderStatus.UPCOMING, None, m.PresenceStatus.BUSY),
    ],
)
async def test_stage_mapping(repo, now, order_status, stage, expected):
    repo.add_specialist(1)
    order_id = repo.add_order(
        status=order_status,
        tracking_stage=stage,
        waiting_started_at=now if stage == m.TrackingStage.WAITING else None,
        waiting_ends_at=now + timedelta(minutes=5) if stage == m.TrackingStage.WAITING else None,
    )
    repo.add_assignment(order_id, 1)

    assert (await _status_of(repo, 1, now)).status == expected


@pytest.mark.asyncio
async def test_pointer_cache_is_not_trusted(repo, now):
    finished = repo.add_order(status=m.OrderStatus.COMPLETED, tracking_stage=m.TrackingStage.PAYMENT_RECEIVED)
    repo.add_assignment(finished, 1)
    repo.add_specialist(1, current_order_id=finished)
    repo.add_device(1, now - timedelta(minutes=3))

    status = await _status_of(repo, 1, now)

    assert status.status == m.PresenceStatus.ONLINE
    assert status.current_order_id == finished
    assert status.active_order_id is None


@pytest.mark.asyncio
async def test_inactive_or_snoozed_specialist_is_offline(repo, now):
    order_id = repo.add_order(status=m.OrderStatus.IN_PROGRESS, tracking_stage=m.TrackingStage.MOVING)
    repo.add_assignment(order_id, 1)
    repo.add_specialist(1, is_active=False)
    repo.add_specialist(2, offline_until=now + timedelta(hours=1))
    repo.add_device(2, now)

    assert (await _status_of(repo, 1, now)).status == m.PresenceStatus.OFFLINE
    assert (await _status_of(repo, 2, now)).status == m.PresenceStatus.OFFLINE


@pytest.mark.asyncio
async def test_recent_activity_refreshes_stale_device(repo, now):
    repo.add_specialist(1)
    repo.add_device(1, now - timedelta(hours=2))
    order_id = repo.add_order(status=m.OrderStatus.PENDING)
    repo.add_assignment(
        order_id, 1, is_accepted=False, rejected_at=now - timedelta(minutes=4), created_at=now - timedelta(minutes=20)
    )

    status = await _status_of(repo, 1, now)

    assert status.status == m.PresenceStatus.ONLINE
    assert status.last_notification_status.action == m.NotificationAction.IGNORED


@pytest.mark.asyncio
async def test_stale_device_is_offline(repo, now):
    repo.add_specialist(1)
    repo.add_device(1, now - timedelta(minutes=45))
    repo.add_device(1, None)

    status = await _status_of(repo, 1, now)

    assert status.status == m.PresenceStatus.OFFLINE
    assert status.has_device_token is True
    assert status.last_token_used == now - timedelta(minutes=45)


@pytest.mark.asyncio
async def test_daily_counters_and_last_response(repo, now):
    repo.add_specialist(1)
    today = start_of_day(now, "UTC")
    accepted = repo.add_order(status=m.OrderStatus.UPCOMING)
    declined = repo.add_order(status=m.OrderStatus.PENDING)
    yesterday = repo.add_order(status=m.OrderStatus.PENDING)
    repo.add_assignment(accepted, 1, quoted_at=today + timedelta(hours=2), created_at=today + timedelta(hours=1))
    repo.add_assignment(
        declined, 1, is_accepted=False, rejected_at=today + timedelta(hours=3), created_at=today + timedelta(hours=3)
    )
    repo.add_assignment(
        yesterday, 1, is_accepted=False, rejected_at=today - timedelta(hours=2), created_at=today - timedelta(hours=3)
    )

    status = (await _status_of(repo, 1, now)).as_dict()

    assert status["accepted_today"] == 1
    assert status["rejected_today"] == 1
    assert status["last_notification_status"] == {
        "time": (today + timedelta(hours=3)).isoformat().replace("+00:00", "Z"),
        "action": "ignored",
    }
    assert status["status"] == "busy"
    assert status["active_order_id"] == accepted


@pytest.mark.asyncio
async def test_company_scope(repo, now):
    repo.add_specialist(1, name="Bravo", company_id=7)
    repo.add_specialist(2, name="Alpha", company_id=7)
    repo.add_specialist(3, name="Other", company_id=8)

    statuses = await derive_live_status(repo, company_id=7, now=now, tz_name="UTC")

    assert [s.id for s in statuses] == [2, 1]


@pytest.mark.asyncio
async def test_unreadable_store_raises(repo, now):
    repo.fail_reads = True

    with pytest.raises(StoreUnavailableError):
        await derive_live_status(repo, now=now)


def test_offers_without_response_are_no_response(now):
    records = [AssignmentRecord(id=1, order_id=1, specialist_id=1, created_at=now)]

    response = last_notification_response(records)

    assert response.action == m.NotificationAction.NO_RESPONSE
    assert response.time is None
    assert last_notification_response([]).action is None


def test_resolve_presence_prefers_active_assignment(now):
    busy = ActiveAssignment(specialist_id=1, order_id=5, status=m.OrderStatus.UPCOMING, tracking_stage=None)

    assert (
        resolve_presence(
            is_active=True,
            offline_until=None,
            active=busy,
            has_device_token=False,
            last_seen=None,
            now=now,
            freshness=FRESH,
        )
        == m.PresenceStatus.BUSY
    )
    assert (
        resolve_presence(
            is_active=True,
            offline_until=now - timedelta(minutes=1),
            active=None,
            has_device_token=True,
            last_seen=now - timedelta(minutes=30),
            now=now,
            freshness=FRESH,
        )
        == m.PresenceStatus.ONLINE
    )


def test_start_of_day_in_local_timezone():
    late_evening = datetime(2026, 10, 19, 22, 30, tzinfo=UTC)  # 01:30 следующего дня в Эр-Рияде

    assert start_of_day(late_evening, "Asia/Riyadh") == datetime(2026, 10, 19, 21, 0, tzinfo=UTC)
