import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from common.database import SessionLocal
from common.errors import Conflict, InvalidRange, InvalidTransition, NotFound, PastDate
from common.models import BookingStatus, VehicleStatus
from conftest import NOW, OTHER_RENTER_ID, RENTER_ID, day
from scheduling import admission, blackouts


def test_conflict_inside_post_buffer(db_session, make_vehicle, make_booking):
    vehicle = make_vehicle(buffer_hours=2)
    make_booking(vehicle, day(1, 10), day(2, 10))

    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, RENTER_ID, day(2, 11), day(3, 10), NOW)


def test_accepted_just_past_buffer(db_session, make_vehicle, make_booking):
    vehicle = make_vehicle(buffer_hours=2)
    make_booking(vehicle, day(1, 10), day(2, 10))

    booking = admission.reserve(db_session, vehicle.id, RENTER_ID, day(2, 12, 1), day(3, 10), NOW)

    assert booking.id is not None
    assert booking.status == BookingStatus.PENDING.value
    assert booking.start_time == day(2, 12, 1)
    assert booking.expires_at == NOW + timedelta(minutes=30)


def test_minimum_notice(db_session, make_vehicle):
    vehicle = make_vehicle(min_notice_hours=24)
    blackouts.create(db_session, vehicle.id, day(5), day(7), "owner trip", NOW)

    with pytest.raises(PastDate) as exc_info:
        admission.reserve(db_session, vehicle.id, RENTER_ID, day(1, 20), day(2, 20), NOW)
    assert "24h notice" in exc_info.value.detail

    booking = admission.reserve(db_session, vehicle.id, RENTER_ID, day(2, 9), day(4, 9), NOW)
    assert booking.status == BookingStatus.PENDING.value

    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(4, 12), day(5, 1), NOW)


def test_start_in_the_past(db_session, make_vehicle):
    vehicle = make_vehicle()

    with pytest.raises(PastDate):
        admission.reserve(db_session, vehicle.id, RENTER_ID, day(1, 7), day(1, 12), NOW)


@pytest.mark.parametrize("start, end", [(day(3, 12), day(3, 12)), (day(3, 12), day(3, 10))])
def test_empty_or_inverted_range(db_session, make_vehicle, start, end):
    vehicle = make_vehicle()

    with pytest.raises(InvalidRange):
        admission.reserve(db_session, vehicle.id, RENTER_ID, start, end, NOW)


def test_unknown_or_inactive_vehicle(db_session, make_vehicle):
    parked = make_vehicle(status=VehicleStatus.INACTIVE.value)

    with pytest.raises(NotFound):
        admission.reserve(db_session, 999, RENTER_ID, day(3), day(4), NOW)
    with pytest.raises(NotFound):
        admission.reserve(db_session, parked.id, RENTER_ID, day(3), day(4), NOW)


def test_buffer_separation(db_session, make_vehicle):
    vehicle = make_vehicle(buffer_hours=3)
    admission.reserve(db_session, vehicle.id, RENTER_ID, day(4, 10), day(4, 12), NOW)

    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(4, 14), day(4, 16), NOW)
    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(4, 6), day(4, 8), NOW)
    after = admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(4, 15), day(4, 17), NOW)
    before = admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(4, 5), day(4, 7), NOW)

    assert after.start_time - day(4, 12) == timedelta(hours=3)
    assert day(4, 10) - before.end_time == timedelta(hours=3)


def test_buffer_fusion_blocks_gap(db_session, make_vehicle, make_booking):
    vehicle = make_vehicle(buffer_hours=2)
    make_booking(vehicle, day(3, 10), day(3, 12))
    make_booking(vehicle, day(3, 14), day(3, 16))

    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, RENTER_ID, day(3, 12, 30), day(3, 13, 30), NOW)


def test_cancel_frees_the_slot(db_session, make_vehicle):
    vehicle = make_vehicle(buffer_hours=1)
    first = admission.reserve(db_session, vehicle.id, RENTER_ID, day(6), day(8), NOW)

    cancelled = admission.cancel(db_session, first.id, NOW, reason="plans changed")
    second = admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(6), day(8), NOW)

    assert cancelled.status == BookingStatus.CANCELLED.value
    assert cancelled.cancel_reason == "plans changed"
    assert cancelled.cancelled_at == NOW
    assert second.renter_id == OTHER_RENTER_ID


def test_cancel_is_idempotent(db_session, make_vehicle, make_booking):
    vehicle = make_vehicle()
    booking = make_booking(vehicle, day(6), day(8))
    completed = make_booking(vehicle, day(2), day(3), status=BookingStatus.COMPLETED.value)

    first = admission.cancel(db_session, booking.id, NOW)
    again = admission.cancel(db_session, booking.id, NOW + timedelta(hours=1))

    assert again.status == BookingStatus.CANCELLED.value
    assert again.cancelled_at == first.cancelled_at == NOW
    assert admission.cancel(db_session, completed.id, NOW).status == BookingStatus.COMPLETED.value


def test_cancel_unknown_booking(db_session):
    with pytest.raises(NotFound):
        admission.cancel(db_session, 404, NOW)


def test_lifecycle_transitions(db_session, make_vehicle):
    vehicle = make_vehicle()
    booking = admission.reserve(db_session, vehicle.id, RENTER_ID, day(3), day(4), NOW)

    confirmed = admission.transition(db_session, booking.id, BookingStatus.CONFIRMED, NOW)
    assert confirmed.expires_at is None
    assert admission.transition(db_session, booking.id, BookingStatus.CONFIRMED, NOW).status == "confirmed"

    with pytest.raises(InvalidTransition):
        admission.transition(db_session, booking.id, BookingStatus.COMPLETED, NOW)

    admission.transition(db_session, booking.id, BookingStatus.ACTIVE, NOW)
    done = admission.transition(db_session, booking.id, BookingStatus.COMPLETED, NOW)

    assert done.status == BookingStatus.COMPLETED.value
    with pytest.raises(InvalidTransition):
        admission.transition(db_session, booking.id, BookingStatus.ACTIVE, NOW)


def test_expired_hold_stops_blocking(db_session, make_vehicle):
    vehicle = make_vehicle()
    stale = admission.reserve(db_session, vehicle.id, RENTER_ID, day(3), day(4), NOW)
    later = NOW + timedelta(minutes=31)

    fresh = admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(3), day(4), later)
    with pytest.raises(InvalidTransition) as exc_info:
        admission.transition(db_session, stale.id, BookingStatus.CONFIRMED, later)

    assert fresh.renter_id == OTHER_RENTER_ID
    assert exc_info.value.detail == "Pending hold has expired"


def test_expire_stale_holds(db_session, make_vehicle, make_booking):
    vehicle = make_vehicle()
    held = admission.reserve(db_session, vehicle.id, RENTER_ID, day(3), day(4), NOW)
    kept = make_booking(vehicle, day(5), day(6))

    expired = admission.expire_stale_holds(db_session, NOW + timedelta(hours=1))

    assert [booking.id for booking in expired] == [held.id]
    assert expired[0].status == BookingStatus.CANCELLED.value
    assert expired[0].cancel_reason == "hold expired"
    db_session.refresh(kept)
    assert kept.status == BookingStatus.CONFIRMED.value
    assert admission.expire_stale_holds(db_session, NOW + timedelta(hours=1)) == []


def test_retries_exhausted_surface_as_conflict(db_session, make_vehicle):
    vehicle = make_vehicle()
    locked = OperationalError("UPDATE vehicles", {}, Exception("database is locked"))

    with patch("scheduling.admission.lock_vehicle", side_effect=locked) as lock:
        with pytest.raises(Conflict) as exc_info:
            admission.reserve(db_session, vehicle.id, RENTER_ID, day(3), day(4), NOW, max_attempts=2)

    assert lock.call_count == 2
    assert "please retry" in exc_info.value.detail


def test_lock_timeout_on_cancel_and_transition_asks_for_retry(db_session, make_vehicle):
    vehicle = make_vehicle()
    booking = admission.reserve(db_session, vehicle.id, RENTER_ID, day(3), day(4), NOW)
    locked = OperationalError("UPDATE vehicles", {}, Exception("database is locked"))

    with patch("scheduling.locks.lock_vehicle", side_effect=locked):
        with pytest.raises(Conflict) as cancel_info:
            admission.cancel(db_session, booking.id, NOW)
        with pytest.raises(Conflict) as transition_info:
            admission.transition(db_session, booking.id, BookingStatus.CONFIRMED, NOW)

    assert "please retry" in cancel_info.value.detail
    assert "please retry" in transition_info.value.detail
    db_session.refresh(booking)
    assert booking.status == BookingStatus.PENDING.value


def test_booking_buffer_keeps_clear_of_blackouts(db_session, make_vehicle):
    vehicle = make_vehicle(buffer_hours=2)
    blackouts.create(db_session, vehicle.id, day(5), day(7), None, NOW)

    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, RENTER_ID, day(4, 20), day(5), NOW)
    with pytest.raises(Conflict):
        admission.reserve(db_session, vehicle.id, RENTER_ID, day(7, 1), day(8), NOW)

    before = admission.reserve(db_session, vehicle.id, RENTER_ID, day(4, 12), day(4, 22), NOW)
    after = admission.reserve(db_session, vehicle.id, OTHER_RENTER_ID, day(7, 2), day(8), NOW)
    assert (before.end_time, after.start_time) == (day(4, 22), day(7, 2))


def test_concurrent_reserves_admit_exactly_one(make_vehicle):
    vehicle_id = make_vehicle().id
    contenders = 5
    barrier = threading.Barrier(contenders)

    def attempt(renter_id: int) -> str:
        session = SessionLocal()
        try:
            barrier.wait()
            admission.reserve(session, vehicle_id, renter_id, day(10), day(12), NOW)
            return "ok"
        except Conflict:
            return "conflict"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=contenders) as pool:
        outcomes = list(pool.map(attempt, range(100, 100 + contenders)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == contenders - 1
