"""Booking admission control: atomic check-and-commit plus the booking lifecycle.

``reserve`` validates before touching the store, rejects early when the busy
set already blocks the candidate, then takes the vehicle lock, re-derives the
busy set and inserts inside the same transaction. Lock timeouts and other
commit-time failures are retried a bounded number of times; running out of
attempts is reported as a conflict.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from common.config import get_settings
from common.errors import Conflict, InvalidTransition, NotFound, PastDate
from common.models import TERMINAL_STATUSES, Booking, BookingStatus, VehicleStatus

from . import cache
from .availability import BLACKOUT, compute_busy
from .intervals import Interval, overlaps
from .locks import lock_vehicle, vehicle_locked
from .policy import Policy, get_vehicle, policy_for

logger = logging.getLogger(__name__)

NEXT_STATUS: Dict[BookingStatus, BookingStatus] = {
    BookingStatus.PENDING: BookingStatus.CONFIRMED,
    BookingStatus.CONFIRMED: BookingStatus.ACTIVE,
    BookingStatus.ACTIVE: BookingStatus.COMPLETED,
}


def _check_notice(candidate: Interval, policy: Policy, now: datetime) -> None:
    if candidate.start < now:
        raise PastDate("Start time is in the past")
    floor = policy.notice_floor(now)
    if candidate.start < floor:
        raise PastDate(
            f"Bookings for this vehicle need {policy.min_notice_hours}h notice; earliest start is {floor.isoformat()}"
        )


def _blocked(db: Session, vehicle_id: int, candidate: Interval, policy: Policy, now: datetime) -> bool:
    """Booking blocks already carry the buffer; blackouts must also stay clear of the candidate's own buffer."""
    guarded = candidate.expand(policy.buffer_hours)
    busy = compute_busy(db, vehicle_id, guarded, now, policy=policy, use_cache=False)
    return any(overlaps(guarded if block.kind == BLACKOUT else candidate, block) for block in busy)


def reserve(
    db: Session,
    vehicle_id: int,
    renter_id: int,
    start: datetime,
    end: datetime,
    now: datetime,
    *,
    max_attempts: Optional[int] = None,
) -> Booking:
    settings = get_settings()
    candidate = Interval(start, end)
    vehicle = get_vehicle(db, vehicle_id, active_only=True)
    _check_notice(candidate, policy_for(vehicle), now)

    attempts = max_attempts or settings.reserve_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            if _blocked(db, vehicle_id, candidate, policy_for(vehicle), now):
                db.rollback()
                raise Conflict()

            lock_vehicle(db, vehicle_id)
            db.refresh(vehicle)
            if vehicle.status != VehicleStatus.ACTIVE.value:
                db.rollback()
                raise NotFound("Vehicle not found or inactive")
            policy = policy_for(vehicle)
            try:
                _check_notice(candidate, policy, now)
            except PastDate:
                db.rollback()
                raise
            if _blocked(db, vehicle_id, candidate, policy, now):
                db.rollback()
                raise Conflict()

            booking = Booking(
                vehicle_id=vehicle_id,
                renter_id=renter_id,
                start_time=candidate.start,
                end_time=candidate.end,
                status=BookingStatus.PENDING.value,
                expires_at=now + timedelta(minutes=settings.pending_hold_minutes),
                created_at=now,
            )
            db.add(booking)
            db.commit()
        except OperationalError as exc:
            db.rollback()
            logger.warning(
                "Reserve attempt %s/%s for vehicle %s failed at commit: %s", attempt, attempts, vehicle_id, exc.orig
            )
            if attempt < attempts:
                time.sleep(settings.reserve_retry_backoff_seconds * attempt)
            continue

        db.refresh(booking)
        cache.invalidate_vehicle(vehicle_id)
        logger.info(
            "Booking %s reserved vehicle %s for renter %s: %s -> %s",
            booking.id,
            vehicle_id,
            renter_id,
            booking.start_time,
            booking.end_time,
        )
        return booking

    raise Conflict("Vehicle is busy for the requested period, please retry")


def get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def cancel(db: Session, booking_id: int, now: datetime, reason: Optional[str] = None) -> Booking:
    """Cancel a booking; cancelled or completed bookings come back unchanged."""
    booking = get_booking(db, booking_id)
    if BookingStatus(booking.status) in TERMINAL_STATUSES:
        return booking

    with vehicle_locked(db, booking.vehicle_id):
        db.refresh(booking)
        if BookingStatus(booking.status) in TERMINAL_STATUSES:
            db.rollback()
            return booking

        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = now
        booking.updated_at = now
        booking.cancel_reason = reason
        db.commit()
    db.refresh(booking)
    cache.invalidate_vehicle(booking.vehicle_id)
    logger.info("Booking %s cancelled, vehicle %s freed", booking.id, booking.vehicle_id)
    return booking


def _hold_expired(booking: Booking, now: datetime) -> bool:
    return (
        booking.status == BookingStatus.PENDING.value
        and booking.expires_at is not None
        and booking.expires_at <= now
    )


def transition(db: Session, booking_id: int, target: BookingStatus, now: datetime) -> Booking:
    """Advance along pending -> confirmed -> active -> completed; repeating the current status is a no-op."""
    booking = get_booking(db, booking_id)
    with vehicle_locked(db, booking.vehicle_id):
        db.refresh(booking)

        current = BookingStatus(booking.status)
        if current == target:
            db.rollback()
            return booking
        if NEXT_STATUS.get(current) != target:
            db.rollback()
            raise InvalidTransition(f"Cannot move booking from {current.value} to {target.value}")
        if _hold_expired(booking, now):
            db.rollback()
            raise InvalidTransition("Pending hold has expired")

        booking.status = target.value
        booking.updated_at = now
        if target == BookingStatus.CONFIRMED:
            booking.expires_at = None
        db.commit()
    db.refresh(booking)
    cache.invalidate_vehicle(booking.vehicle_id)
    logger.info("Booking %s moved %s -> %s", booking.id, current.value, target.value)
    return booking


def expire_stale_holds(db: Session, now: datetime) -> List[Booking]:
    """Cancel pending bookings whose hold lapsed; they already stopped blocking the calendar."""
    vehicle_ids = db.scalars(
        select(Booking.vehicle_id)
        .where(Booking.status == BookingStatus.PENDING.value, Booking.expires_at <= now)
        .distinct()
    ).all()
    db.rollback()

    expired: List[Booking] = []
    for vehicle_id in vehicle_ids:
        with vehicle_locked(db, vehicle_id):
            stale = db.scalars(
                select(Booking).where(
                    Booking.vehicle_id == vehicle_id,
                    Booking.status == BookingStatus.PENDING.value,
                    Booking.expires_at <= now,
                )
            ).all()
            for booking in stale:
                booking.status = BookingStatus.CANCELLED.value
                booking.cancelled_at = now
                booking.updated_at = now
                booking.cancel_reason = "hold expired"
            db.commit()
        cache.invalidate_vehicle(vehicle_id)
        expired.extend(stale)
        logger.info("Expired %s pending holds on vehicle %s", len(stale), vehicle_id)
    return expired
