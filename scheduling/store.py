"""Queries over the durable store that feed the busy-set computation."""
from __future__ import annotations

from datetime import datetime
from typing import List

from sqlalchemy import ColumnElement, and_, or_, select
from sqlalchemy.orm import Session

from common.models import BlackoutPeriod, Booking, BookingStatus


def live_booking_filter(now: datetime) -> ColumnElement[bool]:
    """Bookings that occupy the calendar: anything but cancelled rows and lapsed pending holds."""
    return and_(
        Booking.status != BookingStatus.CANCELLED.value,
        or_(
            Booking.status != BookingStatus.PENDING.value,
            Booking.expires_at.is_(None),
            Booking.expires_at > now,
        ),
    )


def bookings_intersecting(db: Session, vehicle_id: int, start: datetime, end: datetime, now: datetime) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(
            Booking.vehicle_id == vehicle_id,
            Booking.start_time < end,
            Booking.end_time > start,
            live_booking_filter(now),
        )
        .order_by(Booking.start_time)
    )
    return list(db.scalars(stmt))


def blackouts_intersecting(db: Session, vehicle_id: int, start: datetime, end: datetime) -> List[BlackoutPeriod]:
    stmt = (
        select(BlackoutPeriod)
        .where(
            BlackoutPeriod.vehicle_id == vehicle_id,
            BlackoutPeriod.start_time < end,
            BlackoutPeriod.end_time > start,
        )
        .order_by(BlackoutPeriod.start_time, BlackoutPeriod.id)
    )
    return list(db.scalars(stmt))


def live_bookings_after(db: Session, vehicle_id: int, since: datetime) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(Booking.vehicle_id == vehicle_id, Booking.end_time > since, live_booking_filter(since))
        .order_by(Booking.start_time)
    )
    return list(db.scalars(stmt))
