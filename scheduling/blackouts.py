"""Owner-declared unavailability windows per vehicle.

Callers check ownership before mutating; this module only enforces the
calendar rules.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from common.config import get_settings
from common.errors import Conflict, InvalidRange, PastDate
from common.models import BlackoutPeriod

from . import cache
from .intervals import Interval, first_overlap
from .locks import vehicle_locked
from .policy import get_vehicle, policy_for
from .store import blackouts_intersecting, bookings_intersecting

logger = logging.getLogger(__name__)


def create(
    db: Session,
    vehicle_id: int,
    start: datetime,
    end: datetime,
    reason: Optional[str],
    now: datetime,
) -> BlackoutPeriod:
    period = Interval(start, end)
    if period.start < now:
        raise PastDate("Blackout cannot start in the past")
    max_days = get_settings().max_blackout_days
    if period.duration > timedelta(days=max_days):
        raise InvalidRange(f"Blackout period cannot exceed {max_days} days")
    vehicle = get_vehicle(db, vehicle_id)

    with vehicle_locked(db, vehicle_id):
        db.refresh(vehicle)
        guarded = period.expand(policy_for(vehicle).blackout_clearance_hours)
        bookings = bookings_intersecting(db, vehicle_id, guarded.start, guarded.end, now)
        clash = first_overlap(guarded, [Interval(item.start_time, item.end_time) for item in bookings])
        if clash is not None:
            db.rollback()
            raise Conflict("Cannot block dates with existing bookings")

        blackout = BlackoutPeriod(vehicle_id=vehicle_id, start_time=period.start, end_time=period.end, reason=reason)
        db.add(blackout)
        db.commit()
    db.refresh(blackout)
    cache.invalidate_vehicle(vehicle_id)
    logger.info("Blackout %s created for vehicle %s: %s -> %s", blackout.id, vehicle_id, period.start, period.end)
    return blackout


def delete(db: Session, blackout_id: int, vehicle_id: Optional[int] = None) -> Optional[BlackoutPeriod]:
    """Remove a blackout period. Unknown ids are a successful no-op.

    When ``vehicle_id`` is given, a period belonging to another vehicle is
    treated as unknown. Returns the removed row, if any.
    """
    blackout = db.get(BlackoutPeriod, blackout_id)
    if blackout is None or (vehicle_id is not None and blackout.vehicle_id != vehicle_id):
        logger.debug("Blackout %s already gone", blackout_id)
        return None
    owner_vehicle_id = blackout.vehicle_id
    db.delete(blackout)
    db.commit()
    cache.invalidate_vehicle(owner_vehicle_id)
    logger.info("Blackout %s deleted from vehicle %s", blackout_id, owner_vehicle_id)
    return blackout


def list_periods(db: Session, vehicle_id: int, start: datetime, end: datetime) -> List[BlackoutPeriod]:
    """Periods intersecting ``[start, end)``, ordered by start."""
    window = Interval(start, end)
    get_vehicle(db, vehicle_id)
    return blackouts_intersecting(db, vehicle_id, window.start, window.end)
