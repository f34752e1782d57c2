"""Per-vehicle scheduling policy: turnover buffer and minimum notice."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from common.auth import Principal
from common.errors import Conflict, Forbidden, NotFound
from common.models import Vehicle, VehicleStatus
from common.schemas import SchedulingPolicy

from . import cache
from .intervals import Interval, first_overlap
from .locks import vehicle_locked
from .store import blackouts_intersecting, live_bookings_after

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Policy:
    buffer_hours: int = 0
    min_notice_hours: int = 0
    buffer_applies_to_blackouts: bool = False

    @property
    def blackout_buffer_hours(self) -> int:
        return self.buffer_hours if self.buffer_applies_to_blackouts else 0

    @property
    def blackout_clearance_hours(self) -> int:
        """Gap kept between a booking and a blackout: the booking's buffer plus the blackout's own."""
        return self.buffer_hours + self.blackout_buffer_hours

    def notice_floor(self, now: datetime) -> datetime:
        """Earliest instant a new booking may start when requested at ``now``."""
        return now + timedelta(hours=self.min_notice_hours)


def policy_for(vehicle: Vehicle) -> Policy:
    return Policy(
        buffer_hours=vehicle.buffer_hours or 0,
        min_notice_hours=vehicle.min_notice_hours or 0,
        buffer_applies_to_blackouts=bool(vehicle.buffer_applies_to_blackouts),
    )


def get_vehicle(db: Session, vehicle_id: int, *, active_only: bool = False) -> Vehicle:
    vehicle = db.get(Vehicle, vehicle_id)
    if vehicle is None or (active_only and vehicle.status != VehicleStatus.ACTIVE.value):
        raise NotFound("Vehicle not found or inactive" if active_only else "Vehicle not found")
    return vehicle


def ensure_owner(vehicle: Vehicle, principal: Principal) -> None:
    if vehicle.owner_id != principal.user_id and not principal.is_admin:
        raise Forbidden()


def get(db: Session, vehicle_id: int) -> Policy:
    """Policy of a vehicle; unset values read as zero."""
    return policy_for(get_vehicle(db, vehicle_id))


def _find_violation(db: Session, vehicle_id: int, policy: Policy, now: datetime) -> Optional[str]:
    bookings = live_bookings_after(db, vehicle_id, now)
    required_gap = timedelta(hours=policy.buffer_hours)
    for earlier, later in zip(bookings, bookings[1:]):
        if later.start_time - earlier.end_time < required_gap:
            return f"bookings {earlier.id} and {later.id} are closer than {policy.buffer_hours}h"

    clearance = policy.blackout_clearance_hours
    if not bookings or not clearance:
        return None
    reach = timedelta(hours=clearance)
    horizon = max(booking.end_time for booking in bookings) + reach
    windows = [
        Interval(item.start_time, item.end_time)
        for item in blackouts_intersecting(db, vehicle_id, now - reach, horizon)
    ]
    for booking in bookings:
        expanded = Interval(booking.start_time, booking.end_time).expand(clearance)
        if first_overlap(expanded, windows) is not None:
            return f"booking {booking.id} would fall inside the buffer of a blackout period"
    return None


def update(
    db: Session,
    vehicle_id: int,
    policy_in: SchedulingPolicy,
    principal: Principal,
    now: datetime,
) -> Policy:
    """Replace a vehicle's policy; refuses values that upcoming bookings already violate."""
    vehicle = get_vehicle(db, vehicle_id)
    ensure_owner(vehicle, principal)

    new_policy = Policy(
        buffer_hours=policy_in.buffer_hours,
        min_notice_hours=policy_in.min_notice_hours,
        buffer_applies_to_blackouts=policy_in.buffer_applies_to_blackouts,
    )
    with vehicle_locked(db, vehicle_id):
        violation = _find_violation(db, vehicle_id, new_policy, now)
        if violation is not None:
            db.rollback()
            raise Conflict(f"Policy conflicts with existing commitments: {violation}")

        vehicle.buffer_hours = new_policy.buffer_hours
        vehicle.min_notice_hours = new_policy.min_notice_hours
        vehicle.buffer_applies_to_blackouts = new_policy.buffer_applies_to_blackouts
        db.commit()
    cache.invalidate_vehicle(vehicle_id)
    logger.info(
        "Vehicle %s policy set to buffer=%sh notice=%sh blackouts_buffered=%s",
        vehicle_id,
        new_policy.buffer_hours,
        new_policy.min_notice_hours,
        new_policy.buffer_applies_to_blackouts,
    )
    return new_policy
