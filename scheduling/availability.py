"""Free/busy view of a vehicle over a requested window.

Bookings are widened by the vehicle's buffer before they are merged, so two
bookings closer than twice the buffer fuse into one busy block. Admission
calls ``compute_busy`` as well, which keeps the read and write paths in
agreement about what counts as blocked.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from . import cache
from .intervals import BusyInterval, Interval, clip, flatten_busy, merge_busy, subtract
from .policy import Policy, get_vehicle, policy_for
from .store import blackouts_intersecting, bookings_intersecting

logger = logging.getLogger(__name__)

BOOKING = "booking"
BLACKOUT = "blackout"
NOTICE = "notice"

# Where kinds overlap in a view, the earlier kind keeps the time.
BUSY_PRECEDENCE = (BOOKING, BLACKOUT, NOTICE)


@dataclass
class Availability:
    vehicle_id: int
    window: Interval
    free: List[Interval]
    busy: List[BusyInterval]

    @property
    def start(self) -> datetime:
        return self.window.start

    @property
    def end(self) -> datetime:
        return self.window.end


def compute_busy(
    db: Session,
    vehicle_id: int,
    window: Interval,
    now: datetime,
    *,
    policy: Optional[Policy] = None,
    use_cache: bool = True,
) -> List[BusyInterval]:
    """Merged busy blocks of a vehicle that reach into ``window``.

    Blocks are returned whole rather than clipped, so a fused block keeps its
    real extent. A booking that ends just before the window still shows up
    when its buffer spills into it. Merging happens per kind, so a booking
    block and a blackout block may overlap here; admission needs to tell them
    apart.
    """
    if policy is None:
        policy = policy_for(get_vehicle(db, vehicle_id))
    if use_cache:
        cached = cache.lookup(vehicle_id, window.start, window.end)
        if cached is not None:
            return cached

    booking_reach = timedelta(hours=policy.buffer_hours)
    blackout_reach = timedelta(hours=policy.blackout_buffer_hours)
    bookings = bookings_intersecting(db, vehicle_id, window.start - booking_reach, window.end + booking_reach, now)
    blackouts = blackouts_intersecting(db, vehicle_id, window.start - blackout_reach, window.end + blackout_reach)

    raw: List[BusyInterval] = [
        BusyInterval(booking.start_time, booking.end_time, BOOKING).expand(policy.buffer_hours)
        for booking in bookings
    ]
    raw.extend(
        BusyInterval(blackout.start_time, blackout.end_time, BLACKOUT).expand(policy.blackout_buffer_hours)
        for blackout in blackouts
    )
    busy = [block for block in merge_busy(raw) if block.overlaps(window)]

    if use_cache:
        cache.store(vehicle_id, window.start, window.end, busy)
    return busy


def notice_interval(policy: Policy, now: datetime) -> Optional[BusyInterval]:
    if policy.min_notice_hours <= 0:
        return None
    return BusyInterval(now, policy.notice_floor(now), NOTICE)


def get_availability(db: Session, vehicle_id: int, start: datetime, end: datetime, now: datetime) -> Availability:
    """Free and busy sub-ranges of ``[start, end)``; together they cover the window exactly."""
    window = Interval(start, end)
    policy = policy_for(get_vehicle(db, vehicle_id))

    blocks: List[BusyInterval] = list(compute_busy(db, vehicle_id, window, now, policy=policy))
    notice = notice_interval(policy, now)
    if notice is not None:
        blocks.append(notice)

    clipped = [part for part in (clip(block, window) for block in blocks) if part is not None]
    busy = flatten_busy(clipped, BUSY_PRECEDENCE)
    free = subtract(window, busy)
    logger.debug("Vehicle %s availability: %s free, %s busy ranges", vehicle_id, len(free), len(busy))
    return Availability(vehicle_id=vehicle_id, window=window, free=free, busy=busy)
