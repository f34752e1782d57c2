"""Per-process cache of computed busy sets, keyed by vehicle and window.

Every successful mutation of a vehicle's commitments must call
``invalidate_vehicle`` after it commits, before the response goes out.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from common.cache import SimpleTTLCache
from common.config import get_settings

from .intervals import BusyInterval

logger = logging.getLogger(__name__)

settings = get_settings()
busy_cache: SimpleTTLCache[List[BusyInterval]] = SimpleTTLCache(ttl=settings.availability_cache_ttl, maxsize=1024)


def _vehicle_prefix(vehicle_id: int) -> str:
    return f"busy:{vehicle_id}:"


def _busy_key(vehicle_id: int, start: datetime, end: datetime) -> str:
    start, end = start.astimezone(timezone.utc), end.astimezone(timezone.utc)
    return f"{_vehicle_prefix(vehicle_id)}{start.isoformat()}:{end.isoformat()}"


def enabled() -> bool:
    return get_settings().availability_cache_enabled


def lookup(vehicle_id: int, start: datetime, end: datetime) -> Optional[List[BusyInterval]]:
    if not enabled():
        return None
    return busy_cache.get(_busy_key(vehicle_id, start, end))


def store(vehicle_id: int, start: datetime, end: datetime, busy: List[BusyInterval]) -> None:
    if enabled():
        busy_cache.set(_busy_key(vehicle_id, start, end), list(busy))


def invalidate_vehicle(vehicle_id: int) -> None:
    dropped = busy_cache.pop_prefix(_vehicle_prefix(vehicle_id))
    if dropped:
        logger.debug("Dropped %s cached busy sets for vehicle %s", dropped, vehicle_id)
