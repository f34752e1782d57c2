"""Half-open interval algebra shared by the availability read path and admission.

Every interval is ``[start, end)``: an interval ending exactly where another
starts does not overlap it. All functions are pure and never touch the store.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import groupby
from typing import Iterable, List, Optional, Sequence

from common.errors import InvalidRange


def _require_aware(value: datetime, label: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidRange(f"{label} must carry an explicit UTC offset")


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        _require_aware(self.start, "start")
        _require_aware(self.end, "end")
        if self.start >= self.end:
            raise InvalidRange()

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: Interval) -> bool:
        return overlaps(self, other)

    def expand(self, hours: int) -> Interval:
        """Grow symmetrically by ``hours`` on both sides."""
        if hours <= 0:
            return self
        delta = timedelta(hours=hours)
        return Interval(self.start - delta, self.end + delta)


@dataclass(frozen=True, order=True)
class BusyInterval(Interval):
    kind: str

    def expand(self, hours: int) -> BusyInterval:
        grown = super().expand(hours)
        return BusyInterval(grown.start, grown.end, self.kind)


def overlaps(a: Interval, b: Interval) -> bool:
    return a.start < b.end and b.start < a.end


def clip(interval: Interval, window: Interval) -> Optional[Interval]:
    """The part of ``interval`` inside ``window``, or None when they do not overlap."""
    if not overlaps(interval, window):
        return None
    start, end = max(interval.start, window.start), min(interval.end, window.end)
    if isinstance(interval, BusyInterval):
        return BusyInterval(start, end, interval.kind)
    return Interval(start, end)


def merge(intervals: Iterable[Interval]) -> List[Interval]:
    """Sorted, minimal, pairwise disjoint cover of ``intervals``.

    Touching intervals are fused as well, so the result never contains two
    entries where one ends at the other's start.
    """
    merged: List[Interval] = []
    for current in sorted(intervals, key=lambda item: (item.start, item.end)):
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
            continue
        merged.append(Interval(current.start, current.end))
    return merged


def merge_busy(busy: Iterable[BusyInterval]) -> List[BusyInterval]:
    """Merge busy intervals per kind; result ordered by start."""
    result: List[BusyInterval] = []
    by_kind = sorted(busy, key=lambda item: item.kind)
    for kind, group in groupby(by_kind, key=lambda item: item.kind):
        result.extend(BusyInterval(item.start, item.end, kind) for item in merge(group))
    result.sort(key=lambda item: (item.start, item.end, item.kind))
    return result


def flatten_busy(busy: Iterable[BusyInterval], precedence: Sequence[str]) -> List[BusyInterval]:
    """Pairwise disjoint busy blocks across all kinds.

    Each kind is merged on its own, then loses whatever time an earlier kind in
    ``precedence`` already covers. Kinds missing from ``precedence`` come last.
    """
    rank = {kind: index for index, kind in enumerate(precedence)}
    ordered = sorted(busy, key=lambda item: (rank.get(item.kind, len(rank)), item.kind))
    claimed: List[Interval] = []
    result: List[BusyInterval] = []
    for kind, group in groupby(ordered, key=lambda item: item.kind):
        blocks = merge(group)
        for block in blocks:
            result.extend(BusyInterval(piece.start, piece.end, kind) for piece in subtract(block, claimed))
        claimed = merge(claimed + blocks)
    result.sort(key=lambda item: (item.start, item.end, item.kind))
    return result


def subtract(window: Interval, busy: Sequence[Interval]) -> List[Interval]:
    """Free sub-ranges of ``window`` not covered by any interval in ``busy``."""
    free: List[Interval] = []
    cursor = window.start
    for blocked in merge(busy):
        if blocked.end <= cursor:
            continue
        if blocked.start >= window.end:
            break
        if blocked.start > cursor:
            free.append(Interval(cursor, blocked.start))
        cursor = max(cursor, blocked.end)
        if cursor >= window.end:
            break
    if cursor < window.end:
        free.append(Interval(cursor, window.end))
    return free


def first_overlap(candidate: Interval, busy: Iterable[Interval]) -> Optional[Interval]:
    for blocked in busy:
        if overlaps(candidate, blocked):
            return blocked
    return None
