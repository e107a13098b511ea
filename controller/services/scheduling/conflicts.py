"""
Conflict Resolution

Decides which schedules of one zone may run together.

Order is LoadSheddingSchedule.rank_key(): priority, grid events first,
creation time, id. Policies:
- exclusive: accepted schedules never overlap in time; any overlapping
  lower-ranked schedule is superseded
- stack: overlapping schedules add up; a lower-ranked schedule is
  superseded only if it would push the zone past its capacity
"""

from datetime import datetime
from typing import Iterable

from common.config import ConflictPolicy
from common.models import LoadSheddingSchedule
from common.timestamp import ensure_utc


def peak_committed_kw(
    schedules: Iterable[LoadSheddingSchedule],
    start: datetime,
    end: datetime,
) -> float:
    """
    Highest concurrent reduction committed by `schedules` inside [start, end).

    Schedules are summed only where they actually overlap each other, so
    two back-to-back schedules never count together.
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    relevant = [s for s in schedules if s.overlaps_window(start, end)]
    if not relevant:
        return 0.0

    points = {start}
    for s in relevant:
        for edge in (ensure_utc(s.start_time), ensure_utc(s.end_time)):
            if start <= edge < end:
                points.add(edge)

    peak = 0.0
    for point in sorted(points):
        load = sum(
            s.target_reduction_kw
            for s in relevant
            if ensure_utc(s.start_time) <= point < ensure_utc(s.end_time)
        )
        peak = max(peak, load)
    return peak


def resolve_conflicts(
    candidates: Iterable[LoadSheddingSchedule],
    policy: ConflictPolicy,
    capacity_kw: dict[str, float],
) -> tuple[list[LoadSheddingSchedule], list[LoadSheddingSchedule]]:
    """
    Split candidates into (accepted, superseded), both in rank order.

    Candidates are the ACTIVE and activation-ready schedules of a
    facility; zones are resolved independently.
    """
    accepted: list[LoadSheddingSchedule] = []
    superseded: list[LoadSheddingSchedule] = []

    for schedule in sorted(candidates, key=lambda s: s.rank_key()):
        same_zone = [a for a in accepted if a.overlaps(schedule)]

        if policy == ConflictPolicy.EXCLUSIVE:
            fits = not same_zone
        else:
            committed = peak_committed_kw(same_zone, schedule.start_time, schedule.end_time)
            capacity = capacity_kw.get(schedule.zone_id, 0.0)
            fits = committed + schedule.target_reduction_kw <= capacity + 1e-9

        if fits:
            accepted.append(schedule)
        else:
            superseded.append(schedule)

    return accepted, superseded
