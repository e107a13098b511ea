"""
Baseline Estimator

Expected energy use had no load actions been taken, per fixed interval
(comparable-day method).

For each interval of the requested period:
1. Take the same local weekday and time slot on up to lookback_weeks
   prior weeks before the period
2. Average the interval energy of the weeks that have data
3. Multiply by every registered NonRoutineEvent factor covering it

Intervals with fewer than min_comparable_days comparable days fall back
to the flat average power of the last fallback_days before the period,
and the series is marked low_confidence.

Computation is deterministic: readings are sorted before bucketing and
sums use math.fsum, so identical inputs give identical series.
"""

import bisect
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable
from zoneinfo import ZoneInfo

from common.config import BaselineSettings
from common.exceptions import ConfigurationError
from common.logging_setup import get_service_logger
from common.models import EnergyReading, NonRoutineEvent
from common.timestamp import align_timestamp, ensure_utc, hours_between, iter_intervals, to_local

logger = get_service_logger("baseline")

METHOD_COMPARABLE_DAYS = "comparable_days"
METHOD_FLAT_AVERAGE = "flat_average"
METHOD_MIXED = "mixed"


@dataclass
class BaselinePoint:
    """Expected energy for one interval"""
    start: datetime
    end: datetime
    expected_kwh: float
    comparable_days: int = 0
    adjustment_factor: float = 1.0
    fallback: bool = False

    @property
    def expected_kw(self) -> float:
        hours = hours_between(self.start, self.end)
        return self.expected_kwh / hours if hours > 0 else 0.0


@dataclass
class BaselineSeries:
    """Baseline over a period, one point per interval"""
    facility_id: str
    zone_id: str | None
    period_start: datetime
    period_end: datetime
    interval_minutes: int
    points: list[BaselinePoint] = field(default_factory=list)
    method: str = METHOD_COMPARABLE_DAYS
    low_confidence: bool = False

    @property
    def total_kwh(self) -> float:
        return math.fsum(p.expected_kwh for p in self.points)

    @property
    def peak_kw(self) -> float:
        return max((p.expected_kw for p in self.points), default=0.0)


def bucket_power(
    readings: Iterable[EnergyReading],
    interval_seconds: float,
) -> dict[datetime, list[float]]:
    """Group reading power samples by aligned interval start (sorted input order)"""
    buckets: dict[datetime, list[float]] = {}
    ordered = sorted(readings, key=lambda r: (ensure_utc(r.timestamp), r.power_kw))
    for reading in ordered:
        key = align_timestamp(reading.timestamp, interval_seconds)
        buckets.setdefault(key, []).append(reading.power_kw)
    return buckets


def interval_energy(
    readings: Iterable[EnergyReading],
    intervals: list[tuple[datetime, datetime]],
) -> list[tuple[float, float] | None]:
    """
    Energy and mean power per interval from power samples.

    Returns one entry per interval: (kwh, mean_kw), or None when the
    interval has no readings. Intervals may be clipped at the edges, so
    samples are matched to intervals by position rather than alignment.
    """
    if not intervals:
        return []

    starts = [s for s, _ in intervals]
    samples: list[list[float]] = [[] for _ in intervals]
    ordered = sorted(readings, key=lambda r: (ensure_utc(r.timestamp), r.power_kw))
    for reading in ordered:
        ts = ensure_utc(reading.timestamp)
        index = bisect.bisect_right(starts, ts) - 1
        if index < 0 or ts >= intervals[index][1]:
            continue
        samples[index].append(reading.power_kw)

    result: list[tuple[float, float] | None] = []
    for (start, end), values in zip(intervals, samples):
        if not values:
            result.append(None)
            continue
        mean_kw = math.fsum(values) / len(values)
        result.append((mean_kw * hours_between(start, end), mean_kw))
    return result


def adjustment_factor(
    events: Iterable[NonRoutineEvent],
    ts: datetime,
    zone_id: str | None,
) -> float:
    """Product of the factors of every non-routine event covering ts"""
    factor = 1.0
    for event in events:
        if event.covers(ts, zone_id):
            factor *= event.adjustment_factor
    return factor


def _comparable_dates(local_start: datetime, before: date, weeks: int) -> list[date]:
    """The most recent `weeks` dates strictly before `before` sharing local_start's weekday"""
    delta = (before.weekday() - local_start.weekday()) % 7 or 7
    first = before - timedelta(days=delta)
    return [first - timedelta(days=7 * k) for k in range(weeks)]


def compute_baseline(
    facility_id: str,
    zone_id: str | None,
    period_start: datetime,
    period_end: datetime,
    history: list[EnergyReading],
    events: list[NonRoutineEvent],
    tz_name: str = "UTC",
    settings: BaselineSettings | None = None,
) -> BaselineSeries:
    """
    Baseline series from prior readings (pure).

    `history` should contain readings from before period_start; readings
    inside the period are ignored so reporting-period savings never leak
    into their own baseline.
    """
    settings = settings or BaselineSettings()
    period_start = ensure_utc(period_start)
    period_end = ensure_utc(period_end)
    interval_seconds = settings.interval_minutes * 60
    tz = ZoneInfo(tz_name)

    prior = [r for r in history if ensure_utc(r.timestamp) < period_start]
    buckets = bucket_power(prior, interval_seconds)

    fallback_from = period_start - timedelta(days=settings.fallback_days)
    fallback_samples = [
        r.power_kw
        for r in sorted(prior, key=lambda r: (ensure_utc(r.timestamp), r.power_kw))
        if ensure_utc(r.timestamp) >= fallback_from
    ]
    fallback_kw = (
        math.fsum(fallback_samples) / len(fallback_samples) if fallback_samples else 0.0
    )

    period_start_date = to_local(period_start, tz_name).date()
    points: list[BaselinePoint] = []
    for start, end in iter_intervals(period_start, period_end, interval_seconds):
        hours = hours_between(start, end)
        local_start = to_local(align_timestamp(start, interval_seconds), tz_name)

        powers = []
        for day in _comparable_dates(local_start, period_start_date, settings.lookback_weeks):
            slot = ensure_utc(datetime.combine(day, local_start.time(), tzinfo=tz))
            values = buckets.get(align_timestamp(slot, interval_seconds))
            if values:
                powers.append(math.fsum(values) / len(values))

        factor = adjustment_factor(events, start, zone_id)
        if len(powers) >= settings.min_comparable_days:
            expected_kw = math.fsum(powers) / len(powers)
            fallback = False
        else:
            expected_kw = fallback_kw
            fallback = True

        points.append(BaselinePoint(
            start=start,
            end=end,
            expected_kwh=expected_kw * hours * factor,
            comparable_days=len(powers),
            adjustment_factor=factor,
            fallback=fallback,
        ))

    fallback_count = sum(1 for p in points if p.fallback)
    if fallback_count == 0:
        method = METHOD_COMPARABLE_DAYS
    elif fallback_count == len(points):
        method = METHOD_FLAT_AVERAGE
    else:
        method = METHOD_MIXED

    return BaselineSeries(
        facility_id=facility_id,
        zone_id=zone_id,
        period_start=period_start,
        period_end=period_end,
        interval_minutes=settings.interval_minutes,
        points=points,
        method=method,
        low_confidence=fallback_count > 0 or not prior,
    )


class BaselineEstimator:
    """Loads history from the store and computes baseline series"""

    def __init__(self, store, settings: BaselineSettings | None = None):
        self.store = store
        self.settings = settings or BaselineSettings()

    def history_start(self, period_start: datetime) -> datetime:
        days = max(7 * (self.settings.lookback_weeks + 1), self.settings.fallback_days)
        return ensure_utc(period_start) - timedelta(days=days)

    async def estimate_baseline(
        self,
        facility_id: str,
        zone_id: str | None,
        period_start: datetime,
        period_end: datetime,
    ) -> BaselineSeries:
        """
        Baseline for a facility meter (zone_id=None) or a single zone.

        Raises:
            ConfigurationError: unknown facility
        """
        facility = await self.store.get_facility(facility_id)
        if facility is None:
            raise ConfigurationError(f"unknown facility '{facility_id}'", subject=facility_id)

        history = await self.store.list_readings(
            facility_id, self.history_start(period_start), period_start, zone_id=zone_id
        )
        events = await self.store.list_non_routine_events(facility_id, period_start, period_end)

        series = compute_baseline(
            facility_id,
            zone_id,
            period_start,
            period_end,
            history,
            events,
            tz_name=facility.timezone,
            settings=self.settings,
        )
        if series.low_confidence:
            logger.info(
                f"Low-confidence baseline for {facility_id}"
                f"{'/' + zone_id if zone_id else ''}: method={series.method}, "
                f"history_readings={len(history)}",
                extra={"facility_id": facility_id},
            )
        return series
