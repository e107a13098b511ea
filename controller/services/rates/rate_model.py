"""
Rate Model

Time-of-use tariff lookup. Pure functions of the published RateSchedules
and an instant; the facility's timezone decides which local window
applies.

Window resolution (most specific match wins):
1. A window with explicit days_of_week beats a default (every-day) window
2. Among equal specificity, the shorter window wins
3. Then declaration order

Missing tariffs raise ConfigurationError. Cost-sensitive callers (savings
verification, control decisions) let it propagate; advisory callers use
rate_at_or_default().
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable
from zoneinfo import ZoneInfo

from common.config import RateSettings
from common.exceptions import ConfigurationError
from common.logging_setup import get_service_logger
from common.models import Facility, RateSchedule, RateWindow
from common.timestamp import ensure_utc, to_local

logger = get_service_logger("rates")


@dataclass(frozen=True)
class RateQuote:
    """Applicable rate at one instant"""
    energy_rate: float
    is_peak: bool
    demand_charge: float
    window: str = ""
    version: int | None = None
    fallback: bool = False


class RateModel:
    """
    Published tariffs indexed by rate zone.

    A newer version supersedes an older one from its effective_from on;
    published versions are never mutated.
    """

    def __init__(
        self,
        schedules: Iterable[RateSchedule] = (),
        settings: RateSettings | None = None,
    ):
        self.settings = settings or RateSettings()
        self._schedules: dict[str, list[RateSchedule]] = {}
        for schedule in schedules:
            self.publish(schedule)

    @classmethod
    async def load(cls, store, rate_zones: Iterable[str], settings: RateSettings | None = None) -> "RateModel":
        """Build a model from the persisted schedules of the given rate zones"""
        model = cls(settings=settings)
        for rate_zone in sorted(set(rate_zones)):
            for schedule in await store.list_rate_schedules(rate_zone):
                model.publish(schedule)
        return model

    def publish(self, schedule: RateSchedule) -> None:
        """Register a schedule version (versions are immutable)"""
        if not schedule.windows:
            raise ConfigurationError(
                f"rate schedule {schedule.rate_zone} v{schedule.version} has no windows",
                subject=schedule.rate_zone,
            )
        versions = self._schedules.setdefault(schedule.rate_zone, [])
        if any(s.version == schedule.version for s in versions):
            raise ConfigurationError(
                f"rate schedule {schedule.rate_zone} v{schedule.version} already published",
                subject=schedule.rate_zone,
            )
        versions.append(schedule)
        versions.sort(key=lambda s: s.version)

    def rate_zones(self) -> list[str]:
        return sorted(self._schedules)

    def schedule_for(self, rate_zone: str, ts: datetime) -> RateSchedule:
        """Highest published version effective at ts"""
        effective = [s for s in self._schedules.get(rate_zone, []) if s.is_effective(ts)]
        if not effective:
            raise ConfigurationError(
                f"no rate schedule published for rate zone '{rate_zone}' at {ensure_utc(ts).isoformat()}",
                subject=rate_zone,
            )
        return effective[-1]

    @staticmethod
    def _select_window(windows: list[RateWindow], local_dt: datetime) -> RateWindow | None:
        candidates = [
            (w.is_default, w.duration_minutes, index, w)
            for index, w in enumerate(windows)
            if w.covers(local_dt)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda c: c[:3])[3]

    def rate_at(self, rate_zone: str, ts: datetime, tz_name: str = "UTC") -> RateQuote:
        """
        Rate applicable at an instant.

        Raises:
            ConfigurationError: no schedule published, or no window covers ts
        """
        schedule = self.schedule_for(rate_zone, ts)
        local_dt = to_local(ts, tz_name)
        window = self._select_window(schedule.windows, local_dt)
        if window is None:
            raise ConfigurationError(
                f"rate schedule {rate_zone} v{schedule.version} has no window covering "
                f"{local_dt.strftime('%a %H:%M')} ({tz_name})",
                subject=rate_zone,
            )
        return RateQuote(
            energy_rate=window.energy_rate,
            is_peak=window.is_peak,
            demand_charge=schedule.demand_charge,
            window=window.name,
            version=schedule.version,
        )

    def rate_for_facility(self, facility: Facility, ts: datetime) -> RateQuote:
        return self.rate_at(facility.rate_zone, ts, facility.timezone)

    def default_quote(self, rate_zone: str) -> RateQuote:
        """
        Conservative quote for advisory use.

        Uses the highest energy rate ever published for the zone (treated
        as peak), or the configured fallback when nothing is published.
        """
        published = self._schedules.get(rate_zone, [])
        rates = [w.energy_rate for s in published for w in s.windows]
        charges = [s.demand_charge for s in published]
        return RateQuote(
            energy_rate=max(rates) if rates else self.settings.fallback_energy_rate,
            is_peak=True,
            demand_charge=max(charges) if charges else self.settings.fallback_demand_charge,
            window="fallback",
            fallback=True,
        )

    def rate_at_or_default(self, rate_zone: str, ts: datetime, tz_name: str = "UTC") -> RateQuote:
        """Advisory lookup: never raises for missing tariffs"""
        try:
            return self.rate_at(rate_zone, ts, tz_name)
        except ConfigurationError as e:
            logger.warning(f"Using fallback rate for {rate_zone}: {e.message}")
            return self.default_quote(rate_zone)

    def _boundaries(
        self,
        rate_zone: str,
        start: datetime,
        end: datetime,
        tz_name: str,
    ) -> list[datetime]:
        """Instants in (start, end) where the applicable window may change"""
        start = ensure_utc(start)
        end = ensure_utc(end)
        tz = ZoneInfo(tz_name)
        edges: set[datetime] = set()

        for schedule in self._schedules.get(rate_zone, []):
            for edge in (schedule.effective_from, schedule.effective_to):
                if edge is not None and start < ensure_utc(edge) < end:
                    edges.add(ensure_utc(edge))

            first_day: date = to_local(start, tz_name).date() - timedelta(days=1)
            last_day: date = to_local(end, tz_name).date() + timedelta(days=1)
            day = first_day
            while day <= last_day:
                for window in schedule.windows:
                    for clock in (window.start, window.end):
                        edge = ensure_utc(datetime.combine(day, clock, tzinfo=tz))
                        if start < edge < end:
                            edges.add(edge)
                day += timedelta(days=1)

        return sorted(edges)

    def segments(
        self,
        rate_zone: str,
        start: datetime,
        end: datetime,
        tz_name: str = "UTC",
    ) -> list[tuple[datetime, datetime, RateQuote]]:
        """Split [start, end) into sub-intervals with a constant rate"""
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            return []

        points = [start, *self._boundaries(rate_zone, start, end, tz_name), end]
        result = []
        for seg_start, seg_end in zip(points, points[1:]):
            midpoint = seg_start + (seg_end - seg_start) / 2
            quote = self.rate_at(rate_zone, midpoint, tz_name)
            if result and result[-1][2] == quote and result[-1][1] == seg_start:
                result[-1] = (result[-1][0], seg_end, quote)
            else:
                result.append((seg_start, seg_end, quote))
        return result

    def price_interval(
        self,
        rate_zone: str,
        start: datetime,
        end: datetime,
        kwh: float,
        tz_name: str = "UTC",
    ) -> float:
        """
        Price energy spread evenly over [start, end).

        The interval is split at window boundaries so a quarter-hour that
        straddles the start of a peak window is priced partly at each rate.
        """
        total_seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
        if total_seconds <= 0:
            return 0.0

        cost = 0.0
        for seg_start, seg_end, quote in self.segments(rate_zone, start, end, tz_name):
            share = (seg_end - seg_start).total_seconds() / total_seconds
            cost += kwh * share * quote.energy_rate
        return cost

    def peak_windows(
        self,
        rate_zone: str,
        start: datetime,
        end: datetime,
        tz_name: str = "UTC",
    ) -> list[tuple[datetime, datetime]]:
        """Concrete peak intervals within [start, end)"""
        windows: list[tuple[datetime, datetime]] = []
        for seg_start, seg_end, quote in self.segments(rate_zone, start, end, tz_name):
            if not quote.is_peak:
                continue
            if windows and windows[-1][1] == seg_start:
                windows[-1] = (windows[-1][0], seg_end)
            else:
                windows.append((seg_start, seg_end))
        return windows
