"""
Safety Constraint Engine

Decides whether a load action keeps a zone inside its crop-safety
envelope for the whole action window.

Each action kind drives a set of dimensions:
- REDUCE_HVAC: temperature rises, humidity rises
- REDUCE_LIGHT: DLI deficit grows, temperature falls, a full shed
  counts toward continuous dark hours
- SHIFT: temperature falls, a full shift counts toward dark hours
  (light moves later in the day, so no DLI loss)

Drift rates scale with shed_fraction = magnitude_kw / zone capacity.
Every dimension yields a safe duration; the action is unsafe when the
requested duration exceeds any of them or the zone is already outside
its envelope. The most severe (shortest) dimension is reported.
"""

import math
from dataclasses import dataclass
from datetime import datetime

from common.config import SafetyModelSettings
from common.exceptions import ConfigurationError, SafetyViolation
from common.logging_setup import get_service_logger
from common.models import ActionKind, SafetyEnvelope, SensorSnapshot, Zone
from common.timestamp import ensure_utc, utc_now

logger = get_service_logger("safety")

DIM_SENSOR = "sensor"
DIM_TEMP_HIGH = "temperature_high"
DIM_TEMP_LOW = "temperature_low"
DIM_HUMIDITY = "humidity"
DIM_DLI = "dli"
DIM_DARK_HOURS = "dark_hours"


@dataclass
class ProposedAction:
    """Load action to be checked"""
    kind: ActionKind
    magnitude_kw: float
    start_time: datetime
    end_time: datetime

    @property
    def duration_minutes(self) -> float:
        seconds = (ensure_utc(self.end_time) - ensure_utc(self.start_time)).total_seconds()
        return max(0.0, seconds / 60.0)


@dataclass
class SafetyVerdict:
    """Result of a safety check"""
    safe: bool
    reason: str | None = None
    dimension: str | None = None
    max_safe_duration_minutes: float | None = None
    recovery_minutes: float = 0.0

    def describe(self) -> str:
        if self.safe:
            return "safe"
        return (
            f"{self.dimension}: {self.reason} "
            f"(recovery {self.recovery_minutes:.0f} min)"
        )

    def to_error(self, zone_id: str) -> SafetyViolation:
        return SafetyViolation(
            zone_id, self.dimension or "unknown", self.reason or "", self.recovery_minutes
        )


@dataclass
class _Dimension:
    name: str
    headroom: float           # distance to the envelope limit
    rate_per_hour: float      # drift toward the limit
    recovery_per_hour: float  # drift back once the action ends

    @property
    def safe_minutes(self) -> float:
        if self.headroom <= 0:
            return 0.0
        if self.rate_per_hour <= 0:
            return math.inf
        return self.headroom / self.rate_per_hour * 60.0

    def recovery_minutes(self, duration_minutes: float) -> float:
        drift = self.rate_per_hour * duration_minutes / 60.0
        if drift <= 0 or self.recovery_per_hour <= 0:
            return 0.0
        return drift / self.recovery_per_hour * 60.0


class SafetyConstraintEngine:
    """
    Crop-safety gate for every shed and shift decision.

    Zone and envelope come from the store; the latest environment comes
    from the sensor feed. Missing configuration raises; missing sensor
    data is treated as unsafe.
    """

    def __init__(self, store, sensors, settings: SafetyModelSettings | None = None):
        self.store = store
        self.sensors = sensors
        self.settings = settings or SafetyModelSettings()

    async def is_action_safe(
        self,
        zone_id: str,
        action: ProposedAction,
        now: datetime | None = None,
    ) -> SafetyVerdict:
        """
        Check an action against the zone's envelope.

        Raises:
            ConfigurationError: unknown zone or no envelope for its crop profile
        """
        zone = await self.store.get_zone(zone_id)
        if zone is None:
            raise ConfigurationError(f"unknown zone '{zone_id}'", subject=zone_id)

        envelope = await self.store.get_safety_envelope(zone.crop_profile)
        if envelope is None:
            raise ConfigurationError(
                f"no safety envelope for crop profile '{zone.crop_profile}' (zone {zone_id})",
                subject=zone.crop_profile,
            )

        snapshot = await self.sensors.current(zone_id)
        verdict = self.evaluate(zone, envelope, snapshot, action, now or utc_now())
        if not verdict.safe:
            logger.debug(f"Zone {zone_id} {action.kind.value} unsafe: {verdict.describe()}")
        return verdict

    def evaluate(
        self,
        zone: Zone,
        envelope: SafetyEnvelope,
        snapshot: SensorSnapshot | None,
        action: ProposedAction,
        now: datetime,
    ) -> SafetyVerdict:
        """Pure safety check for one zone"""
        floor = envelope.min_recovery_minutes

        if snapshot is None:
            return SafetyVerdict(
                safe=False,
                reason="no sensor data",
                dimension=DIM_SENSOR,
                max_safe_duration_minutes=0.0,
                recovery_minutes=floor,
            )

        age_s = (ensure_utc(now) - ensure_utc(snapshot.timestamp)).total_seconds()
        if age_s > self.settings.sensor_max_age_s:
            return SafetyVerdict(
                safe=False,
                reason=f"sensor data is {age_s:.0f}s old",
                dimension=DIM_SENSOR,
                max_safe_duration_minutes=0.0,
                recovery_minutes=floor,
            )

        if action.magnitude_kw <= 0:
            return SafetyVerdict(safe=True, recovery_minutes=0.0)

        if zone.capacity_kw > 0:
            shed_fraction = min(1.0, action.magnitude_kw / zone.capacity_kw)
        else:
            shed_fraction = 1.0

        dimensions = self._dimensions(action.kind, shed_fraction, envelope, snapshot)
        duration = action.duration_minutes

        # Zone already outside its envelope on a dimension this action touches
        # or on temperature/humidity at all
        outside = self._outside_envelope(envelope, snapshot, dimensions)
        if outside is not None:
            return SafetyVerdict(
                safe=False,
                reason=outside[1],
                dimension=outside[0],
                max_safe_duration_minutes=0.0,
                recovery_minutes=floor,
            )

        if not dimensions:
            return SafetyVerdict(safe=True, recovery_minutes=floor)

        # Most severe dimension: shortest safe duration, then declaration order
        worst = min(dimensions, key=lambda d: d.safe_minutes)
        safe_minutes = worst.safe_minutes
        recovery = max(floor, worst.recovery_minutes(min(duration, safe_minutes)))
        max_safe = None if math.isinf(safe_minutes) else round(safe_minutes, 1)

        if duration > safe_minutes:
            return SafetyVerdict(
                safe=False,
                reason=(
                    f"{worst.name} limit reached after {safe_minutes:.0f} min "
                    f"of {duration:.0f} min requested"
                ),
                dimension=worst.name,
                max_safe_duration_minutes=max_safe,
                recovery_minutes=recovery,
            )

        return SafetyVerdict(
            safe=True,
            dimension=worst.name,
            max_safe_duration_minutes=max_safe,
            recovery_minutes=recovery,
        )

    def _dimensions(
        self,
        kind: ActionKind,
        shed_fraction: float,
        envelope: SafetyEnvelope,
        snapshot: SensorSnapshot,
    ) -> list[_Dimension]:
        s = self.settings
        dims: list[_Dimension] = []

        if kind == ActionKind.REDUCE_HVAC:
            dims.append(_Dimension(
                DIM_TEMP_HIGH,
                envelope.max_temp_c - snapshot.temperature_c,
                s.hvac_temp_drift_c_per_hour * shed_fraction,
                s.temp_recovery_c_per_hour,
            ))
            dims.append(_Dimension(
                DIM_HUMIDITY,
                envelope.max_humidity_pct - snapshot.humidity_pct,
                s.hvac_humidity_drift_pct_per_hour * shed_fraction,
                s.humidity_recovery_pct_per_hour,
            ))
            return dims

        if kind == ActionKind.REDUCE_LIGHT:
            dims.append(_Dimension(
                DIM_DLI,
                snapshot.projected_dli - envelope.min_dli,
                s.light_dli_per_hour * shed_fraction,
                s.dli_recovery_per_hour,
            ))

        # REDUCE_LIGHT and SHIFT both cool the zone and may extend darkness
        dims.append(_Dimension(
            DIM_TEMP_LOW,
            snapshot.temperature_c - envelope.min_temp_c,
            s.light_temp_drop_c_per_hour * shed_fraction,
            s.temp_recovery_c_per_hour,
        ))
        if shed_fraction >= 1.0:
            dims.append(_Dimension(
                DIM_DARK_HOURS,
                envelope.max_continuous_dark_hours - snapshot.dark_hours,
                1.0,
                0.0,
            ))
        return dims

    @staticmethod
    def _outside_envelope(
        envelope: SafetyEnvelope,
        snapshot: SensorSnapshot,
        dimensions: list[_Dimension],
    ) -> tuple[str, str] | None:
        if snapshot.temperature_c > envelope.max_temp_c:
            return DIM_TEMP_HIGH, (
                f"temperature {snapshot.temperature_c:.1f}C above max {envelope.max_temp_c:.1f}C"
            )
        if snapshot.temperature_c < envelope.min_temp_c:
            return DIM_TEMP_LOW, (
                f"temperature {snapshot.temperature_c:.1f}C below min {envelope.min_temp_c:.1f}C"
            )
        if not envelope.min_humidity_pct <= snapshot.humidity_pct <= envelope.max_humidity_pct:
            return DIM_HUMIDITY, (
                f"humidity {snapshot.humidity_pct:.0f}% outside "
                f"{envelope.min_humidity_pct:.0f}-{envelope.max_humidity_pct:.0f}%"
            )
        for dim in dimensions:
            if dim.headroom <= 0:
                return dim.name, f"{dim.name} already at limit"
        return None
