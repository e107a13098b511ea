"""
Domain Records

Facility, zone, tariff, schedule and reading records shared by every
controller service. Records serialize to plain dicts (ISO timestamps,
enum values) so the same shape is used by the persistence layer and the
HTTP API.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any

from .timestamp import ensure_utc, parse_timestamp, to_iso, utc_now


class ActionKind(str, Enum):
    """Kind of load action applied to a zone"""
    REDUCE_LIGHT = "REDUCE_LIGHT"
    REDUCE_HVAC = "REDUCE_HVAC"
    SHIFT = "SHIFT"


class ScheduleStatus(str, Enum):
    """Load-shedding schedule lifecycle"""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ShedReason(str, Enum):
    """Why a schedule was created"""
    PEAK_DEMAND = "peak_demand"
    GRID_EVENT = "grid_event"
    COST_OPTIMIZATION = "cost_optimization"
    MANUAL = "manual"


class CancelReason(str, Enum):
    """Why a schedule ended up CANCELLED"""
    USER_CANCELLED = "user_cancelled"
    SAFETY_VIOLATION = "safety_violation"
    SAFETY_TIMEOUT = "safety_timeout"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class ActuationState(str, Enum):
    """Current actuation state of a zone"""
    NORMAL = "normal"
    SHED = "shed"
    SHIFTED = "shifted"


class AckStatus(str, Enum):
    """Device acknowledgement status of an actuation command"""
    PENDING = "PENDING"
    ACKED = "ACKED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED})

# Priority forced by reason; other reasons keep the requested priority
REASON_PRIORITY = {
    ShedReason.GRID_EVENT: 1,
    ShedReason.COST_OPTIMIZATION: 3,
}


def _parse_time(value: str | time) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


@dataclass
class Facility:
    """Facility (one control loop per facility)"""
    id: str
    timezone: str = "UTC"
    rate_zone: str = ""
    emissions_region: str | None = None
    name: str = ""

    @property
    def region(self) -> str:
        """Region used for emissions factors (defaults to the rate zone)"""
        return self.emissions_region or self.rate_zone

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timezone": self.timezone,
            "rate_zone": self.rate_zone,
            "emissions_region": self.emissions_region,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Facility":
        return cls(
            id=data["id"],
            timezone=data.get("timezone", "UTC"),
            rate_zone=data.get("rate_zone", ""),
            emissions_region=data.get("emissions_region"),
            name=data.get("name", ""),
        )


@dataclass
class Zone:
    """Controllable zone inside a facility"""
    id: str
    facility_id: str
    capacity_kw: float
    crop_profile: str
    actuation_state: ActuationState = ActuationState.NORMAL
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "facility_id": self.facility_id,
            "capacity_kw": self.capacity_kw,
            "crop_profile": self.crop_profile,
            "actuation_state": self.actuation_state.value,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Zone":
        return cls(
            id=data["id"],
            facility_id=data["facility_id"],
            capacity_kw=float(data["capacity_kw"]),
            crop_profile=data["crop_profile"],
            actuation_state=ActuationState(data.get("actuation_state", "normal")),
            name=data.get("name", ""),
        )


@dataclass
class RateWindow:
    """
    Time-of-use window in facility local time.

    A window with end <= start wraps past midnight (e.g. 21:00-07:00).
    An empty days_of_week tuple means every day (a default window).
    Days use Python's weekday numbering: Monday=0 ... Sunday=6.
    """
    name: str
    start: time
    end: time
    energy_rate: float
    is_peak: bool = False
    days_of_week: tuple[int, ...] = ()

    @property
    def is_default(self) -> bool:
        return not self.days_of_week or len(set(self.days_of_week)) >= 7

    @property
    def duration_minutes(self) -> int:
        start = self.start.hour * 60 + self.start.minute
        end = self.end.hour * 60 + self.end.minute
        if end <= start:
            end += 24 * 60
        return end - start

    def covers(self, local_dt: datetime) -> bool:
        """True if the local wall-clock instant falls inside this window"""
        minute = local_dt.hour * 60 + local_dt.minute + local_dt.second / 60.0
        start = self.start.hour * 60 + self.start.minute
        end = self.end.hour * 60 + self.end.minute

        if end > start:
            in_window = start <= minute < end
            day = local_dt.weekday()
        else:
            # Wrapping window belongs to the day it started on
            in_window = minute >= start or minute < end
            day = local_dt.weekday() if minute >= start else (local_dt.weekday() - 1) % 7

        if not in_window:
            return False
        return self.is_default or day in self.days_of_week

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "energy_rate": self.energy_rate,
            "is_peak": self.is_peak,
            "days_of_week": list(self.days_of_week),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RateWindow":
        return cls(
            name=data.get("name", ""),
            start=_parse_time(data["start"]),
            end=_parse_time(data["end"]),
            energy_rate=float(data["energy_rate"]),
            is_peak=bool(data.get("is_peak", False)),
            days_of_week=tuple(int(d) for d in data.get("days_of_week", [])),
        )


@dataclass
class RateSchedule:
    """Published tariff for a rate zone (immutable, superseded by version)"""
    rate_zone: str
    version: int
    windows: list[RateWindow]
    demand_charge: float
    effective_from: datetime
    effective_to: datetime | None = None

    def is_effective(self, ts: datetime) -> bool:
        ts = ensure_utc(ts)
        if ts < ensure_utc(self.effective_from):
            return False
        return self.effective_to is None or ts < ensure_utc(self.effective_to)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate_zone": self.rate_zone,
            "version": self.version,
            "windows": [w.to_dict() for w in self.windows],
            "demand_charge": self.demand_charge,
            "effective_from": to_iso(self.effective_from),
            "effective_to": to_iso(self.effective_to),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RateSchedule":
        return cls(
            rate_zone=data["rate_zone"],
            version=int(data.get("version", 1)),
            windows=[RateWindow.from_dict(w) for w in data.get("windows", [])],
            demand_charge=float(data.get("demand_charge", 0.0)),
            effective_from=parse_timestamp(data["effective_from"]),
            effective_to=parse_timestamp(data.get("effective_to")),
        )


@dataclass
class SafetyEnvelope:
    """Crop-safety bounds for a crop/growth-stage profile"""
    crop_profile: str
    min_temp_c: float
    max_temp_c: float
    min_humidity_pct: float
    max_humidity_pct: float
    min_dli: float
    max_continuous_dark_hours: float
    min_recovery_minutes: float = 15.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "crop_profile": self.crop_profile,
            "min_temp_c": self.min_temp_c,
            "max_temp_c": self.max_temp_c,
            "min_humidity_pct": self.min_humidity_pct,
            "max_humidity_pct": self.max_humidity_pct,
            "min_dli": self.min_dli,
            "max_continuous_dark_hours": self.max_continuous_dark_hours,
            "min_recovery_minutes": self.min_recovery_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SafetyEnvelope":
        return cls(
            crop_profile=data["crop_profile"],
            min_temp_c=float(data["min_temp_c"]),
            max_temp_c=float(data["max_temp_c"]),
            min_humidity_pct=float(data["min_humidity_pct"]),
            max_humidity_pct=float(data["max_humidity_pct"]),
            min_dli=float(data["min_dli"]),
            max_continuous_dark_hours=float(data["max_continuous_dark_hours"]),
            min_recovery_minutes=float(data.get("min_recovery_minutes", 15.0)),
        )


@dataclass
class SensorSnapshot:
    """Latest environmental reading for a zone"""
    zone_id: str
    timestamp: datetime
    temperature_c: float
    humidity_pct: float
    dli_so_far: float = 0.0
    projected_dli: float = 0.0
    dark_hours: float = 0.0


@dataclass
class EnergyReading:
    """Append-only meter reading"""
    facility_id: str
    timestamp: datetime
    power_kw: float
    cumulative_kwh: float = 0.0
    cost: float = 0.0
    zone_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "zone_id": self.zone_id,
            "timestamp": to_iso(self.timestamp),
            "power_kw": self.power_kw,
            "cumulative_kwh": self.cumulative_kwh,
            "cost": self.cost,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EnergyReading":
        return cls(
            facility_id=data["facility_id"],
            zone_id=data.get("zone_id"),
            timestamp=parse_timestamp(data["timestamp"]),
            power_kw=float(data["power_kw"]),
            cumulative_kwh=float(data.get("cumulative_kwh", 0.0)),
            cost=float(data.get("cost", 0.0)),
        )


@dataclass
class NonRoutineEvent:
    """Registered baseline adjustment (crop-stage change, added equipment)"""
    id: str
    facility_id: str
    start: datetime
    end: datetime
    adjustment_factor: float
    zone_id: str | None = None
    description: str = ""

    def covers(self, ts: datetime, zone_id: str | None) -> bool:
        if self.zone_id is not None and self.zone_id != zone_id:
            return False
        ts = ensure_utc(ts)
        return ensure_utc(self.start) <= ts < ensure_utc(self.end)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "facility_id": self.facility_id,
            "zone_id": self.zone_id,
            "start": to_iso(self.start),
            "end": to_iso(self.end),
            "adjustment_factor": self.adjustment_factor,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NonRoutineEvent":
        return cls(
            id=data["id"],
            facility_id=data["facility_id"],
            zone_id=data.get("zone_id"),
            start=parse_timestamp(data["start"]),
            end=parse_timestamp(data["end"]),
            adjustment_factor=float(data["adjustment_factor"]),
            description=data.get("description", ""),
        )


@dataclass
class LoadSheddingSchedule:
    """
    Time-bounded shed request for one zone.

    Status is written only by the facility's control loop. The API and
    the DR handler create PENDING records and set cancel_requested.
    """
    id: str
    facility_id: str
    zone_id: str
    start_time: datetime
    end_time: datetime
    target_reduction_kw: float
    priority: int = 2
    reason: ShedReason = ShedReason.MANUAL
    status: ScheduleStatus = ScheduleStatus.PENDING
    action_kind: ActionKind = ActionKind.REDUCE_LIGHT
    created_at: datetime = field(default_factory=utc_now)
    dr_event_id: str | None = None
    cancel_reason: CancelReason | None = None
    cancel_requested: bool = False
    cancel_override: bool = False
    unsafe_since: datetime | None = None
    unsafe_detail: str | None = None
    degraded: bool = False
    activated_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float:
        return (ensure_utc(self.end_time) - ensure_utc(self.start_time)).total_seconds()

    def overlaps(self, other: "LoadSheddingSchedule") -> bool:
        """True if both schedules target the same zone at some instant"""
        if self.zone_id != other.zone_id:
            return False
        return (
            ensure_utc(self.start_time) < ensure_utc(other.end_time)
            and ensure_utc(other.start_time) < ensure_utc(self.end_time)
        )

    def overlaps_window(self, start: datetime, end: datetime) -> bool:
        return (
            ensure_utc(self.start_time) < ensure_utc(end)
            and ensure_utc(start) < ensure_utc(self.end_time)
        )

    def rank_key(self) -> tuple:
        """
        Deterministic conflict-resolution order.

        Lower priority number first, grid events before other reasons at
        equal priority, then earliest creation, then id.
        """
        return (
            self.priority,
            0 if self.reason == ShedReason.GRID_EVENT else 1,
            ensure_utc(self.created_at),
            self.id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "facility_id": self.facility_id,
            "zone_id": self.zone_id,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "target_reduction_kw": self.target_reduction_kw,
            "priority": self.priority,
            "reason": self.reason.value,
            "status": self.status.value,
            "action_kind": self.action_kind.value,
            "created_at": to_iso(self.created_at),
            "dr_event_id": self.dr_event_id,
            "cancel_reason": self.cancel_reason.value if self.cancel_reason else None,
            "cancel_requested": self.cancel_requested,
            "cancel_override": self.cancel_override,
            "unsafe_since": to_iso(self.unsafe_since),
            "unsafe_detail": self.unsafe_detail,
            "degraded": self.degraded,
            "activated_at": to_iso(self.activated_at),
            "completed_at": to_iso(self.completed_at),
            "cancelled_at": to_iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LoadSheddingSchedule":
        cancel_reason = data.get("cancel_reason")
        return cls(
            id=data["id"],
            facility_id=data["facility_id"],
            zone_id=data["zone_id"],
            start_time=parse_timestamp(data["start_time"]),
            end_time=parse_timestamp(data["end_time"]),
            target_reduction_kw=float(data["target_reduction_kw"]),
            priority=int(data.get("priority", 2)),
            reason=ShedReason(data.get("reason", "manual")),
            status=ScheduleStatus(data.get("status", "PENDING")),
            action_kind=ActionKind(data.get("action_kind", "REDUCE_LIGHT")),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            dr_event_id=data.get("dr_event_id"),
            cancel_reason=CancelReason(cancel_reason) if cancel_reason else None,
            cancel_requested=bool(data.get("cancel_requested", False)),
            cancel_override=bool(data.get("cancel_override", False)),
            unsafe_since=parse_timestamp(data.get("unsafe_since")),
            unsafe_detail=data.get("unsafe_detail"),
            degraded=bool(data.get("degraded", False)),
            activated_at=parse_timestamp(data.get("activated_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            cancelled_at=parse_timestamp(data.get("cancelled_at")),
        )


@dataclass
class DemandResponseEvent:
    """Utility/aggregator curtailment request (immutable once received)"""
    id: str
    facility_id: str
    issued_by: str
    window_start: datetime
    window_end: datetime
    required_reduction_kw: float
    compensation_rate: float = 0.0
    acknowledged_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "facility_id": self.facility_id,
            "issued_by": self.issued_by,
            "window_start": to_iso(self.window_start),
            "window_end": to_iso(self.window_end),
            "required_reduction_kw": self.required_reduction_kw,
            "compensation_rate": self.compensation_rate,
            "acknowledged_at": to_iso(self.acknowledged_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DemandResponseEvent":
        return cls(
            id=data["id"],
            facility_id=data["facility_id"],
            issued_by=data.get("issued_by", ""),
            window_start=parse_timestamp(data["window_start"]),
            window_end=parse_timestamp(data["window_end"]),
            required_reduction_kw=float(data["required_reduction_kw"]),
            compensation_rate=float(data.get("compensation_rate", 0.0)),
            acknowledged_at=parse_timestamp(data.get("acknowledged_at")),
        )


@dataclass
class SavingsReport:
    """Verified savings for a facility over a reporting window (derived cache)"""
    facility_id: str
    period_start: datetime
    period_end: datetime
    baseline_kwh: float
    actual_kwh: float
    kwh_saved: float
    cost_saved: float
    peak_reduction_kw: float
    co2_avoided_kg: float
    generated_at: datetime
    raw_delta_kwh: float = 0.0
    demand_charge_saved: float = 0.0
    baseline_method: str = "comparable_days"
    low_confidence: bool = False
    fingerprint: str = ""

    def numeric_fields(self) -> dict[str, float]:
        return {
            "baseline_kwh": self.baseline_kwh,
            "actual_kwh": self.actual_kwh,
            "kwh_saved": self.kwh_saved,
            "cost_saved": self.cost_saved,
            "peak_reduction_kw": self.peak_reduction_kw,
            "co2_avoided_kg": self.co2_avoided_kg,
            "raw_delta_kwh": self.raw_delta_kwh,
            "demand_charge_saved": self.demand_charge_saved,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "period_start": to_iso(self.period_start),
            "period_end": to_iso(self.period_end),
            **self.numeric_fields(),
            "generated_at": to_iso(self.generated_at),
            "baseline_method": self.baseline_method,
            "low_confidence": self.low_confidence,
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SavingsReport":
        return cls(
            facility_id=data["facility_id"],
            period_start=parse_timestamp(data["period_start"]),
            period_end=parse_timestamp(data["period_end"]),
            baseline_kwh=float(data["baseline_kwh"]),
            actual_kwh=float(data["actual_kwh"]),
            kwh_saved=float(data["kwh_saved"]),
            cost_saved=float(data["cost_saved"]),
            peak_reduction_kw=float(data["peak_reduction_kw"]),
            co2_avoided_kg=float(data["co2_avoided_kg"]),
            generated_at=parse_timestamp(data["generated_at"]),
            raw_delta_kwh=float(data.get("raw_delta_kwh", 0.0)),
            demand_charge_saved=float(data.get("demand_charge_saved", 0.0)),
            baseline_method=data.get("baseline_method", "comparable_days"),
            low_confidence=bool(data.get("low_confidence", False)),
            fingerprint=data.get("fingerprint", ""),
        )


@dataclass
class AuditEntry:
    """Append-only audit record of a control action"""
    facility_id: str
    action: str
    timestamp: datetime = field(default_factory=utc_now)
    schedule_id: str | None = None
    zone_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "action": self.action,
            "timestamp": to_iso(self.timestamp),
            "schedule_id": self.schedule_id,
            "zone_id": self.zone_id,
            "detail": self.detail,
        }


@dataclass
class Alert:
    """User-visible alert (safety cancellation, actuation failure)"""
    facility_id: str
    severity: str
    message: str
    created_at: datetime = field(default_factory=utc_now)
    alert_type: str = "general"
    zone_id: str | None = None
    schedule_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "severity": self.severity,
            "message": self.message,
            "created_at": to_iso(self.created_at),
            "alert_type": self.alert_type,
            "zone_id": self.zone_id,
            "schedule_id": self.schedule_id,
        }
