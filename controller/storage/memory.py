"""
In-Memory Store

Process-local implementation of EnergyStore. Records are copied on the
way in and out so callers never share mutable state with the store,
which keeps the control loop's single-writer discipline honest in tests.
"""

import copy
from datetime import datetime
from typing import Iterable

from common.models import (
    Alert,
    AuditEntry,
    DemandResponseEvent,
    EnergyReading,
    Facility,
    LoadSheddingSchedule,
    NonRoutineEvent,
    RateSchedule,
    SafetyEnvelope,
    SavingsReport,
    ScheduleStatus,
    Zone,
)
from common.timestamp import ensure_utc


class InMemoryStore:
    """Dict-backed EnergyStore"""

    def __init__(self):
        self._facilities: dict[str, Facility] = {}
        self._zones: dict[str, Zone] = {}
        self._rate_schedules: dict[str, list[RateSchedule]] = {}
        self._envelopes: dict[str, SafetyEnvelope] = {}
        self._schedules: dict[str, LoadSheddingSchedule] = {}
        self._dr_events: dict[str, DemandResponseEvent] = {}
        self._readings: list[EnergyReading] = []
        self._non_routine: list[NonRoutineEvent] = []
        self._reports: dict[tuple, SavingsReport] = {}
        self._audit: list[AuditEntry] = []
        self._alerts: list[Alert] = []

    # ── Facilities and zones ─────────────────────────────────────────

    async def get_facility(self, facility_id: str) -> Facility | None:
        return copy.deepcopy(self._facilities.get(facility_id))

    async def list_facilities(self) -> list[Facility]:
        return [copy.deepcopy(f) for _, f in sorted(self._facilities.items())]

    async def save_facility(self, facility: Facility) -> None:
        self._facilities[facility.id] = copy.deepcopy(facility)

    async def get_zone(self, zone_id: str) -> Zone | None:
        return copy.deepcopy(self._zones.get(zone_id))

    async def list_zones(self, facility_id: str) -> list[Zone]:
        return [
            copy.deepcopy(z)
            for _, z in sorted(self._zones.items())
            if z.facility_id == facility_id
        ]

    async def save_zone(self, zone: Zone) -> None:
        self._zones[zone.id] = copy.deepcopy(zone)

    # ── Tariffs and envelopes ────────────────────────────────────────

    async def list_rate_schedules(self, rate_zone: str) -> list[RateSchedule]:
        return copy.deepcopy(self._rate_schedules.get(rate_zone, []))

    async def publish_rate_schedule(self, schedule: RateSchedule) -> None:
        versions = self._rate_schedules.setdefault(schedule.rate_zone, [])
        if any(s.version == schedule.version for s in versions):
            raise ValueError(
                f"Rate schedule {schedule.rate_zone} v{schedule.version} already published"
            )
        versions.append(copy.deepcopy(schedule))

    async def get_safety_envelope(self, crop_profile: str) -> SafetyEnvelope | None:
        return copy.deepcopy(self._envelopes.get(crop_profile))

    async def save_safety_envelope(self, envelope: SafetyEnvelope) -> None:
        self._envelopes[envelope.crop_profile] = copy.deepcopy(envelope)

    # ── Schedules and DR events ──────────────────────────────────────

    async def get_schedule(self, schedule_id: str) -> LoadSheddingSchedule | None:
        return copy.deepcopy(self._schedules.get(schedule_id))

    async def list_schedules(
        self,
        facility_id: str,
        zone_id: str | None = None,
        statuses: Iterable[ScheduleStatus] | None = None,
    ) -> list[LoadSheddingSchedule]:
        wanted = set(statuses) if statuses is not None else None
        result = [
            copy.deepcopy(s)
            for s in self._schedules.values()
            if s.facility_id == facility_id
            and (zone_id is None or s.zone_id == zone_id)
            and (wanted is None or s.status in wanted)
        ]
        return sorted(result, key=lambda s: s.rank_key())

    async def save_schedule(self, schedule: LoadSheddingSchedule) -> None:
        self._schedules[schedule.id] = copy.deepcopy(schedule)

    async def get_dr_event(self, event_id: str) -> DemandResponseEvent | None:
        return copy.deepcopy(self._dr_events.get(event_id))

    async def save_dr_event(self, event: DemandResponseEvent) -> None:
        self._dr_events[event.id] = copy.deepcopy(event)

    # ── Readings ─────────────────────────────────────────────────────

    async def list_readings(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
        zone_id: str | None = None,
    ) -> list[EnergyReading]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        result = [
            copy.deepcopy(r)
            for r in self._readings
            if r.facility_id == facility_id
            and r.zone_id == zone_id
            and start <= ensure_utc(r.timestamp) < end
        ]
        return sorted(result, key=lambda r: ensure_utc(r.timestamp))

    async def append_reading(self, reading: EnergyReading) -> None:
        self._readings.append(copy.deepcopy(reading))

    async def list_non_routine_events(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
    ) -> list[NonRoutineEvent]:
        result = [
            copy.deepcopy(e)
            for e in self._non_routine
            if e.facility_id == facility_id
            and ensure_utc(e.start) < ensure_utc(end)
            and ensure_utc(start) < ensure_utc(e.end)
        ]
        return sorted(result, key=lambda e: (ensure_utc(e.start), e.id))

    async def save_non_routine_event(self, event: NonRoutineEvent) -> None:
        self._non_routine = [e for e in self._non_routine if e.id != event.id]
        self._non_routine.append(copy.deepcopy(event))

    # ── Reports, audit, alerts ───────────────────────────────────────

    async def save_report(self, report: SavingsReport) -> None:
        key = (report.facility_id, ensure_utc(report.period_start), ensure_utc(report.period_end))
        self._reports[key] = copy.deepcopy(report)

    async def list_reports(self, facility_id: str, limit: int = 10) -> list[SavingsReport]:
        result = [r for r in self._reports.values() if r.facility_id == facility_id]
        result.sort(key=lambda r: ensure_utc(r.generated_at), reverse=True)
        return [copy.deepcopy(r) for r in result[:limit]]

    async def append_audit(self, entry: AuditEntry) -> None:
        self._audit.append(copy.deepcopy(entry))

    async def list_audit(self, facility_id: str, limit: int = 100) -> list[AuditEntry]:
        result = [e for e in self._audit if e.facility_id == facility_id]
        return [copy.deepcopy(e) for e in result[-limit:]]

    async def save_alert(self, alert: Alert) -> None:
        self._alerts.append(copy.deepcopy(alert))

    async def list_alerts(self, facility_id: str, limit: int = 100) -> list[Alert]:
        result = [a for a in self._alerts if a.facility_id == facility_id]
        return [copy.deepcopy(a) for a in result[-limit:]]
