"""
Persistence Interface

Async CRUD over the controller's records. Reads support range queries by
facility, zone and time window. Implementations: InMemoryStore (tests,
single-process runs) and SupabaseStore (production).
"""

from datetime import datetime
from typing import Iterable, Protocol

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


class EnergyStore(Protocol):
    """Persistence collaborator used by every controller service"""

    # Facilities and zones
    async def get_facility(self, facility_id: str) -> Facility | None: ...
    async def list_facilities(self) -> list[Facility]: ...
    async def save_facility(self, facility: Facility) -> None: ...
    async def get_zone(self, zone_id: str) -> Zone | None: ...
    async def list_zones(self, facility_id: str) -> list[Zone]: ...
    async def save_zone(self, zone: Zone) -> None: ...

    # Tariffs and safety envelopes
    async def list_rate_schedules(self, rate_zone: str) -> list[RateSchedule]: ...
    async def publish_rate_schedule(self, schedule: RateSchedule) -> None: ...
    async def get_safety_envelope(self, crop_profile: str) -> SafetyEnvelope | None: ...
    async def save_safety_envelope(self, envelope: SafetyEnvelope) -> None: ...

    # Schedules and DR events
    async def get_schedule(self, schedule_id: str) -> LoadSheddingSchedule | None: ...
    async def list_schedules(
        self,
        facility_id: str,
        zone_id: str | None = None,
        statuses: Iterable[ScheduleStatus] | None = None,
    ) -> list[LoadSheddingSchedule]: ...
    async def save_schedule(self, schedule: LoadSheddingSchedule) -> None: ...
    async def get_dr_event(self, event_id: str) -> DemandResponseEvent | None: ...
    async def save_dr_event(self, event: DemandResponseEvent) -> None: ...

    # Readings and baseline adjustments
    async def list_readings(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
        zone_id: str | None = None,
    ) -> list[EnergyReading]: ...
    async def append_reading(self, reading: EnergyReading) -> None: ...
    async def list_non_routine_events(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
    ) -> list[NonRoutineEvent]: ...
    async def save_non_routine_event(self, event: NonRoutineEvent) -> None: ...

    # Reports, audit, alerts
    async def save_report(self, report: SavingsReport) -> None:
        """Cache a report, replacing any earlier one for the same facility and window"""
        ...

    async def list_reports(self, facility_id: str, limit: int = 10) -> list[SavingsReport]: ...
    async def append_audit(self, entry: AuditEntry) -> None: ...
    async def list_audit(self, facility_id: str, limit: int = 100) -> list[AuditEntry]: ...
    async def save_alert(self, alert: Alert) -> None: ...
    async def list_alerts(self, facility_id: str, limit: int = 100) -> list[Alert]: ...
