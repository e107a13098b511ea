"""
Supabase Store

EnergyStore backed by Supabase (PostgreSQL). The supabase client is
synchronous, so every call runs in a worker thread; that keeps the event
loop free and lets the control loop bound each read with a timeout.

Tables:
- facilities, zones, rate_schedules, safety_envelopes
- load_shedding_schedules, demand_response_events
- energy_readings, non_routine_events
- savings_reports, audit_logs, alarms
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Iterable

from supabase import Client

from common.logging_setup import get_service_logger
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
from common.timestamp import parse_timestamp, to_iso

logger = get_service_logger("storage.supabase")

# PostgREST max-rows default; larger responses are truncated silently
PAGE_SIZE = 1000


class SupabaseStore:
    """EnergyStore over Supabase tables"""

    def __init__(self, client: Client, page_size: int = PAGE_SIZE):
        self._client = client
        self._page_size = page_size

    async def _run(self, query: Callable[[], Any]) -> list[dict]:
        """Execute a query builder chain in a worker thread"""
        result = await asyncio.to_thread(lambda: query().execute())
        return result.data or []

    async def _run_paged(self, query: Callable[[], Any], limit: int | None = None) -> list[dict]:
        """
        Execute an ordered select page by page until a short page comes back.

        The query must have a total order, or rows can repeat or go missing
        between pages.
        """
        rows: list[dict] = []
        while limit is None or len(rows) < limit:
            size = self._page_size if limit is None else min(self._page_size, limit - len(rows))
            offset = len(rows)
            page = await self._run(lambda: query().range(offset, offset + size - 1))
            rows.extend(page)
            if len(page) < size:
                break
        return rows

    # ── Facilities and zones ─────────────────────────────────────────

    async def get_facility(self, facility_id: str) -> Facility | None:
        rows = await self._run(
            lambda: self._client.table("facilities").select("*").eq("id", facility_id).limit(1)
        )
        return Facility.from_dict(rows[0]) if rows else None

    async def list_facilities(self) -> list[Facility]:
        rows = await self._run(lambda: self._client.table("facilities").select("*").order("id"))
        return [Facility.from_dict(r) for r in rows]

    async def save_facility(self, facility: Facility) -> None:
        await self._run(lambda: self._client.table("facilities").upsert(facility.to_dict()))

    async def get_zone(self, zone_id: str) -> Zone | None:
        rows = await self._run(
            lambda: self._client.table("zones").select("*").eq("id", zone_id).limit(1)
        )
        return Zone.from_dict(rows[0]) if rows else None

    async def list_zones(self, facility_id: str) -> list[Zone]:
        rows = await self._run(
            lambda: self._client.table("zones").select("*").eq("facility_id", facility_id).order("id")
        )
        return [Zone.from_dict(r) for r in rows]

    async def save_zone(self, zone: Zone) -> None:
        await self._run(lambda: self._client.table("zones").upsert(zone.to_dict()))

    # ── Tariffs and envelopes ────────────────────────────────────────

    async def list_rate_schedules(self, rate_zone: str) -> list[RateSchedule]:
        rows = await self._run(
            lambda: self._client.table("rate_schedules").select("*").eq(
                "rate_zone", rate_zone
            ).order("version")
        )
        return [RateSchedule.from_dict(r) for r in rows]

    async def publish_rate_schedule(self, schedule: RateSchedule) -> None:
        # Insert, never upsert: a published version is immutable
        await self._run(lambda: self._client.table("rate_schedules").insert(schedule.to_dict()))

    async def get_safety_envelope(self, crop_profile: str) -> SafetyEnvelope | None:
        rows = await self._run(
            lambda: self._client.table("safety_envelopes").select("*").eq(
                "crop_profile", crop_profile
            ).limit(1)
        )
        return SafetyEnvelope.from_dict(rows[0]) if rows else None

    async def save_safety_envelope(self, envelope: SafetyEnvelope) -> None:
        await self._run(lambda: self._client.table("safety_envelopes").upsert(envelope.to_dict()))

    # ── Schedules and DR events ──────────────────────────────────────

    async def get_schedule(self, schedule_id: str) -> LoadSheddingSchedule | None:
        rows = await self._run(
            lambda: self._client.table("load_shedding_schedules").select("*").eq(
                "id", schedule_id
            ).limit(1)
        )
        return LoadSheddingSchedule.from_dict(rows[0]) if rows else None

    async def list_schedules(
        self,
        facility_id: str,
        zone_id: str | None = None,
        statuses: Iterable[ScheduleStatus] | None = None,
    ) -> list[LoadSheddingSchedule]:
        status_values = [s.value for s in statuses] if statuses is not None else None

        def query():
            q = self._client.table("load_shedding_schedules").select("*").eq(
                "facility_id", facility_id
            )
            if zone_id is not None:
                q = q.eq("zone_id", zone_id)
            if status_values is not None:
                q = q.in_("status", status_values)
            return q.order("id")

        rows = await self._run_paged(query)
        schedules = [LoadSheddingSchedule.from_dict(r) for r in rows]
        return sorted(schedules, key=lambda s: s.rank_key())

    async def save_schedule(self, schedule: LoadSheddingSchedule) -> None:
        await self._run(
            lambda: self._client.table("load_shedding_schedules").upsert(schedule.to_dict())
        )

    async def get_dr_event(self, event_id: str) -> DemandResponseEvent | None:
        rows = await self._run(
            lambda: self._client.table("demand_response_events").select("*").eq(
                "id", event_id
            ).limit(1)
        )
        return DemandResponseEvent.from_dict(rows[0]) if rows else None

    async def save_dr_event(self, event: DemandResponseEvent) -> None:
        await self._run(
            lambda: self._client.table("demand_response_events").upsert(event.to_dict())
        )

    # ── Readings ─────────────────────────────────────────────────────

    async def list_readings(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
        zone_id: str | None = None,
    ) -> list[EnergyReading]:
        def query():
            q = self._client.table("energy_readings").select("*").eq(
                "facility_id", facility_id
            ).gte("timestamp", to_iso(start)).lt("timestamp", to_iso(end))
            if zone_id is None:
                q = q.is_("zone_id", "null")
            else:
                q = q.eq("zone_id", zone_id)
            # One reading per meter and timestamp
            return q.order("timestamp")

        rows = await self._run_paged(query)
        return [EnergyReading.from_dict(r) for r in rows]

    async def append_reading(self, reading: EnergyReading) -> None:
        await self._run(lambda: self._client.table("energy_readings").insert(reading.to_dict()))

    async def list_non_routine_events(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
    ) -> list[NonRoutineEvent]:
        rows = await self._run(
            lambda: self._client.table("non_routine_events").select("*").eq(
                "facility_id", facility_id
            ).lt("start", to_iso(end)).gt("end", to_iso(start)).order("start")
        )
        return [NonRoutineEvent.from_dict(r) for r in rows]

    async def save_non_routine_event(self, event: NonRoutineEvent) -> None:
        await self._run(lambda: self._client.table("non_routine_events").upsert(event.to_dict()))

    # ── Reports, audit, alerts ───────────────────────────────────────

    async def save_report(self, report: SavingsReport) -> None:
        # One cached report per facility and window; regeneration replaces it
        await self._run(
            lambda: self._client.table("savings_reports").upsert(
                report.to_dict(), on_conflict="facility_id,period_start,period_end"
            )
        )

    async def list_reports(self, facility_id: str, limit: int = 10) -> list[SavingsReport]:
        rows = await self._run_paged(
            lambda: self._client.table("savings_reports").select("*").eq(
                "facility_id", facility_id
            ).order("generated_at", desc=True).order("period_start", desc=True).order(
                "period_end", desc=True
            ),
            limit=limit,
        )
        return [SavingsReport.from_dict(r) for r in rows]

    async def append_audit(self, entry: AuditEntry) -> None:
        await self._run(lambda: self._client.table("audit_logs").insert(entry.to_dict()))

    async def list_audit(self, facility_id: str, limit: int = 100) -> list[AuditEntry]:
        rows = await self._run(
            lambda: self._client.table("audit_logs").select("*").eq(
                "facility_id", facility_id
            ).order("timestamp", desc=True).limit(limit)
        )
        return [
            AuditEntry(
                facility_id=r["facility_id"],
                action=r["action"],
                timestamp=parse_timestamp(r["timestamp"]),
                schedule_id=r.get("schedule_id"),
                zone_id=r.get("zone_id"),
                detail=r.get("detail") or {},
            )
            for r in reversed(rows)
        ]

    async def save_alert(self, alert: Alert) -> None:
        await self._run(lambda: self._client.table("alarms").insert(alert.to_dict()))

    async def list_alerts(self, facility_id: str, limit: int = 100) -> list[Alert]:
        rows = await self._run(
            lambda: self._client.table("alarms").select("*").eq(
                "facility_id", facility_id
            ).order("created_at", desc=True).limit(limit)
        )
        return [
            Alert(
                facility_id=r["facility_id"],
                severity=r["severity"],
                message=r["message"],
                created_at=parse_timestamp(r["created_at"]),
                alert_type=r.get("alert_type", "general"),
                zone_id=r.get("zone_id"),
                schedule_id=r.get("schedule_id"),
            )
            for r in reversed(rows)
        ]
