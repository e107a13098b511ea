"""
Load-Shedding Scheduler (request side)

Creates PENDING schedules and records cancellation requests. Status
transitions are applied only by the facility control loop, which picks
up new records and cancel flags on its next tick.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime

from common.config import ConflictPolicy, ControlLoopSettings
from common.exceptions import CapacityExceededError, NotFoundError, ScheduleStateError
from common.logging_setup import get_service_logger
from common.models import (
    REASON_PRIORITY,
    ActionKind,
    AuditEntry,
    LoadSheddingSchedule,
    ScheduleStatus,
    ShedReason,
)
from common.retry import RetryPolicy
from common.timestamp import ensure_utc, utc_now

from .conflicts import peak_committed_kw

logger = get_service_logger("scheduling")

OPEN_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.ACTIVE)


@dataclass
class ShedRequest:
    """Validated request for a new load-shedding schedule"""
    zone_id: str
    start_time: datetime
    end_time: datetime
    target_reduction_kw: float
    priority: int = 2
    reason: ShedReason = ShedReason.MANUAL
    action_kind: ActionKind = ActionKind.REDUCE_LIGHT
    dr_event_id: str | None = None


def effective_priority(reason: ShedReason, requested: int) -> int:
    """Grid events always run at priority 1, cost optimization at 3"""
    return REASON_PRIORITY.get(reason, requested)


class LoadSheddingScheduler:
    """Entry point for new shed requests and cancellations"""

    def __init__(
        self,
        store,
        settings: ControlLoopSettings | None = None,
        retry: RetryPolicy | None = None,
        clock=utc_now,
    ):
        self.store = store
        self.settings = settings or ControlLoopSettings()
        self.retry = retry or RetryPolicy()
        self._clock = clock

    async def create_schedule(self, request: ShedRequest) -> LoadSheddingSchedule:
        """
        Validate and persist a PENDING schedule.

        Raises:
            NotFoundError: unknown zone
            ValueError: empty or already-ended window, non-positive target,
                priority outside 1-3
            CapacityExceededError: target does not fit the zone
        """
        now = self._clock()
        start = ensure_utc(request.start_time)
        end = ensure_utc(request.end_time)
        if end <= start:
            raise ValueError("end_time must be after start_time")
        if end <= now:
            raise ValueError("schedule window has already ended")
        if request.target_reduction_kw <= 0:
            raise ValueError("target_reduction_kw must be positive")
        if request.priority not in (1, 2, 3):
            raise ValueError("priority must be 1, 2 or 3")

        zone = await self.store.get_zone(request.zone_id)
        if zone is None:
            raise NotFoundError("zone", request.zone_id)

        schedule = LoadSheddingSchedule(
            id=str(uuid.uuid4()),
            facility_id=zone.facility_id,
            zone_id=zone.id,
            start_time=start,
            end_time=end,
            target_reduction_kw=request.target_reduction_kw,
            priority=effective_priority(request.reason, request.priority),
            reason=request.reason,
            action_kind=request.action_kind,
            created_at=now,
            dr_event_id=request.dr_event_id,
        )

        if schedule.target_reduction_kw > zone.capacity_kw:
            raise CapacityExceededError(zone.id, schedule.target_reduction_kw, zone.capacity_kw)

        if self.settings.conflict_policy == ConflictPolicy.STACK:
            existing = await self.store.list_schedules(
                zone.facility_id, zone_id=zone.id, statuses=OPEN_STATUSES
            )
            ahead = [
                s for s in existing
                if not s.cancel_requested and s.rank_key() < schedule.rank_key()
            ]
            committed = peak_committed_kw(ahead, start, end)
            if committed + schedule.target_reduction_kw > zone.capacity_kw + 1e-9:
                raise CapacityExceededError(
                    zone.id, schedule.target_reduction_kw, zone.capacity_kw, committed
                )

        await self.retry.run(lambda: self.store.save_schedule(schedule), "save schedule")
        await self._audit(schedule, "schedule_created", {
            "target_reduction_kw": schedule.target_reduction_kw,
            "priority": schedule.priority,
            "reason": schedule.reason.value,
            "action_kind": schedule.action_kind.value,
        })

        logger.info(
            f"Schedule {schedule.id} created: zone={zone.id} "
            f"{schedule.target_reduction_kw:.1f}kW p{schedule.priority} "
            f"({schedule.reason.value})",
            extra={"facility_id": zone.facility_id, "zone_id": zone.id, "schedule_id": schedule.id},
        )
        return schedule

    async def request_cancel(self, schedule_id: str, override: bool = False) -> LoadSheddingSchedule:
        """
        Record a cancellation request for the control loop.

        Raises:
            NotFoundError: unknown schedule
            ScheduleStateError: already terminal, past its end time, or a
                grid event cancelled without override
        """
        now = self._clock()
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError("schedule", schedule_id)

        if schedule.is_terminal:
            raise ScheduleStateError(schedule_id, f"already {schedule.status.value}")
        if now >= ensure_utc(schedule.end_time):
            raise ScheduleStateError(schedule_id, "end time has passed")
        if schedule.reason == ShedReason.GRID_EVENT and not override:
            raise ScheduleStateError(
                schedule_id,
                "grid_event schedules can only be cancelled with override=true",
            )

        schedule.cancel_requested = True
        schedule.cancel_override = override
        await self.retry.run(lambda: self.store.save_schedule(schedule), "save cancel request")
        await self._audit(schedule, "cancel_requested", {"override": override})

        logger.info(
            f"Cancel requested for {schedule_id} (override={override})",
            extra={"facility_id": schedule.facility_id, "schedule_id": schedule_id},
        )
        return schedule

    async def list_open(self, facility_id: str) -> list[LoadSheddingSchedule]:
        """Active and upcoming schedules in rank order"""
        return await self.store.list_schedules(facility_id, statuses=OPEN_STATUSES)

    async def _audit(self, schedule: LoadSheddingSchedule, action: str, detail: dict) -> None:
        entry = AuditEntry(
            facility_id=schedule.facility_id,
            action=action,
            timestamp=self._clock(),
            schedule_id=schedule.id,
            zone_id=schedule.zone_id,
            detail=detail,
        )
        await self.retry.run(lambda: self.store.append_audit(entry), "append audit")
