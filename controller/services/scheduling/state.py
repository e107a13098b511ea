"""
Scheduling State

Lifecycle transitions of a LoadSheddingSchedule and the per-tick state
reported by a facility control loop.

    PENDING -> ACTIVE -> COMPLETED
    PENDING -> CANCELLED
    ACTIVE  -> CANCELLED
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from common.exceptions import ScheduleStateError
from common.models import CancelReason, LoadSheddingSchedule, ScheduleStatus
from common.timestamp import ensure_utc, to_iso, utc_now

ALLOWED_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.PENDING: frozenset({ScheduleStatus.ACTIVE, ScheduleStatus.CANCELLED}),
    ScheduleStatus.ACTIVE: frozenset({ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED}),
    ScheduleStatus.COMPLETED: frozenset(),
    ScheduleStatus.CANCELLED: frozenset(),
}


@dataclass
class Transition:
    """One status change applied during a tick"""
    schedule_id: str
    zone_id: str
    from_status: ScheduleStatus
    to_status: ScheduleStatus
    cancel_reason: CancelReason | None = None

    @property
    def action(self) -> str:
        if self.to_status == ScheduleStatus.ACTIVE:
            return "schedule_activated"
        if self.to_status == ScheduleStatus.COMPLETED:
            return "schedule_completed"
        return "schedule_cancelled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "zone_id": self.zone_id,
            "from": self.from_status.value,
            "to": self.to_status.value,
            "cancel_reason": self.cancel_reason.value if self.cancel_reason else None,
        }


def apply_transition(
    schedule: LoadSheddingSchedule,
    to_status: ScheduleStatus,
    now: datetime,
    cancel_reason: CancelReason | None = None,
) -> Transition:
    """
    Move a schedule to a new status in place.

    Raises:
        ScheduleStateError: transition not allowed from the current status
    """
    from_status = schedule.status
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise ScheduleStateError(
            schedule.id, f"cannot move from {from_status.value} to {to_status.value}"
        )
    if to_status == ScheduleStatus.CANCELLED and cancel_reason is None:
        raise ScheduleStateError(schedule.id, "cancellation requires a reason")

    now = ensure_utc(now)
    schedule.status = to_status
    if to_status == ScheduleStatus.ACTIVE:
        schedule.activated_at = now
        schedule.unsafe_since = None
        schedule.unsafe_detail = None
    elif to_status == ScheduleStatus.COMPLETED:
        schedule.completed_at = now
    else:
        schedule.cancel_reason = cancel_reason
        schedule.cancelled_at = now

    return Transition(
        schedule_id=schedule.id,
        zone_id=schedule.zone_id,
        from_status=from_status,
        to_status=to_status,
        cancel_reason=cancel_reason,
    )


@dataclass
class TickState:
    """Outcome of one control loop tick"""
    facility_id: str
    timestamp: datetime = field(default_factory=utc_now)
    active_count: int = 0
    pending_count: int = 0
    transitions: list[Transition] = field(default_factory=list)
    commands_sent: int = 0
    failed_commands: int = 0
    skipped: bool = False
    skip_reason: str | None = None
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "timestamp": to_iso(self.timestamp),
            "active_count": self.active_count,
            "pending_count": self.pending_count,
            "transitions": [t.to_dict() for t in self.transitions],
            "commands_sent": self.commands_sent,
            "failed_commands": self.failed_commands,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "execution_time_ms": round(self.execution_time_ms, 2),
        }
