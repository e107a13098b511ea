"""
Load-Shedding Router

Handles load-shedding schedules:
- Schedule creation (manual, peak demand, cost optimization)
- Active / upcoming schedule queries per facility
- Cancellation requests

The API never changes a schedule's status itself. It creates PENDING
records and records cancel requests; the facility control loop applies
the transitions on its next tick.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from common.exceptions import CanopyError
from common.models import ActionKind, ShedReason
from services.scheduling import ShedRequest

from app.services.runtime import Runtime, get_runtime, http_error

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class ScheduleCreate(BaseModel):
    """Create schedule request (camelCase or snake_case keys)."""
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    facility_id: Optional[str] = None
    zone_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    target_reduction_kw: float = Field(..., gt=0)
    priority: int = Field(default=2, ge=1, le=3)
    reason: ShedReason = ShedReason.MANUAL
    action_kind: ActionKind = ActionKind.REDUCE_LIGHT


class ScheduleResponse(BaseModel):
    """Schedule response."""
    id: str
    facility_id: str
    zone_id: str
    start_time: datetime
    end_time: datetime
    target_reduction_kw: float
    priority: int
    reason: str
    status: str
    action_kind: str
    created_at: datetime
    dr_event_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancel_requested: bool = False
    degraded: bool = False


def schedule_to_response(schedule) -> ScheduleResponse:
    data = schedule.to_dict()
    return ScheduleResponse(**{k: data[k] for k in ScheduleResponse.model_fields})


# ============================================
# ENDPOINTS
# ============================================

@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    body: ScheduleCreate,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Create a PENDING load-shedding schedule.

    Returns 409 when the target does not fit the zone's capacity.
    """
    try:
        if body.facility_id is not None:
            zone = await runtime.store.get_zone(body.zone_id)
            if zone is not None and zone.facility_id != body.facility_id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Zone {body.zone_id} does not belong to facility {body.facility_id}",
                )

        schedule = await runtime.scheduler.create_schedule(ShedRequest(
            zone_id=body.zone_id,
            start_time=body.start_time,
            end_time=body.end_time,
            target_reduction_kw=body.target_reduction_kw,
            priority=body.priority,
            reason=body.reason,
            action_kind=body.action_kind,
        ))
        return schedule_to_response(schedule)
    except HTTPException:
        raise
    except (CanopyError, ValueError) as e:
        raise http_error(e)


@router.get("", response_model=list[ScheduleResponse])
async def list_schedules(
    facility_id: str = Query(..., alias="facilityId"),
    runtime: Runtime = Depends(get_runtime),
):
    """List active and upcoming schedules, in priority order."""
    schedules = await runtime.scheduler.list_open(facility_id)
    return [schedule_to_response(s) for s in schedules]


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_schedule(
    schedule_id: str,
    override: bool = Query(False),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Request cancellation of a PENDING or ACTIVE schedule.

    Returns 409 if the schedule is already COMPLETED/CANCELLED, has
    passed its end time, or is a grid event cancelled without override.
    """
    try:
        await runtime.scheduler.request_cancel(schedule_id, override=override)
    except CanopyError as e:
        raise http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
