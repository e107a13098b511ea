"""
Demand-Response Router

Ingests utility / aggregator curtailment events. Each event is allocated
across the facility's zones as priority-1 grid_event schedules.

Redelivery of the same event id returns the original allocation with
duplicate=true and creates no new schedules.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from common.exceptions import CanopyError
from common.models import DemandResponseEvent

from app.routers.load_shedding import ScheduleResponse, schedule_to_response
from app.services.runtime import Runtime, get_runtime, http_error

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class DREventCreate(BaseModel):
    """DR event notification (camelCase or snake_case keys)."""
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., min_length=1)
    facility_id: str = Field(..., min_length=1)
    issued_by: str = ""
    window_start: datetime
    window_end: datetime
    required_reduction_kw: float = Field(..., gt=0)
    compensation_rate: float = Field(default=0.0, ge=0)


class AllocationResponse(BaseModel):
    """Allocation result."""
    event_id: str
    facility_id: str
    requested_kw: float
    achieved_kw: float
    partial_fulfillment: bool
    estimated_compensation: float
    duplicate: bool
    schedules: list[ScheduleResponse]
    message: Optional[str] = None


# ============================================
# ENDPOINTS
# ============================================

@router.post("/events", response_model=AllocationResponse)
async def ingest_event(
    body: DREventCreate,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Ingest a DR event and allocate it across zones.

    Insufficient spare capacity is not an error: the response carries
    partial_fulfillment=true and the kW actually committed.
    """
    event = DemandResponseEvent(
        id=body.id,
        facility_id=body.facility_id,
        issued_by=body.issued_by,
        window_start=body.window_start,
        window_end=body.window_end,
        required_reduction_kw=body.required_reduction_kw,
        compensation_rate=body.compensation_rate,
    )
    try:
        result = await runtime.dr_handler.on_event(event)
    except (CanopyError, ValueError) as e:
        raise http_error(e)

    message = None
    if result.partial_fulfillment:
        message = (
            f"Only {result.achieved_kw:.1f} of {result.requested_kw:.1f}kW "
            f"could be committed"
        )

    return AllocationResponse(
        event_id=result.event_id,
        facility_id=result.facility_id,
        requested_kw=result.requested_kw,
        achieved_kw=result.achieved_kw,
        partial_fulfillment=result.partial_fulfillment,
        estimated_compensation=result.estimated_compensation,
        duplicate=result.duplicate,
        schedules=[schedule_to_response(s) for s in result.schedules],
        message=message,
    )
