"""
Savings Router

Handles savings verification and advisory reporting:
- Report generation (baseline vs actual, priced at time-of-use rates)
- Cached report queries (newest first)
- Optimization recommendations
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from common.exceptions import CanopyError
from common.timestamp import utc_now

from app.services.runtime import Runtime, get_runtime, http_error

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class ReportRequest(BaseModel):
    """Generate report request (camelCase or snake_case keys)."""
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    facility_id: str = Field(..., min_length=1)
    period_start: datetime
    period_end: datetime


class ReportResponse(BaseModel):
    """Savings report."""
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
    raw_delta_kwh: float
    demand_charge_saved: float
    baseline_method: str
    low_confidence: bool
    fingerprint: str


class RecommendationResponse(BaseModel):
    """Optimization recommendation."""
    type: str
    description: str
    potential_savings: float
    implementation: str
    priority: str


# ============================================
# ENDPOINTS
# ============================================

@router.post("/reports", response_model=ReportResponse)
async def generate_report(
    body: ReportRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Generate (and cache) a savings report for a window.

    Returns 422 when no rate schedule is published for the window.
    """
    try:
        report = await runtime.verification.generate_report(
            body.facility_id, body.period_start, body.period_end
        )
    except (CanopyError, ValueError) as e:
        raise http_error(e)
    return ReportResponse(**report.to_dict())


@router.get("/reports", response_model=list[ReportResponse])
async def list_reports(
    facility_id: str = Query(..., alias="facilityId"),
    limit: int = Query(10, ge=1, le=100),
    runtime: Runtime = Depends(get_runtime),
):
    """Recent cached reports, newest first."""
    reports = await runtime.verification.recent_reports(facility_id, limit)
    return [ReportResponse(**r.to_dict()) for r in reports]


@router.get("/recommendations", response_model=list[RecommendationResponse])
async def get_recommendations(
    facility_id: str = Query(..., alias="facilityId"),
    now: Optional[datetime] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Ranked recommendations over the last 30 days."""
    try:
        recommendations = await runtime.recommendations.recommend(facility_id, now or utc_now())
    except CanopyError as e:
        raise http_error(e)
    return [RecommendationResponse(**r.to_dict()) for r in recommendations]
