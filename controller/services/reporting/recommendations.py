"""
Reporting and Recommendations

Advisory views over metered data, savings reports and schedule history:

- energy_analytics(): totals, peak and average load, load factor,
  consumption by local hour, cost breakdown (energy, demand)
- recommend(): ranked optimization opportunities

Recommendation rules:
- load factor below 70% -> load_shifting (15% of energy cost)
- peak above twice the average load -> demand_reduction (20% of demand cost)
- kWh saved falling over the last three reports -> savings_trend_declining
- any low-confidence baseline -> baseline_data_quality
- degraded schedules -> actuation_reliability
- safety cancellations -> safety_envelope_review

Prices come from rate_at_or_default(), so a missing tariff degrades the
numbers instead of failing the request.
"""

import math
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from common.config import BaselineSettings, RateSettings
from common.exceptions import NotFoundError
from common.logging_setup import get_service_logger
from common.models import CancelReason, ScheduleStatus
from common.timestamp import ensure_utc, iter_intervals, to_iso, to_local, utc_now
from services.baseline import interval_energy
from services.rates import RateModel

logger = get_service_logger("reporting")

LOAD_FACTOR_THRESHOLD_PCT = 70.0
PEAK_TO_AVERAGE_THRESHOLD = 2.0
LOAD_SHIFTING_SHARE = 0.15
DEMAND_REDUCTION_SHARE = 0.20
LOOKBACK_DAYS = 30

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass
class EnergyAnalytics:
    facility_id: str
    start: datetime
    end: datetime
    total_kwh: float = 0.0
    total_cost: float = 0.0
    peak_kw: float = 0.0
    average_kw: float = 0.0
    load_factor_pct: float = 0.0
    consumption_by_hour: list[dict] = field(default_factory=list)
    cost_breakdown: dict[str, float] = field(default_factory=dict)
    metered_intervals: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["start"] = to_iso(self.start)
        data["end"] = to_iso(self.end)
        return data


@dataclass
class Recommendation:
    type: str
    description: str
    potential_savings: float
    implementation: str
    priority: str

    def to_dict(self) -> dict:
        return asdict(self)


class RecommendationService:
    """Analytics and recommendations for one facility at a time"""

    def __init__(
        self,
        store,
        rate_settings: RateSettings | None = None,
        baseline_settings: BaselineSettings | None = None,
        clock=utc_now,
    ):
        self.store = store
        self.rate_settings = rate_settings or RateSettings()
        self.interval_minutes = (baseline_settings or BaselineSettings()).interval_minutes
        self._clock = clock

    async def energy_analytics(
        self,
        facility_id: str,
        start: datetime,
        end: datetime,
    ) -> EnergyAnalytics:
        facility = await self.store.get_facility(facility_id)
        if facility is None:
            raise NotFoundError("facility", facility_id)

        start = ensure_utc(start)
        end = ensure_utc(end)
        analytics = EnergyAnalytics(facility_id=facility_id, start=start, end=end)

        readings = await self.store.list_readings(facility_id, start, end)
        intervals = iter_intervals(start, end, self.interval_minutes * 60)
        measured = interval_energy(readings, intervals)
        rates = await RateModel.load(self.store, [facility.rate_zone], self.rate_settings)

        by_hour_kwh: dict[int, list[float]] = defaultdict(list)
        by_hour_cost: dict[int, list[float]] = defaultdict(list)
        kwh_values: list[float] = []
        kw_values: list[float] = []
        energy_costs: list[float] = []

        for (interval_start, _), value in zip(intervals, measured):
            if value is None:
                continue
            kwh, kw = value
            quote = rates.rate_at_or_default(facility.rate_zone, interval_start, facility.timezone)
            cost = kwh * quote.energy_rate
            hour = to_local(interval_start, facility.timezone).hour

            kwh_values.append(kwh)
            kw_values.append(kw)
            energy_costs.append(cost)
            by_hour_kwh[hour].append(kwh)
            by_hour_cost[hour].append(cost)

        if not kw_values:
            analytics.cost_breakdown = {"energy": 0.0, "demand": 0.0, "total": 0.0}
            return analytics

        demand_charge = rates.rate_at_or_default(facility.rate_zone, start, facility.timezone).demand_charge
        analytics.metered_intervals = len(kw_values)
        analytics.total_kwh = round(math.fsum(kwh_values), 3)
        analytics.peak_kw = round(max(kw_values), 3)
        analytics.average_kw = round(math.fsum(kw_values) / len(kw_values), 3)
        analytics.load_factor_pct = (
            round(analytics.average_kw / analytics.peak_kw * 100, 1) if analytics.peak_kw > 0 else 0.0
        )
        energy_cost = round(math.fsum(energy_costs), 2)
        demand_cost = round(analytics.peak_kw * demand_charge, 2)
        analytics.cost_breakdown = {
            "energy": energy_cost,
            "demand": demand_cost,
            "total": round(energy_cost + demand_cost, 2),
        }
        analytics.total_cost = energy_cost
        analytics.consumption_by_hour = [
            {
                "hour": hour,
                "consumption": round(math.fsum(by_hour_kwh[hour]), 3),
                "cost": round(math.fsum(by_hour_cost[hour]), 2),
            }
            for hour in sorted(by_hour_kwh)
        ]
        return analytics

    async def recommend(self, facility_id: str, now: datetime | None = None) -> list[Recommendation]:
        """Ranked recommendations (highest potential savings first)"""
        now = ensure_utc(now or self._clock())
        since = now - timedelta(days=LOOKBACK_DAYS)
        analytics = await self.energy_analytics(facility_id, since, now)
        recommendations: list[Recommendation] = []

        if analytics.metered_intervals:
            if analytics.load_factor_pct < LOAD_FACTOR_THRESHOLD_PCT:
                recommendations.append(Recommendation(
                    type="load_shifting",
                    description=(
                        f"Load factor is {analytics.load_factor_pct:.0f}%. "
                        "Shift non-critical loads to off-peak hours"
                    ),
                    potential_savings=round(analytics.total_cost * LOAD_SHIFTING_SHARE, 2),
                    implementation="Reschedule irrigation and non-critical HVAC to night hours",
                    priority="high",
                ))

            if analytics.peak_kw > analytics.average_kw * PEAK_TO_AVERAGE_THRESHOLD:
                recommendations.append(Recommendation(
                    type="demand_reduction",
                    description=(
                        f"Peak demand {analytics.peak_kw:.0f}kW is more than twice the "
                        f"average load {analytics.average_kw:.0f}kW"
                    ),
                    potential_savings=round(
                        analytics.cost_breakdown["demand"] * DEMAND_REDUCTION_SHARE, 2
                    ),
                    implementation="Stage equipment startup and enable cost optimization shedding",
                    priority="high",
                ))

        reports = await self.store.list_reports(facility_id, limit=6)
        if len(reports) >= 3:
            newest, middle, oldest = reports[0], reports[1], reports[2]
            if newest.kwh_saved < middle.kwh_saved < oldest.kwh_saved:
                recommendations.append(Recommendation(
                    type="savings_trend_declining",
                    description=(
                        f"Verified savings fell from {oldest.kwh_saved:.0f}kWh to "
                        f"{newest.kwh_saved:.0f}kWh over the last three reports"
                    ),
                    potential_savings=round(max(0.0, oldest.cost_saved - newest.cost_saved), 2),
                    implementation="Review recently cancelled or superseded schedules and shed targets",
                    priority="medium",
                ))

        low_confidence = [r for r in reports if r.low_confidence]
        if low_confidence:
            recommendations.append(Recommendation(
                type="baseline_data_quality",
                description=(
                    f"{len(low_confidence)} recent report(s) used a low-confidence baseline"
                ),
                potential_savings=0.0,
                implementation=(
                    "Keep meters reporting and register non-routine events; "
                    "comparable-day baselines need several weeks of history"
                ),
                priority="low",
            ))

        schedules = [
            s for s in await self.store.list_schedules(facility_id)
            if ensure_utc(s.created_at) >= since
        ]

        degraded = sorted({s.zone_id for s in schedules if s.degraded})
        if degraded:
            recommendations.append(Recommendation(
                type="actuation_reliability",
                description=f"Commands were not acknowledged on zones: {', '.join(degraded)}",
                potential_savings=0.0,
                implementation="Check device gateway connectivity and controller wiring for these zones",
                priority="medium",
            ))

        safety_cancelled = Counter(
            s.zone_id
            for s in schedules
            if s.status == ScheduleStatus.CANCELLED
            and s.cancel_reason in (CancelReason.SAFETY_VIOLATION, CancelReason.SAFETY_TIMEOUT)
        )
        if safety_cancelled:
            zones = ", ".join(f"{z} ({n})" for z, n in sorted(safety_cancelled.items()))
            recommendations.append(Recommendation(
                type="safety_envelope_review",
                description=f"Shedding was cancelled to protect crops on: {zones}",
                potential_savings=0.0,
                implementation="Lower shed magnitudes or durations for these zones, or review their envelopes",
                priority="medium",
            ))

        recommendations.sort(
            key=lambda r: (-r.potential_savings, PRIORITY_ORDER.get(r.priority, 3), r.type)
        )
        logger.debug(f"{len(recommendations)} recommendations for {facility_id}")
        return recommendations
