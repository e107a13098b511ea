"""
Savings Verification Engine

Billing-grade savings for a reporting window:

1. Facility-meter readings -> actual kWh per baseline interval
2. Comparable-day baseline for the same intervals
3. kwh_saved = max(0, baseline - actual); the signed delta is kept
4. cost_saved = max(0, sum of interval delta x interval energy rate),
   with intervals split at rate-window boundaries
5. peak_reduction_kw = baseline peak - actual peak
6. co2_avoided_kg = kwh_saved x regional emissions factor
7. demand_charge_saved = max(0, peak_reduction_kw) x demand charge

Only intervals with metered data are compared. Missing tariffs raise
ConfigurationError (no default rates on a billing path); a thin baseline
is reported with low_confidence instead of failing.

Identical inputs give identical numbers and the same fingerprint.
"""

import hashlib
import json
import math
from dataclasses import dataclass
from datetime import datetime

from common.config import BaselineSettings, RateSettings, VerificationSettings
from common.exceptions import ConfigurationError, NotFoundError
from common.logging_setup import get_service_logger
from common.models import LoadSheddingSchedule, SavingsReport
from common.retry import RetryPolicy
from common.timestamp import ensure_utc, to_iso, utc_now
from services.baseline import BaselineEstimator, interval_energy
from services.rates import RateModel

logger = get_service_logger("verification")

KWH_DECIMALS = 3
COST_DECIMALS = 2


@dataclass
class IntervalComparison:
    """Baseline vs actual for one metered interval"""
    start: datetime
    end: datetime
    baseline_kwh: float
    actual_kwh: float
    baseline_kw: float
    actual_kw: float
    cost_delta: float

    @property
    def delta_kwh(self) -> float:
        return self.baseline_kwh - self.actual_kwh


def report_fingerprint(report: SavingsReport, interval_count: int) -> str:
    """sha256 over the report inputs and numeric outputs (not generated_at)"""
    payload = {
        "facility_id": report.facility_id,
        "period_start": to_iso(report.period_start),
        "period_end": to_iso(report.period_end),
        "baseline_method": report.baseline_method,
        "low_confidence": report.low_confidence,
        "intervals": interval_count,
        **report.numeric_fields(),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


class SavingsVerificationEngine:
    """Generates and caches SavingsReports"""

    def __init__(
        self,
        store,
        settings: VerificationSettings | None = None,
        baseline_settings: BaselineSettings | None = None,
        rate_settings: RateSettings | None = None,
        retry: RetryPolicy | None = None,
        clock=utc_now,
    ):
        self.store = store
        self.settings = settings or VerificationSettings()
        self.rate_settings = rate_settings or RateSettings()
        self.baseline = BaselineEstimator(store, baseline_settings)
        self.retry = retry or RetryPolicy()
        self._clock = clock

    async def generate_report(
        self,
        facility_id: str,
        period_start: datetime,
        period_end: datetime,
        persist: bool = True,
    ) -> SavingsReport:
        """
        Compute (and cache) the savings report for a window.

        Raises:
            NotFoundError: unknown facility
            ConfigurationError: no tariff published for the window
            ValueError: empty window
        """
        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")

        facility = await self.store.get_facility(facility_id)
        if facility is None:
            raise NotFoundError("facility", facility_id)
        if not facility.rate_zone:
            raise ConfigurationError(f"facility '{facility_id}' has no rate zone", subject=facility_id)

        rates = await RateModel.load(self.store, [facility.rate_zone], self.rate_settings)
        # Billing path: fail before any work if the window has no tariff
        tariff = rates.schedule_for(facility.rate_zone, period_start)

        series = await self.baseline.estimate_baseline(facility_id, None, period_start, period_end)
        intervals = [(p.start, p.end) for p in series.points]
        readings = await self.store.list_readings(facility_id, period_start, period_end)
        actual = interval_energy(readings, intervals)

        compared: list[IntervalComparison] = []
        for point, measured in zip(series.points, actual):
            if measured is None:
                continue
            actual_kwh, actual_kw = measured
            delta = point.expected_kwh - actual_kwh
            compared.append(IntervalComparison(
                start=point.start,
                end=point.end,
                baseline_kwh=point.expected_kwh,
                actual_kwh=actual_kwh,
                baseline_kw=point.expected_kw,
                actual_kw=actual_kw,
                cost_delta=rates.price_interval(
                    facility.rate_zone, point.start, point.end, delta, facility.timezone
                ),
            ))

        missing = len(series.points) - len(compared)
        if missing:
            logger.info(
                f"{facility_id}: {missing} of {len(series.points)} intervals have no "
                f"meter data and are excluded",
                extra={"facility_id": facility_id},
            )

        baseline_kwh = math.fsum(c.baseline_kwh for c in compared)
        actual_kwh = math.fsum(c.actual_kwh for c in compared)
        raw_delta = baseline_kwh - actual_kwh
        kwh_saved = max(0.0, raw_delta)
        cost_saved = max(0.0, math.fsum(c.cost_delta for c in compared))

        baseline_peak = max((c.baseline_kw for c in compared), default=0.0)
        actual_peak = max((c.actual_kw for c in compared), default=0.0)
        peak_reduction = baseline_peak - actual_peak

        factor = self.settings.emissions_factor(facility.region)

        report = SavingsReport(
            facility_id=facility_id,
            period_start=period_start,
            period_end=period_end,
            baseline_kwh=round(baseline_kwh, KWH_DECIMALS),
            actual_kwh=round(actual_kwh, KWH_DECIMALS),
            kwh_saved=round(kwh_saved, KWH_DECIMALS),
            cost_saved=round(cost_saved, COST_DECIMALS),
            peak_reduction_kw=round(peak_reduction, KWH_DECIMALS),
            co2_avoided_kg=round(kwh_saved * factor, KWH_DECIMALS),
            generated_at=self._clock(),
            raw_delta_kwh=round(raw_delta, KWH_DECIMALS),
            demand_charge_saved=round(max(0.0, peak_reduction) * tariff.demand_charge, COST_DECIMALS),
            baseline_method=series.method,
            low_confidence=series.low_confidence,
        )
        report.fingerprint = report_fingerprint(report, len(compared))

        if persist:
            await self.retry.run(lambda: self.store.save_report(report), "save report")

        logger.info(
            f"Savings report {facility_id} {to_iso(period_start)}..{to_iso(period_end)}: "
            f"{report.kwh_saved:.3f}kWh, ${report.cost_saved:.2f}"
            f"{' (low confidence)' if report.low_confidence else ''}",
            extra={"facility_id": facility_id, "fingerprint": report.fingerprint},
        )
        return report

    async def recent_reports(self, facility_id: str, limit: int = 10) -> list[SavingsReport]:
        """Cached reports, newest first"""
        return await self.store.list_reports(facility_id, limit)

    async def recompute_for_schedule(self, schedule: LoadSheddingSchedule) -> SavingsReport:
        """Report covering a completed schedule's window"""
        return await self.generate_report(
            schedule.facility_id, schedule.start_time, schedule.end_time
        )
