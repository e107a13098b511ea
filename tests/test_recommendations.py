"""
Tests for energy analytics and recommendations
"""

from datetime import timedelta

import pytest

from common.exceptions import NotFoundError
from common.models import CancelReason, LoadSheddingSchedule, SavingsReport, ScheduleStatus
from services.reporting import RecommendationService

from conftest import FACILITY_ID, add_readings, at, meter_readings, run

NOW = at(24)


def spiky_day():
    """20 kW all day with one 200 kW interval at 16:00"""
    return (
        meter_readings(at(0), at(16), 20.0)
        + meter_readings(at(16), at(16, 15), 200.0)
        + meter_readings(at(16, 15), at(24), 20.0)
    )


def report(kwh_saved, generated_at, low_confidence=False):
    return SavingsReport(
        facility_id=FACILITY_ID,
        period_start=at(16),
        period_end=at(17),
        baseline_kwh=100.0,
        actual_kwh=100.0 - kwh_saved,
        kwh_saved=kwh_saved,
        cost_saved=kwh_saved * 0.45,
        peak_reduction_kw=0.0,
        co2_avoided_kg=0.0,
        generated_at=generated_at,
        low_confidence=low_confidence,
    )


def schedule(schedule_id, **kwargs):
    return LoadSheddingSchedule(
        id=schedule_id,
        facility_id=FACILITY_ID,
        zone_id="zone-a",
        start_time=at(14),
        end_time=at(15),
        target_reduction_kw=10.0,
        created_at=at(12),
        **kwargs,
    )


def test_energy_analytics(seeded_store):
    run(add_readings(seeded_store, spiky_day()))
    service = RecommendationService(seeded_store)
    analytics = run(service.energy_analytics(FACILITY_ID, at(0), at(24)))

    assert analytics.metered_intervals == 96
    assert analytics.peak_kw == pytest.approx(200.0)
    assert analytics.average_kw == pytest.approx(21.875)
    assert analytics.total_kwh == pytest.approx(95 * 5.0 + 50.0)
    assert analytics.load_factor_pct == pytest.approx(10.9)
    assert analytics.cost_breakdown["demand"] == pytest.approx(3000.0)
    assert len(analytics.consumption_by_hour) == 24

    hour_16 = next(h for h in analytics.consumption_by_hour if h["hour"] == 16)
    assert hour_16["consumption"] == pytest.approx(50.0 + 3 * 5.0)


def test_spiky_load_recommendations_ranked_by_savings(seeded_store):
    run(add_readings(seeded_store, spiky_day()))
    service = RecommendationService(seeded_store)
    recommendations = run(service.recommend(FACILITY_ID, now=NOW))

    types = [r.type for r in recommendations]
    assert types[0] == "demand_reduction"
    assert "load_shifting" in types
    assert recommendations[0].potential_savings == pytest.approx(600.0)
    savings = [r.potential_savings for r in recommendations]
    assert savings == sorted(savings, reverse=True)


def test_no_meter_data_yields_no_load_recommendations(seeded_store):
    service = RecommendationService(seeded_store)
    assert run(service.recommend(FACILITY_ID, now=NOW)) == []


def test_declining_savings_and_low_confidence(seeded_store):
    for hours, kwh in ((1, 30.0), (2, 20.0), (3, 10.0)):
        run(seeded_store.save_report(report(kwh, at(17 + hours), low_confidence=(hours == 3))))

    service = RecommendationService(seeded_store)
    recommendations = {r.type: r for r in run(service.recommend(FACILITY_ID, now=NOW))}

    assert "savings_trend_declining" in recommendations
    assert recommendations["savings_trend_declining"].potential_savings == pytest.approx(9.0)
    assert "baseline_data_quality" in recommendations


def test_degraded_and_safety_cancelled_schedules(seeded_store):
    run(seeded_store.save_schedule(schedule("s-1", status=ScheduleStatus.COMPLETED, degraded=True)))
    run(seeded_store.save_schedule(schedule(
        "s-2",
        status=ScheduleStatus.CANCELLED,
        cancel_reason=CancelReason.SAFETY_VIOLATION,
    )))
    # Older than the lookback window
    old = schedule("s-3", status=ScheduleStatus.COMPLETED, degraded=True)
    old.zone_id = "zone-b"
    old.created_at = NOW - timedelta(days=45)
    run(seeded_store.save_schedule(old))

    service = RecommendationService(seeded_store)
    recommendations = {r.type: r for r in run(service.recommend(FACILITY_ID, now=NOW))}

    assert "zone-a" in recommendations["actuation_reliability"].description
    assert "zone-b" not in recommendations["actuation_reliability"].description
    assert "zone-a (1)" in recommendations["safety_envelope_review"].description


def test_unknown_facility(store):
    service = RecommendationService(store)
    with pytest.raises(NotFoundError):
        run(service.recommend("nope", now=NOW))
