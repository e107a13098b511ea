"""
Tests for demand-response event allocation
"""

import asyncio

import pytest

from common.config import ConflictPolicy, ControlLoopSettings
from common.dedup import TTLDedupCache
from common.exceptions import NotFoundError
from common.models import DemandResponseEvent, ScheduleStatus, ShedReason
from services.alerts import LoggingAlertSink
from services.demand_response import (
    DemandResponseHandler,
    PriorityOrderAllocation,
    ProportionalAllocation,
)
from services.scheduling import LoadSheddingScheduler, ShedRequest
from storage import InMemoryStore

from conftest import FACILITY_ID, NO_BACKOFF, FixedClock, Harness, at, run, seed_facility

ZONES = {"zone-a": 100.0, "zone-b": 150.0, "zone-c": 100.0}


def dr_event(event_id="evt-1", kw=140.0, start=at(16), end=at(18), rate=0.5):
    return DemandResponseEvent(
        id=event_id,
        facility_id=FACILITY_ID,
        issued_by="CAISO",
        window_start=start,
        window_end=end,
        required_reduction_kw=kw,
        compensation_rate=rate,
    )


async def seeded() -> InMemoryStore:
    store = InMemoryStore()
    await seed_facility(store, ZONES)
    return store


def build(store, clock, dedup=None, strategy=None, settings=None):
    scheduler = LoadSheddingScheduler(store, settings, NO_BACKOFF, clock=clock)
    alerts = LoggingAlertSink()
    handler = DemandResponseHandler(
        store,
        scheduler,
        dedup or TTLDedupCache(clock=clock),
        strategy=strategy,
        alerts=alerts,
        retry=NO_BACKOFF,
        clock=clock,
    )
    return handler, scheduler, alerts


# ============================================
# Allocation strategies
# ============================================

def test_proportional_split_by_capacity():
    shares = ProportionalAllocation().allocate(140.0, dict(ZONES), dict(ZONES))
    assert shares == {"zone-a": 40.0, "zone-b": 60.0, "zone-c": 40.0}


def test_proportional_redistributes_saturated_zone():
    spare = {"zone-a": 10.0, "zone-b": 150.0, "zone-c": 100.0}
    shares = ProportionalAllocation().allocate(140.0, spare, dict(ZONES))
    assert shares["zone-a"] == 10.0
    assert sum(shares.values()) == pytest.approx(140.0)
    assert all(shares[z] <= spare[z] for z in shares)


def test_priority_order_fills_in_sequence():
    strategy = PriorityOrderAllocation(["zone-c", "zone-a"])
    shares = strategy.allocate(180.0, dict(ZONES), dict(ZONES))
    assert shares == {"zone-c": 100.0, "zone-a": 80.0}


# ============================================
# Handler
# ============================================

def test_allocates_grid_event_schedules():
    async def scenario():
        store = await seeded()
        clock = FixedClock(at(12))
        handler, _, alerts = build(store, clock)
        result = await handler.on_event(dr_event())
        event = await store.get_dr_event("evt-1")
        return result, event, alerts

    result, event, alerts = run(scenario())
    assert not result.partial_fulfillment
    assert result.achieved_kw == pytest.approx(140.0)
    # 140 kW over two hours at 0.5/kWh
    assert result.estimated_compensation == pytest.approx(140.0)
    assert {s.zone_id: s.target_reduction_kw for s in result.schedules} == {
        "zone-a": 40.0, "zone-b": 60.0, "zone-c": 40.0,
    }
    for schedule in result.schedules:
        assert schedule.priority == 1
        assert schedule.reason == ShedReason.GRID_EVENT
        assert schedule.status == ScheduleStatus.PENDING
        assert schedule.dr_event_id == "evt-1"
    assert event.acknowledged_at == at(12)
    assert alerts.emitted == []


def test_insufficient_capacity_is_partial():
    async def scenario():
        clock = FixedClock(at(12))
        handler, _, alerts = build(await seeded(), clock)
        result = await handler.on_event(dr_event(kw=500.0))
        return result, alerts

    result, alerts = run(scenario())
    assert result.partial_fulfillment
    assert result.achieved_kw == pytest.approx(350.0)
    assert len(result.schedules) == 3
    assert [a.alert_type for a in alerts.emitted] == ["partial_fulfillment"]


async def spare_with_commitments(policy):
    clock = FixedClock(at(12))
    settings = ControlLoopSettings(conflict_policy=policy)
    handler, scheduler, _ = build(await seeded(), clock, settings=settings)
    await scheduler.create_schedule(ShedRequest(
        zone_id="zone-a",
        start_time=at(15),
        end_time=at(17),
        target_reduction_kw=60.0,
        reason=ShedReason.GRID_EVENT,
    ))
    # Priority 2 work ranks behind any grid event
    await scheduler.create_schedule(ShedRequest(
        zone_id="zone-b",
        start_time=at(16),
        end_time=at(17),
        target_reduction_kw=100.0,
    ))
    spare, _ = await handler.spare_capacity(FACILITY_ID, at(16), at(18))
    return spare


def test_existing_grid_commitment_reduces_spare_when_stacking():
    spare = run(spare_with_commitments(ConflictPolicy.STACK))
    assert spare == {"zone-a": 40.0, "zone-b": 150.0, "zone-c": 100.0}


def test_existing_grid_commitment_takes_zone_when_exclusive():
    spare = run(spare_with_commitments(ConflictPolicy.EXCLUSIVE))
    assert spare == {"zone-a": 0.0, "zone-b": 150.0, "zone-c": 100.0}


def overlapping_events_on_one_zone(policy):
    async def scenario():
        h = await Harness(at(12), ControlLoopSettings(conflict_policy=policy)).setup({"zone-a": 100.0})
        handler = DemandResponseHandler(
            h.store, h.scheduler, TTLDedupCache(clock=h.clock), retry=NO_BACKOFF, clock=h.clock
        )
        first = await handler.on_event(dr_event("evt-1", kw=40.0))
        second = await handler.on_event(dr_event("evt-2", kw=40.0))
        await h.tick_at(at(16))
        active = await h.store.list_schedules(FACILITY_ID, statuses=[ScheduleStatus.ACTIVE])
        return h, first, second, active

    return run(scenario())


def test_overlapping_event_is_partial_when_exclusive():
    h, first, second, active = overlapping_events_on_one_zone(ConflictPolicy.EXCLUSIVE)
    assert first.achieved_kw == pytest.approx(40.0)
    assert second.partial_fulfillment
    assert second.achieved_kw == 0.0
    assert second.schedules == []
    # What was reported matches what the loop runs
    assert [s.dr_event_id for s in active] == ["evt-1"]
    assert h.actuator.last_command("zone-a").action.magnitude_kw == pytest.approx(40.0)


def test_overlapping_events_add_up_when_stacking():
    h, first, second, active = overlapping_events_on_one_zone(ConflictPolicy.STACK)
    assert not second.partial_fulfillment
    assert second.achieved_kw == pytest.approx(40.0)
    assert sorted(s.dr_event_id for s in active) == ["evt-1", "evt-2"]
    assert h.actuator.last_command("zone-a").action.magnitude_kw == pytest.approx(80.0)


class SuspendingStore(InMemoryStore):
    """Yields to the event loop on every DR event read, like a remote store"""

    async def get_dr_event(self, event_id):
        event = await super().get_dr_event(event_id)
        await asyncio.sleep(0)
        return event


def test_concurrent_redelivery_allocates_once():
    async def scenario():
        store = SuspendingStore()
        await seed_facility(store, ZONES)
        handler, _, _ = build(store, FixedClock(at(12)))
        results = await asyncio.gather(handler.on_event(dr_event()), handler.on_event(dr_event()))
        stored = await store.list_schedules(FACILITY_ID)
        return results, stored, handler

    results, stored, handler = run(scenario())
    assert sorted(r.duplicate for r in results) == [False, True]
    assert results[0].achieved_kw == results[1].achieved_kw
    assert len(stored) == 3
    assert handler._in_flight == {}


def test_duplicate_event_creates_nothing():
    async def scenario():
        clock = FixedClock(at(12))
        handler, _, _ = build(await seeded(), clock)
        first = await handler.on_event(dr_event())
        clock.advance(minutes=5)
        second = await handler.on_event(dr_event())
        stored = await handler.store.list_schedules(FACILITY_ID)
        return first, second, stored

    first, second, stored = run(scenario())
    assert not first.duplicate
    assert second.duplicate
    assert [s.id for s in second.schedules] == [s.id for s in first.schedules]
    assert len(stored) == 3


def test_duplicate_after_cache_eviction_rebuilt_from_store():
    async def scenario():
        store = await seeded()
        clock = FixedClock(at(12))
        handler, _, _ = build(store, clock)
        first = await handler.on_event(dr_event())
        # A fresh process with an empty cache
        restarted, _, _ = build(store, clock)
        second = await restarted.on_event(dr_event())
        stored = await store.list_schedules(FACILITY_ID)
        return first, second, stored

    first, second, stored = run(scenario())
    assert second.duplicate
    assert second.achieved_kw == first.achieved_kw
    assert len(stored) == 3


def test_priority_order_strategy_used_by_handler():
    async def scenario():
        clock = FixedClock(at(12))
        handler, _, _ = build(
            await seeded(), clock, strategy=PriorityOrderAllocation(["zone-b"])
        )
        return await handler.on_event(dr_event(kw=120.0))

    result = run(scenario())
    assert {s.zone_id: s.target_reduction_kw for s in result.schedules} == {"zone-b": 120.0}


def test_unknown_facility_rejected():
    async def scenario():
        clock = FixedClock(at(12))
        handler, _, _ = build(await seeded(), clock)
        event = dr_event()
        event.facility_id = "nope"
        await handler.on_event(event)

    with pytest.raises(NotFoundError):
        run(scenario())


def test_inverted_window_rejected():
    async def scenario():
        clock = FixedClock(at(12))
        handler, _, _ = build(await seeded(), clock)
        await handler.on_event(dr_event(start=at(18), end=at(16)))

    with pytest.raises(ValueError):
        run(scenario())


def test_window_already_ended_allocates_nothing():
    async def scenario():
        clock = FixedClock(at(20))
        handler, _, _ = build(await seeded(), clock)
        return await handler.on_event(dr_event())

    result = run(scenario())
    assert result.schedules == []
    assert result.achieved_kw == 0.0
    assert result.partial_fulfillment


