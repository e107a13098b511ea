"""
Tests for the control service wiring, the peak-window optimizer and the
fixed-interval loops
"""

import asyncio

from common.config import ControlLoopSettings, ControllerSettings
from common.models import ScheduleStatus, ShedReason
from common.scheduler import ScheduledLoop
from services.actuation import InMemoryActuator
from services.scheduling import (
    ControlService,
    LoadSheddingScheduler,
    PeakWindowOptimizer,
    ShedRequest,
)
from services.sensors import InMemorySensorFeed
from storage import InMemoryStore

from conftest import FACILITY_ID, NO_BACKOFF, FixedClock, Harness, at, run, seed_facility


# ============================================
# Peak window optimizer
# ============================================

def test_optimizer_covers_upcoming_peak_window(seeded_store):
    clock = FixedClock(at(12))
    scheduler = LoadSheddingScheduler(seeded_store, retry=NO_BACKOFF, clock=clock)
    optimizer = PeakWindowOptimizer(seeded_store, scheduler, clock=clock)

    created = run(optimizer.plan(FACILITY_ID))
    assert {(s.zone_id, s.target_reduction_kw) for s in created} == {("zone-a", 20.0), ("zone-b", 10.0)}
    for schedule in created:
        assert schedule.start_time == at(16)
        assert schedule.end_time == at(21)
        assert schedule.priority == 3
        assert schedule.reason == ShedReason.COST_OPTIMIZATION

    # Already covered
    assert run(optimizer.plan(FACILITY_ID)) == []


def test_optimizer_disabled(seeded_store):
    settings = ControlLoopSettings(optimizer_enabled=False)
    scheduler = LoadSheddingScheduler(seeded_store, settings, NO_BACKOFF)
    optimizer = PeakWindowOptimizer(seeded_store, scheduler, settings)
    assert run(optimizer.plan(FACILITY_ID, now=at(12))) == []


def test_optimizer_schedule_yields_to_manual_shed():
    async def scenario():
        h = await Harness(at(12)).setup()
        optimizer = PeakWindowOptimizer(h.store, h.scheduler, h.settings, clock=h.clock)
        await optimizer.plan(FACILITY_ID)
        h.clock.set(at(13))
        manual = await h.scheduler.create_schedule(ShedRequest(
            zone_id="zone-a",
            start_time=at(16),
            end_time=at(17),
            target_reduction_kw=50.0,
        ))
        await h.tick_at(at(16))
        schedules = await h.store.list_schedules(FACILITY_ID, zone_id="zone-a")
        return manual, schedules

    manual, schedules = run(scenario())
    by_reason = {s.reason: s for s in schedules}
    assert by_reason[ShedReason.MANUAL].status == ScheduleStatus.ACTIVE
    assert by_reason[ShedReason.COST_OPTIMIZATION].status == ScheduleStatus.CANCELLED


# ============================================
# Control loop persistence bound
# ============================================

class SlowStore(InMemoryStore):
    async def list_schedules(self, *args, **kwargs):
        await asyncio.sleep(1.0)
        return await super().list_schedules(*args, **kwargs)


def test_tick_skipped_when_store_is_slow():
    async def scenario():
        h = Harness(at(12), ControlLoopSettings(persistence_timeout_s=0.01), store=SlowStore())
        await h.setup()
        return await h.loop.tick()

    state = run(scenario())
    assert state.skipped
    assert "Persistence timeout" in state.skip_reason


# ============================================
# Control service
# ============================================

def test_control_service_starts_one_loop_per_facility():
    async def scenario():
        store = InMemoryStore()
        await seed_facility(store)
        service = ControlService(ControllerSettings(), store, InMemoryActuator(), InMemorySensorFeed())
        await service.start(serve_health=False)
        health = service.health()
        names = service.group.names()
        await service.stop()
        return health, names, service.health()

    health, names, stopped = run(scenario())
    assert health["status"] == "healthy"
    assert health["facilities"] == [FACILITY_ID]
    assert names == [f"control:{FACILITY_ID}", f"optimizer:{FACILITY_ID}"]
    assert stopped["status"] == "unhealthy"


def test_scheduled_loop_bounds_tick_duration():
    async def slow_tick():
        await asyncio.sleep(1.0)

    async def scenario():
        loop = ScheduledLoop(30.0, slow_tick, name="slow", tick_timeout_s=0.01)
        completed = await loop.run_once()
        return completed, loop.get_stats()

    completed, stats = run(scenario())
    assert not completed
    assert stats["timeout_count"] == 1
    assert stats["execution_count"] == 0
