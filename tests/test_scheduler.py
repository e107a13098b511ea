"""
Tests for the load-shedding scheduler and the facility control loop
"""

import pytest

from common.config import ConflictPolicy, ControlLoopSettings
from common.exceptions import CapacityExceededError, NotFoundError, ScheduleStateError
from common.models import (
    AckStatus,
    ActionKind,
    ActuationState,
    CancelReason,
    ScheduleStatus,
    ShedReason,
)
from services.scheduling import ShedRequest, effective_priority, resolve_conflicts
from storage import InMemoryStore

from conftest import Harness, at, healthy_snapshot, run


def request(zone="zone-a", start=at(14), end=at(16), kw=30.0, priority=2, **kwargs):
    return ShedRequest(
        zone_id=zone,
        start_time=start,
        end_time=end,
        target_reduction_kw=kw,
        priority=priority,
        **kwargs,
    )


# ============================================
# Scheduler (request side)
# ============================================

def test_create_schedule_is_pending():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request())
        stored = await h.status(schedule.id)
        audit = await h.store.list_audit("greenhouse-1")
        return stored, audit

    stored, audit = run(scenario())
    assert stored.status == ScheduleStatus.PENDING
    assert stored.facility_id == "greenhouse-1"
    assert [e.action for e in audit] == ["schedule_created"]


def test_reason_forces_priority():
    assert effective_priority(ShedReason.GRID_EVENT, 3) == 1
    assert effective_priority(ShedReason.COST_OPTIMIZATION, 1) == 3
    assert effective_priority(ShedReason.MANUAL, 2) == 2


def test_target_above_capacity_rejected():
    async def scenario():
        h = await Harness(at(12)).setup()
        await h.scheduler.create_schedule(request(kw=150.0))

    with pytest.raises(CapacityExceededError) as exc:
        run(scenario())
    assert "Resubmit a smaller request" in exc.value.message


def test_invalid_requests_rejected():
    async def scenario(req):
        h = await Harness(at(12)).setup()
        await h.scheduler.create_schedule(req)

    with pytest.raises(ValueError):
        run(scenario(request(start=at(16), end=at(14))))
    with pytest.raises(ValueError):
        run(scenario(request(start=at(8), end=at(10))))
    with pytest.raises(ValueError):
        run(scenario(request(kw=0.0)))
    with pytest.raises(ValueError):
        run(scenario(request(priority=4)))
    with pytest.raises(NotFoundError):
        run(scenario(request(zone="zone-x")))


def test_stack_policy_checks_committed_capacity():
    settings = ControlLoopSettings(conflict_policy=ConflictPolicy.STACK)

    async def scenario():
        h = await Harness(at(12), settings).setup()
        await h.scheduler.create_schedule(request(kw=60.0, priority=1))
        # Lower rank: only 40 kW left
        await h.scheduler.create_schedule(request(kw=40.0, priority=2))
        await h.scheduler.create_schedule(request(kw=10.0, priority=3))

    with pytest.raises(CapacityExceededError) as exc:
        run(scenario())
    assert exc.value.committed_kw == pytest.approx(100.0)


def test_cancel_terminal_schedule_conflicts():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(13), end=at(14)))
        await h.tick_at(at(13))
        await h.tick_at(at(14))
        assert (await h.status(schedule.id)).status == ScheduleStatus.COMPLETED
        await h.scheduler.request_cancel(schedule.id)

    with pytest.raises(ScheduleStateError):
        run(scenario())


def test_grid_event_cancel_requires_override():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(reason=ShedReason.GRID_EVENT))
        with pytest.raises(ScheduleStateError):
            await h.scheduler.request_cancel(schedule.id)
        await h.scheduler.request_cancel(schedule.id, override=True)
        await h.tick_at(at(12, 1))
        return await h.status(schedule.id)

    cancelled = run(scenario())
    assert cancelled.status == ScheduleStatus.CANCELLED
    assert cancelled.cancel_reason == CancelReason.USER_CANCELLED


def test_cancel_unknown_schedule():
    async def scenario():
        h = await Harness(at(12)).setup()
        await h.scheduler.request_cancel("missing")

    with pytest.raises(NotFoundError):
        run(scenario())


# ============================================
# Control loop
# ============================================

def test_lifecycle_activate_then_complete():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(16)))

        await h.tick_at(at(13))
        pending = await h.status(schedule.id)

        await h.tick_at(at(14))
        active = await h.status(schedule.id)
        zone = await h.store.get_zone("zone-a")
        command = h.actuator.last_command("zone-a")

        await h.tick_at(at(16))
        done = await h.status(schedule.id)
        restore = h.actuator.last_command("zone-a")
        zone_after = await h.store.get_zone("zone-a")
        return h, schedule, pending, active, zone, command, done, restore, zone_after

    h, schedule, pending, active, zone, command, done, restore, zone_after = run(scenario())
    assert pending.status == ScheduleStatus.PENDING
    assert active.status == ScheduleStatus.ACTIVE
    assert active.activated_at == at(14)
    assert zone.actuation_state == ActuationState.SHED
    assert command.action.kind == ActionKind.REDUCE_LIGHT
    assert command.action.magnitude_kw == 30.0
    assert command.duration_seconds == 2 * 3600

    assert done.status == ScheduleStatus.COMPLETED
    assert restore.action.magnitude_kw == 0.0
    assert zone_after.actuation_state == ActuationState.NORMAL
    assert h.completed == [schedule.id]


def test_scenario_c_higher_priority_supersedes_overlap():
    async def scenario():
        h = await Harness(at(10)).setup()
        low = await h.scheduler.create_schedule(request(start=at(14), end=at(16), kw=30.0, priority=2))
        h.clock.set(at(11))
        high = await h.scheduler.create_schedule(request(start=at(15), end=at(17), kw=40.0, priority=1))

        await h.tick_at(at(14))
        low_at_14 = await h.status(low.id)

        await h.tick_at(at(15))
        low_at_15 = await h.status(low.id)
        high_at_15 = await h.status(high.id)
        audit = await h.store.list_audit("greenhouse-1")

        await h.tick_at(at(16, 30))
        high_at_1630 = await h.status(high.id)
        await h.tick_at(at(17))
        high_at_17 = await h.status(high.id)
        return low, high, low_at_14, low_at_15, high_at_15, audit, high_at_1630, high_at_17

    low, high, low_at_14, low_at_15, high_at_15, audit, high_at_1630, high_at_17 = run(scenario())
    assert low_at_14.status == ScheduleStatus.ACTIVE
    assert low_at_15.status == ScheduleStatus.CANCELLED
    assert low_at_15.cancel_reason == CancelReason.SUPERSEDED
    assert high_at_15.status == ScheduleStatus.ACTIVE
    assert high_at_1630.status == ScheduleStatus.ACTIVE
    assert high_at_17.status == ScheduleStatus.COMPLETED

    superseded = [e for e in audit if e.schedule_id == low.id and e.action == "schedule_cancelled"]
    assert superseded[0].detail["superseded_by"] == high.id


def test_scenario_d_unsafe_pending_times_out():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(16)))
        statuses = []
        # Grace period is 600s; zone-a stays too cold the whole time
        for minute in (0, 5, 9):
            await h.tick_at(at(14, minute), unsafe_zones=("zone-a",))
            statuses.append((await h.status(schedule.id)).status)
        await h.tick_at(at(14, 10), unsafe_zones=("zone-a",))
        final = await h.status(schedule.id)
        return h, statuses, final

    h, statuses, final = run(scenario())
    assert statuses == [ScheduleStatus.PENDING] * 3
    assert final.status == ScheduleStatus.CANCELLED
    assert final.cancel_reason == CancelReason.SAFETY_TIMEOUT
    assert final.activated_at is None
    assert h.actuator.sent == []
    assert [a.alert_type for a in h.alerts.emitted] == ["safety_timeout"]


def test_active_schedule_cancelled_after_safety_grace():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(16)))
        await h.tick_at(at(14))
        await h.tick_at(at(14, 30), unsafe_zones=("zone-a",))
        still_active = await h.status(schedule.id)
        await h.tick_at(at(14, 35), unsafe_zones=("zone-a",))
        cancelled = await h.status(schedule.id)
        return h, still_active, cancelled

    h, still_active, cancelled = run(scenario())
    assert still_active.status == ScheduleStatus.ACTIVE
    assert still_active.unsafe_since == at(14, 30)
    assert cancelled.status == ScheduleStatus.CANCELLED
    assert cancelled.cancel_reason == CancelReason.SAFETY_VIOLATION

    alert = h.alerts.emitted[-1]
    assert alert.alert_type == "safety_violation"
    assert alert.severity == "major"
    assert "temperature_low" in alert.message
    assert "recovery" in alert.message
    # Restore command sent
    assert h.actuator.last_command("zone-a").action.magnitude_kw == 0.0


def test_transient_unsafe_reading_recovers():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(16)))
        await h.tick_at(at(14))
        await h.tick_at(at(14, 30), unsafe_zones=("zone-a",))
        await h.tick_at(at(14, 31))
        await h.tick_at(at(14, 40))
        return await h.status(schedule.id)

    schedule = run(scenario())
    assert schedule.status == ScheduleStatus.ACTIVE
    assert schedule.unsafe_since is None


def test_user_cancel_applied_on_next_tick():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(16)))
        await h.tick_at(at(14))
        await h.scheduler.request_cancel(schedule.id)
        before_tick = await h.status(schedule.id)
        await h.tick_at(at(14, 1))
        return h, before_tick, await h.status(schedule.id)

    h, before_tick, after = run(scenario())
    assert before_tick.status == ScheduleStatus.ACTIVE
    assert before_tick.cancel_requested
    assert after.status == ScheduleStatus.CANCELLED
    assert after.cancel_reason == CancelReason.USER_CANCELLED
    assert h.actuator.last_command("zone-a").action.magnitude_kw == 0.0


def test_pending_schedule_never_started_expires():
    async def scenario():
        h = await Harness(at(12)).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(15)))
        # Loop was down for the whole window
        await h.tick_at(at(15, 30))
        return await h.status(schedule.id)

    schedule = run(scenario())
    assert schedule.status == ScheduleStatus.CANCELLED
    assert schedule.cancel_reason == CancelReason.EXPIRED


def test_unacknowledged_command_marks_schedule_degraded():
    async def scenario():
        h = await Harness(at(12), ack_status=AckStatus.FAILED).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(14), end=at(16)))
        await h.tick_at(at(14))
        await h.tick_at(at(14, 1))
        await h.tick_at(at(14, 2))
        return h, await h.status(schedule.id)

    h, schedule = run(scenario())
    assert schedule.status == ScheduleStatus.ACTIVE
    assert schedule.degraded
    assert len(h.actuator.commands_for("zone-a")) == 3
    assert h.alerts.emitted[-1].alert_type == "actuation_failed"


def test_capacity_invariant_under_stack_policy():
    settings = ControlLoopSettings(conflict_policy=ConflictPolicy.STACK)

    async def scenario():
        h = await Harness(at(12), settings).setup()
        a = await h.scheduler.create_schedule(request(start=at(14), end=at(16), kw=60.0, priority=2))
        b = await h.scheduler.create_schedule(request(start=at(14), end=at(16), kw=40.0, priority=2))
        await h.tick_at(at(14))
        active = await h.store.list_schedules("greenhouse-1", statuses=[ScheduleStatus.ACTIVE])
        command = h.actuator.last_command("zone-a")
        return a, b, active, command

    a, b, active, command = run(scenario())
    assert {s.id for s in active} == {a.id, b.id}
    assert sum(s.target_reduction_kw for s in active) <= 100.0
    assert command.action.magnitude_kw == pytest.approx(100.0)


def test_resolve_conflicts_never_drops_higher_priority():
    async def scenario():
        h = await Harness(at(12)).setup()
        high = await h.scheduler.create_schedule(request(start=at(14), end=at(16), priority=1))
        low = await h.scheduler.create_schedule(request(start=at(15), end=at(17), priority=3))
        return high, low

    high, low = run(scenario())
    for policy in ConflictPolicy:
        accepted, superseded = resolve_conflicts([low, high], policy, {"zone-a": 40.0})
        assert high in accepted
        assert low in superseded


def test_schedules_on_different_zones_do_not_conflict():
    async def scenario():
        h = await Harness(at(12)).setup()
        a = await h.scheduler.create_schedule(request(zone="zone-a", priority=1))
        b = await h.scheduler.create_schedule(request(zone="zone-b", priority=3))
        await h.tick_at(at(14))
        return [(await h.status(s.id)).status for s in (a, b)]

    assert run(scenario()) == [ScheduleStatus.ACTIVE, ScheduleStatus.ACTIVE]


# ============================================
# Recovery from a partially failed tick
# ============================================

class FailingWritesStore(InMemoryStore):
    """Store whose audit or schedule writes fail a fixed number of times"""

    def __init__(self, failures=3, audit_action=None):
        super().__init__()
        self.failures = failures
        self.audit_action = audit_action
        self.schedule_id = None

    def _maybe_fail(self):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("store unavailable")

    async def append_audit(self, entry):
        if entry.action == self.audit_action:
            self._maybe_fail()
        await super().append_audit(entry)

    async def save_schedule(self, schedule):
        if schedule.id == self.schedule_id:
            self._maybe_fail()
        await super().save_schedule(schedule)


def test_activation_command_sent_when_audit_write_fails():
    async def scenario():
        store = FailingWritesStore(audit_action="schedule_activated")
        h = await Harness(at(12), store=store).setup()
        schedule = await h.scheduler.create_schedule(request(start=at(13), end=at(15)))

        with pytest.raises(ConnectionError):
            await h.tick_at(at(13))
        after_failure = await h.status(schedule.id)
        zone = await h.store.get_zone("zone-a")
        sent_after_failure = len(h.actuator.sent)

        await h.tick_at(at(13, 1))
        await h.tick_at(at(15))
        return h, after_failure, zone, sent_after_failure

    h, after_failure, zone, sent_after_failure = run(scenario())
    assert after_failure.status == ScheduleStatus.ACTIVE
    assert zone.actuation_state == ActuationState.SHED
    assert sent_after_failure == 1
    assert h.actuator.sent[0].action.magnitude_kw == 30.0
    # Nothing resent while the magnitude is unchanged, then restored at the end
    assert [c.action.magnitude_kw for c in h.actuator.sent] == [30.0, 0.0]


def test_zone_left_unshed_by_failed_tick_is_reconciled():
    async def scenario():
        store = FailingWritesStore()
        h = await Harness(at(12), store=store).setup()
        first = await h.scheduler.create_schedule(request(zone="zone-a", start=at(13), end=at(15)))
        h.clock.set(at(12, 1))
        second = await h.scheduler.create_schedule(
            request(zone="zone-b", start=at(13), end=at(15), kw=20.0)
        )
        store.schedule_id = second.id

        # zone-a is saved ACTIVE, then the zone-b write fails
        with pytest.raises(ConnectionError):
            await h.tick_at(at(13))
        stored_first = await h.status(first.id)
        sent_after_failure = len(h.actuator.sent)

        await h.tick_at(at(13, 1))
        return h, stored_first, sent_after_failure

    h, stored_first, sent_after_failure = run(scenario())
    assert stored_first.status == ScheduleStatus.ACTIVE
    assert sent_after_failure == 0
    assert h.actuator.last_command("zone-a").action.magnitude_kw == 30.0
    assert h.actuator.last_command("zone-b").action.magnitude_kw == 20.0


# ============================================
# Activation safety after conflict resolution
# ============================================

def test_activation_checked_at_magnitude_after_supersession():
    async def tick(h, ts):
        h.clock.set(ts)
        h.refresh_sensors()
        # Near the dark-hours limit: only a full shed of zone-b is unsafe
        snapshot = healthy_snapshot("zone-b", ts)
        snapshot.dark_hours = 9.5
        h.sensors.update(snapshot)
        await h.loop.tick()
        await h.loop.drain()

    async def scenario():
        h = await Harness(at(10)).setup()
        low = await h.scheduler.create_schedule(
            request(zone="zone-b", start=at(14), end=at(17), kw=30.0, priority=3)
        )
        h.clock.set(at(11))
        high = await h.scheduler.create_schedule(
            request(zone="zone-b", start=at(15), end=at(17), kw=40.0, priority=1)
        )
        await tick(h, at(14))
        await tick(h, at(15))
        return h, await h.status(low.id), await h.status(high.id)

    h, low, high = run(scenario())
    assert high.status == ScheduleStatus.ACTIVE
    assert low.status == ScheduleStatus.CANCELLED
    assert low.cancel_reason == CancelReason.SUPERSEDED
    assert h.actuator.last_command("zone-b").action.magnitude_kw == 40.0
