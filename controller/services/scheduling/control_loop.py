"""
Facility Control Loop

The only writer of schedule status and zone actuation state for one
facility. Each tick:

1. Load facility, zones and open schedules (bounded by
   persistence_timeout_s; on timeout the tick is skipped)
2. Apply cancel requests, completions and expirations
3. Re-check ACTIVE schedules against the safety engine; unsafe for
   safety_grace_s -> CANCELLED (safety_violation) plus an alert
4. Check PENDING schedules whose start has arrived, at the magnitude that
   will run after conflict resolution; unsafe past
   start + activation_grace_s -> CANCELLED (safety_timeout)
5. Resolve conflicts among ACTIVE and activation-ready schedules
6. Persist, then send one command per (zone, action kind) whose running
   magnitude differs from the last one commanded, then audit
7. Poll command acknowledgements

Commands are reconciled against the running set on every tick, so a tick
that fails after persisting a transition is made good by the next one.

Schedules are processed in rank order (priority, then created_at), so a
tick is deterministic for a given store state and instant.
"""

import asyncio
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from common.config import ControlLoopSettings
from common.exceptions import CanopyError, ConfigurationError, PersistenceTimeout
from common.logging_setup import get_service_logger, log_control_tick, log_transition
from common.models import (
    ActionKind,
    ActuationState,
    AuditEntry,
    CancelReason,
    LoadSheddingSchedule,
    ScheduleStatus,
    ShedReason,
    Zone,
)
from common.retry import RetryPolicy
from common.timestamp import ensure_utc, utc_now
from services.actuation import CommandTracker, ZoneCommand
from services.alerts import AlertType, Severity
from services.safety import ProposedAction, SafetyConstraintEngine, SafetyVerdict

from .conflicts import resolve_conflicts
from .scheduler import OPEN_STATUSES
from .state import TickState, Transition, apply_transition

logger = get_service_logger("control")

DIM_CONFIGURATION = "configuration"

CompletionCallback = Callable[[LoadSheddingSchedule], Awaitable[None]]


def zone_actuation_state(kinds: set[ActionKind]) -> ActuationState:
    """Actuation state implied by the action kinds running on a zone"""
    if ActionKind.REDUCE_LIGHT in kinds or ActionKind.REDUCE_HVAC in kinds:
        return ActuationState.SHED
    if ActionKind.SHIFT in kinds:
        return ActuationState.SHIFTED
    return ActuationState.NORMAL


class FacilityControlLoop:
    """Per-facility schedule state machine driven by tick()"""

    def __init__(
        self,
        facility_id: str,
        store,
        safety: SafetyConstraintEngine,
        tracker: CommandTracker,
        alerts,
        settings: ControlLoopSettings | None = None,
        retry: RetryPolicy | None = None,
        on_completed: CompletionCallback | None = None,
        clock=utc_now,
    ):
        self.facility_id = facility_id
        self.store = store
        self.safety = safety
        self.tracker = tracker
        self.alerts = alerts
        self.settings = settings or ControlLoopSettings()
        self.retry = retry or RetryPolicy()
        self.on_completed = on_completed
        self._clock = clock

        # Last commanded magnitude per (zone, kind); seeded on the first tick
        self._commanded: dict[tuple[str, ActionKind], float] = {}
        self._seeded = False
        self._background: set[asyncio.Task] = set()
        self.last_state: TickState | None = None

    # ── Persistence helpers ──────────────────────────────────────────

    async def _load(self):
        timeout = self.settings.persistence_timeout_s
        try:
            return await asyncio.wait_for(
                asyncio.gather(
                    self.store.get_facility(self.facility_id),
                    self.store.list_zones(self.facility_id),
                    self.store.list_schedules(self.facility_id, statuses=OPEN_STATUSES),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise PersistenceTimeout("load tick state", timeout) from None

    async def _persist(self, schedule: LoadSheddingSchedule, loaded_cancel: bool) -> None:
        """Save a schedule without losing a cancel request written since the load"""
        fresh = await self.store.get_schedule(schedule.id)
        if fresh is not None and fresh.cancel_requested and not loaded_cancel:
            schedule.cancel_requested = True
            schedule.cancel_override = fresh.cancel_override
        await self.retry.run(lambda: self.store.save_schedule(schedule), "save schedule")

    async def _audit(self, action: str, now: datetime, zone_id=None, schedule_id=None, **detail) -> None:
        entry = AuditEntry(
            facility_id=self.facility_id,
            action=action,
            timestamp=now,
            schedule_id=schedule_id,
            zone_id=zone_id,
            detail=detail,
        )
        await self.retry.run(lambda: self.store.append_audit(entry), "append audit")

    # ── Safety ───────────────────────────────────────────────────────

    async def _check(
        self,
        schedule: LoadSheddingSchedule,
        magnitude_kw: float,
        now: datetime,
    ) -> SafetyVerdict:
        action = ProposedAction(
            kind=schedule.action_kind,
            magnitude_kw=magnitude_kw,
            start_time=max(now, ensure_utc(schedule.start_time)),
            end_time=ensure_utc(schedule.end_time),
        )
        try:
            return await self.safety.is_action_safe(schedule.zone_id, action, now=now)
        except ConfigurationError as e:
            # Never shed without a confirmed envelope
            logger.error(e.message, extra={"facility_id": self.facility_id, "zone_id": schedule.zone_id})
            return SafetyVerdict(safe=False, reason=e.message, dimension=DIM_CONFIGURATION)

    @staticmethod
    def _mark_unsafe(schedule: LoadSheddingSchedule, verdict: SafetyVerdict, now: datetime) -> None:
        if schedule.unsafe_since is None:
            schedule.unsafe_since = now
        schedule.unsafe_detail = verdict.describe()

    # ── Tick ─────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> TickState:
        """Run one control iteration"""
        started = time.time()
        now = ensure_utc(now or self._clock())
        state = TickState(facility_id=self.facility_id, timestamp=now)

        try:
            facility, zones, schedules = await self._load()
        except PersistenceTimeout as e:
            logger.warning(f"{e.message}; tick skipped", extra={"facility_id": self.facility_id})
            state.skipped = True
            state.skip_reason = e.message
            self.last_state = state
            return state

        if facility is None:
            raise ConfigurationError(f"unknown facility '{self.facility_id}'", subject=self.facility_id)

        zones_by_id: dict[str, Zone] = {z.id: z for z in zones}
        loaded_cancel = {s.id: s.cancel_requested for s in schedules}
        ordered = sorted(schedules, key=lambda s: s.rank_key())

        if not self._seeded:
            for s in ordered:
                if s.status == ScheduleStatus.ACTIVE:
                    key = (s.zone_id, s.action_kind)
                    self._commanded[key] = self._commanded.get(key, 0.0) + s.target_reduction_kw
            self._seeded = True

        changed: dict[str, LoadSheddingSchedule] = {}
        transitions: list[tuple[Transition, LoadSheddingSchedule, dict]] = []

        def record(schedule, to_status, reason=None, **detail):
            transition = apply_transition(schedule, to_status, now, reason)
            transitions.append((transition, schedule, detail))
            changed[schedule.id] = schedule

        # 1. Cancel requests, completions, expirations
        active: list[LoadSheddingSchedule] = []
        due: list[LoadSheddingSchedule] = []
        upcoming = 0
        for s in ordered:
            end = ensure_utc(s.end_time)
            if s.cancel_requested and now < end:
                if s.reason == ShedReason.GRID_EVENT and not s.cancel_override:
                    logger.warning(
                        f"Ignoring cancel of grid event schedule {s.id} without override",
                        extra={"facility_id": self.facility_id, "schedule_id": s.id},
                    )
                    s.cancel_requested = False
                    changed[s.id] = s
                else:
                    record(s, ScheduleStatus.CANCELLED, CancelReason.USER_CANCELLED)
                    continue

            if now >= end:
                if s.status == ScheduleStatus.ACTIVE:
                    record(s, ScheduleStatus.COMPLETED)
                else:
                    record(s, ScheduleStatus.CANCELLED, CancelReason.EXPIRED)
                continue

            if s.status == ScheduleStatus.ACTIVE:
                active.append(s)
            elif now >= ensure_utc(s.start_time):
                due.append(s)
            else:
                upcoming += 1

        # 2. Continuous safety re-check of running schedules
        combined: dict[tuple[str, ActionKind], float] = defaultdict(float)
        for s in active:
            combined[(s.zone_id, s.action_kind)] += s.target_reduction_kw

        still_active: list[LoadSheddingSchedule] = []
        grace = timedelta(seconds=self.settings.safety_grace_s)
        for s in active:
            verdict = await self._check(s, combined[(s.zone_id, s.action_kind)], now)
            if verdict.safe:
                if s.unsafe_since is not None:
                    s.unsafe_since = None
                    s.unsafe_detail = None
                    changed[s.id] = s
                still_active.append(s)
                continue

            self._mark_unsafe(s, verdict, now)
            changed[s.id] = s
            if now - ensure_utc(s.unsafe_since) >= grace:
                record(
                    s, ScheduleStatus.CANCELLED, CancelReason.SAFETY_VIOLATION,
                    dimension=verdict.dimension,
                    recovery_minutes=verdict.recovery_minutes,
                    verdict=verdict.describe(),
                )
                combined[(s.zone_id, s.action_kind)] -= s.target_reduction_kw
                error = verdict.to_error(s.zone_id)
                await self._emit(
                    Severity.MAJOR,
                    AlertType.SAFETY_VIOLATION,
                    f"{error.message}. Load shedding cancelled to protect the crop; "
                    f"allow the recovery time before shedding again.",
                    s,
                )
            else:
                still_active.append(s)

        # 3. Activation checks for schedules whose start has arrived
        capacity = {z.id: z.capacity_kw for z in zones}
        ready: list[LoadSheddingSchedule] = []
        activation_grace = timedelta(seconds=self.settings.activation_grace_s)
        for s in due:
            projected, _ = resolve_conflicts(
                still_active + ready + [s], self.settings.conflict_policy, capacity
            )
            if not any(p is s for p in projected):
                # Loses conflict resolution below; nothing to check
                ready.append(s)
                continue

            # Checked against what will actually run once conflicts resolve
            magnitude = sum(
                p.target_reduction_kw
                for p in projected
                if p.zone_id == s.zone_id and p.action_kind == s.action_kind
            )
            verdict = await self._check(s, magnitude, now)
            if verdict.safe:
                ready.append(s)
                continue

            self._mark_unsafe(s, verdict, now)
            changed[s.id] = s
            if now >= ensure_utc(s.start_time) + activation_grace:
                record(
                    s, ScheduleStatus.CANCELLED, CancelReason.SAFETY_TIMEOUT,
                    dimension=verdict.dimension,
                    verdict=verdict.describe(),
                )
                await self._emit(
                    Severity.WARNING,
                    AlertType.SAFETY_TIMEOUT,
                    f"Load shedding on zone {s.zone_id} never started: "
                    f"{verdict.dimension} ({verdict.reason}) for the whole grace period.",
                    s,
                )
            else:
                upcoming += 1

        # 4. Conflict resolution
        accepted, superseded = resolve_conflicts(
            still_active + ready, self.settings.conflict_policy, capacity
        )
        for s in superseded:
            winner = next((a for a in accepted if a.overlaps(s)), None)
            record(
                s, ScheduleStatus.CANCELLED, CancelReason.SUPERSEDED,
                superseded_by=winner.id if winner else None,
            )
        for s in accepted:
            if s.status == ScheduleStatus.PENDING:
                record(s, ScheduleStatus.ACTIVE, target_reduction_kw=s.target_reduction_kw)

        # 5. Persist
        for s in changed.values():
            await self._persist(s, loaded_cancel.get(s.id, False))

        # 6. Actuation: bring every (zone, kind) in line with the running set,
        # including keys a failed earlier tick left behind
        state.commands_sent = await self._actuate(accepted, zones_by_id, now)

        # 7. Audit
        for transition, s, detail in transitions:
            reason = transition.cancel_reason.value if transition.cancel_reason else None
            log_transition(
                logger, s.id, s.zone_id,
                transition.from_status.value, transition.to_status.value, reason,
            )
            await self._audit(
                transition.action, now,
                zone_id=s.zone_id, schedule_id=s.id,
                from_status=transition.from_status.value,
                to_status=transition.to_status.value,
                cancel_reason=reason,
                **detail,
            )
            if transition.to_status == ScheduleStatus.COMPLETED and self.on_completed:
                self._spawn(self.on_completed(s))

        # 8. Acknowledgements
        failed = await self.tracker.poll(now)
        state.failed_commands = len(failed)
        for command in failed:
            await self._mark_degraded(command, now)

        state.transitions = [t for t, _, _ in transitions]
        state.active_count = len(accepted)
        state.pending_count = upcoming
        state.execution_time_ms = (time.time() - started) * 1000
        log_control_tick(
            logger, self.facility_id, state.active_count, state.pending_count,
            len(state.transitions), state.execution_time_ms,
        )
        self.last_state = state
        return state

    async def _actuate(
        self,
        running: list[LoadSheddingSchedule],
        zones_by_id: dict[str, Zone],
        now: datetime,
    ) -> int:
        """Send a command for every (zone, kind) whose commanded magnitude is stale"""
        keys = sorted(
            set(self._commanded) | {(s.zone_id, s.action_kind) for s in running},
            key=lambda k: (k[0], k[1].value),
        )
        sent = 0
        for zone_id, kind in keys:
            contributing = [s for s in running if s.zone_id == zone_id and s.action_kind == kind]
            magnitude = sum(s.target_reduction_kw for s in contributing)
            if abs(magnitude - self._commanded.get((zone_id, kind), 0.0)) < 1e-9:
                continue

            duration = 0.0
            if contributing:
                last_end = max(ensure_utc(s.end_time) for s in contributing)
                duration = (last_end - now).total_seconds()

            await self.tracker.dispatch(
                self.facility_id,
                zone_id,
                ZoneCommand(kind=kind, magnitude_kw=magnitude),
                duration,
                now,
                schedule_ids=tuple(s.id for s in contributing),
            )
            self._commanded[(zone_id, kind)] = magnitude
            sent += 1
            await self._audit(
                "actuation_command", now, zone_id=zone_id,
                kind=kind.value, magnitude_kw=magnitude, duration_seconds=duration,
            )

        # Zone actuation state follows the running set
        for zone_id in sorted(zones_by_id):
            zone = zones_by_id[zone_id]
            kinds = {s.action_kind for s in running if s.zone_id == zone_id}
            new_state = zone_actuation_state(kinds)
            if zone.actuation_state != new_state:
                zone.actuation_state = new_state
                await self.retry.run(lambda: self.store.save_zone(zone), "save zone")
        return sent

    async def _mark_degraded(self, command, now: datetime) -> None:
        for schedule_id in command.schedule_ids:
            schedule = await self.store.get_schedule(schedule_id)
            if schedule is None or schedule.degraded:
                continue
            schedule.degraded = True
            await self.retry.run(lambda: self.store.save_schedule(schedule), "save schedule")

        error = command.to_error()
        await self.alerts.emit_alert(
            self.facility_id,
            Severity.MAJOR,
            f"{error.message}. Zone {command.zone_id} may not be at its target state.",
            alert_type=AlertType.ACTUATION_FAILED,
            zone_id=command.zone_id,
            schedule_id=command.schedule_ids[0] if command.schedule_ids else None,
        )
        await self._audit(
            "actuation_failed", now, zone_id=command.zone_id,
            command_id=command.command_id, attempts=command.attempts,
        )

    async def _emit(self, severity, alert_type, message: str, schedule: LoadSheddingSchedule) -> None:
        await self.alerts.emit_alert(
            self.facility_id,
            severity,
            message,
            alert_type=alert_type,
            zone_id=schedule.zone_id,
            schedule_id=schedule.id,
        )

    # ── Background work ──────────────────────────────────────────────

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(self._guarded(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded(self, coro) -> None:
        try:
            await coro
        except CanopyError as e:
            logger.error(f"Background task failed: {e.message}", extra={"facility_id": self.facility_id})
        except Exception as e:
            logger.error(f"Background task error: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for background work (report recomputes) to finish"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
