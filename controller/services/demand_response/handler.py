"""
Demand-Response Event Handler

Turns a utility or aggregator curtailment request into priority-1
grid_event schedules, one per zone with a non-zero share.

- Spare capacity per zone follows the control loop's conflict policy.
  Earlier grid events outrank a new one, so under exclusive a zone they
  already cover in the window has none left; under stack it has capacity
  minus their peak committed kW
- Shares come from the injected AllocationStrategy
- Insufficient capacity is not an error: the result carries
  partial_fulfillment and the achieved kW
- Redelivery of the same event id within the dedup window returns the
  original result and creates nothing; concurrent deliveries of one id
  are serialized so only the first allocates
"""

import asyncio
import dataclasses
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from common.config import ConflictPolicy
from common.dedup import DedupCache
from common.exceptions import CapacityExceededError, NotFoundError
from common.logging_setup import get_service_logger
from common.models import DemandResponseEvent, LoadSheddingSchedule, ShedReason
from common.retry import RetryPolicy
from common.timestamp import ensure_utc, hours_between, utc_now
from services.alerts import AlertType, Severity
from services.scheduling import LoadSheddingScheduler, ShedRequest, peak_committed_kw
from services.scheduling.scheduler import OPEN_STATUSES

from .allocation import EPSILON, AllocationStrategy, ProportionalAllocation

logger = get_service_logger("demand_response")


@dataclass
class AllocationResult:
    """Outcome of handling one DR event"""
    event_id: str
    facility_id: str
    requested_kw: float
    achieved_kw: float
    partial_fulfillment: bool
    estimated_compensation: float
    schedules: list[LoadSheddingSchedule] = field(default_factory=list)
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "facility_id": self.facility_id,
            "requested_kw": self.requested_kw,
            "achieved_kw": self.achieved_kw,
            "partial_fulfillment": self.partial_fulfillment,
            "estimated_compensation": self.estimated_compensation,
            "schedules": [s.to_dict() for s in self.schedules],
            "duplicate": self.duplicate,
        }


class DemandResponseHandler:
    """Allocates DR events across a facility's zones"""

    def __init__(
        self,
        store,
        scheduler: LoadSheddingScheduler,
        dedup: DedupCache,
        strategy: AllocationStrategy | None = None,
        alerts=None,
        retry: RetryPolicy | None = None,
        clock=utc_now,
    ):
        self.store = store
        self.scheduler = scheduler
        self.dedup = dedup
        self.strategy = strategy or ProportionalAllocation()
        self.alerts = alerts
        self.retry = retry or RetryPolicy()
        self._clock = clock
        # event id -> (lock, number of deliveries holding or awaiting it)
        self._in_flight: dict[str, tuple[asyncio.Lock, int]] = {}

    async def on_event(self, event: DemandResponseEvent) -> AllocationResult:
        """
        Handle a DR event (idempotent per event id).

        Raises:
            NotFoundError: unknown facility
            ValueError: window_end not after window_start
        """
        lock, users = self._in_flight.get(event.id, (asyncio.Lock(), 0))
        self._in_flight[event.id] = (lock, users + 1)
        try:
            async with lock:
                return await self._handle(event)
        finally:
            lock, users = self._in_flight[event.id]
            if users == 1:
                del self._in_flight[event.id]
            else:
                self._in_flight[event.id] = (lock, users - 1)

    async def _handle(self, event: DemandResponseEvent) -> AllocationResult:
        cached = self.dedup.get(event.id)
        if cached is not None:
            logger.info(f"Duplicate DR event {event.id}, returning original allocation")
            return dataclasses.replace(cached, duplicate=True)

        stored = await self.store.get_dr_event(event.id)
        if stored is not None and stored.acknowledged_at is not None:
            result = await self._rebuild(stored)
            self.dedup.put(event.id, result)
            return dataclasses.replace(result, duplicate=True)

        window_start = ensure_utc(event.window_start)
        window_end = ensure_utc(event.window_end)
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        facility = await self.store.get_facility(event.facility_id)
        if facility is None:
            raise NotFoundError("facility", event.facility_id)

        now = self._clock()
        schedules: list[LoadSheddingSchedule] = []

        if window_end <= now:
            logger.warning(f"DR event {event.id} window already ended, nothing allocated")
        else:
            schedules = await self._allocate(event, window_start, window_end)

        achieved = round(math.fsum(s.target_reduction_kw for s in schedules), 3)
        result = AllocationResult(
            event_id=event.id,
            facility_id=event.facility_id,
            requested_kw=event.required_reduction_kw,
            achieved_kw=achieved,
            partial_fulfillment=achieved + EPSILON < event.required_reduction_kw,
            estimated_compensation=round(
                achieved * hours_between(window_start, window_end) * event.compensation_rate, 2
            ),
            schedules=schedules,
        )

        acknowledged = dataclasses.replace(event, acknowledged_at=now)
        await self.retry.run(lambda: self.store.save_dr_event(acknowledged), "save DR event")
        self.dedup.put(event.id, result)

        logger.info(
            f"DR event {event.id} from {event.issued_by}: requested "
            f"{event.required_reduction_kw:.1f}kW, allocated {achieved:.1f}kW "
            f"across {len(schedules)} zones",
            extra={"facility_id": event.facility_id, "event_id": event.id},
        )
        if result.partial_fulfillment and self.alerts is not None:
            await self.alerts.emit_alert(
                event.facility_id,
                Severity.WARNING,
                f"DR event {event.id}: only {achieved:.1f} of "
                f"{event.required_reduction_kw:.1f}kW could be committed",
                alert_type=AlertType.PARTIAL_FULFILLMENT,
            )
        return result

    async def spare_capacity(
        self,
        facility_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> tuple[dict[str, float], dict[str, float]]:
        """(spare_kw, capacity_kw) per zone for a window"""
        zones = await self.store.list_zones(facility_id)
        open_schedules = await self.store.list_schedules(facility_id, statuses=OPEN_STATUSES)

        exclusive = self.scheduler.settings.conflict_policy == ConflictPolicy.EXCLUSIVE

        spare: dict[str, float] = {}
        capacity: dict[str, float] = {}
        for zone in zones:
            # Only earlier grid events rank ahead of a new one
            ahead = [
                s for s in open_schedules
                if s.zone_id == zone.id
                and s.priority == 1
                and s.reason == ShedReason.GRID_EVENT
                and not s.cancel_requested
                and s.overlaps_window(window_start, window_end)
            ]
            capacity[zone.id] = zone.capacity_kw
            if exclusive:
                spare[zone.id] = 0.0 if ahead else zone.capacity_kw
            else:
                committed = peak_committed_kw(ahead, window_start, window_end)
                spare[zone.id] = max(0.0, zone.capacity_kw - committed)
        return spare, capacity

    async def _allocate(
        self,
        event: DemandResponseEvent,
        window_start: datetime,
        window_end: datetime,
    ) -> list[LoadSheddingSchedule]:
        spare, capacity = await self.spare_capacity(event.facility_id, window_start, window_end)
        shares = self.strategy.allocate(event.required_reduction_kw, spare, capacity)

        schedules = []
        for zone_id in sorted(shares):
            share = min(shares[zone_id], spare.get(zone_id, 0.0))
            if share <= EPSILON:
                continue
            request = ShedRequest(
                zone_id=zone_id,
                start_time=window_start,
                end_time=window_end,
                target_reduction_kw=share,
                priority=1,
                reason=ShedReason.GRID_EVENT,
                dr_event_id=event.id,
            )
            try:
                schedules.append(await self.scheduler.create_schedule(request))
            except CapacityExceededError as e:
                logger.warning(f"DR share for zone {zone_id} rejected: {e.message}")
        return schedules

    async def _rebuild(self, event: DemandResponseEvent) -> AllocationResult:
        """Result of an event acknowledged before the dedup cache forgot it"""
        all_schedules = await self.store.list_schedules(event.facility_id)
        schedules = [s for s in all_schedules if s.dr_event_id == event.id]
        achieved = round(math.fsum(s.target_reduction_kw for s in schedules), 3)
        return AllocationResult(
            event_id=event.id,
            facility_id=event.facility_id,
            requested_kw=event.required_reduction_kw,
            achieved_kw=achieved,
            partial_fulfillment=achieved + EPSILON < event.required_reduction_kw,
            estimated_compensation=round(
                achieved * hours_between(event.window_start, event.window_end)
                * event.compensation_rate, 2
            ),
            schedules=schedules,
        )
