"""
Peak Window Optimizer

Background cost optimization: for each upcoming peak window of the
facility's tariff, request a priority-3 cost_optimization shed of
optimizer_shed_fraction x capacity on every zone that has nothing
scheduled in that window yet. The requests go through the normal
scheduler, so the control loop still applies safety and conflicts.
"""

from datetime import datetime, timedelta

from common.config import ControlLoopSettings, RateSettings
from common.exceptions import CapacityExceededError, ConfigurationError
from common.logging_setup import get_service_logger
from common.models import LoadSheddingSchedule, ShedReason
from common.timestamp import ensure_utc, utc_now
from services.rates import RateModel

from .scheduler import OPEN_STATUSES, LoadSheddingScheduler, ShedRequest

logger = get_service_logger("scheduling.optimizer")


class PeakWindowOptimizer:
    """Creates cost_optimization schedules ahead of peak windows"""

    def __init__(
        self,
        store,
        scheduler: LoadSheddingScheduler,
        settings: ControlLoopSettings | None = None,
        rate_settings: RateSettings | None = None,
        clock=utc_now,
    ):
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or ControlLoopSettings()
        self.rate_settings = rate_settings or RateSettings()
        self._clock = clock

    async def plan(self, facility_id: str, now: datetime | None = None) -> list[LoadSheddingSchedule]:
        """Create schedules for uncovered peak windows within the horizon"""
        if not self.settings.optimizer_enabled:
            return []

        now = ensure_utc(now or self._clock())
        facility = await self.store.get_facility(facility_id)
        if facility is None or not facility.rate_zone:
            return []

        horizon_end = now + timedelta(hours=self.settings.optimizer_horizon_hours)
        rates = await RateModel.load(self.store, [facility.rate_zone], self.rate_settings)
        try:
            windows = rates.peak_windows(facility.rate_zone, now, horizon_end, facility.timezone)
        except ConfigurationError as e:
            logger.warning(f"Optimizer skipped for {facility_id}: {e.message}")
            return []

        if not windows:
            return []

        zones = await self.store.list_zones(facility_id)
        existing = await self.store.list_schedules(facility_id, statuses=OPEN_STATUSES)
        created: list[LoadSheddingSchedule] = []

        for window_start, window_end in windows:
            for zone in zones:
                if zone.capacity_kw <= 0:
                    continue
                if any(s.zone_id == zone.id and s.overlaps_window(window_start, window_end) for s in existing):
                    continue

                request = ShedRequest(
                    zone_id=zone.id,
                    start_time=window_start,
                    end_time=window_end,
                    target_reduction_kw=round(zone.capacity_kw * self.settings.optimizer_shed_fraction, 3),
                    priority=3,
                    reason=ShedReason.COST_OPTIMIZATION,
                )
                try:
                    schedule = await self.scheduler.create_schedule(request)
                except (CapacityExceededError, ValueError) as e:
                    logger.info(f"Optimizer skipped zone {zone.id}: {e}")
                    continue
                created.append(schedule)
                existing.append(schedule)

        if created:
            logger.info(
                f"Optimizer created {len(created)} cost_optimization schedules for {facility_id}",
                extra={"facility_id": facility_id},
            )
        return created
