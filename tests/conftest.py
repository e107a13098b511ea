"""
Pytest configuration and shared fixtures for Canopy Energy tests.

Async services are driven with asyncio.run() inside plain test
functions. Time is controlled with FixedClock so control-loop ticks and
schedule windows are deterministic.
"""

import asyncio
import os
import sys
from datetime import datetime, time, timedelta, timezone

import pytest

# Add controller and backend to path
ROOT = os.path.join(os.path.dirname(__file__), "..")
sys.path.insert(0, os.path.join(ROOT, "controller"))
sys.path.insert(0, os.path.join(ROOT, "backend"))

from common.config import ControlLoopSettings  # noqa: E402
from common.models import (  # noqa: E402
    EnergyReading,
    Facility,
    RateSchedule,
    RateWindow,
    SafetyEnvelope,
    SensorSnapshot,
    Zone,
)
from common.retry import RetryPolicy  # noqa: E402
from services.actuation import CommandTracker, InMemoryActuator  # noqa: E402
from services.alerts import LoggingAlertSink  # noqa: E402
from services.safety import SafetyConstraintEngine  # noqa: E402
from services.scheduling import FacilityControlLoop, LoadSheddingScheduler  # noqa: E402
from services.sensors import InMemorySensorFeed  # noqa: E402
from storage import InMemoryStore  # noqa: E402

FACILITY_ID = "greenhouse-1"
RATE_ZONE = "TOU-A"

# Monday 2 March 2026, 00:00 UTC
DAY = datetime(2026, 3, 2, tzinfo=timezone.utc)

# No waiting between retries in tests
NO_BACKOFF = RetryPolicy(max_attempts=3, base_delay_s=0.0, multiplier=1.0, max_delay_s=0.0)


def run(coro):
    """Run a coroutine to completion"""
    return asyncio.run(coro)


def at(hour: int, minute: int = 0, day: datetime = DAY) -> datetime:
    return day + timedelta(hours=hour, minutes=minute)


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def tou_schedule(
    peak_rate: float = 0.45,
    off_peak_rate: float = 0.12,
    demand_charge: float = 15.0,
    version: int = 1,
    effective_from: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc),
    effective_to: datetime | None = None,
) -> RateSchedule:
    """Peak 16:00-21:00 every day, off-peak otherwise"""
    return RateSchedule(
        rate_zone=RATE_ZONE,
        version=version,
        windows=[
            RateWindow("off_peak", time(0, 0), time(0, 0), off_peak_rate),
            RateWindow("peak", time(16, 0), time(21, 0), peak_rate, is_peak=True),
        ],
        demand_charge=demand_charge,
        effective_from=effective_from,
        effective_to=effective_to,
    )


def lettuce_envelope() -> SafetyEnvelope:
    return SafetyEnvelope(
        crop_profile="lettuce",
        min_temp_c=16.0,
        max_temp_c=28.0,
        min_humidity_pct=40.0,
        max_humidity_pct=85.0,
        min_dli=12.0,
        max_continuous_dark_hours=10.0,
        min_recovery_minutes=15.0,
    )


def healthy_snapshot(zone_id: str, ts: datetime) -> SensorSnapshot:
    return SensorSnapshot(
        zone_id=zone_id,
        timestamp=ts,
        temperature_c=22.0,
        humidity_pct=60.0,
        dli_so_far=10.0,
        projected_dli=30.0,
        dark_hours=0.0,
    )


def cold_snapshot(zone_id: str, ts: datetime) -> SensorSnapshot:
    """Zone already below its minimum temperature"""
    snapshot = healthy_snapshot(zone_id, ts)
    snapshot.temperature_c = 15.0
    return snapshot


def meter_readings(
    start: datetime,
    end: datetime,
    power_kw: float,
    step_minutes: int = 15,
    facility_id: str = FACILITY_ID,
) -> list[EnergyReading]:
    """Facility-meter readings every step_minutes in [start, end)"""
    readings = []
    ts = start
    while ts < end:
        readings.append(EnergyReading(facility_id=facility_id, timestamp=ts, power_kw=power_kw))
        ts += timedelta(minutes=step_minutes)
    return readings


async def seed_facility(store: InMemoryStore, zones: dict[str, float] | None = None) -> None:
    """Facility with zones (id -> capacity kW), tariff and envelope"""
    zones = zones if zones is not None else {"zone-a": 100.0, "zone-b": 50.0}
    await store.save_facility(Facility(id=FACILITY_ID, timezone="UTC", rate_zone=RATE_ZONE))
    for zone_id, capacity in zones.items():
        await store.save_zone(Zone(
            id=zone_id,
            facility_id=FACILITY_ID,
            capacity_kw=capacity,
            crop_profile="lettuce",
        ))
    await store.save_safety_envelope(lettuce_envelope())
    await store.publish_rate_schedule(tou_schedule())


async def add_readings(store: InMemoryStore, readings: list[EnergyReading]) -> None:
    for reading in readings:
        await store.append_reading(reading)


class Harness:
    """Store, scheduler and control loop for one facility, on a fixed clock"""

    def __init__(
        self,
        start: datetime,
        settings: ControlLoopSettings | None = None,
        ack_status=None,
        store: InMemoryStore | None = None,
    ):
        self.clock = FixedClock(start)
        self.store = store if store is not None else InMemoryStore()
        self.sensors = InMemorySensorFeed()
        self.actuator = InMemoryActuator() if ack_status is None else InMemoryActuator(ack_status)
        self.alerts = LoggingAlertSink()
        self.settings = settings or ControlLoopSettings()
        self.completed = []
        self.zone_ids: list[str] = []

        self.safety = SafetyConstraintEngine(self.store, self.sensors)
        self.scheduler = LoadSheddingScheduler(self.store, self.settings, NO_BACKOFF, clock=self.clock)
        self.tracker = CommandTracker(self.actuator, retry=NO_BACKOFF)
        self.loop = FacilityControlLoop(
            FACILITY_ID,
            self.store,
            self.safety,
            self.tracker,
            self.alerts,
            settings=self.settings,
            retry=NO_BACKOFF,
            on_completed=self._on_completed,
            clock=self.clock,
        )

    async def _on_completed(self, schedule) -> None:
        self.completed.append(schedule.id)

    async def setup(self, zones: dict[str, float] | None = None) -> "Harness":
        await seed_facility(self.store, zones)
        self.zone_ids = [z.id for z in await self.store.list_zones(FACILITY_ID)]
        self.refresh_sensors()
        return self

    def refresh_sensors(self, unsafe_zones: tuple[str, ...] = ()) -> None:
        """Fresh snapshots at the current instant"""
        for zone_id in self.zone_ids:
            if zone_id in unsafe_zones:
                self.sensors.update(cold_snapshot(zone_id, self.clock.now))
            else:
                self.sensors.update(healthy_snapshot(zone_id, self.clock.now))

    async def tick_at(self, ts: datetime, unsafe_zones: tuple[str, ...] = ()):
        self.clock.set(ts)
        self.refresh_sensors(unsafe_zones)
        state = await self.loop.tick()
        await self.loop.drain()
        return state

    async def status(self, schedule_id: str):
        return await self.store.get_schedule(schedule_id)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def seeded_store():
    store = InMemoryStore()
    run(seed_facility(store))
    return store
