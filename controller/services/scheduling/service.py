"""
Control Service

Runs one FacilityControlLoop per facility as a group of fixed-interval
loops, plus a slower cost-optimizer loop per facility, and exposes an
aiohttp health server:

    GET /health  - service status and loop statistics
    GET /state   - last tick state per facility
"""

import asyncio
import signal
from datetime import datetime, timezone

from aiohttp import web

from common.config import ControllerSettings
from common.logging_setup import get_service_logger
from common.retry import RetryPolicy
from common.scheduler import LoopGroup
from services.actuation import ActuationInterface, CommandTracker
from services.alerts import StoreAlertSink
from services.safety import SafetyConstraintEngine
from services.verification import SavingsVerificationEngine

from .control_loop import FacilityControlLoop
from .optimizer import PeakWindowOptimizer
from .scheduler import LoadSheddingScheduler

logger = get_service_logger("control")

# Peak windows are hours long; replanning every 15 minutes is plenty
OPTIMIZER_INTERVAL_S = 900.0


class ControlService:
    """
    Control Service

    Owns the per-facility control loops. The loops are the only writers
    of schedule status; everything else talks to the store.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        store,
        actuator: ActuationInterface,
        sensors,
        alerts=None,
    ):
        self.settings = settings
        self.store = store
        self.actuator = actuator
        self.retry = RetryPolicy.from_settings(settings.retry)
        self.alerts = alerts or StoreAlertSink(store)

        self.safety = SafetyConstraintEngine(store, sensors, settings.safety)
        self.scheduler = LoadSheddingScheduler(store, settings.control, self.retry)
        self.verification = SavingsVerificationEngine(
            store,
            settings.verification,
            settings.baseline,
            settings.rates,
            self.retry,
        )
        self.optimizer = PeakWindowOptimizer(store, self.scheduler, settings.control, settings.rates)

        self.loops: dict[str, FacilityControlLoop] = {}
        self.group = LoopGroup()

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._health_runner: web.AppRunner | None = None

    def add_facility(self, facility_id: str) -> FacilityControlLoop:
        """Create (or return) the control loop of a facility"""
        if facility_id in self.loops:
            return self.loops[facility_id]

        tracker = CommandTracker(
            self.actuator,
            self.settings.actuation,
            RetryPolicy(
                max_attempts=self.settings.actuation.max_attempts,
                base_delay_s=self.retry.base_delay_s,
                multiplier=self.retry.multiplier,
                max_delay_s=self.retry.max_delay_s,
            ),
        )
        loop = FacilityControlLoop(
            facility_id,
            self.store,
            self.safety,
            tracker,
            self.alerts,
            settings=self.settings.control,
            retry=self.retry,
            on_completed=self.verification.recompute_for_schedule,
        )
        self.loops[facility_id] = loop

        interval = self.settings.control.poll_interval_s
        self.group.add(f"control:{facility_id}", interval, loop.tick, tick_timeout_s=interval)
        if self.settings.control.optimizer_enabled:
            self.group.add(
                f"optimizer:{facility_id}",
                OPTIMIZER_INTERVAL_S,
                lambda: self.optimizer.plan(facility_id),
            )
        return loop

    async def start(self, serve_health: bool = True) -> None:
        """Start all facility loops (and the health server)"""
        logger.info("Starting Control Service")
        self._running = True

        facility_ids = list(self.settings.facility_ids)
        if not facility_ids:
            facility_ids = [f.id for f in await self.store.list_facilities()]
        for facility_id in facility_ids:
            self.add_facility(facility_id)

        if serve_health:
            await self._start_health_server()
        await self.group.start_all()

        logger.info(
            f"Control Service started ({len(self.loops)} facilities, "
            f"interval: {self.settings.control.poll_interval_s:.0f}s, "
            f"policy: {self.settings.control.conflict_policy.value})",
            extra={"facilities": sorted(self.loops)},
        )

    async def stop(self) -> None:
        """Stop loops, wait for background reports, stop the health server"""
        logger.info("Stopping Control Service")
        self._running = False
        self.group.stop_all()
        for loop in self.loops.values():
            await loop.drain()
        close = getattr(self.actuator, "close", None)
        if close is not None:
            await close()
        await self._stop_health_server()
        logger.info("Control Service stopped")

    async def run(self) -> None:
        """Start and block until SIGTERM/SIGINT"""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # ── Health server ────────────────────────────────────────────────

    async def _start_health_server(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/state", self._state_handler)

        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, "127.0.0.1", self.settings.health_port)
        await site.start()

        logger.info(f"Health server started on port {self.settings.health_port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    def health(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "status": "healthy" if self._running else "unhealthy",
            "service": "control",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "facilities": sorted(self.loops),
            "loops": self.group.get_stats(),
        }

    def state(self) -> dict:
        return {
            facility_id: loop.last_state.to_dict() if loop.last_state else None
            for facility_id, loop in sorted(self.loops.items())
        }

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.health())

    async def _state_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.state())
