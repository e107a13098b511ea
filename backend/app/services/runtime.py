"""
API Runtime

Builds the controller services the routers talk to:
- scheduler (create / cancel load-shedding schedules)
- DR handler (with its de-duplication cache)
- verification engine and recommendations

Routers get the runtime through the get_runtime dependency, so tests can
swap in a runtime over an in-memory store with
app.dependency_overrides[get_runtime].

Optionally the API process also runs the facility control loops
(RUN_CONTROL_LOOP=true); otherwise controller/main.py runs them.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, status

from common.config import ControllerSettings, load_controller_settings_file
from common.dedup import TTLDedupCache
from common.exceptions import (
    CanopyError,
    CapacityExceededError,
    ConfigurationError,
    NotFoundError,
    ScheduleStateError,
)
from common.retry import RetryPolicy
from common.timestamp import utc_now
from services.actuation import HttpActuationClient
from services.alerts import StoreAlertSink
from services.demand_response import DemandResponseHandler
from services.reporting import RecommendationService
from services.scheduling import ControlService, LoadSheddingScheduler
from services.sensors import InMemorySensorFeed, SupabaseSensorFeed
from services.verification import SavingsVerificationEngine
from storage import InMemoryStore
from storage.supabase_store import SupabaseStore

from .supabase import Settings, get_settings, supabase_service

logger = logging.getLogger(__name__)


class Runtime:
    """Controller services shared by all API requests"""

    def __init__(
        self,
        store,
        settings: Optional[ControllerSettings] = None,
        control: Optional[ControlService] = None,
        clock=utc_now,
    ):
        self.store = store
        self.settings = settings or ControllerSettings()
        self.control = control

        retry = RetryPolicy.from_settings(self.settings.retry)
        alerts = StoreAlertSink(store)
        self.scheduler = LoadSheddingScheduler(store, self.settings.control, retry, clock=clock)
        self.dr_handler = DemandResponseHandler(
            store,
            self.scheduler,
            TTLDedupCache.from_settings(self.settings.dedup),
            alerts=alerts,
            retry=retry,
            clock=clock,
        )
        self.verification = SavingsVerificationEngine(
            store,
            self.settings.verification,
            self.settings.baseline,
            self.settings.rates,
            retry,
            clock=clock,
        )
        self.recommendations = RecommendationService(
            store, self.settings.rates, self.settings.baseline, clock=clock
        )

    async def start(self) -> None:
        if self.control is not None:
            await self.control.start(serve_health=False)

    async def stop(self) -> None:
        if self.control is not None:
            await self.control.stop()


def build_runtime(settings: Settings) -> Runtime:
    """Wire the runtime from API settings"""
    controller_settings = (
        load_controller_settings_file(settings.controller_config_path)
        if settings.controller_config_path
        else ControllerSettings()
    )

    if settings.supabase_configured:
        client = supabase_service.client
        store = SupabaseStore(client)
        sensors = SupabaseSensorFeed(client)
    else:
        logger.warning("Supabase not configured, using in-memory store")
        store = InMemoryStore()
        sensors = InMemorySensorFeed()

    control = None
    if settings.run_control_loop:
        control = ControlService(
            controller_settings,
            store,
            HttpActuationClient(controller_settings.actuation),
            sensors,
        )

    return Runtime(store, controller_settings, control)


@lru_cache()
def get_runtime() -> Runtime:
    """Dependency for getting the shared runtime in routes."""
    return build_runtime(get_settings())


def http_error(exc: Exception) -> HTTPException:
    """
    Translate a domain error into an HTTPException.

    - CapacityExceededError, ScheduleStateError -> 409
    - NotFoundError -> 404
    - ConfigurationError, ValueError -> 422
    """
    if isinstance(exc, (CapacityExceededError, ScheduleStateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, CanopyError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Internal error: {str(exc)}",
    )
