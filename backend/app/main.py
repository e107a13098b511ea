"""
Canopy Energy - Backend API

FastAPI application that provides:
- Load-shedding schedule management
- Demand-response event ingestion
- Savings verification reports
- Optimization recommendations

This API connects to Supabase (PostgreSQL) for data storage, or to an
in-memory store when Supabase is not configured.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.middleware.audit import AuditLoggingMiddleware
from app.routers import demand_response, load_shedding, savings
from app.services.runtime import get_runtime
from app.services.supabase import get_settings

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# ============================================
# APPLICATION LIFESPAN
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application startup and shutdown events.

    Startup:
    - Build the runtime (store, scheduler, DR handler, verification)
    - Start the facility control loops if RUN_CONTROL_LOOP is set

    Shutdown:
    - Stop the control loops gracefully
    """
    settings = get_settings()
    logger.info("=" * 50)
    logger.info("Starting Canopy Energy API...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Allowed Origins: {settings.origins}")
    logger.info("=" * 50)

    runtime = app.dependency_overrides.get(get_runtime, get_runtime)()
    await runtime.start()

    yield

    logger.info("Shutting down API...")
    await runtime.stop()


# ============================================
# CREATE APPLICATION
# ============================================

app = FastAPI(
    title="Canopy Energy API",
    description="""
    API for facility demand-response control and savings verification.

    ## Features
    - **Load Shedding**: Schedule time-bounded load reductions per zone
    - **Demand Response**: Ingest utility/aggregator curtailment events
    - **Savings**: Billing-grade savings reports against a comparable-day baseline
    - **Recommendations**: Load shifting and demand reduction opportunities

    ## Schedule lifecycle
    PENDING → ACTIVE → COMPLETED, or CANCELLED (user, safety, superseded).
    Transitions are applied by the facility control loop.
    """,
    version=API_VERSION,
    lifespan=lifespan,
)


# ============================================
# MIDDLEWARE
# ============================================

# Allow frontend to connect from configured origins
# Set ALLOWED_ORIGINS env var for production domains
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(AuditLoggingMiddleware)


# ============================================
# INCLUDE ROUTERS
# ============================================

app.include_router(
    load_shedding.router,
    prefix="/load-shedding",
    tags=["Load Shedding"]
)

app.include_router(
    demand_response.router,
    prefix="/demand-response",
    tags=["Demand Response"]
)

app.include_router(
    savings.router,
    prefix="/savings",
    tags=["Savings"]
)


# ============================================
# ROOT ENDPOINT
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """
    Basic API information.
    """
    return {
        "name": "Canopy Energy API",
        "version": API_VERSION,
        "status": "running",
        "docs": "/docs",
        "redoc": "/redoc"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Detailed health check.

    Includes control loop status when the loops run in this process.
    """
    runtime = app.dependency_overrides.get(get_runtime, get_runtime)()
    result = {
        "status": "healthy",
        "store": type(runtime.store).__name__,
        "version": API_VERSION,
    }
    if runtime.control is not None:
        result["control"] = runtime.control.health()
    return result
