"""
Space Booking API - Main Application
FastAPI application: reservation admission, pricing and installments

Run:
    uvicorn booking_api.main:create_app --factory --host 0.0.0.0 --port 3000
or:
    python -m booking_api.main
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import structlog

from .auth import AuthService
from .config import Settings, get_settings
from .database import PostgresRepository
from .error_handlers import register_exception_handlers
from .exchange_rate import ExchangeRateCache, build_exchange_rate_cache
from .logging_config import configure_logging
from .memory_store import MemoryRepository
from .middleware import RequestTracingMiddleware
from .models import HealthStatus
from .repository import BookingRepository
from .routers import (
    auth_router,
    installments_router,
    metrics_router,
    reservations_router,
    spaces_router,
    users_router,
)
from .services import InstallmentLedger, ReservationService
from .utils import utcnow

logger = structlog.get_logger(__name__)


def build_repository(settings: Settings) -> BookingRepository:
    """Storage backend selected by STORAGE_BACKEND"""
    if settings.storage_backend == "memory":
        return MemoryRepository(lock_timeout=settings.db_lock_timeout_ms / 1000)
    return PostgresRepository.from_settings(settings)

# ============================================================
# Application Lifecycle Management
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup/shutdown)
    Opens storage on startup and releases it on shutdown
    """
    settings: Settings = app.state.settings
    logger.info("app_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        storage_backend=app.state.repository.name,
        fx_provider=app.state.rate_cache.provider.name
    )

    await app.state.repository.initialize()
    logger.info("storage_ready", **app.state.repository.get_stats())

    yield

    await app.state.repository.close()
    logger.info("app_stopped")

# ============================================================
# FastAPI Application
# ============================================================

def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[BookingRepository] = None,
    rate_cache: Optional[ExchangeRateCache] = None
) -> FastAPI:
    """
    Build the application; storage and rate cache can be injected (tests)
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.json_logs, settings.environment)

    if repository is None:
        repository = build_repository(settings)
    if rate_cache is None:
        rate_cache = build_exchange_rate_cache(settings)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Space booking with weekend pricing, currency conversion and installments",
        lifespan=lifespan,
        debug=settings.debug
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.rate_cache = rate_cache
    app.state.auth_service = AuthService.from_settings(repository, settings)
    app.state.reservation_service = ReservationService.from_settings(repository, rate_cache, settings)
    app.state.installment_ledger = InstallmentLedger(repository)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Response-Time"],
    )
    app.add_middleware(RequestTracingMiddleware)

    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(spaces_router)
    app.include_router(reservations_router)
    app.include_router(installments_router)
    app.include_router(metrics_router)

    app.add_api_route("/health", health_check, methods=["GET"], response_model=HealthStatus, tags=["system"])

    return app

# ============================================================
# Health Checks
# ============================================================

async def health_check(request: Request) -> HealthStatus:
    """
    Health check endpoint
    Returns system status and component health
    """
    state = request.app.state
    checks = {}
    stats = {}
    overall_status = "healthy"

    if await state.repository.ping():
        checks["storage"] = "healthy"
    else:
        checks["storage"] = "unhealthy"
        overall_status = "unhealthy"
    stats["storage"] = state.repository.get_stats()

    snapshot = state.rate_cache.snapshot()
    if snapshot is None:
        checks["exchange_rate"] = "not loaded"
    else:
        checks["exchange_rate"] = "fallback" if snapshot.source == "fallback" else "healthy"
        if snapshot.source == "fallback" and overall_status == "healthy":
            overall_status = "degraded"
        stats["exchange_rate"] = {"rate": float(snapshot.rate), "source": snapshot.source}

    return HealthStatus(
        status=overall_status,
        version=state.settings.app_version,
        timestamp=utcnow(),
        checks=checks,
        stats=stats
    )


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "booking_api.main:create_app",
        factory=True,
        host=_settings.api_host,
        port=_settings.api_port,
        log_config=None,
    )
