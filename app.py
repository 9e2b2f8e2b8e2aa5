"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the pool services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.policy_controller import router as policy_router
from backend.controllers.pool_controller import router as pool_router
from backend.repository.data_repository import DataRepository
from backend.services.daily_processor import DailyPoolProcessor
from backend.services.policy_service import PolicyStore
from backend.services.pool_engine import PoolProcessingEngine
from backend.services.pool_service import BookingPool
from backend.services.recovery_service import PoolErrorRecoveryManager
from backend.utils.clock import Clock, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, clock: Clock = utc_now) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service is constructed here and handed its collaborators explicitly;
    controllers resolve them from app.state.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    # --- Repository ---
    repository = DataRepository(settings)

    # --- Services ---
    policy_store = PolicyStore(repository=repository, settings=settings)
    booking_pool = BookingPool(repository=repository, settings=settings, clock=clock)
    pool_engine = PoolProcessingEngine(
        repository=repository,
        settings=settings,
        pool=booking_pool,
        policy_store=policy_store,
        clock=clock,
    )
    recovery_manager = PoolErrorRecoveryManager(
        engine=pool_engine,
        settings=settings,
        clock=clock,
    )
    daily_processor = DailyPoolProcessor(
        engine=pool_engine,
        recovery_manager=recovery_manager,
        repository=repository,
        settings=settings,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield
        _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(policy_router)
    app.include_router(pool_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.policy_store = policy_store
    app.state.booking_pool = booking_pool
    app.state.pool_engine = pool_engine
    app.state.recovery_manager = recovery_manager
    app.state.daily_processor = daily_processor

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema first, then the policy row and meeting-type priorities, then the
    optional demo roster. The scheduled trigger starts last.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository
    policy_store: PolicyStore = app.state.policy_store

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup: seeding default policy and meeting-type priorities")
    repository.seed_default_configuration()
    policy = policy_store.load()
    logger.info(
        "Startup: active policy | mode=%s | auto_assign=%s",
        policy.mode.value,
        policy.auto_assign_enabled,
    )

    if settings.seed_demo_interpreters:
        logger.info("Startup: seeding demo interpreters (skipped if Interpreters table not empty)")
        repository.seed_demo_interpreters_if_empty()

    if settings.daily_processor_autostart:
        logger.info("Startup: starting daily pool processor")
        app.state.daily_processor.start()

    logger.info("Startup complete, system ready")


def _shutdown(app: FastAPI) -> None:
    daily_processor: DailyPoolProcessor = app.state.daily_processor
    if daily_processor.is_running:
        daily_processor.stop()
    logger.info("Shutdown complete")


# Module-level app object for uvicorn
app = create_app()
