"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository and the schedule workflow service, registers
routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ward_allocation.controllers.schedule_controller import router as schedule_router
from ward_allocation.repository.data_repository import DataRepository
from ward_allocation.services.cache_service import ScheduleCache
from ward_allocation.services.workflow_service import ScheduleWorkflowService
from ward_allocation.utils.config import get_settings
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)


def create_app() -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    The schedule cache is created here and handed to the workflow service, so
    no module holds cache state of its own.
    """
    settings = get_settings()

    # --- Repository (single SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services (business logic, no direct DB access) ---
    cache = ScheduleCache(
        ttl_seconds=settings.schedule_cache_ttl_seconds,
        max_entries=settings.schedule_cache_max_entries,
    )
    workflow_service = ScheduleWorkflowService(
        repository=repository,
        settings=settings,
        cache=cache,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(schedule_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.schedule_cache = cache
    app.state.workflow_service = workflow_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. The demo roster is only written when no roster exists yet.
    """
    repository: DataRepository = app.state.repository
    settings = get_settings()

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_roster:
        logger.info("Startup: seeding demo roster (skipped if a roster exists)")
        repository.seed_demo_roster()

    logger.info("Startup complete, system ready")


# Module-level app object for uvicorn
app = create_app()
