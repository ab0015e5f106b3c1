"""Report Sync - optimistic report review API"""
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reportsync.core.config import get_settings
from reportsync.core.logging import configure_logging, logger
from reportsync.routers import reports, sync
from reportsync.services.coordinator import ReportsUpdateCoordinator, build_coordinator

CoordinatorFactory = Callable[[], ReportsUpdateCoordinator]


def create_app(coordinator_factory: Optional[CoordinatorFactory] = None) -> FastAPI:
    """Build the API; tests pass a factory wired to an in-memory store."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        settings = get_settings()
        configure_logging(settings.log_level)
        coordinator = coordinator_factory() if coordinator_factory else build_coordinator()
        app.state.coordinator = coordinator
        logger.info(
            "Report Sync API starting",
            version="0.1.0",
            reports_api=getattr(coordinator.store, "base_url", "custom"),
            polling=coordinator.poller.enabled,
            conflict_resolution=coordinator.conflict_resolution.value,
        )
        await coordinator.start()
        yield
        # Shutdown
        await coordinator.stop()
        coordinator.poller.close()
        logger.info("Report Sync API shutting down")

    app = FastAPI(
        title="Report Sync API",
        description="Near-real-time report polling with optimistic approve, decline, edit, and delete",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(reports.router)
    app.include_router(sync.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Report Sync API",
            "version": "0.1.0",
            "endpoints": {
                "reports": "/reports",
                "sync": "/sync",
            },
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        coordinator = getattr(app.state, "coordinator", None)
        return {
            "status": "healthy",
            "polling": bool(coordinator and coordinator.is_polling),
        }

    return app


app = create_app()
