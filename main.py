import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from api import monitor as monitor_api
from jobs.scheduler import UptimeScheduler
from services.incident_tracker import IncidentTracker
from services.notifier import WebhookNotifier
from services.status_incidents import IncidentCatalog
from services.storage_uptime import UptimeStorage
from services.uptime_checker import UptimeChecker
from settings import Settings, load_settings

logger = structlog.get_logger(__name__)

_LEVELS = {"CRITICAL": 50, "ERROR": 40, "WARNING": 30, "INFO": 20, "DEBUG": 10}


def configure_logging(level: str = "INFO") -> None:
    """Configure structured logging for the whole process."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.upper(), 20)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = UptimeStorage(settings.db_path)
        checker = UptimeChecker(timeout=settings.timeout, insecure=settings.insecure)
        notifier = WebhookNotifier(settings.webhook_url) if settings.webhook_url else None
        scheduler = UptimeScheduler(
            storage,
            checker,
            tracker=IncidentTracker(storage),
            notifier=notifier,
            retention_days=settings.retention_days,
            shutdown_grace=settings.shutdown_grace,
        )
        catalog = IncidentCatalog.from_settings(
            settings.incidents_path,
            settings.incidents_repo_url,
            settings.incidents_sync_interval,
        )
        app.state.storage = storage
        app.state.scheduler = scheduler
        app.state.incidents = catalog
        try:
            await scheduler.start()
        except Exception:
            await checker.aclose()
            storage.close()
            raise

        catalog_stopped = asyncio.Event()
        catalog_task = None
        if catalog is not None:
            await catalog.start()
            catalog_task = asyncio.create_task(catalog.run(catalog_stopped), name="incident-sync")
        logger.info("Application started", db_path=settings.db_path, incidents_enabled=catalog is not None)
        try:
            yield
        finally:
            catalog_stopped.set()
            if catalog_task is not None:
                try:
                    await asyncio.wait_for(catalog_task, timeout=settings.shutdown_grace)
                except asyncio.TimeoutError:
                    logger.warning("Incident sync still running after shutdown grace, cancelled")
            await scheduler.stop()
            storage.close()
            logger.info("Application stopped")

    app = FastAPI(
        title="Webwatch API",
        description="Uptime and response time monitoring for HTTP endpoints.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.include_router(monitor_api.router, prefix="/api")

    @app.get("/health")
    def health_check():
        """
        Health check endpoint for deployment monitoring
        """
        return {"status": "healthy", "service": "webwatch-api"}

    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level)
    port = int(os.environ.get("PORT", settings.port))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port)
