"""
Main FastAPI application for the statsync ingestion pipeline.

The HTTP surface is administrative: start sync jobs and stream their
progress, inspect or reset cursors, and manage webhook subscriptions and
alerts. Long-lived collaborators (provider client, sync engine, job
registry, change notifier, scheduler) are built in the lifespan and kept on
``app.state``.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from statsync.api.routes import notifications, sync
from statsync.core import database
from statsync.core.config import settings
from statsync.core.logging import configure_logging, get_logger
from statsync.core.middleware import CorrelationIdMiddleware
from statsync.core.scheduler import get_scheduler, start_scheduler, stop_scheduler
from statsync.services.core.provider_client import ProviderClient
from statsync.services.jobs.job_manager import JobRegistry
from statsync.services.notifications.change_source import select_change_source
from statsync.services.notifications.notifier import Notifier
from statsync.services.sync.engine import KeyedLocks, SyncEngine
from statsync.services.sync.orchestrator import SyncOrchestrator

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)


def build_provider_client() -> ProviderClient:
    return ProviderClient(
        api_key=settings.PROVIDER_API_KEY,
        base_url=settings.PROVIDER_BASE_URL,
        per_page=settings.SYNC_PER_PAGE,
        timeout=settings.PROVIDER_TIMEOUT,
        max_retries=settings.PROVIDER_MAX_RETRIES,
    )


def create_app(
    session_factory: Optional[sessionmaker] = None,
    bind: Optional[Engine] = None,
    provider_client: Optional[ProviderClient] = None,
    enable_notifier: Optional[bool] = None,
    enable_scheduler: Optional[bool] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        session_factory: Session factory (defaults to database.SessionLocal)
        bind: Engine for schema creation and change-source probing
        provider_client: Provider client (built from settings if None)
        enable_notifier: Override NOTIFIER_ENABLED
        enable_scheduler: Override SCHEDULER_ENABLED
    """
    notifier_enabled = settings.NOTIFIER_ENABLED if enable_notifier is None else enable_notifier
    scheduler_enabled = settings.SCHEDULER_ENABLED if enable_scheduler is None else enable_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

        factory = session_factory or database.SessionLocal
        engine = bind or database.engine
        database.init_db(engine)

        client = provider_client or build_provider_client()
        sync_engine = SyncEngine(
            factory,
            client,
            batch_size=settings.SYNC_BULK_BATCH_SIZE,
            page_delay=settings.page_delay_seconds,
            max_pages=settings.SYNC_MAX_PAGES,
            locks=KeyedLocks(),
        )
        app.state.session_factory = factory
        app.state.db_engine = engine
        app.state.provider_client = client
        app.state.sync_engine = sync_engine
        app.state.sync_concurrency = settings.SYNC_CONCURRENCY
        app.state.jobs = JobRegistry(retention_seconds=settings.JOB_RETENTION_SECONDS)
        app.state.notifier = None

        if notifier_enabled:
            source = select_change_source(engine, factory, poll_interval=settings.NOTIFY_POLL_INTERVAL)
            notifier = Notifier(factory, source, timeout=settings.WEBHOOK_TIMEOUT)
            await notifier.start()
            app.state.notifier = notifier

        if scheduler_enabled:
            await start_scheduler(SyncOrchestrator(sync_engine, factory, settings.SYNC_CONCURRENCY))
            logger.info("Automation scheduler started")

        logger.info("Application started")

        yield

        if scheduler_enabled:
            await stop_scheduler()
        if app.state.notifier is not None:
            await app.state.notifier.stop()
        await app.state.jobs.shutdown()
        await client.close()
        logger.info("Shutting down application")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Resumable sports-stats ingestion, metric merging and change notifications",
        lifespan=lifespan,
    )

    # Add correlation ID middleware (must be added before CORS for proper header handling)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync.router, prefix="/api")
    app.include_router(notifications.router, prefix="/api")

    @app.get("/health")
    async def health_check():
        """Health check with component-level status."""
        health_status = {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "components": {},
        }

        try:
            with app.state.session_factory() as session:
                session.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "connected"}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
            health_status["status"] = "degraded"

        notifier = app.state.notifier
        health_status["components"]["notifier"] = {
            "running": bool(notifier and notifier.running),
            "mode": notifier.mode if notifier else None,
        }
        scheduler = get_scheduler()
        health_status["components"]["scheduler"] = {"running": bool(scheduler and scheduler.running)}
        health_status["components"]["jobs"] = {"tracked": len(app.state.jobs.list())}
        return health_status

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("statsync.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
