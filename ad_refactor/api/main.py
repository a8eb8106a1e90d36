"""FastAPI application entry point for the ad script service.

This module wires the task store, lifecycle service, n8n client, dispatch
scheduler and callback authenticator into the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from ad_refactor import __version__
from ad_refactor.api.routes import ad_scripts, health
from ad_refactor.audit import AuditLogService
from ad_refactor.config import Settings, get_settings
from ad_refactor.database import create_db_and_tables, create_db_engine
from ad_refactor.jobs import JobDispatcher
from ad_refactor.logging_config import setup_logging
from ad_refactor.n8n_client import N8nClient
from ad_refactor.scheduler import DispatchScheduler
from ad_refactor.task_service import AdScriptTaskService
from ad_refactor.webhook_auth import CallbackAuthenticator

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    client: N8nClient | None = None,
    dispatcher: JobDispatcher | None = None,
    configure_logging: bool = False,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Service settings (default: loaded from environment)
        engine: Task store engine (default: built from settings.database_url)
        client: n8n client (default: built from settings, validated here)
        dispatcher: Job dispatcher (default: a DispatchScheduler started
            with the application)
        configure_logging: Install the JSON log formatter

    Returns:
        Configured FastAPI application

    Raises:
        N8nConfigurationError: If no client is given and the n8n settings
            are invalid
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(level=settings.log_level)

    engine = engine or create_db_engine(settings.database_url)
    audit = AuditLogService()
    service = AdScriptTaskService(
        engine,
        audit=audit,
        job_tries=settings.dispatch_max_tries,
        job_backoff=settings.dispatch_backoff,
    )

    scheduler: DispatchScheduler | None = None
    if dispatcher is None:
        client = client or N8nClient.from_settings(settings)
        scheduler = DispatchScheduler(service, client)
        dispatcher = scheduler
    service.dispatcher = dispatcher

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables and run the dispatch scheduler for the app's lifetime."""
        try:
            create_db_and_tables(engine)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        if scheduler is not None:
            await scheduler.start()

        yield

        if scheduler is not None:
            await scheduler.stop()
        engine.dispose()
        logger.info("Database connections closed")

    app = FastAPI(
        title="Ad Refactor API",
        description="Ad script refactoring tasks orchestrated through n8n",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.audit = audit
    app.state.service = service
    app.state.dispatcher = dispatcher
    app.state.authenticator = CallbackAuthenticator(settings.callback_hmac_secret)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(ad_scripts.router, prefix="/api")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(configure_logging=True),
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
