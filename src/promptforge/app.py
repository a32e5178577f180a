"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from promptforge.api.errors import register_exception_handlers
from promptforge.api.routes import batch, credits, models

# Import timezone enforcement (sets TZ=UTC)
from promptforge.core import timezone  # noqa: F401
from promptforge.core.config import Settings, configure_logging
from promptforge.core.database import setup_db_session
from promptforge.services.batch.orchestrator import BatchJobOrchestrator
from promptforge.services.dispatch.adapter import DispatchAdapter, build_default_adapter
from promptforge.services.events import EventPublisher
from promptforge.services.exceptions import InfrastructureError
from promptforge.services.ledger import CreditLedger
from promptforge.uow import create_uow_factory

logger = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    adapter: DispatchAdapter | None = None,
    events: EventPublisher | None = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use instead of loading them from the environment
        adapter: Dispatch adapter to use instead of the default provider routes
        events: Event publisher to use instead of the logging-only default

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan context manager.

        - Startup: configure logging, build services, resume interrupted jobs,
          start the periodic recovery sweep
        - Shutdown: stop the sweep and worker pools, flush pending events, dispose the engine
        """
        configure_logging(settings)

        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        uow_factory = create_uow_factory(session_factory)

        ledger = CreditLedger(uow_factory)
        dispatch_adapter = adapter or build_default_adapter(settings)
        publisher = events or EventPublisher()
        orchestrator = BatchJobOrchestrator(
            uow_factory, ledger, dispatch_adapter, publisher, settings
        )

        # Store in app.state for access in routes
        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.ledger = ledger
        app.state.adapter = dispatch_adapter
        app.state.orchestrator = orchestrator

        # Resolve items left in flight by the previous process before serving requests
        try:
            result = await orchestrator.recover_interrupted_jobs()
            if result.jobs_found:
                logger.info(
                    "startup.recovery_completed",
                    jobs_resumed=result.jobs_resumed,
                    jobs_finalized=result.jobs_finalized,
                    items_requeued=result.items_requeued,
                    items_leased=result.items_leased,
                )
        except InfrastructureError as e:
            # Don't prevent startup; the CLI can run recovery once storage is back
            logger.error("startup.recovery_failed", error=e.message)

        # Picks up items whose holder died after startup once their lease runs out
        sweep_task = None
        if settings.batch_recovery_interval_seconds > 0:
            sweep_task = asyncio.create_task(
                orchestrator.run_recovery_loop(settings.batch_recovery_interval_seconds),
                name="batch-recovery-sweep",
            )

        logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

        yield

        logger.info("application.shutdown")
        if sweep_task is not None:
            sweep_task.cancel()
            await asyncio.gather(sweep_task, return_exceptions=True)
        await orchestrator.shutdown()
        await publisher.drain()
        await session_factory.kw["bind"].dispose()

    app = FastAPI(
        title="PromptForge Batch API",
        description="Credit-metered batch generation engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(batch.router)
    app.include_router(credits.router)
    app.include_router(models.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app
