"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediagen.api.routes import generations
from mediagen.core.config import Settings, configure_logging
from mediagen.core.database import create_schema, setup_db_session
from mediagen.services.generation.ledger import JobLedger
from mediagen.services.generation.orchestrator import GenerationOrchestrator
from mediagen.uow import create_uow_factory

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, set up the optional Job Ledger database, build the
      orchestrator
    - Shutdown: Cancel all polling tasks and close HTTP clients
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    ledger = JobLedger()
    if settings.database_url:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        await create_schema(session_factory)
        ledger = JobLedger(create_uow_factory(session_factory))

        # Polling does not resume across restarts
        await ledger.recover_interrupted_jobs()
        await ledger.load_recent()

    media_url = settings.public_base_url.rstrip("/") + generations.router.prefix
    media_url += generations.MEDIA_PATH
    orchestrator = GenerationOrchestrator.from_settings(
        settings, ledger=ledger, media_url=media_url
    )

    app.state.orchestrator = orchestrator

    logger.info(
        "application.startup",
        generation_api_url=settings.generation_api_url,
        persistent=ledger.persistent,
        resolver_strategies=settings.resolver_strategy_names,
    )

    yield

    logger.info("application.shutdown", active_polls=orchestrator.scheduler.active_count)
    await orchestrator.aclose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Media Generation API",
        description="Asynchronous image and video generation jobs",
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

    app.include_router(generations.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint with polling and persistence status."""
        orchestrator: GenerationOrchestrator = app.state.orchestrator
        return {
            "status": "healthy",
            "active_polls": orchestrator.scheduler.active_count,
            "persistent": orchestrator.ledger.persistent,
        }

    return app


# Create app instance for uvicorn
app = create_app()
