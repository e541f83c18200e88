"""Application startup and shutdown lifecycle management."""

from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI

from agui_engine.config import settings
from agui_engine.models import Database
from agui_engine.core.run_archive import RunArchive
from agui_engine.core.supervisor import RunSupervisor
from agui_engine.agent_layer import EchoAgent, RunOrchestrator, build_default_pipeline

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan management for startup/shutdown.
    Owns the run archive, the supervisor of active runs and the orchestrator.
    """
    logger.info("application_starting", environment=settings.environment)

    settings.validate_critical_config()

    # Initialize run archive
    db = None
    archive = None
    if settings.archive_runs_enabled:
        db = Database()
        await db.init()
        archive = RunArchive(db)
        logger.info("run_archive_ready")

    supervisor = RunSupervisor(drain_timeout=settings.shutdown_drain_timeout_seconds)

    orchestrator = RunOrchestrator(
        agent=EchoAgent(),
        stages=build_default_pipeline(settings),
        supervisor=supervisor,
        archive=archive,
        settings=settings,
    )

    # Store in app state for access in routes
    app.state.db = db
    app.state.archive = archive
    app.state.supervisor = supervisor
    app.state.orchestrator = orchestrator

    logger.info("application_ready")

    yield

    # Shutdown
    logger.info("application_shutting_down", active_runs=supervisor.active_count)

    cancelled = await supervisor.shutdown()
    if db is not None:
        await db.close()

    logger.info("application_stopped", cancelled_runs=cancelled)
