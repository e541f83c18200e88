"""Shared dependencies for API routes."""

from typing import Optional
from fastapi import HTTPException, Request

from agui_engine.config import settings, Settings
from agui_engine.core.run_archive import RunArchive
from agui_engine.core.supervisor import RunSupervisor
from agui_engine.agent_layer import RunOrchestrator


def get_settings() -> Settings:
    """Get application settings."""
    return settings


def get_supervisor(request: Request) -> RunSupervisor:
    """Get run supervisor from app state."""
    return request.app.state.supervisor


def get_orchestrator(request: Request) -> RunOrchestrator:
    """Get run orchestrator from app state."""
    return request.app.state.orchestrator


def get_optional_archive(request: Request) -> Optional[RunArchive]:
    """Get run archive from app state; None when archiving is disabled."""
    return getattr(request.app.state, "archive", None)


def get_archive(request: Request) -> RunArchive:
    """Get run archive from app state, or 404 when archiving is disabled."""
    archive = get_optional_archive(request)
    if archive is None:
        raise HTTPException(status_code=404, detail="Run archive is disabled")
    return archive

