"""Health check and metrics endpoints."""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends

from agui_engine.api.v1.dependencies import get_optional_archive, get_supervisor
from agui_engine.core.run_archive import RunArchive
from agui_engine.core.supervisor import RunSupervisor
from agui_engine.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", timestamp=datetime.now().timestamp())


@router.get("/metrics")
async def metrics(
    supervisor: RunSupervisor = Depends(get_supervisor),
    archive: Optional[RunArchive] = Depends(get_optional_archive),
):
    """
    System metrics endpoint for observability.
    Returns active run stats and archived run counts by status.
    """
    runs = {"archive_enabled": archive is not None}
    if archive is not None:
        runs_by_status = await archive.count_by_status()
        runs["total"] = sum(runs_by_status.values())
        runs["by_status"] = runs_by_status

    return {
        "timestamp": datetime.now().timestamp(),
        "supervisor": supervisor.get_stats(),
        "runs": runs,
    }
