"""Run archive inspection, replay and cancellation endpoints."""

from typing import Optional
import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from agui_engine.api.v1.dependencies import get_archive, get_orchestrator
from agui_engine.api.v1.routes.runs import STREAM_HEADERS
from agui_engine.agent_layer import RunOrchestrator
from agui_engine.core.run_archive import RunArchive
from agui_engine.core.transport import EVENT_STREAM_MEDIA_TYPE, encode_frame
from agui_engine.models.schemas import (
    RunEventResponse,
    RunEventsResponse,
    RunListResponse,
    RunStatus,
    RunSummaryResponse,
)

router = APIRouter(prefix="/api/runs", tags=["admin"])
logger = structlog.get_logger()


@router.get("", response_model=RunListResponse)
async def list_runs(
    limit: int = 100,
    status: Optional[RunStatus] = None,
    thread_id: Optional[str] = None,
    archive: RunArchive = Depends(get_archive),
):
    """
    List archived runs, newest first.
    Filter by final status or thread.
    """
    records = await archive.list_runs(limit=limit, status=status, thread_id=thread_id)
    return RunListResponse(
        total=len(records),
        runs=[RunSummaryResponse.model_validate(record.to_dict()) for record in records],
    )


@router.get("/{run_id}", response_model=RunSummaryResponse)
async def get_run(run_id: str, archive: RunArchive = Depends(get_archive)):
    """Get an archived run"""
    record = await archive.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunSummaryResponse.model_validate(record.to_dict())


@router.get("/{run_id}/events")
async def get_run_events(
    run_id: str,
    stream: bool = False,
    archive: RunArchive = Depends(get_archive),
):
    """
    Get the event log of an archived run.

    With stream=true the log is replayed as an event stream, framed exactly
    as it was sent live.
    """
    record = await archive.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")

    events = await archive.get_event_records(run_id)

    if stream:
        logger.info("run_replay_started", run_id=run_id, events=len(events))

        async def replay():
            for event in events:
                yield encode_frame(event.event_data_dict)

        return StreamingResponse(replay(), media_type=EVENT_STREAM_MEDIA_TYPE, headers=STREAM_HEADERS)

    return RunEventsResponse(
        run_id=run_id,
        events=[RunEventResponse.model_validate(event.to_dict()) for event in events],
    )


@router.post("/{run_id}/cancel")
async def cancel_run(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    """
    Cancel an active run.
    The run ends with RUN_ERROR (code CANCELLED) on its stream.
    """
    if not orchestrator.cancel(run_id):
        raise HTTPException(status_code=404, detail="Run is not active")

    logger.info("run_cancelled_via_api", run_id=run_id)
    return {"success": True, "run_id": run_id}
