"""
Run streaming endpoint.

POST a run request; the response is the run's event stream, one
'data: <json>' block per event, ending with RUN_FINISHED or RUN_ERROR.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from agui_engine.api.v1.dependencies import get_orchestrator
from agui_engine.agent_layer import RunOrchestrator
from agui_engine.core.channel import EventChannel
from agui_engine.core.supervisor import DuplicateRunError, SupervisorClosedError
from agui_engine.core.transport import (
    EVENT_STREAM_MEDIA_TYPE,
    ChannelSink,
    RequestDecodeError,
    parse_run_request,
)

router = APIRouter(prefix="/api/agent", tags=["runs"])
logger = structlog.get_logger()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


@router.post("/runs")
async def create_run(
    request: Request,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """
    Start a run and stream its events.

    The body is a run request (camelCase: threadId, runId, messages, state,
    tools, context, forwardedProps). The run is driven in its own task; a
    bounded channel between that task and this response applies
    backpressure when the client reads slowly. A client that disconnects
    ends the run.

    Errors:
    - 422: Body is not a valid run request
    - 409: A run with the same runId is active
    - 503: Server is shutting down
    """
    body = await request.body()
    try:
        run_request = parse_run_request(body)
    except RequestDecodeError as e:
        logger.warning("run_request_rejected", error=str(e))
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})

    channel = EventChannel(
        max_queue_size=orchestrator.settings.transport_queue_size,
        name=run_request.run_id,
    )

    try:
        orchestrator.start(run_request, ChannelSink(channel))
    except SupervisorClosedError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except DuplicateRunError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info("run_stream_opened", run_id=run_request.run_id, thread_id=run_request.thread_id)

    async def event_stream():
        try:
            async for frame in channel:
                yield frame
        finally:
            # Client gone or stream complete; unblocks the producer either way
            channel.detach()

    return StreamingResponse(event_stream(), media_type=EVENT_STREAM_MEDIA_TYPE, headers=STREAM_HEADERS)
