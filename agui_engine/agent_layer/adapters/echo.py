"""
Echo Adapter for the run engine.

Reference implementation of AgentProtocol: streams the last user message
back as an assistant message inside a "respond" step and keeps a small
shared state ({turns, last_message}) in sync with the client.
"""

import asyncio
import time
from typing import AsyncIterator, Optional

import structlog

from agui_engine.agent_layer.protocol import AgentProtocol, RunContext
from agui_engine.config.settings import settings
from agui_engine.models.events import (
    BaseEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StepFinishedEvent,
    StepStartedEvent,
    TextMessageContentEvent,
    TextMessageEndEvent,
    TextMessageStartEvent,
)
from agui_engine.models.schemas import RunAgentInput

logger = structlog.get_logger()

STEP_NAME = "respond"


def _now_ms() -> int:
    return int(time.time() * 1000)


class EchoAgent(AgentProtocol):
    """
    Echoes the user back, chunk by chunk.

    Polls the run's cancellation flag between chunks and stops early when
    it is set; the engine then closes the run with RUN_ERROR(CANCELLED).
    """

    def __init__(self, chunk_size: Optional[int] = None, chunk_delay: float = 0.0):
        """
        Args:
            chunk_size: Characters per TEXT_MESSAGE_CONTENT (defaults to settings.echo_chunk_size)
            chunk_delay: Seconds to wait between chunks
        """
        super().__init__(name="echo")
        self.chunk_size = max(1, chunk_size or settings.echo_chunk_size)
        self.chunk_delay = chunk_delay

    async def run(self, request: RunAgentInput, ctx: RunContext) -> AsyncIterator[BaseEvent]:
        yield RunStartedEvent(
            thread_id=request.thread_id,
            run_id=request.run_id,
            parent_run_id=request.parent_run_id,
            timestamp=_now_ms(),
        )

        state = dict(request.state) if isinstance(request.state, dict) else {}
        snapshot = ctx.sync_state(state)
        if snapshot is not None:
            yield snapshot

        yield StepStartedEvent(step_name=STEP_NAME, timestamp=_now_ms())

        user_message = request.last_user_message()
        text = user_message.content if user_message else ""
        chunks = 0

        if text:
            message_id = f"{request.run_id}-reply"
            yield TextMessageStartEvent(message_id=message_id, timestamp=_now_ms())

            for start in range(0, len(text), self.chunk_size):
                await asyncio.sleep(self.chunk_delay)
                if ctx.cancelled:
                    logger.info("echo_agent_cancelled", run_id=request.run_id, chunks_sent=chunks)
                    return
                yield TextMessageContentEvent(
                    message_id=message_id,
                    delta=text[start:start + self.chunk_size],
                )
                chunks += 1

            yield TextMessageEndEvent(message_id=message_id, timestamp=_now_ms())

        turns = state.get("turns", 0)
        state["turns"] = (turns if isinstance(turns, int) else 0) + 1
        state["last_message"] = text or None
        delta = ctx.sync_state(state)
        if delta is not None:
            yield delta

        yield StepFinishedEvent(step_name=STEP_NAME, timestamp=_now_ms())
        yield RunFinishedEvent(
            thread_id=request.thread_id,
            run_id=request.run_id,
            result={"chunks": chunks},
            timestamp=_now_ms(),
        )

        logger.debug("echo_agent_finished", run_id=request.run_id, chunks=chunks)
