"""
Agent Protocol Interface for the run engine.

This module defines the contract that ANY agent must implement to stream
a run through the engine. An agent is a producer: given a run request and
its RunContext, it yields protocol events. Validation, state bookkeeping,
framing and error synthesis are the engine's job, not the agent's.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, List, Optional

import structlog

from agui_engine.core.state_sync import StateSynchronizer
from agui_engine.models.events import BaseEvent
from agui_engine.models.schemas import RunAgentInput

logger = structlog.get_logger()


class RunContext:
    """
    Per-run handle passed to the agent and every pipeline stage.

    Holds the run's state synchronizer, a cancellation flag the agent should
    poll between events, and the violations the engine recorded.
    """

    def __init__(self, request: RunAgentInput, verify_deltas: bool = True):
        self.request = request
        self.thread_id = request.thread_id
        self.run_id = request.run_id
        self.state = StateSynchronizer(
            run_id=request.run_id,
            verify_deltas=verify_deltas,
            initial_state=request.state,
        )
        self.violations: List[str] = []
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Ask the producer to stop at its next checkpoint"""
        self._cancelled.set()

    def sync_state(self, new_state: Any) -> Optional[BaseEvent]:
        """
        Produce the state event for new_state, or None if nothing changed.

        Example:
            event = ctx.sync_state({"turns": 2})
            if event is not None:
                yield event
        """
        return self.state.sync(new_state)

    def report(self, reason: str):
        """Record a protocol violation against this run"""
        self.violations.append(reason)
        logger.warning("run_violation_recorded", run_id=self.run_id, reason=reason)


class AgentProtocol(ABC):
    """
    Abstract base class defining the contract for agent implementations.

    Any agent must implement this interface to be driven by the
    RunOrchestrator.
    """

    def __init__(self, name: str):
        """
        Initialize agent with a unique name.

        Args:
            name: Unique identifier for this agent (e.g., "echo")
        """
        self.name = name

    @abstractmethod
    def run(self, request: RunAgentInput, ctx: RunContext) -> AsyncIterator[BaseEvent]:
        """
        Stream the events of one run.

        Implemented as an async generator. The agent should:
        1. Yield RUN_STARTED carrying the request's thread and run ids
        2. Yield messages, tool calls, steps and state events in order
        3. End with RUN_FINISHED, or RUN_ERROR on failure

        Args:
            request: The run request
            ctx: Run context with the state synchronizer and cancellation flag

        Example:
            async for event in agent.run(request, ctx):
                machine.accept(event)
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        """String representation of agent"""
        return f"<{self.__class__.__name__}(name='{self.name}')>"
