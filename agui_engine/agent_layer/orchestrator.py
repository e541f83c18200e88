"""
Run Orchestrator.

Drives one run end to end: registers it with the supervisor, pulls events
from the agent through the middleware pipeline, validates each one against
the run's state machine, frames it onto the sink, and guarantees that every
run ends with exactly one terminal event, synthesizing a RUN_ERROR when the
agent cannot provide one.
"""

import asyncio
from contextlib import aclosing
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from agui_engine.agent_layer.pipeline import Stage, compose
from agui_engine.agent_layer.protocol import AgentProtocol, RunContext
from agui_engine.config.security import SecurityViolationError
from agui_engine.config.settings import Settings, settings as default_settings
from agui_engine.core.json_patch import PatchError
from agui_engine.core.run_archive import RunArchive
from agui_engine.core.run_machine import ProtocolViolationError, RunStateMachine
from agui_engine.core.supervisor import RunSupervisor
from agui_engine.core.transport import EventSink, TransportError, frame_event
from agui_engine.models.events import BaseEvent
from agui_engine.models.schemas import EventFamily, RunAgentInput, RunErrorCode, RunOutcome

logger = structlog.get_logger()

# Bound on the final RUN_ERROR send of a cancelled run
CANCEL_SEND_TIMEOUT_SECONDS = 1.0


class RunOrchestrator:
    """
    Orchestrates runs of one agent.

    One orchestrator serves many concurrent runs; all per-run state lives in
    the RunStateMachine and RunContext created for each run.
    """

    def __init__(
        self,
        agent: AgentProtocol,
        stages: Optional[List[Stage]] = None,
        supervisor: Optional[RunSupervisor] = None,
        archive: Optional[RunArchive] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            agent: Event producer for every run
            stages: Middleware stages, outermost first
            supervisor: Registry of active runs
            archive: Where terminal runs are persisted; None disables archiving
            settings: Settings override, mainly for tests
        """
        self.agent = agent
        self.stages = list(stages or [])
        self.settings = settings or default_settings
        self.supervisor = supervisor or RunSupervisor(self.settings.shutdown_drain_timeout_seconds)
        self.archive = archive
        self._handler = compose(agent.run, *self.stages)
        self._contexts: Dict[str, RunContext] = {}

        logger.info("run_orchestrator_initialized", agent_name=agent.name, stages=len(self.stages))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, request: RunAgentInput, sink: EventSink) -> RunOutcome:
        """
        Drive one run in the current task.

        Raises:
            SupervisorClosedError: Server is shutting down
            DuplicateRunError: A run with this id is already active
        """
        self.supervisor.register(request.run_id, request.thread_id, asyncio.current_task())
        return await self._run_registered(request, sink)

    def start(self, request: RunAgentInput, sink: EventSink) -> asyncio.Task:
        """
        Register the run, then drive it in a new task.

        Registration happens before this returns, so a shutdown or duplicate
        rejection surfaces to the caller instead of inside the task.
        """
        run_id = request.run_id
        self.supervisor.register(run_id, request.thread_id)
        task = asyncio.create_task(self._run_registered(request, sink), name=f"run-{run_id}")
        self.supervisor.attach_task(run_id, task)
        # Covers a task cancelled before its first step
        task.add_done_callback(lambda _: self.supervisor.deregister(run_id))
        return task

    def cancel(self, run_id: str) -> bool:
        """Ask an active run to stop; it ends with RUN_ERROR(CANCELLED)"""
        ctx = self._contexts.get(run_id)
        if ctx is None:
            return False
        ctx.cancel()
        logger.info("run_cancel_requested", run_id=run_id)
        return True

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _run_registered(self, request: RunAgentInput, sink: EventSink) -> RunOutcome:
        machine = RunStateMachine.from_request(request)
        ctx = RunContext(request, verify_deltas=self.settings.state_sync_verify_deltas)
        self._contexts[request.run_id] = ctx
        transport_error: Optional[str] = None

        logger.info(
            "run_opened",
            run_id=request.run_id,
            thread_id=request.thread_id,
            agent_name=self.agent.name,
        )

        try:
            try:
                transport_error = await self._drive(request, ctx, machine, sink)
            except asyncio.CancelledError:
                ctx.cancel()
                if not machine.is_terminal:
                    event = machine.fail("Run cancelled", RunErrorCode.CANCELLED.value)
                    try:
                        await asyncio.wait_for(sink.send(frame_event(event)), CANCEL_SEND_TIMEOUT_SECONDS)
                    except (TransportError, asyncio.TimeoutError):
                        logger.warning("run_cancel_not_delivered", run_id=request.run_id)
                await self._finish(machine, ctx, sink, transport_error)
                raise
            except Exception as e:
                logger.error("run_failed_unexpectedly", run_id=request.run_id, error=str(e), exc_info=True)
                transport_error = await self._fail_unexpectedly(machine, sink, e)

            return await self._finish(machine, ctx, sink, transport_error)
        finally:
            self._contexts.pop(request.run_id, None)
            self.supervisor.deregister(request.run_id)

    async def _drive(
        self,
        request: RunAgentInput,
        ctx: RunContext,
        machine: RunStateMachine,
        sink: EventSink,
    ) -> Optional[str]:
        """Pump producer events into the sink; returns the transport error, if any"""
        async with aclosing(self._handler(request, ctx)) as events:
            while not machine.is_terminal:
                if ctx.cancelled:
                    return await self._emit_failure(
                        machine, sink, "Run cancelled", RunErrorCode.CANCELLED
                    )

                try:
                    event = await events.__anext__()
                except StopAsyncIteration:
                    if ctx.cancelled:
                        return await self._emit_failure(
                            machine, sink, "Run cancelled", RunErrorCode.CANCELLED
                        )
                    logger.error("agent_stream_ended_early", run_id=ctx.run_id, status=machine.status.value)
                    return await self._emit_failure(
                        machine,
                        sink,
                        "Agent ended the run without RUN_FINISHED or RUN_ERROR",
                        RunErrorCode.INTERNAL_ERROR,
                    )
                except Exception as e:
                    logger.error("agent_failed", run_id=ctx.run_id, error=str(e), exc_info=True)
                    return await self._emit_failure(
                        machine, sink, f"Agent failed: {e}", RunErrorCode.INTERNAL_ERROR
                    )

                try:
                    self._accept(event, ctx, machine)
                except (ProtocolViolationError, PatchError, SecurityViolationError) as e:
                    ctx.report(str(e))
                    # Stop the producer before the terminal event goes out
                    await events.aclose()
                    return await self._emit_failure(
                        machine, sink, f"Protocol violation: {e}", RunErrorCode.VALIDATION_ERROR
                    )
                except Exception as e:
                    logger.error("run_event_handling_failed", run_id=ctx.run_id, error=str(e), exc_info=True)
                    await events.aclose()
                    return await self._emit_failure(
                        machine, sink, f"Event handling failed: {e}", RunErrorCode.INTERNAL_ERROR
                    )

                try:
                    await sink.send(frame_event(event))
                except TransportError as e:
                    return self._abandon(machine, e)

        return None

    @staticmethod
    def _accept(event: BaseEvent, ctx: RunContext, machine: RunStateMachine):
        if not isinstance(event, BaseEvent):
            raise ProtocolViolationError(
                machine.run_id, None, f"producer yielded a {type(event).__name__}, not an event"
            )
        # State bookkeeping first so a delta that does not apply is never recorded
        if event.family == EventFamily.STATE:
            ctx.state.observe(event)
        machine.accept(event)

    async def _emit_failure(
        self,
        machine: RunStateMachine,
        sink: EventSink,
        message: str,
        code: RunErrorCode,
    ) -> Optional[str]:
        event = machine.fail(message, code.value)
        try:
            await sink.send(frame_event(event))
        except TransportError as e:
            logger.warning("run_error_not_delivered", run_id=machine.run_id, error=str(e))
            return str(e)
        return None

    @staticmethod
    def _abandon(machine: RunStateMachine, error: TransportError) -> str:
        """Consumer is gone: end the run locally without sending anything more"""
        logger.warning("run_transport_failed", run_id=machine.run_id, error=str(error))
        if not machine.is_terminal:
            machine.fail(f"Transport failed: {error}", RunErrorCode.INTERNAL_ERROR.value)
        return str(error)

    @staticmethod
    async def _fail_unexpectedly(machine: RunStateMachine, sink: EventSink, error: Exception) -> Optional[str]:
        """Last resort for errors outside the run loop's own handling; the sink may be broken too"""
        if machine.is_terminal:
            return str(error)

        event = machine.fail(f"Internal error: {error}", RunErrorCode.INTERNAL_ERROR.value)
        try:
            await sink.send(frame_event(event))
        except Exception as send_error:
            logger.warning("run_error_not_delivered", run_id=machine.run_id, error=str(send_error))
            return str(send_error)
        return None

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _finish(
        self,
        machine: RunStateMachine,
        ctx: RunContext,
        sink: EventSink,
        transport_error: Optional[str],
    ) -> RunOutcome:
        outcome = RunOutcome(
            thread_id=machine.thread_id,
            run_id=machine.run_id,
            status=machine.status,
            event_count=len(machine.events),
            violations=list(ctx.violations),
            error=transport_error or machine.error,
            error_code=machine.error_code,
        )

        try:
            await sink.close()
        except Exception as e:
            logger.warning("sink_close_failed", run_id=machine.run_id, error=str(e))

        if self.archive is not None and machine.is_terminal:
            try:
                await self.archive.archive(machine, outcome)
            except SQLAlchemyError as e:
                logger.error("run_archive_failed", run_id=machine.run_id, error=str(e), exc_info=True)

        logger.info(
            "run_closed",
            run_id=machine.run_id,
            thread_id=machine.thread_id,
            status=outcome.status.value,
            event_count=outcome.event_count,
            violations=len(outcome.violations),
            error_code=outcome.error_code,
        )
        return outcome
