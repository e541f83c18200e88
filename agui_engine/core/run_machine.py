"""
Run state machine.
Validates event ordering for one run and tracks its open contexts.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

import structlog

from agui_engine.models.events import (
    BaseEvent,
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StepFinishedEvent,
    StepStartedEvent,
    TextMessageContentEvent,
    TextMessageEndEvent,
    TextMessageStartEvent,
    ToolCallArgsEvent,
    ToolCallEndEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
)
from agui_engine.models.schemas import (
    RunAgentInput,
    RunErrorCode,
    RunStatus,
    STATE_TRANSITIONS,
    TERMINAL_STATUSES,
)

logger = structlog.get_logger()


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid run status transition"""

    pass


class ProtocolViolationError(Exception):
    """Raised when an event breaks the run's ordering rules"""

    def __init__(self, run_id: str, event_type: Optional[str], reason: str):
        self.run_id = run_id
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"Run {run_id}: {event_type or 'event'} rejected: {reason}")

    def to_dict(self) -> dict:
        return {"run_id": self.run_id, "event_type": self.event_type, "reason": self.reason}


class LateEventError(ProtocolViolationError):
    """Raised for any event submitted after the run reached a terminal status"""

    pass


class OpenContext:
    """
    Entities of the run that have started but not ended.

    Message and tool-call ids are single use: once closed they stay in the
    closed sets so a later event cannot reopen or reference them.
    """

    def __init__(self):
        self.messages: Set[str] = set()
        self.tool_calls: Set[str] = set()
        self.steps: Set[str] = set()
        self.closed_messages: Set[str] = set()
        self.closed_tool_calls: Set[str] = set()

    def is_empty(self) -> bool:
        return not (self.messages or self.tool_calls or self.steps)

    def describe(self) -> str:
        parts = []
        if self.messages:
            parts.append(f"messages {sorted(self.messages)}")
        if self.tool_calls:
            parts.append(f"tool calls {sorted(self.tool_calls)}")
        if self.steps:
            parts.append(f"steps {sorted(self.steps)}")
        return ", ".join(parts) or "nothing"

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "messages": sorted(self.messages),
            "tool_calls": sorted(self.tool_calls),
            "steps": sorted(self.steps),
        }


class RunStateMachine:
    """
    Owns one run for its duration.

    Status moves not_started -> active when the run request is received,
    then to finished or errored. Events are accepted strictly in submission
    order; every accepted event is appended to the run's event log.
    Rejections raise ProtocolViolationError and leave the run unchanged.

    Not thread-safe: callers serialize submissions for the same run.
    """

    def __init__(self, thread_id: str, run_id: str, parent_run_id: Optional[str] = None):
        self.thread_id = thread_id
        self.run_id = run_id
        self.parent_run_id = parent_run_id
        self.status = RunStatus.NOT_STARTED
        self.events: List[BaseEvent] = []
        self.context = OpenContext()
        self.started = False
        self.created_at = datetime.now().timestamp()
        self.finished_at: Optional[float] = None
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None

    @classmethod
    def from_request(cls, request: RunAgentInput) -> "RunStateMachine":
        """Create and open a run for a received run request"""
        machine = cls(request.thread_id, request.run_id, request.parent_run_id)
        machine.open()
        return machine

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: RunStatus) -> bool:
        """Check if transition is valid"""
        return new_status in STATE_TRANSITIONS.get(self.status, [])

    def _transition_to(self, new_status: RunStatus, reason: str = None):
        if not self.can_transition(new_status):
            raise InvalidStateTransitionError(
                f"Invalid transition from {self.status.value} to {new_status.value}"
            )

        old_status = self.status
        self.status = new_status
        if new_status in TERMINAL_STATUSES:
            self.finished_at = datetime.now().timestamp()

        logger.info(
            "run_status_changed",
            run_id=self.run_id,
            thread_id=self.thread_id,
            from_status=old_status.value,
            to_status=new_status.value,
            reason=reason or "State transition",
        )

    def open(self):
        """Run request received: not_started -> active"""
        self._transition_to(RunStatus.ACTIVE, "Run request received")

    # ------------------------------------------------------------------
    # Event validation
    # ------------------------------------------------------------------

    def _violation(self, event: BaseEvent, reason: str) -> ProtocolViolationError:
        logger.warning(
            "protocol_violation",
            run_id=self.run_id,
            event_type=event.type,
            reason=reason,
            open_context=self.context.to_dict(),
        )
        return ProtocolViolationError(self.run_id, event.type, reason)

    def accept(self, event: BaseEvent) -> BaseEvent:
        """
        Validate one event against the run's ordering rules and record it.

        Returns:
            The accepted event

        Raises:
            LateEventError: Run already finished or errored
            ProtocolViolationError: Event is out of order
        """
        if self.is_terminal:
            logger.warning(
                "late_event_rejected",
                run_id=self.run_id,
                event_type=event.type,
                status=self.status.value,
            )
            raise LateEventError(self.run_id, event.type, f"run is already {self.status.value}")

        # Abrupt termination is legal from any non-terminal state
        if isinstance(event, RunErrorEvent):
            self._record(event)
            self.error = event.message
            self.error_code = event.code
            self._transition_to(RunStatus.ERRORED, event.message)
            return event

        if self.status == RunStatus.NOT_STARTED:
            raise self._violation(event, "run request has not been received")

        if not self.started:
            if not isinstance(event, RunStartedEvent):
                raise self._violation(event, "first event of a run must be RUN_STARTED")
            if event.thread_id != self.thread_id or event.run_id != self.run_id:
                raise self._violation(
                    event,
                    f"RUN_STARTED ids ({event.thread_id}, {event.run_id}) do not match "
                    f"the run ({self.thread_id}, {self.run_id})",
                )
            self.started = True
            return self._record(event)

        self._check_ordering(event)
        self._record(event)

        if isinstance(event, RunFinishedEvent):
            self._transition_to(RunStatus.FINISHED, "RUN_FINISHED received")

        return event

    def _check_ordering(self, event: BaseEvent):
        """Validate and apply the event's effect on the open context"""
        ctx = self.context

        if isinstance(event, RunStartedEvent):
            raise self._violation(event, "run has already started")

        elif isinstance(event, RunFinishedEvent):
            if not ctx.is_empty():
                raise self._violation(event, f"run still has open {ctx.describe()}")
            if event.run_id != self.run_id or event.thread_id != self.thread_id:
                raise self._violation(event, "RUN_FINISHED ids do not match the run")

        elif isinstance(event, TextMessageStartEvent):
            if event.message_id in ctx.messages:
                raise self._violation(event, f"message '{event.message_id}' is already open")
            if event.message_id in ctx.closed_messages:
                raise self._violation(event, f"message '{event.message_id}' has already ended")
            ctx.messages.add(event.message_id)

        elif isinstance(event, (TextMessageContentEvent, TextMessageEndEvent)):
            if event.message_id not in ctx.messages:
                raise self._violation(event, f"message '{event.message_id}' is not open")
            if isinstance(event, TextMessageEndEvent):
                ctx.messages.discard(event.message_id)
                ctx.closed_messages.add(event.message_id)

        elif isinstance(event, ToolCallStartEvent):
            if event.tool_call_id in ctx.tool_calls:
                raise self._violation(event, f"tool call '{event.tool_call_id}' is already open")
            if event.tool_call_id in ctx.closed_tool_calls:
                raise self._violation(event, f"tool call '{event.tool_call_id}' has already ended")
            ctx.tool_calls.add(event.tool_call_id)

        elif isinstance(event, (ToolCallArgsEvent, ToolCallEndEvent)):
            if event.tool_call_id not in ctx.tool_calls:
                raise self._violation(event, f"tool call '{event.tool_call_id}' is not open")
            if isinstance(event, ToolCallEndEvent):
                ctx.tool_calls.discard(event.tool_call_id)
                ctx.closed_tool_calls.add(event.tool_call_id)

        elif isinstance(event, ToolCallResultEvent):
            if event.tool_call_id in ctx.tool_calls:
                raise self._violation(event, f"tool call '{event.tool_call_id}' has not ended")
            if event.message_id in ctx.messages:
                raise self._violation(event, f"message '{event.message_id}' is still open")
            if event.message_id in ctx.closed_messages:
                raise self._violation(event, f"message '{event.message_id}' has already ended")
            ctx.closed_messages.add(event.message_id)

        elif isinstance(event, StepStartedEvent):
            if event.step_name in ctx.steps:
                raise self._violation(event, f"step '{event.step_name}' is already open")
            ctx.steps.add(event.step_name)

        elif isinstance(event, StepFinishedEvent):
            if event.step_name not in ctx.steps:
                raise self._violation(event, f"step '{event.step_name}' is not open")
            ctx.steps.discard(event.step_name)

        # State and extension events carry no ordering constraints

    def _record(self, event: BaseEvent) -> BaseEvent:
        self.events.append(event)
        return event

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def fail(self, message: str, code: str = RunErrorCode.INTERNAL_ERROR.value) -> RunErrorEvent:
        """
        Synthesize a RUN_ERROR for this run and move it to errored.

        Raises:
            LateEventError: Run is already terminal
        """
        event = RunErrorEvent(
            message=message,
            code=code,
            timestamp=int(datetime.now().timestamp() * 1000),
        )
        self.accept(event)
        logger.info("run_error_synthesized", run_id=self.run_id, code=code, message=message)
        return event

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            "thread_id": self.thread_id,
            "run_id": self.run_id,
            "parent_run_id": self.parent_run_id,
            "status": self.status.value,
            "event_count": len(self.events),
            "open_context": self.context.to_dict(),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "error_code": self.error_code,
        }
