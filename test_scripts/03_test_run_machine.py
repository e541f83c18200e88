#!/usr/bin/env python3
"""
Test: Run State Machine
Purpose: Verify event ordering rules and run status transitions

Tests:
- Minimal text flow finishes with an empty open context
- RUN_FINISHED with a dangling message is rejected and the run stays active
- RUN_STARTED is the only legal first event and must carry the run's ids
- Message, tool-call and step open/close pairing
- RUN_ERROR terminates from any non-terminal state
- Events after a terminal status are rejected as late
- Engine-synthesized RUN_ERROR
"""

import asyncio
import sys

from fixtures import (
    run_tests, make_request, make_text_run,
    assert_equal, assert_true, assert_false, assert_in, assert_raises,
)

from agui_engine.core.run_machine import (
    InvalidStateTransitionError,
    LateEventError,
    ProtocolViolationError,
    RunStateMachine,
)
from agui_engine.models.events import (
    CustomEvent,
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StateSnapshotEvent,
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
from agui_engine.models.schemas import RunErrorCode, RunStatus, STATE_TRANSITIONS


def started_machine(thread_id="t1", run_id="r1"):
    """Active machine that has accepted RUN_STARTED"""
    machine = RunStateMachine.from_request(make_request(thread_id, run_id))
    machine.accept(RunStartedEvent(thread_id=thread_id, run_id=run_id))
    return machine


# ============================================================================
# Test: Scenarios
# ============================================================================

async def test_minimal_flow_finishes():
    """Test RunStarted, one message and RunFinished reach FINISHED"""
    machine = RunStateMachine.from_request(make_request("t1", "r1"))
    assert_equal(machine.status, RunStatus.ACTIVE)

    for event in make_text_run("t1", "r1", "m1", "Hi"):
        machine.accept(event)

    assert_equal(machine.status, RunStatus.FINISHED)
    assert_true(machine.context.is_empty(), "Open context should be empty")
    assert_equal(len(machine.events), 5)
    assert_true(machine.finished_at is not None)


async def test_dangling_message_blocks_finish():
    """Test RunFinished with an open message is rejected"""
    machine = started_machine()
    machine.accept(TextMessageStartEvent(message_id="m1"))
    machine.accept(TextMessageContentEvent(message_id="m1", delta="Hi"))

    error = assert_raises(ProtocolViolationError, machine.accept, RunFinishedEvent(thread_id="t1", run_id="r1"))

    assert_equal(error.event_type, "RUN_FINISHED")
    assert_in("m1", error.reason)
    assert_equal(machine.status, RunStatus.ACTIVE, "Run must not finish")
    assert_equal(len(machine.events), 3, "Rejected event is not recorded")


# ============================================================================
# Test: First event
# ============================================================================

async def test_first_event_must_be_run_started():
    """Test any other first event is a violation"""
    for event in (
        TextMessageStartEvent(message_id="m1"),
        StepStartedEvent(step_name="s"),
        StateSnapshotEvent(snapshot={}),
        RunFinishedEvent(thread_id="t1", run_id="r1"),
    ):
        machine = RunStateMachine.from_request(make_request())
        assert_raises(ProtocolViolationError, machine.accept, event)
        assert_false(machine.started)
        assert_equal(machine.events, [])


async def test_run_started_ids_must_match():
    """Test RUN_STARTED for another run is rejected"""
    machine = RunStateMachine.from_request(make_request("t1", "r1"))
    assert_raises(ProtocolViolationError, machine.accept, RunStartedEvent(thread_id="t1", run_id="other"))
    assert_raises(ProtocolViolationError, machine.accept, RunStartedEvent(thread_id="t2", run_id="r1"))
    machine.accept(RunStartedEvent(thread_id="t1", run_id="r1"))
    assert_true(machine.started)


async def test_second_run_started_rejected():
    """Test RUN_STARTED is accepted only once"""
    machine = started_machine()
    assert_raises(ProtocolViolationError, machine.accept, RunStartedEvent(thread_id="t1", run_id="r1"))


async def test_events_before_request_rejected():
    """Test a machine that was never opened rejects events"""
    machine = RunStateMachine("t1", "r1")
    assert_equal(machine.status, RunStatus.NOT_STARTED)
    assert_raises(ProtocolViolationError, machine.accept, RunStartedEvent(thread_id="t1", run_id="r1"))


# ============================================================================
# Test: Pairing
# ============================================================================

async def test_message_pairing():
    """Test content/end require an open message and ids are single use"""
    machine = started_machine()

    assert_raises(ProtocolViolationError, machine.accept, TextMessageContentEvent(message_id="m1", delta="x"))
    assert_raises(ProtocolViolationError, machine.accept, TextMessageEndEvent(message_id="m1"))

    machine.accept(TextMessageStartEvent(message_id="m1"))
    assert_raises(ProtocolViolationError, machine.accept, TextMessageStartEvent(message_id="m1"))
    machine.accept(TextMessageContentEvent(message_id="m1", delta="a"))
    machine.accept(TextMessageEndEvent(message_id="m1"))

    # Closed ids cannot be referenced or reopened
    assert_raises(ProtocolViolationError, machine.accept, TextMessageContentEvent(message_id="m1", delta="b"))
    assert_raises(ProtocolViolationError, machine.accept, TextMessageEndEvent(message_id="m1"))
    assert_raises(ProtocolViolationError, machine.accept, TextMessageStartEvent(message_id="m1"))

    assert_true(machine.context.is_empty())


async def test_interleaved_messages():
    """Test several messages may be open at once"""
    machine = started_machine()
    machine.accept(TextMessageStartEvent(message_id="a"))
    machine.accept(TextMessageStartEvent(message_id="b"))
    machine.accept(TextMessageContentEvent(message_id="b", delta="1"))
    machine.accept(TextMessageContentEvent(message_id="a", delta="2"))
    machine.accept(TextMessageEndEvent(message_id="a"))
    assert_equal(machine.context.to_dict()["messages"], ["b"])
    machine.accept(TextMessageEndEvent(message_id="b"))
    machine.accept(RunFinishedEvent(thread_id="t1", run_id="r1"))
    assert_equal(machine.status, RunStatus.FINISHED)


async def test_tool_call_pairing():
    """Test tool call start/args/end/result ordering"""
    machine = started_machine()

    assert_raises(ProtocolViolationError, machine.accept, ToolCallArgsEvent(tool_call_id="c1", delta="{}"))

    machine.accept(ToolCallStartEvent(tool_call_id="c1", tool_call_name="search"))
    machine.accept(ToolCallArgsEvent(tool_call_id="c1", delta='{"q":'))
    assert_raises(
        ProtocolViolationError,
        machine.accept,
        ToolCallResultEvent(message_id="m9", tool_call_id="c1", content="early"),
    )
    machine.accept(ToolCallArgsEvent(tool_call_id="c1", delta='"x"}'))
    machine.accept(ToolCallEndEvent(tool_call_id="c1"))
    machine.accept(ToolCallResultEvent(message_id="m9", tool_call_id="c1", content="found"))

    assert_raises(ProtocolViolationError, machine.accept, ToolCallEndEvent(tool_call_id="c1"))
    assert_raises(ProtocolViolationError, machine.accept, ToolCallStartEvent(tool_call_id="c1", tool_call_name="x"))

    # Result message ids are single use, like text message ids
    assert_raises(
        ProtocolViolationError,
        machine.accept,
        ToolCallResultEvent(message_id="m9", tool_call_id="c1", content="again"),
    )
    assert_raises(ProtocolViolationError, machine.accept, TextMessageStartEvent(message_id="m9"))

    machine.accept(RunFinishedEvent(thread_id="t1", run_id="r1"))
    assert_equal(machine.status, RunStatus.FINISHED)


async def test_tool_result_cannot_reuse_message_id():
    """Test a tool result may not reference an open or ended text message"""
    machine = started_machine()
    machine.accept(ToolCallStartEvent(tool_call_id="c1", tool_call_name="search"))
    machine.accept(ToolCallEndEvent(tool_call_id="c1"))

    machine.accept(TextMessageStartEvent(message_id="m1"))
    error = assert_raises(
        ProtocolViolationError,
        machine.accept,
        ToolCallResultEvent(message_id="m1", tool_call_id="c1", content="x"),
    )
    assert_in("still open", error.reason)

    machine.accept(TextMessageEndEvent(message_id="m1"))
    error = assert_raises(
        ProtocolViolationError,
        machine.accept,
        ToolCallResultEvent(message_id="m1", tool_call_id="c1", content="x"),
    )
    assert_in("already ended", error.reason)

    machine.accept(ToolCallResultEvent(message_id="m2", tool_call_id="c1", content="x"))
    machine.accept(RunFinishedEvent(thread_id="t1", run_id="r1"))
    assert_equal(machine.status, RunStatus.FINISHED)


async def test_open_tool_call_blocks_finish():
    """Test RunFinished with an open tool call is rejected"""
    machine = started_machine()
    machine.accept(ToolCallStartEvent(tool_call_id="c1", tool_call_name="search"))
    error = assert_raises(ProtocolViolationError, machine.accept, RunFinishedEvent(thread_id="t1", run_id="r1"))
    assert_in("c1", error.reason)


async def test_step_pairing():
    """Test steps pair by name and names can be reused after finishing"""
    machine = started_machine()

    assert_raises(ProtocolViolationError, machine.accept, StepFinishedEvent(step_name="plan"))
    machine.accept(StepStartedEvent(step_name="plan"))
    assert_raises(ProtocolViolationError, machine.accept, StepStartedEvent(step_name="plan"))
    assert_raises(ProtocolViolationError, machine.accept, RunFinishedEvent(thread_id="t1", run_id="r1"))
    machine.accept(StepFinishedEvent(step_name="plan"))

    machine.accept(StepStartedEvent(step_name="plan"))
    machine.accept(StepFinishedEvent(step_name="plan"))
    machine.accept(RunFinishedEvent(thread_id="t1", run_id="r1"))
    assert_equal(machine.status, RunStatus.FINISHED)


async def test_unconstrained_events():
    """Test state and extension events are accepted anywhere after start"""
    machine = started_machine()
    machine.accept(StateSnapshotEvent(snapshot={"a": 1}))
    machine.accept(CustomEvent(name="progress", value=1))
    assert_equal(len(machine.events), 3)


# ============================================================================
# Test: Termination
# ============================================================================

async def test_run_error_from_any_state():
    """Test RUN_ERROR terminates regardless of open contexts"""
    machine = started_machine()
    machine.accept(TextMessageStartEvent(message_id="m1"))
    machine.accept(StepStartedEvent(step_name="s"))
    machine.accept(RunErrorEvent(message="upstream failed", code="TOOL_ERROR"))

    assert_equal(machine.status, RunStatus.ERRORED)
    assert_equal(machine.error, "upstream failed")
    assert_equal(machine.error_code, "TOOL_ERROR")

    # As the very first event
    machine = RunStateMachine.from_request(make_request())
    machine.accept(RunErrorEvent(message="denied", code="AUTH_ERROR"))
    assert_equal(machine.status, RunStatus.ERRORED)

    # Before the run request was received
    machine = RunStateMachine("t1", "r1")
    machine.accept(RunErrorEvent(message="bad request"))
    assert_equal(machine.status, RunStatus.ERRORED)


async def test_late_events_rejected():
    """Test any event after a terminal status raises LateEventError"""
    machine = RunStateMachine.from_request(make_request())
    for event in make_text_run():
        machine.accept(event)

    for event in (
        TextMessageStartEvent(message_id="m2"),
        RunFinishedEvent(thread_id="t1", run_id="r1"),
        RunErrorEvent(message="late"),
        CustomEvent(name="x"),
    ):
        error = assert_raises(LateEventError, machine.accept, event)
        assert_true(isinstance(error, ProtocolViolationError))

    assert_equal(machine.status, RunStatus.FINISHED)
    assert_equal(len(machine.events), 5)

    errored = started_machine()
    errored.accept(RunErrorEvent(message="x"))
    assert_raises(LateEventError, errored.accept, RunErrorEvent(message="again"))


async def test_fail_synthesizes_run_error():
    """Test fail() records a RUN_ERROR and moves to errored"""
    machine = started_machine()
    machine.accept(TextMessageStartEvent(message_id="m1"))

    event = machine.fail("Protocol violation", RunErrorCode.VALIDATION_ERROR.value)

    assert_true(isinstance(event, RunErrorEvent))
    assert_equal(event.code, "VALIDATION_ERROR")
    assert_equal(machine.events[-1], event)
    assert_equal(machine.status, RunStatus.ERRORED)
    assert_raises(LateEventError, machine.fail, "again")


async def test_status_transitions_configuration():
    """Test transition table and direct transition guard"""
    assert_equal(STATE_TRANSITIONS[RunStatus.FINISHED], [])
    assert_equal(STATE_TRANSITIONS[RunStatus.ERRORED], [])
    assert_in(RunStatus.ACTIVE, STATE_TRANSITIONS[RunStatus.NOT_STARTED])

    machine = started_machine()
    assert_raises(InvalidStateTransitionError, machine.open)


async def test_violation_details():
    """Test violations carry run id, event type and a reason"""
    machine = started_machine(run_id="r42")
    error = assert_raises(ProtocolViolationError, machine.accept, TextMessageEndEvent(message_id="zz"))
    assert_equal(error.to_dict(), {"run_id": "r42", "event_type": "TEXT_MESSAGE_END", "reason": error.reason})
    assert_in("zz", str(error))


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all run state machine tests"""
    return await run_tests("Run State Machine Tests", [
        ("Scenario: minimal flow finishes", test_minimal_flow_finishes),
        ("Scenario: dangling message blocks finish", test_dangling_message_blocks_finish),
        ("First event must be RUN_STARTED", test_first_event_must_be_run_started),
        ("RUN_STARTED ids must match", test_run_started_ids_must_match),
        ("Second RUN_STARTED rejected", test_second_run_started_rejected),
        ("Events before request rejected", test_events_before_request_rejected),
        ("Message pairing", test_message_pairing),
        ("Interleaved messages", test_interleaved_messages),
        ("Tool call pairing", test_tool_call_pairing),
        ("Tool result cannot reuse message id", test_tool_result_cannot_reuse_message_id),
        ("Open tool call blocks finish", test_open_tool_call_blocks_finish),
        ("Step pairing", test_step_pairing),
        ("Unconstrained events", test_unconstrained_events),
        ("RUN_ERROR from any state", test_run_error_from_any_state),
        ("Late events rejected", test_late_events_rejected),
        ("fail() synthesizes RUN_ERROR", test_fail_synthesizes_run_error),
        ("Status transition configuration", test_status_transitions_configuration),
        ("Violation details", test_violation_details),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
