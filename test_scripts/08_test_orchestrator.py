#!/usr/bin/env python3
"""
Test: Run Orchestrator
Purpose: Verify every run ends with exactly one terminal event

Tests:
- Echo agent streams a complete, valid run and keeps state in sync
- Protocol violations stop the producer and end the run with VALIDATION_ERROR
- Agent exceptions and early stream ends become INTERNAL_ERROR
- Producer RUN_ERROR passes through without a second terminal event
- Transport failures end the run locally
- Cancellation ends the run with CANCELLED
- Supervisor rejections surface before the run starts
"""

import asyncio
import sys

from fixtures import (
    run_tests, print_info, make_request, make_text_run, CollectingSink, ScriptedAgent,
    assert_equal, assert_true, assert_false, assert_in, assert_raises, assert_raises_async,
)

from agui_engine.agent_layer.adapters.echo import EchoAgent
from agui_engine.agent_layer.orchestrator import RunOrchestrator
from agui_engine.config.settings import Settings
from agui_engine.core.state_sync import StateReplica
from agui_engine.core.supervisor import DuplicateRunError, RunSupervisor, SupervisorClosedError
from agui_engine.models.events import (
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StateDeltaEvent,
    StateSnapshotEvent,
    TextMessageContentEvent,
    TextMessageStartEvent,
)
from agui_engine.models.schemas import PatchOperation, RunStatus


def make_orchestrator(agent, stages=None, supervisor=None):
    return RunOrchestrator(
        agent,
        stages=stages,
        supervisor=supervisor or RunSupervisor(drain_timeout=1.0),
        settings=Settings(auth_secret_key=None),
    )


def assert_single_terminal(sink):
    """Exactly one terminal event, and it is the last one"""
    types = sink.types
    terminals = [t for t in types if t in ("RUN_FINISHED", "RUN_ERROR")]
    assert_equal(len(terminals), 1, f"Expected one terminal event in {types}")
    assert_in(types[-1], ("RUN_FINISHED", "RUN_ERROR"))
    assert_true(sink.closed, "Sink must be closed after the run")


# ============================================================================
# Test: Happy path
# ============================================================================

async def test_echo_run():
    """Test the echo agent produces a complete run"""
    orchestrator = make_orchestrator(EchoAgent(chunk_size=4))
    sink = CollectingSink()

    outcome = await orchestrator.run(make_request(text="hello world", state={"turns": 1}), sink)

    assert_equal(outcome.status, RunStatus.FINISHED)
    assert_equal(outcome.violations, [])
    assert_equal(outcome.event_count, len(sink.frames))
    assert_single_terminal(sink)

    types = sink.types
    assert_equal(types[0], "RUN_STARTED")
    assert_equal(types[1], "STATE_SNAPSHOT")
    assert_equal(types.count("TEXT_MESSAGE_CONTENT"), 3)

    text = "".join(event.delta for event in sink.events if isinstance(event, TextMessageContentEvent))
    assert_equal(text, "hello world")

    replica = StateReplica()
    for event in sink.events:
        replica.apply_event(event)
    assert_equal(replica.state, {"turns": 2, "last_message": "hello world"})

    assert_equal(orchestrator.supervisor.active_count, 0)


async def test_echo_without_messages():
    """Test a run with no user message still finishes"""
    sink = CollectingSink()
    outcome = await make_orchestrator(EchoAgent()).run(make_request(text=None), sink)

    assert_equal(outcome.status, RunStatus.FINISHED)
    assert_equal(sink.types, ["RUN_STARTED", "STATE_SNAPSHOT", "STEP_STARTED", "STATE_DELTA", "STEP_FINISHED", "RUN_FINISHED"])


async def test_scripted_run_passes_through():
    """Test valid events are framed unchanged and in order"""
    events = make_text_run()
    sink = CollectingSink()
    outcome = await make_orchestrator(ScriptedAgent(events)).run(make_request(), sink)

    assert_equal(outcome.status, RunStatus.FINISHED)
    assert_equal(sink.events, events)


# ============================================================================
# Test: Violations and failures
# ============================================================================

async def test_violation_stops_producer():
    """Test an out-of-order event ends the run with VALIDATION_ERROR"""
    agent = ScriptedAgent([
        RunStartedEvent(thread_id="t1", run_id="r1"),
        TextMessageContentEvent(message_id="never-opened", delta="x"),
        RunFinishedEvent(thread_id="t1", run_id="r1"),
    ])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(), sink)

    assert_equal(sink.types, ["RUN_STARTED", "RUN_ERROR"])
    assert_equal(sink.events[-1].code, "VALIDATION_ERROR")
    assert_equal(outcome.status, RunStatus.ERRORED)
    assert_equal(len(outcome.violations), 1)
    assert_in("never-opened", outcome.violations[0])
    assert_true(agent.closed_early, "Producer must be closed after a violation")
    assert_equal(agent.yielded, 1)


async def test_dangling_message_at_finish():
    """Test RUN_FINISHED with an open message is a violation"""
    agent = ScriptedAgent([
        RunStartedEvent(thread_id="t1", run_id="r1"),
        TextMessageStartEvent(message_id="m1"),
        RunFinishedEvent(thread_id="t1", run_id="r1"),
    ])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(), sink)

    assert_single_terminal(sink)
    assert_equal(outcome.error_code, "VALIDATION_ERROR")
    assert_in("m1", outcome.violations[0])


async def test_mismatched_run_ids():
    """Test RUN_STARTED for another run is rejected"""
    agent = ScriptedAgent([RunStartedEvent(thread_id="t1", run_id="someone-else")])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(), sink)

    assert_equal(sink.types, ["RUN_ERROR"])
    assert_equal(outcome.error_code, "VALIDATION_ERROR")


async def test_bad_producer_deltas():
    """Test unappliable or reserved-path deltas from the producer are violations"""
    for delta in (
        [PatchOperation(op="remove", path="/missing")],
        [PatchOperation(op="add", path="/__proto__", value={"polluted": True})],
    ):
        agent = ScriptedAgent([
            RunStartedEvent(thread_id="t1", run_id="r1"),
            StateSnapshotEvent(snapshot={}),
            StateDeltaEvent(delta=delta),
        ])
        sink = CollectingSink()
        outcome = await make_orchestrator(agent).run(make_request(), sink)

        assert_equal(sink.types, ["RUN_STARTED", "STATE_SNAPSHOT", "RUN_ERROR"])
        assert_equal(outcome.error_code, "VALIDATION_ERROR")


async def test_non_event_from_producer():
    """Test a producer yielding something other than an event gets VALIDATION_ERROR"""
    agent = ScriptedAgent([
        RunStartedEvent(thread_id="t1", run_id="r1"),
        {"type": "CUSTOM", "name": "x"},
        RunFinishedEvent(thread_id="t1", run_id="r1"),
    ])
    orchestrator = make_orchestrator(agent)
    sink = CollectingSink()
    outcome = await orchestrator.run(make_request(), sink)

    assert_equal(sink.types, ["RUN_STARTED", "RUN_ERROR"])
    assert_equal(outcome.error_code, "VALIDATION_ERROR")
    assert_in("dict", outcome.violations[0])
    assert_true(agent.closed_early)
    assert_true(sink.closed)
    assert_equal(orchestrator.supervisor.active_count, 0)


async def test_producer_delta_against_request_state():
    """Test a producer delta before any snapshot applies to the client's state"""
    agent = ScriptedAgent([
        RunStartedEvent(thread_id="t1", run_id="r1"),
        StateDeltaEvent(delta=[PatchOperation(op="replace", path="/a/0", value=9)]),
        RunFinishedEvent(thread_id="t1", run_id="r1"),
    ])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(state={"a": [1, 2]}), sink)

    assert_equal(outcome.status, RunStatus.FINISHED)
    replica = StateReplica({"a": [1, 2]})
    for event in sink.events:
        replica.apply_event(event)
    assert_equal(replica.state, {"a": [9, 2]})


async def test_unappliable_producer_delta_index():
    """Test a delta addressing an array with a non-ASCII digit is a violation"""
    agent = ScriptedAgent([
        RunStartedEvent(thread_id="t1", run_id="r1"),
        StateDeltaEvent(delta=[PatchOperation(op="replace", path="/a/²", value=0)]),
    ])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(state={"a": [1, 2]}), sink)

    assert_equal(sink.types, ["RUN_STARTED", "RUN_ERROR"])
    assert_equal(outcome.error_code, "VALIDATION_ERROR")
    assert_true(sink.closed)


class BrokenSink(CollectingSink):
    """Sink that fails with a non-transport error once some frames went out"""

    async def send(self, frame: str):
        if len(self.frames) >= 1:
            raise ValueError("encoder exploded")
        self.frames.append(frame)


async def test_unexpected_sink_error():
    """Test an error outside the transport contract still ends and closes the run"""
    orchestrator = make_orchestrator(EchoAgent(chunk_size=1))
    sink = BrokenSink()
    outcome = await orchestrator.run(make_request(text="abcdef"), sink)

    assert_equal(sink.types, ["RUN_STARTED"])
    assert_equal(outcome.status, RunStatus.ERRORED)
    assert_equal(outcome.error_code, "INTERNAL_ERROR")
    assert_in("encoder exploded", outcome.error)
    assert_true(sink.closed)
    assert_equal(orchestrator.supervisor.active_count, 0)


async def test_agent_exception():
    """Test an exception inside the agent becomes INTERNAL_ERROR"""
    agent = ScriptedAgent([RunStartedEvent(thread_id="t1", run_id="r1")], raise_after=RuntimeError("model exploded"))
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(), sink)

    assert_equal(sink.types, ["RUN_STARTED", "RUN_ERROR"])
    assert_equal(outcome.error_code, "INTERNAL_ERROR")
    assert_in("model exploded", sink.events[-1].message)


async def test_early_end_of_stream():
    """Test a producer that stops without a terminal event"""
    for script in ([], [RunStartedEvent(thread_id="t1", run_id="r1")]):
        sink = CollectingSink()
        outcome = await make_orchestrator(ScriptedAgent(script)).run(make_request(), sink)

        assert_single_terminal(sink)
        assert_equal(outcome.error_code, "INTERNAL_ERROR")
        assert_in("without RUN_FINISHED", outcome.error)


async def test_producer_run_error_passthrough():
    """Test a producer RUN_ERROR is the only terminal event"""
    agent = ScriptedAgent([
        RunStartedEvent(thread_id="t1", run_id="r1"),
        RunErrorEvent(message="upstream down", code="UPSTREAM_UNAVAILABLE"),
    ])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(), sink)

    assert_single_terminal(sink)
    assert_equal(outcome.status, RunStatus.ERRORED)
    assert_equal(outcome.error_code, "UPSTREAM_UNAVAILABLE")
    assert_equal(outcome.violations, [])


async def test_events_after_terminal_not_pulled():
    """Test the engine stops reading the producer once the run is terminal"""
    agent = ScriptedAgent(make_text_run() + [TextMessageStartEvent(message_id="late")])
    sink = CollectingSink()
    outcome = await make_orchestrator(agent).run(make_request(), sink)

    assert_equal(outcome.status, RunStatus.FINISHED)
    assert_equal(len(sink.frames), 5)
    assert_true(agent.closed_early)


async def test_transport_failure():
    """Test a failing sink ends the run without further sends"""
    sink = CollectingSink(fail_after=2)
    outcome = await make_orchestrator(EchoAgent(chunk_size=1)).run(make_request(text="abcdef"), sink)

    assert_equal(len(sink.frames), 2)
    assert_equal(outcome.status, RunStatus.ERRORED)
    assert_equal(outcome.error_code, "INTERNAL_ERROR")
    assert_in("Client disconnected", outcome.error)
    assert_true(sink.closed)


# ============================================================================
# Test: Cancellation and supervision
# ============================================================================

async def test_cooperative_cancel():
    """Test cancel() ends an active run with CANCELLED"""
    orchestrator = make_orchestrator(EchoAgent(chunk_size=1, chunk_delay=0.02))
    sink = CollectingSink()

    task = orchestrator.start(make_request(text="x" * 100), sink)
    await asyncio.sleep(0.1)

    assert_true(orchestrator.cancel("r1"))
    outcome = await asyncio.wait_for(task, timeout=2.0)
    print_info(f"Cancelled after {len(sink.frames)} frames")

    assert_equal(outcome.error_code, "CANCELLED")
    assert_single_terminal(sink)
    assert_false(orchestrator.cancel("r1"), "Finished runs cannot be cancelled")
    assert_equal(orchestrator.supervisor.active_count, 0)


async def test_task_cancel():
    """Test cancelling the driving task still delivers a terminal event"""
    orchestrator = make_orchestrator(EchoAgent(chunk_size=1, chunk_delay=0.05))
    sink = CollectingSink()

    task = orchestrator.start(make_request(text="x" * 100), sink)
    await asyncio.sleep(0.12)
    task.cancel()

    await assert_raises_async(asyncio.CancelledError, task)
    assert_equal(sink.events[-1].code, "CANCELLED")
    assert_single_terminal(sink)
    assert_equal(orchestrator.supervisor.active_count, 0)


async def test_supervisor_rejections():
    """Test duplicate and post-shutdown runs are rejected up front"""
    supervisor = RunSupervisor(drain_timeout=0.5)
    orchestrator = make_orchestrator(EchoAgent(chunk_size=1, chunk_delay=0.02), supervisor=supervisor)

    first = orchestrator.start(make_request(run_id="dup", text="x" * 50), CollectingSink())
    assert_raises(DuplicateRunError, orchestrator.start, make_request(run_id="dup"), CollectingSink())

    await asyncio.sleep(0.05)
    assert_true(orchestrator.cancel("dup"))
    await asyncio.wait_for(first, timeout=2.0)

    await supervisor.shutdown()
    assert_raises(SupervisorClosedError, orchestrator.start, make_request(run_id="late"), CollectingSink())


async def test_shutdown_drains_runs():
    """Test shutdown lets short runs finish"""
    supervisor = RunSupervisor(drain_timeout=2.0)
    orchestrator = make_orchestrator(EchoAgent(chunk_size=2, chunk_delay=0.01), supervisor=supervisor)

    sinks = [CollectingSink() for _ in range(3)]
    tasks = [orchestrator.start(make_request(run_id=f"r{i}", text="drain me"), sinks[i]) for i in range(3)]
    await asyncio.sleep(0)

    cancelled = await supervisor.shutdown()
    assert_equal(cancelled, 0)
    outcomes = await asyncio.gather(*tasks)
    assert_true(all(outcome.status == RunStatus.FINISHED for outcome in outcomes))


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all orchestrator tests"""
    return await run_tests("Run Orchestrator Tests", [
        ("Echo run", test_echo_run),
        ("Echo without messages", test_echo_without_messages),
        ("Scripted run passes through", test_scripted_run_passes_through),
        ("Violation stops producer", test_violation_stops_producer),
        ("Dangling message at finish", test_dangling_message_at_finish),
        ("Mismatched run ids", test_mismatched_run_ids),
        ("Bad producer deltas", test_bad_producer_deltas),
        ("Non-event from producer", test_non_event_from_producer),
        ("Producer delta against request state", test_producer_delta_against_request_state),
        ("Unappliable producer delta index", test_unappliable_producer_delta_index),
        ("Unexpected sink error", test_unexpected_sink_error),
        ("Agent exception", test_agent_exception),
        ("Early end of stream", test_early_end_of_stream),
        ("Producer RUN_ERROR passthrough", test_producer_run_error_passthrough),
        ("Events after terminal not pulled", test_events_after_terminal_not_pulled),
        ("Transport failure", test_transport_failure),
        ("Cooperative cancel", test_cooperative_cancel),
        ("Task cancel", test_task_cancel),
        ("Supervisor rejections", test_supervisor_rejections),
        ("Shutdown drains runs", test_shutdown_drains_runs),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
