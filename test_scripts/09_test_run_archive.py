#!/usr/bin/env python3
"""
Test: Run Archive
Purpose: Verify terminal runs are persisted with their ordered event log

Tests:
- Archived runs read back with status, counts and errors
- Event logs replay in emission order
- Only terminal runs can be archived
- Listing filters and status counts
- Orchestrator archives every run it closes
"""

import asyncio
import sys

from fixtures import (
    run_tests, make_request, make_text_run, ArchiveContext, CollectingSink, ScriptedAgent,
    assert_equal, assert_true, assert_raises_async,
)

from agui_engine.agent_layer.adapters.echo import EchoAgent
from agui_engine.agent_layer.orchestrator import RunOrchestrator
from agui_engine.config.settings import Settings
from agui_engine.core.run_archive import RunNotTerminalError
from agui_engine.core.run_machine import RunStateMachine
from agui_engine.core.supervisor import RunSupervisor
from agui_engine.models.events import RunStartedEvent
from agui_engine.models.schemas import RunOutcome, RunStatus


def finished_machine(thread_id="t1", run_id="r1", created_at=None):
    machine = RunStateMachine.from_request(make_request(thread_id=thread_id, run_id=run_id))
    for event in make_text_run(thread_id=thread_id, run_id=run_id):
        machine.accept(event)
    if created_at is not None:
        machine.created_at = created_at
    return machine


def errored_machine(thread_id="t1", run_id="r2", created_at=None):
    machine = RunStateMachine.from_request(make_request(thread_id=thread_id, run_id=run_id))
    machine.accept(RunStartedEvent(thread_id=thread_id, run_id=run_id))
    machine.fail("Agent failed: boom", "INTERNAL_ERROR")
    if created_at is not None:
        machine.created_at = created_at
    return machine


# ============================================================================
# Test: Archive and read back
# ============================================================================

async def test_archive_finished_run():
    """Test a finished run and its events are stored"""
    async with ArchiveContext() as ctx:
        machine = finished_machine()
        await ctx.archive.archive(machine)

        record = await ctx.archive.get_run("r1")
        assert_equal(record.status, "finished")
        assert_equal(record.thread_id, "t1")
        assert_equal(record.event_count, 5)
        assert_equal(record.error, None)
        assert_true(record.finished_at >= record.created_at)

        events = await ctx.archive.get_events("r1")
        assert_equal(events, machine.events)

        rows = await ctx.archive.get_event_records("r1")
        assert_equal([row.sequence_number for row in rows], [1, 2, 3, 4, 5])
        assert_equal(rows[0].event_data_dict["threadId"], "t1")

        assert_equal(await ctx.archive.get_run("missing"), None)
        assert_equal(await ctx.archive.get_events("missing"), [])


async def test_archive_errored_run():
    """Test errors and codes are stored; an outcome error takes precedence"""
    async with ArchiveContext() as ctx:
        await ctx.archive.archive(errored_machine(run_id="r2"))
        record = await ctx.archive.get_run("r2")
        assert_equal(record.status, "errored")
        assert_equal(record.error, "Agent failed: boom")
        assert_equal(record.error_code, "INTERNAL_ERROR")

        machine = errored_machine(run_id="r3")
        outcome = RunOutcome(
            thread_id="t1",
            run_id="r3",
            status=RunStatus.ERRORED,
            error="Client disconnected",
            error_code="INTERNAL_ERROR",
        )
        await ctx.archive.archive(machine, outcome)
        assert_equal((await ctx.archive.get_run("r3")).error, "Client disconnected")


async def test_active_run_not_archived():
    """Test archiving an active run is refused"""
    async with ArchiveContext() as ctx:
        machine = RunStateMachine.from_request(make_request())
        await assert_raises_async(RunNotTerminalError, ctx.archive.archive(machine))
        assert_equal(await ctx.archive.get_run("r1"), None)


# ============================================================================
# Test: Listing
# ============================================================================

async def test_list_and_count():
    """Test newest-first listing, filters and status counts"""
    async with ArchiveContext() as ctx:
        await ctx.archive.archive(finished_machine(thread_id="t1", run_id="a", created_at=1000.0))
        await ctx.archive.archive(errored_machine(thread_id="t1", run_id="b", created_at=1001.0))
        await ctx.archive.archive(finished_machine(thread_id="t2", run_id="c", created_at=1002.0))

        runs = await ctx.archive.list_runs()
        assert_equal([run.run_id for run in runs], ["c", "b", "a"])

        errored = await ctx.archive.list_runs(status=RunStatus.ERRORED)
        assert_equal([run.run_id for run in errored], ["b"])

        thread = await ctx.archive.list_runs(thread_id="t1")
        assert_equal([run.run_id for run in thread], ["b", "a"])

        assert_equal([run.run_id for run in await ctx.archive.list_runs(limit=1)], ["c"])
        assert_equal(await ctx.archive.count_by_status(), {"finished": 2, "errored": 1})


# ============================================================================
# Test: Orchestrator integration
# ============================================================================

async def test_orchestrator_archives_runs():
    """Test the orchestrator archives exactly what it streamed"""
    async with ArchiveContext() as ctx:
        orchestrator = RunOrchestrator(
            EchoAgent(chunk_size=3),
            supervisor=RunSupervisor(),
            archive=ctx.archive,
            settings=Settings(auth_secret_key=None),
        )

        sink = CollectingSink()
        await orchestrator.run(make_request(run_id="ok", text="archived text"), sink)
        assert_equal(await ctx.archive.get_events("ok"), sink.events)

        failing = RunOrchestrator(
            ScriptedAgent([]),
            supervisor=RunSupervisor(),
            archive=ctx.archive,
            settings=Settings(auth_secret_key=None),
        )
        await failing.run(make_request(run_id="bad"), CollectingSink())
        record = await ctx.archive.get_run("bad")
        assert_equal(record.status, "errored")
        assert_equal(record.event_count, 1)


async def test_archive_failure_does_not_break_run():
    """Test a database error while archiving still returns the outcome"""
    async with ArchiveContext() as ctx:
        orchestrator = RunOrchestrator(
            EchoAgent(),
            supervisor=RunSupervisor(),
            archive=ctx.archive,
            settings=Settings(auth_secret_key=None),
        )

        await orchestrator.run(make_request(run_id="same"), CollectingSink())
        # Second run with the same id collides on the primary key
        sink = CollectingSink()
        outcome = await orchestrator.run(make_request(run_id="same"), sink)

        assert_equal(outcome.status, RunStatus.FINISHED)
        assert_true(sink.closed)
        assert_equal(await ctx.archive.count_by_status(), {"finished": 1})


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all archive tests"""
    return await run_tests("Run Archive Tests", [
        ("Archive finished run", test_archive_finished_run),
        ("Archive errored run", test_archive_errored_run),
        ("Active run not archived", test_active_run_not_archived),
        ("List and count", test_list_and_count),
        ("Orchestrator archives runs", test_orchestrator_archives_runs),
        ("Archive failure does not break run", test_archive_failure_does_not_break_run),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
