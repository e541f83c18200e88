#!/usr/bin/env python3
"""
Test: Channel and Run Supervisor
Purpose: Verify backpressure between producer and consumer, and shutdown draining

Tests:
- Items are delivered in order and the consumer stops only at close
- A full channel blocks the producer until the consumer reads
- Detaching the consumer unblocks a waiting producer
- Supervisor rejects duplicates and registrations during shutdown
- Shutdown waits for active runs and cancels stragglers after the timeout
"""

import asyncio
import sys

from fixtures import (
    run_tests, print_info,
    assert_equal, assert_true, assert_false, assert_raises, assert_raises_async,
)

from agui_engine.core.channel import ChannelClosedError, EventChannel
from agui_engine.core.supervisor import DuplicateRunError, RunSupervisor, SupervisorClosedError


# ============================================================================
# Test: Channel
# ============================================================================

async def test_channel_order_and_close():
    """Test consumer sees every item in order, ending at close"""
    channel = EventChannel(max_queue_size=100, name="order")

    async def produce():
        for i in range(50):
            await channel.put(i)
            if i % 10 == 0:
                await asyncio.sleep(0)
        await channel.close()

    producer = asyncio.create_task(produce())
    received = [item async for item in channel]
    await producer

    assert_equal(received, list(range(50)))
    assert_true(channel.closed)
    await assert_raises_async(ChannelClosedError, channel.put(99))


async def test_channel_empty_is_not_end():
    """Test an empty queue does not end consumption before close"""
    channel = EventChannel(max_queue_size=4, name="slow")
    received = []

    async def consume():
        async for item in channel:
            received.append(item)

    consumer = asyncio.create_task(consume())
    await channel.put("a")
    await asyncio.sleep(0.05)
    assert_false(consumer.done(), "Consumer must keep waiting while the channel is open")

    await channel.put("b")
    await channel.close()
    await asyncio.wait_for(consumer, timeout=1.0)
    assert_equal(received, ["a", "b"])


async def test_channel_backpressure():
    """Test a full channel blocks the producer"""
    channel = EventChannel(max_queue_size=2, name="bp")
    await channel.put(1)
    await channel.put(2)

    blocked = asyncio.create_task(channel.put(3))
    await asyncio.sleep(0.05)
    assert_false(blocked.done(), "Third put should wait for the consumer")

    iterator = channel.__aiter__()
    assert_equal(await iterator.__anext__(), 1)
    await asyncio.wait_for(blocked, timeout=1.0)

    assert_equal(channel.get_stats()["items_put"], 3)
    await iterator.aclose()


async def test_channel_detach_unblocks_producer():
    """Test detaching the consumer releases a blocked producer"""
    channel = EventChannel(max_queue_size=1, name="detach")
    await channel.put("x")

    blocked = asyncio.create_task(channel.put("y"))
    await asyncio.sleep(0.05)
    assert_false(blocked.done())

    channel.detach()
    await asyncio.wait_for(blocked, timeout=1.0)
    assert_true(channel.detached)

    await assert_raises_async(ChannelClosedError, channel.put("z"))
    await channel.close()


# ============================================================================
# Test: Supervisor
# ============================================================================

async def test_register_and_deregister():
    """Test basic registration bookkeeping"""
    supervisor = RunSupervisor(drain_timeout=1.0)
    supervisor.register("r1", "t1")

    assert_true(supervisor.is_active("r1"))
    assert_equal(supervisor.active_count, 1)
    assert_raises(DuplicateRunError, supervisor.register, "r1", "t1")

    supervisor.deregister("r1")
    supervisor.deregister("r1")
    assert_equal(supervisor.active_count, 0)
    assert_equal(supervisor.get_stats()["total_registered"], 1)


async def test_track_context():
    """Test track() registers the current task for the block"""
    supervisor = RunSupervisor()

    async with supervisor.track("r1", "t1"):
        assert_true(supervisor.is_active("r1"))
    assert_false(supervisor.is_active("r1"))

    try:
        async with supervisor.track("r2"):
            raise ValueError("agent failed")
    except ValueError:
        pass
    assert_false(supervisor.is_active("r2"), "Run deregisters on error too")


async def test_shutdown_with_no_runs():
    """Test shutdown returns immediately and rejects new runs"""
    supervisor = RunSupervisor(drain_timeout=5.0)
    cancelled = await asyncio.wait_for(supervisor.shutdown(), timeout=1.0)

    assert_equal(cancelled, 0)
    assert_false(supervisor.accepting)
    assert_raises(SupervisorClosedError, supervisor.register, "late")


async def test_shutdown_waits_for_runs():
    """Test shutdown waits for runs that finish within the timeout"""
    supervisor = RunSupervisor(drain_timeout=2.0)

    async def run(run_id, delay):
        async with supervisor.track(run_id):
            await asyncio.sleep(delay)

    tasks = [asyncio.create_task(run(f"r{i}", 0.05 * (i + 1))) for i in range(3)]
    await asyncio.sleep(0)

    cancelled = await supervisor.shutdown()
    assert_equal(cancelled, 0)
    assert_true(all(task.done() and not task.cancelled() for task in tasks))
    assert_equal(supervisor.active_count, 0)


async def test_shutdown_cancels_stragglers():
    """Test runs still active at the timeout are cancelled"""
    supervisor = RunSupervisor(drain_timeout=0.1)

    async def stuck():
        async with supervisor.track("stuck"):
            await asyncio.sleep(30)

    async def quick():
        async with supervisor.track("quick"):
            await asyncio.sleep(0.01)

    stuck_task = asyncio.create_task(stuck())
    quick_task = asyncio.create_task(quick())
    await asyncio.sleep(0)

    cancelled = await supervisor.shutdown()
    print_info(f"Cancelled {cancelled} straggler(s)")

    assert_equal(cancelled, 1)
    assert_true(stuck_task.cancelled())
    assert_true(quick_task.done() and not quick_task.cancelled())
    assert_equal(supervisor.active_count, 0)


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all channel and supervisor tests"""
    return await run_tests("Channel and Supervisor Tests", [
        ("Channel order and close", test_channel_order_and_close),
        ("Channel: empty is not end", test_channel_empty_is_not_end),
        ("Channel backpressure", test_channel_backpressure),
        ("Channel detach unblocks producer", test_channel_detach_unblocks_producer),
        ("Supervisor register/deregister", test_register_and_deregister),
        ("Supervisor track context", test_track_context),
        ("Shutdown with no runs", test_shutdown_with_no_runs),
        ("Shutdown waits for runs", test_shutdown_waits_for_runs),
        ("Shutdown cancels stragglers", test_shutdown_cancels_stragglers),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
