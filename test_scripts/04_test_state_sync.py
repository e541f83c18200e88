#!/usr/bin/env python3
"""
Test: State Synchronizer
Purpose: Verify snapshot-vs-delta emission and consumer-side replay

Tests:
- First sync emits a snapshot, later syncs emit deltas, no change emits nothing
- Reserved paths fail closed with no event and no recorded state
- Producer-built state events are tracked without double application
- Replica rebuilds the producer state from snapshots and deltas
"""

import asyncio
import sys

from fixtures import (
    run_tests,
    assert_equal, assert_true, assert_false, assert_raises,
)

from agui_engine.config.security import SecurityViolationError
from agui_engine.core.json_patch import PathNotFoundError
from agui_engine.core.state_sync import StateReplica, StateSynchronizer
from agui_engine.models.events import (
    MessagesSnapshotEvent,
    StateDeltaEvent,
    StateSnapshotEvent,
    TextMessageStartEvent,
)
from agui_engine.models.schemas import PatchOperation, UserMessage


# ============================================================================
# Test: Scenario
# ============================================================================

async def test_snapshot_then_delta():
    """Test the loading/results scenario"""
    sync = StateSynchronizer(run_id="r1")

    first = sync.sync({"loading": True, "results": []})
    assert_true(isinstance(first, StateSnapshotEvent))
    assert_equal(first.snapshot, {"loading": True, "results": []})

    second = sync.sync({"loading": False, "results": [{"id": 1}]})
    assert_true(isinstance(second, StateDeltaEvent))
    assert_equal(
        sorted((op.to_dict() for op in second.delta), key=lambda op: op["path"]),
        [
            {"op": "replace", "path": "/loading", "value": False},
            {"op": "add", "path": "/results/-", "value": {"id": 1}},
        ],
    )
    assert_equal(sync.last_known_state, {"loading": False, "results": [{"id": 1}]})


async def test_unchanged_state_emits_nothing():
    """Test syncing an equal state returns None"""
    sync = StateSynchronizer()
    sync.sync({"a": [1, 2]})
    assert_equal(sync.sync({"a": [1, 2]}), None)


async def test_snapshot_is_copied():
    """Test later caller mutations do not leak into sent state"""
    sync = StateSynchronizer()
    state = {"items": [1]}
    event = sync.sync(state)
    state["items"].append(2)

    assert_equal(event.snapshot, {"items": [1]})
    assert_equal(sync.last_known_state, {"items": [1]})

    delta = sync.sync(state)
    assert_equal([op.to_dict() for op in delta.delta], [{"op": "add", "path": "/items/-", "value": 2}])


async def test_first_sync_of_scalar():
    """Test any tree value can be a snapshot"""
    sync = StateSynchronizer()
    assert_true(isinstance(sync.sync(None), StateSnapshotEvent))
    assert_true(sync.has_sent)
    event = sync.sync(5)
    assert_equal([op.to_dict() for op in event.delta], [{"op": "replace", "path": "", "value": 5}])


# ============================================================================
# Test: Security
# ============================================================================

async def test_reserved_path_fails_closed():
    """Test a delta touching __proto__ raises and emits nothing"""
    sync = StateSynchronizer()
    sync.sync({"safe": 1})

    error = assert_raises(SecurityViolationError, sync.sync, {"safe": 1, "__proto__": {"x": 1}})
    assert_equal(error.segment, "__proto__")
    assert_equal(sync.last_known_state, {"safe": 1}, "Nothing recorded after a rejected sync")

    # Next legal change is diffed against the last state actually sent
    event = sync.sync({"safe": 2})
    assert_equal([op.to_dict() for op in event.delta], [{"op": "replace", "path": "/safe", "value": 2}])


async def test_nested_reserved_paths():
    """Test constructor/prototype keys at any depth are rejected"""
    for key in ("constructor", "prototype"):
        sync = StateSynchronizer()
        sync.sync({"a": {}})
        assert_raises(SecurityViolationError, sync.sync, {"a": {key: 1}})


# ============================================================================
# Test: Observe
# ============================================================================

async def test_observe_skips_own_events():
    """Test events issued by sync() are not applied twice"""
    sync = StateSynchronizer()
    snapshot = sync.sync({"list": []})
    sync.observe(snapshot)
    delta = sync.sync({"list": [1]})
    sync.observe(delta)

    assert_equal(sync.last_known_state, {"list": [1]})


async def test_observe_producer_events():
    """Test producer-built snapshots and deltas update the last known state"""
    sync = StateSynchronizer()
    sync.observe(StateSnapshotEvent(snapshot={"count": 1}))
    assert_true(sync.has_sent)

    sync.observe(StateDeltaEvent(delta=[PatchOperation(op="replace", path="/count", value=2)]))
    assert_equal(sync.last_known_state, {"count": 2})

    # Next sync diffs against the observed state
    event = sync.sync({"count": 3})
    assert_equal([op.to_dict() for op in event.delta], [{"op": "replace", "path": "/count", "value": 3}])

    assert_raises(
        PathNotFoundError,
        sync.observe,
        StateDeltaEvent(delta=[PatchOperation(op="remove", path="/missing")]),
    )
    assert_equal(sync.last_known_state, {"count": 3})


async def test_observe_delta_against_initial_state():
    """Test producer deltas before any snapshot apply to the consumer's state"""
    initial = {"count": 1}
    sync = StateSynchronizer(initial_state=initial)
    assert_false(sync.has_sent)
    assert_equal(sync.last_known_state, {"count": 1})

    sync.observe(StateDeltaEvent(delta=[PatchOperation(op="replace", path="/count", value=2)]))
    assert_equal(sync.last_known_state, {"count": 2})
    assert_equal(initial, {"count": 1}, "Seed state is copied")

    # sync() still opens with a snapshot when nothing was sent through it
    fresh = StateSynchronizer(initial_state={"count": 1})
    assert_true(isinstance(fresh.sync({"count": 1}), StateSnapshotEvent))


# ============================================================================
# Test: Replica
# ============================================================================

async def test_replica_follows_synchronizer():
    """Test consumer replica converges on every producer state"""
    sync = StateSynchronizer()
    replica = StateReplica()
    states = [
        {"loading": True, "results": []},
        {"loading": False, "results": [{"id": 1}]},
        {"loading": False, "results": [{"id": 1}, {"id": 2}], "page": 2},
        {"results": [{"id": 2, "tags": ["x"]}]},
        {"results": []},
    ]

    for state in states:
        event = sync.sync(state)
        if event is not None:
            assert_true(replica.apply_event(event))
        assert_equal(replica.state, state)

    assert_equal(replica.applied, len(states))


async def test_replica_rejects_bad_delta_atomically():
    """Test a failing delta leaves the replica unchanged"""
    replica = StateReplica({"a": 1})
    bad = StateDeltaEvent(delta=[
        PatchOperation(op="replace", path="/a", value=2),
        PatchOperation(op="remove", path="/nope"),
    ])

    assert_raises(PathNotFoundError, replica.apply_event, bad)
    assert_equal(replica.state, {"a": 1})
    assert_equal(replica.applied, 0)


async def test_replica_messages_and_other_events():
    """Test messages snapshots replace history; other events are ignored"""
    replica = StateReplica()
    messages = [UserMessage(id="u1", content="hi")]

    assert_true(replica.apply_event(MessagesSnapshotEvent(messages=messages)))
    assert_equal(replica.messages, messages)
    assert_false(replica.apply_event(TextMessageStartEvent(message_id="m1")))


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all state synchronizer tests"""
    return await run_tests("State Synchronizer Tests", [
        ("Scenario: snapshot then delta", test_snapshot_then_delta),
        ("Unchanged state emits nothing", test_unchanged_state_emits_nothing),
        ("Snapshot is copied", test_snapshot_is_copied),
        ("First sync of scalar", test_first_sync_of_scalar),
        ("Reserved path fails closed", test_reserved_path_fails_closed),
        ("Nested reserved paths", test_nested_reserved_paths),
        ("Observe skips own events", test_observe_skips_own_events),
        ("Observe producer events", test_observe_producer_events),
        ("Observe delta against initial state", test_observe_delta_against_initial_state),
        ("Replica follows synchronizer", test_replica_follows_synchronizer),
        ("Replica rejects bad delta atomically", test_replica_rejects_bad_delta_atomically),
        ("Replica messages and other events", test_replica_messages_and_other_events),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
