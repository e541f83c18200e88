"""
Shared state synchronization.

StateSynchronizer is the producer side: it keeps the last state sent for a
run and turns each new state into a STATE_SNAPSHOT or STATE_DELTA event.
StateReplica is the consumer side: it rebuilds the state from those events.
"""

import copy
from typing import Any, Dict, List, Optional

import structlog

from agui_engine.config.security import assert_safe_operations
from agui_engine.core.json_patch import apply_patch, diff, json_equal
from agui_engine.models.events import (
    BaseEvent,
    MessagesSnapshotEvent,
    StateDeltaEvent,
    StateSnapshotEvent,
)

logger = structlog.get_logger()


class StateDivergenceError(Exception):
    """Raised when re-applying a computed delta does not reproduce the new state"""

    pass


class StateSynchronizer:
    """
    Decides snapshot-vs-delta emission for one run.

    The first sync emits a snapshot; later syncs emit the diff against the
    last state sent, or nothing when the state is unchanged. Delta paths are
    checked against the reserved-segment denylist before anything is
    recorded, so a rejected sync leaves the synchronizer as it was.
    """

    def __init__(self, run_id: str = None, verify_deltas: bool = True, initial_state: Any = None):
        """
        Args:
            run_id: Run the state belongs to, for logging
            verify_deltas: Re-apply each computed delta and compare before emitting
            initial_state: State the consumer already holds; producer deltas
                observed before any snapshot apply to it
        """
        self.run_id = run_id
        self.verify_deltas = verify_deltas
        self._last_known_state: Any = copy.deepcopy(initial_state)
        self._has_sent = False
        # Events issued by sync(), keyed by id(); observe() must not apply them twice
        self._issued: Dict[int, BaseEvent] = {}

    @property
    def has_sent(self) -> bool:
        return self._has_sent

    @property
    def last_known_state(self) -> Any:
        """Copy of the last state sent for this run"""
        return copy.deepcopy(self._last_known_state)

    def sync(self, new_state: Any) -> Optional[BaseEvent]:
        """
        Produce the event that brings the consumer to new_state.

        Returns:
            StateSnapshotEvent on first call, StateDeltaEvent when the state
            changed, None when there is nothing to send

        Raises:
            SecurityViolationError: A delta operation targets a reserved path
            StateDivergenceError: Delta verification failed
        """
        if not self._has_sent:
            event = StateSnapshotEvent(snapshot=copy.deepcopy(new_state))
            self._commit(new_state)
            logger.debug("state_snapshot_emitted", run_id=self.run_id)
            return self._issue(event)

        operations = diff(self._last_known_state, new_state)
        if not operations:
            return None

        # Fail closed: nothing recorded, nothing emitted
        assert_safe_operations(operations)

        if self.verify_deltas:
            replayed = apply_patch(self._last_known_state, operations)
            if not json_equal(replayed, new_state):
                logger.error("state_delta_diverged", run_id=self.run_id, operations=len(operations))
                raise StateDivergenceError(
                    f"Delta of {len(operations)} operations does not reproduce the new state"
                )

        event = StateDeltaEvent(delta=operations)
        self._commit(new_state)
        logger.debug("state_delta_emitted", run_id=self.run_id, operations=len(operations))
        return self._issue(event)

    def observe(self, event: BaseEvent):
        """
        Track a state event on its way to the consumer.

        Producer-built snapshots replace the last known state and
        producer-built deltas are applied to it. Events that sync() issued
        were already recorded and are skipped.

        Raises:
            SecurityViolationError / PatchError: A producer delta does not
                apply to the last known state
        """
        issued = self._issued.pop(id(event), None)
        if issued is event:
            return

        if isinstance(event, StateSnapshotEvent):
            self._commit(event.snapshot)
        elif isinstance(event, StateDeltaEvent):
            self._commit(apply_patch(self._last_known_state, event.delta))

    def _commit(self, state: Any):
        self._last_known_state = copy.deepcopy(state)
        self._has_sent = True

    def _issue(self, event: BaseEvent) -> BaseEvent:
        self._issued[id(event)] = event
        return event


class StateReplica:
    """
    Consumer-side copy of a run's shared state and message history.

    Deltas apply atomically: a failing delta raises and the replica keeps
    its previous state.
    """

    def __init__(self, initial_state: Any = None):
        self.state: Any = copy.deepcopy(initial_state) if initial_state is not None else {}
        self.messages: List[Any] = []
        self.applied = 0

    def apply_event(self, event: BaseEvent) -> bool:
        """
        Apply a state-family event.

        Returns:
            True if the event changed the replica, False if it was not a state event
        """
        if isinstance(event, StateSnapshotEvent):
            self.state = copy.deepcopy(event.snapshot)
        elif isinstance(event, StateDeltaEvent):
            self.state = apply_patch(self.state, event.delta)
        elif isinstance(event, MessagesSnapshotEvent):
            self.messages = list(event.messages)
        else:
            return False

        self.applied += 1
        return True
