"""Core protocol components."""

from agui_engine.core.json_patch import (
    PatchError,
    PathNotFoundError,
    TypeMismatchError,
    PatchTestFailedError,
    InvalidPatchError,
    apply_patch,
    diff,
)
from agui_engine.core.run_machine import (
    RunStateMachine,
    InvalidStateTransitionError,
    ProtocolViolationError,
    LateEventError,
)
from agui_engine.core.state_sync import StateSynchronizer, StateReplica, StateDivergenceError
from agui_engine.core.channel import EventChannel, ChannelClosedError
from agui_engine.core.transport import (
    TransportError,
    FrameDecodeError,
    RequestDecodeError,
    FrameDecoder,
    EventSink,
    ChannelSink,
    CallbackSink,
    encode_frame,
    frame_event,
    parse_run_request,
)
from agui_engine.core.supervisor import RunSupervisor, SupervisorClosedError, DuplicateRunError
from agui_engine.core.run_archive import RunArchive, RunNotTerminalError

# Note: startup is imported directly (agui_engine.core.startup) to avoid a cycle with agent_layer

__all__ = [
    'PatchError',
    'PathNotFoundError',
    'TypeMismatchError',
    'PatchTestFailedError',
    'InvalidPatchError',
    'apply_patch',
    'diff',
    'RunStateMachine',
    'InvalidStateTransitionError',
    'ProtocolViolationError',
    'LateEventError',
    'StateSynchronizer',
    'StateReplica',
    'StateDivergenceError',
    'EventChannel',
    'ChannelClosedError',
    'TransportError',
    'FrameDecodeError',
    'RequestDecodeError',
    'FrameDecoder',
    'EventSink',
    'ChannelSink',
    'CallbackSink',
    'encode_frame',
    'frame_event',
    'parse_run_request',
    'RunSupervisor',
    'SupervisorClosedError',
    'DuplicateRunError',
    'RunArchive',
    'RunNotTerminalError',
]
