"""Data models and schemas."""

from agui_engine.models.database import Base, Database
from agui_engine.models.orm import RunRecord, RunEventRecord
from agui_engine.models.schemas import (
    RunStatus,
    EventType,
    EventFamily,
    RunErrorCode,
    STATE_TRANSITIONS,
    TERMINAL_STATUSES,
    PatchOperation,
    RunAgentInput,
    RunOutcome,
    RunSummaryResponse,
    RunListResponse,
    RunEventResponse,
    RunEventsResponse,
    HealthResponse,
)
from agui_engine.models.events import (
    BaseEvent,
    EventDecodeError,
    encode_event,
    decode_event,
)

__all__ = [
    # Database
    'Base',
    'Database',
    # ORM
    'RunRecord',
    'RunEventRecord',
    # Schemas
    'RunStatus',
    'EventType',
    'EventFamily',
    'RunErrorCode',
    'STATE_TRANSITIONS',
    'TERMINAL_STATUSES',
    'PatchOperation',
    'RunAgentInput',
    'RunOutcome',
    'RunSummaryResponse',
    'RunListResponse',
    'RunEventResponse',
    'RunEventsResponse',
    'HealthResponse',
    # Events
    'BaseEvent',
    'EventDecodeError',
    'encode_event',
    'decode_event',
]
