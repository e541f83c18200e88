"""
Protocol event model.

Every event is an immutable pydantic model tagged by its 'type' field.
Events encode to plain JSON-ready dictionaries (camelCase keys) and decode
back losslessly; unknown fields are ignored on decode.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, JsonValue, TypeAdapter, ValidationError

from agui_engine.models.schemas import (
    CamelModel,
    EventFamily,
    EventType,
    Message,
    PatchOperation,
    RunAgentInput,
)


class EventDecodeError(ValueError):
    """Raised when an inbound payload is not a valid event"""

    def __init__(self, message: str, field: Optional[str] = None, event_type: Optional[str] = None):
        self.field = field
        self.event_type = event_type
        super().__init__(message)


class BaseEvent(CamelModel):
    """Fields shared by every event"""

    type: str
    timestamp: Optional[int] = None
    raw_event: Optional[JsonValue] = None

    @property
    def event_type(self) -> EventType:
        return EventType(self.type)

    @property
    def family(self) -> EventFamily:
        return EVENT_FAMILIES[self.event_type]


# ============================================================================
# Lifecycle
# ============================================================================


class RunStartedEvent(BaseEvent):
    type: Literal["RUN_STARTED"] = "RUN_STARTED"
    thread_id: str
    run_id: str
    parent_run_id: Optional[str] = None
    input: Optional[RunAgentInput] = None


class RunFinishedEvent(BaseEvent):
    type: Literal["RUN_FINISHED"] = "RUN_FINISHED"
    thread_id: str
    run_id: str
    result: Optional[JsonValue] = None


class RunErrorEvent(BaseEvent):
    type: Literal["RUN_ERROR"] = "RUN_ERROR"
    message: str
    code: Optional[str] = None


class StepStartedEvent(BaseEvent):
    type: Literal["STEP_STARTED"] = "STEP_STARTED"
    step_name: str


class StepFinishedEvent(BaseEvent):
    type: Literal["STEP_FINISHED"] = "STEP_FINISHED"
    step_name: str


# ============================================================================
# Text
# ============================================================================


class TextMessageStartEvent(BaseEvent):
    type: Literal["TEXT_MESSAGE_START"] = "TEXT_MESSAGE_START"
    message_id: str
    role: Literal["assistant", "user", "system", "developer"] = "assistant"


class TextMessageContentEvent(BaseEvent):
    type: Literal["TEXT_MESSAGE_CONTENT"] = "TEXT_MESSAGE_CONTENT"
    message_id: str
    delta: str = Field(..., min_length=1)


class TextMessageEndEvent(BaseEvent):
    type: Literal["TEXT_MESSAGE_END"] = "TEXT_MESSAGE_END"
    message_id: str


# ============================================================================
# Tool
# ============================================================================


class ToolCallStartEvent(BaseEvent):
    type: Literal["TOOL_CALL_START"] = "TOOL_CALL_START"
    tool_call_id: str
    tool_call_name: str
    parent_message_id: Optional[str] = None


class ToolCallArgsEvent(BaseEvent):
    type: Literal["TOOL_CALL_ARGS"] = "TOOL_CALL_ARGS"
    tool_call_id: str
    delta: str


class ToolCallEndEvent(BaseEvent):
    type: Literal["TOOL_CALL_END"] = "TOOL_CALL_END"
    tool_call_id: str


class ToolCallResultEvent(BaseEvent):
    type: Literal["TOOL_CALL_RESULT"] = "TOOL_CALL_RESULT"
    message_id: str
    tool_call_id: str
    content: str
    role: Literal["tool"] = "tool"


# ============================================================================
# State
# ============================================================================


class StateSnapshotEvent(BaseEvent):
    type: Literal["STATE_SNAPSHOT"] = "STATE_SNAPSHOT"
    snapshot: JsonValue


class StateDeltaEvent(BaseEvent):
    type: Literal["STATE_DELTA"] = "STATE_DELTA"
    delta: List[PatchOperation]


class MessagesSnapshotEvent(BaseEvent):
    type: Literal["MESSAGES_SNAPSHOT"] = "MESSAGES_SNAPSHOT"
    messages: List[Message]


# ============================================================================
# Extension
# ============================================================================


class CustomEvent(BaseEvent):
    type: Literal["CUSTOM"] = "CUSTOM"
    name: str
    value: JsonValue = None


class RawEvent(BaseEvent):
    type: Literal["RAW"] = "RAW"
    event: JsonValue
    source: Optional[str] = None


Event = Annotated[
    Union[
        RunStartedEvent,
        RunFinishedEvent,
        RunErrorEvent,
        StepStartedEvent,
        StepFinishedEvent,
        TextMessageStartEvent,
        TextMessageContentEvent,
        TextMessageEndEvent,
        ToolCallStartEvent,
        ToolCallArgsEvent,
        ToolCallEndEvent,
        ToolCallResultEvent,
        StateSnapshotEvent,
        StateDeltaEvent,
        MessagesSnapshotEvent,
        CustomEvent,
        RawEvent,
    ],
    Field(discriminator="type"),
]

EVENT_CLASSES = {
    EventType.RUN_STARTED: RunStartedEvent,
    EventType.RUN_FINISHED: RunFinishedEvent,
    EventType.RUN_ERROR: RunErrorEvent,
    EventType.STEP_STARTED: StepStartedEvent,
    EventType.STEP_FINISHED: StepFinishedEvent,
    EventType.TEXT_MESSAGE_START: TextMessageStartEvent,
    EventType.TEXT_MESSAGE_CONTENT: TextMessageContentEvent,
    EventType.TEXT_MESSAGE_END: TextMessageEndEvent,
    EventType.TOOL_CALL_START: ToolCallStartEvent,
    EventType.TOOL_CALL_ARGS: ToolCallArgsEvent,
    EventType.TOOL_CALL_END: ToolCallEndEvent,
    EventType.TOOL_CALL_RESULT: ToolCallResultEvent,
    EventType.STATE_SNAPSHOT: StateSnapshotEvent,
    EventType.STATE_DELTA: StateDeltaEvent,
    EventType.MESSAGES_SNAPSHOT: MessagesSnapshotEvent,
    EventType.CUSTOM: CustomEvent,
    EventType.RAW: RawEvent,
}

EVENT_FAMILIES = {
    EventType.RUN_STARTED: EventFamily.LIFECYCLE,
    EventType.RUN_FINISHED: EventFamily.LIFECYCLE,
    EventType.RUN_ERROR: EventFamily.LIFECYCLE,
    EventType.STEP_STARTED: EventFamily.LIFECYCLE,
    EventType.STEP_FINISHED: EventFamily.LIFECYCLE,
    EventType.TEXT_MESSAGE_START: EventFamily.TEXT,
    EventType.TEXT_MESSAGE_CONTENT: EventFamily.TEXT,
    EventType.TEXT_MESSAGE_END: EventFamily.TEXT,
    EventType.TOOL_CALL_START: EventFamily.TOOL,
    EventType.TOOL_CALL_ARGS: EventFamily.TOOL,
    EventType.TOOL_CALL_END: EventFamily.TOOL,
    EventType.TOOL_CALL_RESULT: EventFamily.TOOL,
    EventType.STATE_SNAPSHOT: EventFamily.STATE,
    EventType.STATE_DELTA: EventFamily.STATE,
    EventType.MESSAGES_SNAPSHOT: EventFamily.STATE,
    EventType.CUSTOM: EventFamily.EXTENSION,
    EventType.RAW: EventFamily.EXTENSION,
}

_EVENT_ADAPTER = TypeAdapter(Event)


def encode_event(event: BaseEvent) -> Dict[str, Any]:
    """Encode an event to a JSON-ready dictionary with camelCase keys"""
    return event.model_dump(mode="json", by_alias=True)


def decode_event(payload: Union[Dict[str, Any], str, bytes]) -> BaseEvent:
    """
    Decode one event from a dictionary or a JSON document.

    Raises:
        EventDecodeError: Payload is not JSON, has an unknown type, or a
            required field is missing or invalid. 'field' names the wire
            field that failed.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise EventDecodeError(f"Event payload is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise EventDecodeError("Event payload must be a JSON object")

    event_type = payload.get("type")

    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as e:
        error = e.errors()[0]

        if error["type"] in ("union_tag_invalid", "union_tag_not_found"):
            raise EventDecodeError(
                f"Unknown event type: {event_type!r}", field="type", event_type=event_type
            ) from e

        # First location element is the union tag
        field = ".".join(str(part) for part in error["loc"][1:]) or None
        if error["type"] == "missing":
            message = f"{event_type} event is missing required field '{field}'"
        else:
            message = f"{event_type} event has invalid field '{field}': {error['msg']}"

        raise EventDecodeError(message, field=field, event_type=event_type) from e
