"""
Pydantic schemas for the run protocol.
Includes enums for run state management, conversation messages, tool
descriptors, the inbound run request and API response models.
"""

from pydantic import BaseModel, ConfigDict, Field, JsonValue, model_serializer, model_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Optional, Literal, Any, List, Dict, Union
from enum import Enum


# ============================================================================
# Enums
# ============================================================================


class RunStatus(str, Enum):
    """Run state machine states"""

    NOT_STARTED = "not_started"  # Idle
    ACTIVE = "active"
    FINISHED = "finished"
    ERRORED = "errored"


class EventType(str, Enum):
    """Closed set of protocol event kinds (wire discriminator values)"""

    # Lifecycle
    RUN_STARTED = "RUN_STARTED"
    RUN_FINISHED = "RUN_FINISHED"
    RUN_ERROR = "RUN_ERROR"
    STEP_STARTED = "STEP_STARTED"
    STEP_FINISHED = "STEP_FINISHED"
    # Text
    TEXT_MESSAGE_START = "TEXT_MESSAGE_START"
    TEXT_MESSAGE_CONTENT = "TEXT_MESSAGE_CONTENT"
    TEXT_MESSAGE_END = "TEXT_MESSAGE_END"
    # Tool
    TOOL_CALL_START = "TOOL_CALL_START"
    TOOL_CALL_ARGS = "TOOL_CALL_ARGS"
    TOOL_CALL_END = "TOOL_CALL_END"
    TOOL_CALL_RESULT = "TOOL_CALL_RESULT"
    # State
    STATE_SNAPSHOT = "STATE_SNAPSHOT"
    STATE_DELTA = "STATE_DELTA"
    MESSAGES_SNAPSHOT = "MESSAGES_SNAPSHOT"
    # Extension
    CUSTOM = "CUSTOM"
    RAW = "RAW"


class EventFamily(str, Enum):
    """Event families"""

    LIFECYCLE = "lifecycle"
    TEXT = "text"
    TOOL = "tool"
    STATE = "state"
    EXTENSION = "extension"


class RunErrorCode(str, Enum):
    """
    Known error codes carried on RUN_ERROR.
    Producers pick the nearest match; other strings are still accepted.
    """

    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    TOOL_ERROR = "TOOL_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


# ============================================================================
# State Machine Configuration
# ============================================================================

# Valid run status transitions
STATE_TRANSITIONS = {
    RunStatus.NOT_STARTED: [RunStatus.ACTIVE, RunStatus.ERRORED],
    RunStatus.ACTIVE: [RunStatus.FINISHED, RunStatus.ERRORED],
    RunStatus.FINISHED: [],  # Terminal
    RunStatus.ERRORED: [],  # Terminal
}

TERMINAL_STATUSES = frozenset({RunStatus.FINISHED, RunStatus.ERRORED})


# ============================================================================
# Wire base model
# ============================================================================


class CamelModel(BaseModel):
    """
    Immutable wire model: camelCase on the wire, snake_case in Python.
    Unknown fields are ignored; optional fields left at None are omitted
    when serialized.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    @model_serializer(mode="wrap")
    def _omit_empty_optionals(self, handler):
        data = handler(self)
        if not isinstance(data, dict):
            return data
        for name, field in type(self).model_fields.items():
            if field.is_required() or field.default is not None:
                continue
            for key in (name, field.alias):
                if key in data and data[key] is None:
                    del data[key]
        return data


# ============================================================================
# Patch operations
# ============================================================================

PatchOp = Literal["add", "remove", "replace", "move", "copy", "test"]


class PatchOperation(BaseModel):
    """
    One JSON Patch operation.

    'value' is required for add/replace/test (null is a valid value) and
    'from' for move/copy.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    op: PatchOp
    path: str
    from_: Optional[str] = Field(default=None, alias="from")
    value: JsonValue = None

    @model_validator(mode="after")
    def _check_operands(self):
        if self.op in ("move", "copy") and self.from_ is None:
            raise ValueError(f"'{self.op}' operation requires 'from'")
        if self.op in ("add", "replace", "test") and "value" not in self.model_fields_set:
            raise ValueError(f"'{self.op}' operation requires 'value'")
        return self

    @model_serializer(mode="wrap")
    def _serialize(self, handler):
        data = handler(self)
        if self.from_ is None:
            data.pop("from", None)
            data.pop("from_", None)
        if self.op in ("remove", "move", "copy"):
            data.pop("value", None)
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Convert to RFC 6902 dictionary"""
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# Messages
# ============================================================================


class FunctionCall(CamelModel):
    """Function name and JSON-encoded arguments of a tool call"""

    name: str
    arguments: str


class ToolCall(CamelModel):
    """Tool call requested by an assistant message"""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class DeveloperMessage(CamelModel):
    id: str
    role: Literal["developer"] = "developer"
    content: str
    name: Optional[str] = None


class SystemMessage(CamelModel):
    id: str
    role: Literal["system"] = "system"
    content: str
    name: Optional[str] = None


class AssistantMessage(CamelModel):
    id: str
    role: Literal["assistant"] = "assistant"
    content: Optional[str] = None
    name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None


class UserMessage(CamelModel):
    id: str
    role: Literal["user"] = "user"
    content: str
    name: Optional[str] = None


class ToolMessage(CamelModel):
    id: str
    role: Literal["tool"] = "tool"
    content: str
    tool_call_id: str
    error: Optional[str] = None


class ActivityMessage(CamelModel):
    id: str
    role: Literal["activity"] = "activity"
    activity_type: str
    content: Dict[str, JsonValue] = Field(default_factory=dict)


Message = Annotated[
    Union[
        DeveloperMessage,
        SystemMessage,
        AssistantMessage,
        UserMessage,
        ToolMessage,
        ActivityMessage,
    ],
    Field(discriminator="role"),
]


# ============================================================================
# Run request
# ============================================================================


class Tool(CamelModel):
    """Tool descriptor offered to the agent"""

    name: str
    description: str = ""
    parameters: JsonValue = Field(default_factory=dict)


class Context(CamelModel):
    """Free-form context record"""

    description: str
    value: str


class RunAgentInput(CamelModel):
    """
    Inbound run request.

    Carries the conversation so far, the shared state the client holds,
    the tools the client offers and forwarded properties (auth, config).
    """

    thread_id: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    parent_run_id: Optional[str] = None
    state: JsonValue = Field(default_factory=dict)
    messages: List[Message] = Field(default_factory=list)
    tools: List[Tool] = Field(default_factory=list)
    context: List[Context] = Field(default_factory=list)
    forwarded_props: JsonValue = Field(default_factory=dict)

    def last_user_message(self) -> Optional[UserMessage]:
        """Most recent user message, if any"""
        for message in reversed(self.messages):
            if isinstance(message, UserMessage):
                return message
        return None


# ============================================================================
# Run outcome
# ============================================================================


class RunOutcome(BaseModel):
    """Result of driving one run to a terminal status"""

    thread_id: str
    run_id: str
    status: RunStatus
    event_count: int = 0
    violations: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None


# ============================================================================
# API Response Schemas
# ============================================================================


class RunSummaryResponse(BaseModel):
    """Archived run representation"""

    run_id: str
    thread_id: str
    parent_run_id: Optional[str] = None
    status: RunStatus
    event_count: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: float
    finished_at: Optional[float] = None


class RunListResponse(BaseModel):
    """Archived run listing"""

    total: int
    runs: List[RunSummaryResponse]


class RunEventResponse(BaseModel):
    """Archived run event"""

    sequence_number: int
    event_type: EventType
    event_data: Dict[str, Any]
    occurred_at: float


class RunEventsResponse(BaseModel):
    """Archived run event log"""

    run_id: str
    events: List[RunEventResponse]


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    timestamp: float
