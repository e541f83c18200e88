#!/usr/bin/env python3
"""
Test: Event Model
Purpose: Verify event encoding/decoding on the wire

Tests:
- Every event kind survives encode -> decode unchanged
- Wire keys are camelCase; optional fields left unset are omitted
- Unknown fields are ignored
- Missing required fields name the field
- Unknown event types are rejected
- Events are immutable
- Run requests decode with defaults and role-tagged messages
"""

import asyncio
import json
import sys

from fixtures import (
    run_tests,
    assert_equal, assert_true, assert_in, assert_not_in, assert_raises,
)

from pydantic import ValidationError

from agui_engine.models.events import (
    EVENT_CLASSES,
    EVENT_FAMILIES,
    CustomEvent,
    EventDecodeError,
    MessagesSnapshotEvent,
    RawEvent,
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StateDeltaEvent,
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
    decode_event,
    encode_event,
)
from agui_engine.models.schemas import (
    AssistantMessage,
    EventFamily,
    EventType,
    PatchOperation,
    RunAgentInput,
    ToolMessage,
    UserMessage,
)


def sample_events():
    """One instance of every event kind"""
    return [
        RunStartedEvent(thread_id="t1", run_id="r1", parent_run_id="r0", timestamp=1700000000000),
        RunFinishedEvent(thread_id="t1", run_id="r1", result={"answer": 42}),
        RunErrorEvent(message="boom", code="INTERNAL_ERROR"),
        StepStartedEvent(step_name="plan"),
        StepFinishedEvent(step_name="plan"),
        TextMessageStartEvent(message_id="m1"),
        TextMessageContentEvent(message_id="m1", delta="Hi\nthere"),
        TextMessageEndEvent(message_id="m1"),
        ToolCallStartEvent(tool_call_id="c1", tool_call_name="search", parent_message_id="m1"),
        ToolCallArgsEvent(tool_call_id="c1", delta='{"q": "x"}'),
        ToolCallEndEvent(tool_call_id="c1"),
        ToolCallResultEvent(message_id="m2", tool_call_id="c1", content="found"),
        StateSnapshotEvent(snapshot={"loading": True, "results": [], "flag": None}),
        StateDeltaEvent(delta=[
            PatchOperation(op="replace", path="/loading", value=False),
            PatchOperation(op="add", path="/results/-", value={"id": 1}),
            PatchOperation(op="move", path="/b", from_="/a"),
            PatchOperation(op="add", path="/nothing", value=None),
        ]),
        MessagesSnapshotEvent(messages=[
            UserMessage(id="u1", content="hello"),
            AssistantMessage(id="a1", content="hi"),
            ToolMessage(id="t1", content="result", tool_call_id="c1"),
        ]),
        CustomEvent(name="progress", value={"pct": 50}),
        RawEvent(event={"vendor": "x"}, source="upstream"),
    ]


# ============================================================================
# Test: Round trip
# ============================================================================

async def test_round_trip_all_kinds():
    """Test every event kind decodes back to an equal event"""
    events = sample_events()
    assert_equal(len({event.type for event in events}), len(EVENT_CLASSES), "Sample covers every kind")

    for event in events:
        decoded = decode_event(encode_event(event))
        assert_equal(decoded, event, f"{event.type} round trip")
        assert_equal(type(decoded), type(event))

        # Through a JSON string as well
        decoded = decode_event(json.dumps(encode_event(event)))
        assert_equal(decoded, event, f"{event.type} round trip via JSON text")


# ============================================================================
# Test: Wire format
# ============================================================================

async def test_wire_keys_are_camel_case():
    """Test encoded keys use camelCase and unset optionals are omitted"""
    payload = encode_event(ToolCallStartEvent(tool_call_id="c1", tool_call_name="search"))

    assert_equal(payload["type"], "TOOL_CALL_START")
    assert_equal(payload["toolCallId"], "c1")
    assert_equal(payload["toolCallName"], "search")
    assert_not_in("parentMessageId", payload, "Unset optional should be omitted")
    assert_not_in("timestamp", payload)
    assert_not_in("tool_call_id", payload)


async def test_patch_operation_wire_shape():
    """Test patch operations encode to RFC 6902 objects"""
    payload = encode_event(StateDeltaEvent(delta=[
        PatchOperation(op="remove", path="/a"),
        PatchOperation(op="copy", path="/c", from_="/b"),
        PatchOperation(op="add", path="/n", value=None),
    ]))

    assert_equal(payload["delta"][0], {"op": "remove", "path": "/a"})
    assert_equal(payload["delta"][1], {"op": "copy", "path": "/c", "from": "/b"})
    assert_equal(payload["delta"][2], {"op": "add", "path": "/n", "value": None}, "null value is kept")


async def test_unknown_fields_ignored():
    """Test unknown fields in an inbound payload are ignored"""
    event = decode_event({
        "type": "TEXT_MESSAGE_CONTENT",
        "messageId": "m1",
        "delta": "x",
        "futureField": {"nested": True},
    })

    assert_true(isinstance(event, TextMessageContentEvent))
    assert_equal(event.delta, "x")
    assert_not_in("futureField", encode_event(event))


async def test_missing_field_is_named():
    """Test decode failure reports the missing wire field"""
    error = assert_raises(EventDecodeError, decode_event, {"type": "TEXT_MESSAGE_CONTENT", "delta": "x"})
    assert_equal(error.field, "messageId")
    assert_equal(error.event_type, "TEXT_MESSAGE_CONTENT")
    assert_in("messageId", str(error))


async def test_unknown_type_rejected():
    """Test unknown or missing discriminator is rejected"""
    error = assert_raises(EventDecodeError, decode_event, {"type": "NOT_A_THING"})
    assert_equal(error.field, "type")

    error = assert_raises(EventDecodeError, decode_event, {"messageId": "m1"})
    assert_equal(error.field, "type")

    assert_raises(EventDecodeError, decode_event, "not json")
    assert_raises(EventDecodeError, decode_event, "[1, 2]")


async def test_empty_content_delta_rejected():
    """Test text content deltas must be non-empty"""
    error = assert_raises(
        EventDecodeError, decode_event, {"type": "TEXT_MESSAGE_CONTENT", "messageId": "m1", "delta": ""}
    )
    assert_equal(error.field, "delta")


async def test_events_are_immutable():
    """Test events cannot be mutated after construction"""
    event = TextMessageStartEvent(message_id="m1")
    assert_raises(ValidationError, setattr, event, "message_id", "m2")


async def test_event_families():
    """Test every kind belongs to exactly one family"""
    assert_equal(set(EVENT_FAMILIES.keys()), set(EventType))
    assert_equal(StateDeltaEvent(delta=[]).family, EventFamily.STATE)
    assert_equal(ToolCallResultEvent(message_id="m", tool_call_id="c", content="x").family, EventFamily.TOOL)
    assert_equal(RunErrorEvent(message="x").family, EventFamily.LIFECYCLE)
    assert_equal(RawEvent(event=1).family, EventFamily.EXTENSION)


# ============================================================================
# Test: Run request
# ============================================================================

async def test_run_request_defaults():
    """Test a minimal run request gets empty defaults"""
    request = RunAgentInput.model_validate({"threadId": "t1", "runId": "r1"})

    assert_equal(request.thread_id, "t1")
    assert_equal(request.state, {})
    assert_equal(request.messages, [])
    assert_equal(request.tools, [])
    assert_equal(request.forwarded_props, {})
    assert_equal(request.last_user_message(), None)


async def test_run_request_messages_by_role():
    """Test messages decode to the class matching their role"""
    request = RunAgentInput.model_validate({
        "threadId": "t1",
        "runId": "r1",
        "messages": [
            {"id": "1", "role": "user", "content": "first"},
            {"id": "2", "role": "assistant", "toolCalls": [
                {"id": "c1", "type": "function", "function": {"name": "search", "arguments": "{}"}}
            ]},
            {"id": "3", "role": "tool", "content": "ok", "toolCallId": "c1"},
            {"id": "4", "role": "user", "content": "second"},
            {"id": "5", "role": "activity", "activityType": "plan", "content": {"steps": 2}},
        ],
        "tools": [{"name": "search", "description": "Search", "parameters": {"type": "object"}}],
        "context": [{"description": "tz", "value": "UTC"}],
    })

    assert_true(isinstance(request.messages[1], AssistantMessage))
    assert_equal(request.messages[1].tool_calls[0].function.name, "search")
    assert_equal(request.messages[2].tool_call_id, "c1")
    assert_equal(request.last_user_message().content, "second")
    assert_equal(request.tools[0].name, "search")


async def test_run_request_requires_ids():
    """Test empty or missing ids are rejected"""
    assert_raises(ValidationError, RunAgentInput.model_validate, {"threadId": "t1"})
    assert_raises(ValidationError, RunAgentInput.model_validate, {"threadId": "", "runId": "r1"})
    assert_equal(
        RunAgentInput.model_validate({"thread_id": "t1", "run_id": "r1"}).thread_id,
        "t1",
        "Field names are accepted as well as aliases",
    )


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all event model tests"""
    return await run_tests("Event Model Tests", [
        ("Round trip: every event kind", test_round_trip_all_kinds),
        ("Wire keys are camelCase", test_wire_keys_are_camel_case),
        ("Patch operation wire shape", test_patch_operation_wire_shape),
        ("Unknown fields ignored", test_unknown_fields_ignored),
        ("Missing field is named", test_missing_field_is_named),
        ("Unknown type rejected", test_unknown_type_rejected),
        ("Empty content delta rejected", test_empty_content_delta_rejected),
        ("Events are immutable", test_events_are_immutable),
        ("Event families", test_event_families),
        ("Run request defaults", test_run_request_defaults),
        ("Run request messages by role", test_run_request_messages_by_role),
        ("Run request requires ids", test_run_request_requires_ids),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
