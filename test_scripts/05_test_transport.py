#!/usr/bin/env python3
"""
Test: Event Transport
Purpose: Verify event-stream framing and run request parsing

Tests:
- One event per 'data:' block terminated by a blank line
- Payload newlines never break a frame
- Incremental decoder handles arbitrary chunk boundaries (bytes and text)
- Comments, CRLF and multi-line data fields
- Run request parsing from JSON bodies, NDJSON and framed streams
- Sinks translate delivery failures to TransportError
"""

import asyncio
import sys

from fixtures import (
    run_tests, make_text_run,
    assert_equal, assert_true, assert_in, assert_raises, assert_raises_async,
)

from agui_engine.core.channel import EventChannel
from agui_engine.core.transport import (
    CallbackSink,
    ChannelSink,
    EventSink,
    FrameDecodeError,
    FrameDecoder,
    RequestDecodeError,
    TransportError,
    decode_event_stream,
    decode_frames,
    encode_frame,
    frame_event,
    iter_run_requests,
    parse_run_request,
)
from agui_engine.models.events import TextMessageContentEvent, decode_event


# ============================================================================
# Test: Outbound framing
# ============================================================================

async def test_frame_shape():
    """Test a frame is one data line and a blank line"""
    frame = frame_event(TextMessageContentEvent(message_id="m1", delta="line one\nline two"))

    assert_true(frame.startswith("data: "))
    assert_true(frame.endswith("\n\n"))
    assert_equal(frame.count("\n"), 2, "Payload newlines must be escaped")
    assert_in('"messageId":"m1"', frame)


async def test_frames_round_trip():
    """Test a framed run decodes back to the same events"""
    events = make_text_run()
    stream = "".join(frame_event(event) for event in events)

    decoded = [decode_event(payload) for payload in decode_frames(stream)]
    assert_equal(decoded, events)


async def test_unicode_payload():
    """Test non-ASCII text is framed as UTF-8 and decodes intact"""
    frame = encode_frame({"text": "héllo ✓ 日本"})
    assert_equal(decode_frames(frame.encode("utf-8")), [{"text": "héllo ✓ 日本"}])


# ============================================================================
# Test: Incremental decoding
# ============================================================================

async def test_decoder_byte_at_a_time():
    """Test the decoder tolerates any chunk split, including inside a character"""
    events = make_text_run(text="✓ done")
    data = "".join(frame_event(event) for event in events).encode("utf-8")

    decoder = FrameDecoder()
    payloads = []
    for position in range(len(data)):
        payloads.extend(decoder.feed(data[position:position + 1]))
    payloads.extend(decoder.flush())

    assert_equal([decode_event(payload) for payload in payloads], events)


async def test_decoder_crlf_byte_at_a_time():
    """Test a CRLF split across chunks is one line break, not a block boundary"""
    stream = ": ping\r\n\r\ndata: {\"a\":\r\ndata: 1}\r\n\r\ndata: {\"b\": \"✓\"}\r\n\r\n".encode("utf-8")

    decoder = FrameDecoder()
    payloads = []
    for position in range(len(stream)):
        payloads.extend(decoder.feed(stream[position:position + 1]))
    payloads.extend(decoder.flush())
    assert_equal(payloads, [{"a": 1}, {"b": "✓"}])

    decoder = FrameDecoder()
    assert_equal(decoder.feed('data: {"a":\r'), [])
    assert_equal(decoder.feed('\ndata: 1}\r\n\r\n'), [{"a": 1}])

    # A lone trailing CR still ends the line at flush
    decoder = FrameDecoder()
    assert_equal(decoder.feed('data: {"c": 3}\r'), [])
    assert_equal(decoder.flush(), [{"c": 3}])


async def test_decoder_comments_crlf_and_multiline():
    """Test comments are skipped, CRLF normalized and data lines joined"""
    decoder = FrameDecoder()
    stream = ": keep-alive\r\n\r\nevent: message\r\ndata: {\"a\":\r\ndata: 1}\r\nid: 7\r\n\r\n"

    assert_equal(decoder.feed(stream), [{"a": 1}])


async def test_decoder_flush_unterminated():
    """Test a trailing block without a blank line is returned by flush"""
    decoder = FrameDecoder()
    assert_equal(decoder.feed('data: {"x": 1}\n'), [])
    assert_equal(decoder.flush(), [{"x": 1}])
    assert_equal(decoder.flush(), [])


async def test_decoder_rejects_bad_json():
    """Test invalid JSON in a frame raises FrameDecodeError"""
    assert_raises(FrameDecodeError, decode_frames, "data: {not json}\n\n")
    assert_raises(FrameDecodeError, FrameDecoder().feed, b"\xff\xfe data\n\n")


async def test_decode_event_stream():
    """Test async chunk streams decode into events"""
    events = make_text_run()
    data = "".join(frame_event(event) for event in events)

    async def chunks():
        for position in range(0, len(data), 7):
            yield data[position:position + 7]

    decoded = [event async for event in decode_event_stream(chunks())]
    assert_equal(decoded, events)


# ============================================================================
# Test: Run requests
# ============================================================================

async def test_parse_run_request():
    """Test request bodies parse from bytes, text and dicts"""
    body = b'{"threadId": "t1", "runId": "r1", "state": {"a": 1}, "unknown": true}'
    request = parse_run_request(body)
    assert_equal(request.thread_id, "t1")
    assert_equal(request.state, {"a": 1})

    assert_equal(parse_run_request({"threadId": "t", "runId": "r"}).run_id, "r")


async def test_parse_run_request_errors():
    """Test invalid bodies raise RequestDecodeError with details"""
    assert_raises(RequestDecodeError, parse_run_request, b"")
    assert_raises(RequestDecodeError, parse_run_request, "{oops")

    error = assert_raises(RequestDecodeError, parse_run_request, '{"threadId": "t1"}')
    assert_in("runId", str(error))
    assert_true(len(error.errors) >= 1)

    error = assert_raises(
        RequestDecodeError,
        parse_run_request,
        '{"threadId": "t1", "runId": "r1", "messages": [{"id": "1", "role": "robot", "content": "x"}]}',
    )
    assert_in("messages", str(error))


async def test_iter_run_requests_ndjson():
    """Test newline-delimited requests, across chunk boundaries"""
    chunks = ['{"threadId": "t1", "runId": "r1"}\n{"threadId": "t1", ', '"runId": "r2"}\n\n', '{"threadId": "t2", "runId": "r3"}']
    requests = list(iter_run_requests(chunks))
    assert_equal([request.run_id for request in requests], ["r1", "r2", "r3"])


async def test_iter_run_requests_split_character():
    """Test a multi-byte character split between byte chunks"""
    data = '{"threadId": "t✓", "runId": "r1"}\n{"threadId": "t2", "runId": "r2"}\n'.encode("utf-8")
    cut = data.index("✓".encode("utf-8")) + 1
    requests = list(iter_run_requests([data[:cut], data[cut:]]))
    assert_equal([request.thread_id for request in requests], ["t✓", "t2"])

    framed = encode_frame({"threadId": "t✓", "runId": "r1"}).encode("utf-8")
    cut = framed.index("✓".encode("utf-8")) + 2
    requests = list(iter_run_requests([framed[:cut], framed[cut:]]))
    assert_equal([request.thread_id for request in requests], ["t✓"])


async def test_iter_run_requests_invalid_utf8():
    """Test invalid or truncated UTF-8 is a request decode error"""
    assert_raises(RequestDecodeError, list, iter_run_requests([b'{"threadId": "\xff"}\n']))

    truncated = '{"threadId": "t✓"'.encode("utf-8")[:-2]
    assert_raises(RequestDecodeError, list, iter_run_requests([truncated]))


async def test_iter_run_requests_frames():
    """Test framed requests"""
    stream = (
        encode_frame({"threadId": "t1", "runId": "r1"})
        + ": comment\n\n"
        + encode_frame({"threadId": "t1", "runId": "r2"})
    )
    requests = list(iter_run_requests(stream.encode("utf-8")))
    assert_equal([request.run_id for request in requests], ["r1", "r2"])


# ============================================================================
# Test: Sinks
# ============================================================================

async def test_channel_sink():
    """Test channel sink delivers frames and maps closed channels"""
    channel = EventChannel(max_queue_size=10, name="test")
    sink = ChannelSink(channel)

    await sink.send("data: 1\n\n")
    await sink.close()
    received = [frame async for frame in channel]
    assert_equal(received, ["data: 1\n\n"])

    await assert_raises_async(TransportError, sink.send("data: 2\n\n"))

    detached = EventChannel(name="gone")
    detached.detach()
    await assert_raises_async(TransportError, ChannelSink(detached).send("x"))


async def test_callback_sink():
    """Test callback sink wraps I/O failures"""
    received = []

    async def collect(frame):
        received.append(frame)

    await CallbackSink(collect).send("a")
    assert_equal(received, ["a"])

    async def broken(frame):
        raise ConnectionResetError("peer reset")

    error = await assert_raises_async(TransportError, CallbackSink(broken).send("b"))
    assert_in("peer reset", str(error))


async def test_sink_contract_is_abstract():
    """Test sinks must implement send; close defaults to a no-op"""
    assert_raises(TypeError, EventSink)

    class Quiet(EventSink):
        async def send(self, frame):
            return None

    assert_equal(await Quiet().close(), None)


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all transport tests"""
    return await run_tests("Event Transport Tests", [
        ("Frame shape", test_frame_shape),
        ("Frames round trip", test_frames_round_trip),
        ("Unicode payload", test_unicode_payload),
        ("Decoder: byte at a time", test_decoder_byte_at_a_time),
        ("Decoder: CRLF byte at a time", test_decoder_crlf_byte_at_a_time),
        ("Decoder: comments, CRLF, multi-line data", test_decoder_comments_crlf_and_multiline),
        ("Decoder: flush unterminated block", test_decoder_flush_unterminated),
        ("Decoder: rejects bad JSON", test_decoder_rejects_bad_json),
        ("Async event stream decoding", test_decode_event_stream),
        ("Parse run request", test_parse_run_request),
        ("Parse run request errors", test_parse_run_request_errors),
        ("Iterate requests: NDJSON", test_iter_run_requests_ndjson),
        ("Iterate requests: split character", test_iter_run_requests_split_character),
        ("Iterate requests: invalid UTF-8", test_iter_run_requests_invalid_utf8),
        ("Iterate requests: frames", test_iter_run_requests_frames),
        ("Channel sink", test_channel_sink),
        ("Callback sink", test_callback_sink),
        ("Sink contract is abstract", test_sink_contract_is_abstract),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
