"""
Event transport framing.

Outbound: each event becomes one Server-Sent Events block,
'data: <single-line JSON>' followed by a blank line.
Inbound: framed or newline-delimited JSON is split back into payloads and
run requests are parsed from request bodies.

The framing layer never looks inside a payload beyond its outer JSON
envelope; event and request validation live in the model layer.
"""

import codecs
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Union

import structlog
from pydantic import ValidationError

from agui_engine.core.channel import ChannelClosedError, EventChannel
from agui_engine.models.events import BaseEvent, decode_event, encode_event
from agui_engine.models.schemas import RunAgentInput

logger = structlog.get_logger()

EVENT_STREAM_MEDIA_TYPE = "text/event-stream"
FRAME_TERMINATOR = "\n\n"


class TransportError(Exception):
    """Raised when a sink cannot accept a frame"""

    pass


class FrameDecodeError(ValueError):
    """Raised when a frame does not hold a JSON payload"""

    pass


class RequestDecodeError(ValueError):
    """Raised when an inbound run request cannot be parsed"""

    def __init__(self, message: str, errors: List[dict] = None):
        self.errors = errors or []
        super().__init__(message)


# ============================================================================
# Outbound framing
# ============================================================================


def encode_frame(payload: Dict[str, Any]) -> str:
    """Frame one JSON payload as a data block terminated by a blank line"""
    # json.dumps escapes newlines inside strings, so the payload stays on one line
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return f"data: {body}{FRAME_TERMINATOR}"


def frame_event(event: BaseEvent) -> str:
    """Encode and frame one event"""
    return encode_frame(encode_event(event))


# ============================================================================
# Inbound framing
# ============================================================================


class FrameDecoder:
    """
    Incremental splitter for event-stream text.

    feed() accepts arbitrary chunks (bytes or str, CRLF or LF line endings)
    and returns the JSON payloads of every block completed so far. Comment
    lines (':' prefix) and fields other than 'data' are ignored; several
    'data' lines in one block are joined with newlines.
    """

    def __init__(self):
        self._buffer = ""
        self._pending_cr = False
        self._utf8 = codecs.getincrementaldecoder("utf-8")()

    def feed(self, chunk: Union[str, bytes]) -> List[Any]:
        if isinstance(chunk, bytes):
            try:
                # Holds back a multi-byte character split across chunks
                chunk = self._utf8.decode(chunk)
            except UnicodeDecodeError as e:
                raise FrameDecodeError(f"Invalid UTF-8 in stream: {e}") from e

        if self._pending_cr:
            chunk = "\r" + chunk
        # A trailing '\r' may be the first half of a CRLF
        self._pending_cr = chunk.endswith("\r")
        if self._pending_cr:
            chunk = chunk[:-1]

        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        return self._drain()

    def flush(self) -> List[Any]:
        """Parse a trailing block that was not terminated by a blank line"""
        if self._pending_cr:
            self._pending_cr = False
            self._buffer += "\n"
        payloads = self._drain()
        block, self._buffer = self._buffer, ""
        payload = self._parse_block(block.rstrip("\n"))
        if payload is not None:
            payloads.append(payload)
        return payloads

    def _drain(self) -> List[Any]:
        payloads = []
        while FRAME_TERMINATOR in self._buffer:
            block, self._buffer = self._buffer.split(FRAME_TERMINATOR, 1)
            payload = self._parse_block(block)
            if payload is not None:
                payloads.append(payload)
        return payloads

    @staticmethod
    def _parse_block(block: str) -> Any:
        data_lines = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if field != "data":
                continue
            data_lines.append(value[1:] if value.startswith(" ") else value)

        if not data_lines:
            return None

        try:
            return json.loads("\n".join(data_lines))
        except ValueError as e:
            raise FrameDecodeError(f"Frame data is not valid JSON: {e}") from e


def decode_frames(text: Union[str, bytes]) -> List[Any]:
    """Split a complete event-stream document into payloads"""
    decoder = FrameDecoder()
    return decoder.feed(text) + decoder.flush()


async def decode_event_stream(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[BaseEvent]:
    """Decode an async stream of event-stream chunks into events"""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            yield decode_event(payload)
    for payload in decoder.flush():
        yield decode_event(payload)


# ============================================================================
# Run requests
# ============================================================================


def parse_run_request(body: Union[str, bytes, Dict[str, Any]]) -> RunAgentInput:
    """
    Parse one inbound run request.

    Raises:
        RequestDecodeError: Body is not JSON or not a valid run request
    """
    if isinstance(body, (str, bytes)):
        if not body.strip():
            raise RequestDecodeError("Run request body is empty")
        try:
            body = json.loads(body)
        except ValueError as e:
            raise RequestDecodeError(f"Run request is not valid JSON: {e}") from e

    try:
        return RunAgentInput.model_validate(body)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in errors)
        raise RequestDecodeError(f"Invalid run request ({fields})", errors=errors) from e


def iter_run_requests(stream: Union[str, bytes, Iterable[Union[str, bytes]]]) -> Iterable[RunAgentInput]:
    """
    Split a stream holding several run requests.

    Accepts event-stream framing ('data: ...' blocks) or newline-delimited
    JSON, detected from the first non-blank line.
    """
    if isinstance(stream, (str, bytes)):
        stream = [stream]

    decoder = FrameDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    mode = None

    for chunk in stream:
        if isinstance(chunk, bytes):
            chunk = _decode_request_bytes(utf8, chunk)

        if mode is None:
            first_line = (buffer + chunk).lstrip().split("\n", 1)[0]
            if first_line:
                mode = "frames" if first_line.startswith(("data:", ":")) else "lines"

        if mode == "frames":
            for payload in decoder.feed(buffer + chunk):
                yield parse_run_request(payload)
            buffer = ""
            continue

        buffer += chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            if line.strip():
                yield parse_run_request(line)

    # Raises on a multi-byte character cut off at the end of the stream
    _decode_request_bytes(utf8, b"", final=True)

    if mode == "frames":
        for payload in decoder.flush():
            yield parse_run_request(payload)
    elif buffer.strip():
        yield parse_run_request(buffer)


def _decode_request_bytes(decoder: codecs.IncrementalDecoder, data: bytes, final: bool = False) -> str:
    try:
        return decoder.decode(data, final)
    except UnicodeDecodeError as e:
        raise RequestDecodeError(f"Run request stream is not valid UTF-8: {e}") from e


# ============================================================================
# Sinks
# ============================================================================


class EventSink(ABC):
    """Accepts one framed unit at a time; send() may block for backpressure"""

    @abstractmethod
    async def send(self, frame: str):
        """
        Deliver one frame.

        Raises:
            TransportError: The consumer can no longer accept frames
        """
        raise NotImplementedError

    async def close(self):
        """Signal that no more frames follow"""
        return None


class ChannelSink(EventSink):
    """Writes frames into a bounded EventChannel drained by the HTTP stream"""

    def __init__(self, channel: EventChannel):
        self.channel = channel

    async def send(self, frame: str):
        try:
            await self.channel.put(frame)
        except ChannelClosedError as e:
            raise TransportError(str(e)) from e

    async def close(self):
        await self.channel.close()


class CallbackSink(EventSink):
    """Adapts any coroutine function taking a frame"""

    def __init__(self, callback: Callable[[str], Awaitable[None]]):
        self._callback = callback

    async def send(self, frame: str):
        try:
            await self._callback(frame)
        except TransportError:
            raise
        except (OSError, RuntimeError, ConnectionError) as e:
            raise TransportError(f"Sink rejected frame: {e}") from e
