"""
convostream - Stream Events

Typed events for the Messages streaming protocol, plus the SSE frame
parser that feeds them.

Frames arrive as:

    event: content_block_delta
    data: {"type": "content_block_delta", "index": 0, "delta": {...}}

Each named frame is decoded by one function in EVENT_DECODERS.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, ClassVar, Dict, List, Optional, Union

from .content import ContentBlock
from .errors import MarshalingError
from .models import Message, Usage


class StreamEventType(str, Enum):
    """SSE frame names of the Messages streaming protocol."""
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"
    PING = "ping"


# Acknowledged and dropped by the decoder
NOOP_FRAMES = frozenset({StreamEventType.PING.value, StreamEventType.CONTENT_BLOCK_STOP.value})

# A decode failure on these ends the stream
TERMINAL_FRAMES = frozenset({StreamEventType.MESSAGE_STOP.value, StreamEventType.ERROR.value})

TEXT_DELTA = "text_delta"
INPUT_JSON_DELTA = "input_json_delta"
DELTA_TYPES = (TEXT_DELTA, INPUT_JSON_DELTA)


# ============================================================
# Event Types
# ============================================================

@dataclass
class MessageStartEvent:
    """Stream opened; carries the partial assistant message."""
    message: Message
    type: ClassVar[StreamEventType] = StreamEventType.MESSAGE_START


@dataclass
class ContentBlockStartEvent:
    """A content block at `index` begins."""
    index: int
    content_block: ContentBlock
    type: ClassVar[StreamEventType] = StreamEventType.CONTENT_BLOCK_START


@dataclass
class ContentDelta:
    """Fragment of a content block: text or partial tool input JSON."""
    type: str
    text: Optional[str] = None
    partial_json: Optional[str] = None


@dataclass
class ContentBlockDeltaEvent:
    """A fragment for the content block at `index`."""
    index: int
    delta: ContentDelta
    type: ClassVar[StreamEventType] = StreamEventType.CONTENT_BLOCK_DELTA


@dataclass
class ContentBlockStopEvent:
    index: int
    type: ClassVar[StreamEventType] = StreamEventType.CONTENT_BLOCK_STOP


@dataclass
class MessageDeltaEvent:
    """Top-level message changes: stop reason and output usage."""
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    type: ClassVar[StreamEventType] = StreamEventType.MESSAGE_DELTA


@dataclass
class MessageStopEvent:
    type: ClassVar[StreamEventType] = StreamEventType.MESSAGE_STOP


@dataclass
class ErrorEvent:
    """Provider-reported error frame."""
    error_type: str
    message: str
    type: ClassVar[StreamEventType] = StreamEventType.ERROR


@dataclass
class PingEvent:
    type: ClassVar[StreamEventType] = StreamEventType.PING


StreamEvent = Union[
    MessageStartEvent,
    ContentBlockStartEvent,
    ContentBlockDeltaEvent,
    ContentBlockStopEvent,
    MessageDeltaEvent,
    MessageStopEvent,
    ErrorEvent,
    PingEvent,
]


# ============================================================
# Decoders
# ============================================================

def _index(data: Dict[str, Any]) -> int:
    index = data["index"]
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        raise ValueError(f"index must be a non-negative integer, got {index!r}")
    return index


def _decode_message_start(data: Dict[str, Any]) -> MessageStartEvent:
    return MessageStartEvent(message=Message.from_dict(data["message"]))


def _decode_content_block_start(data: Dict[str, Any]) -> ContentBlockStartEvent:
    return ContentBlockStartEvent(
        index=_index(data),
        content_block=ContentBlock.from_dict(data["content_block"]),
    )


def _decode_content_block_delta(data: Dict[str, Any]) -> ContentBlockDeltaEvent:
    delta = data["delta"]
    delta_type = delta["type"]
    if delta_type not in DELTA_TYPES:
        raise ValueError(f"unknown delta type {delta_type!r}")
    if delta_type == TEXT_DELTA and not isinstance(delta.get("text"), str):
        raise ValueError("text_delta without text")
    if delta_type == INPUT_JSON_DELTA and not isinstance(delta.get("partial_json"), str):
        raise ValueError("input_json_delta without partial_json")
    return ContentBlockDeltaEvent(
        index=_index(data),
        delta=ContentDelta(
            type=delta_type,
            text=delta.get("text"),
            partial_json=delta.get("partial_json"),
        ),
    )


def _decode_content_block_stop(data: Dict[str, Any]) -> ContentBlockStopEvent:
    return ContentBlockStopEvent(index=_index(data))


def _decode_message_delta(data: Dict[str, Any]) -> MessageDeltaEvent:
    delta = data.get("delta") or {}
    usage = data.get("usage") or {}
    return MessageDeltaEvent(
        stop_reason=delta.get("stop_reason"),
        stop_sequence=delta.get("stop_sequence"),
        usage=Usage(output_tokens=int(usage.get("output_tokens") or 0)),
    )


def _decode_message_stop(data: Dict[str, Any]) -> MessageStopEvent:
    return MessageStopEvent()


def _decode_error(data: Dict[str, Any]) -> ErrorEvent:
    error = data["error"]
    return ErrorEvent(
        error_type=str(error.get("type") or "error"),
        message=str(error.get("message") or ""),
    )


def _decode_ping(data: Dict[str, Any]) -> PingEvent:
    return PingEvent()


EVENT_DECODERS: Dict[str, Callable[[Dict[str, Any]], StreamEvent]] = {
    StreamEventType.MESSAGE_START.value: _decode_message_start,
    StreamEventType.CONTENT_BLOCK_START.value: _decode_content_block_start,
    StreamEventType.CONTENT_BLOCK_DELTA.value: _decode_content_block_delta,
    StreamEventType.CONTENT_BLOCK_STOP.value: _decode_content_block_stop,
    StreamEventType.MESSAGE_DELTA.value: _decode_message_delta,
    StreamEventType.MESSAGE_STOP.value: _decode_message_stop,
    StreamEventType.ERROR.value: _decode_error,
    StreamEventType.PING.value: _decode_ping,
}


def decode_event(name: str, data: str) -> StreamEvent:
    """
    Decode one named SSE frame.

    Args:
        name: Frame name (the SSE `event:` field)
        data: Raw frame payload (the joined `data:` lines)

    Raises:
        MarshalingError: Unknown frame name, invalid JSON, or a payload
            that does not match the frame's schema.
    """
    decoder = EVENT_DECODERS.get(name)
    if decoder is None:
        raise MarshalingError(f"unknown stream event: {name}", frame=name)

    try:
        payload = json.loads(data) if data else {}
    except ValueError as e:
        raise MarshalingError(f"invalid JSON in {name} frame: {e}", frame=name) from e
    if not isinstance(payload, dict):
        raise MarshalingError(f"{name} frame payload is not an object", frame=name)

    try:
        return decoder(payload)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MarshalingError(f"malformed {name} frame: {e!r}", frame=name) from e


# ============================================================
# SSE Framing
# ============================================================

@dataclass
class SSEFrame:
    """One dispatched server-sent event."""
    event: str
    data: str


def _frame_name(event: str, data: str) -> str:
    if event:
        return event
    # Some proxies strip the event line; the payload still names its type
    try:
        payload = json.loads(data)
    except ValueError:
        return "message"
    if isinstance(payload, dict) and isinstance(payload.get("type"), str):
        return payload["type"]
    return "message"


async def iter_sse_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    """
    Group SSE lines into frames.

    A blank line dispatches the pending frame; lines starting with ":"
    are comments. A frame still pending when the lines run out is
    dispatched as well.
    """
    event = ""
    data_lines: List[str] = []

    async for raw in lines:
        line = raw.rstrip("\r\n")

        if not line:
            if data_lines or event:
                data = "\n".join(data_lines)
                yield SSEFrame(event=_frame_name(event, data), data=data)
            event = ""
            data_lines = []
            continue

        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)

    if data_lines or event:
        data = "\n".join(data_lines)
        yield SSEFrame(event=_frame_name(event, data), data=data)
