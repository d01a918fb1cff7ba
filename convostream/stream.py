"""
convostream - Stream Decoder

Drives one streaming request from connection to close.

One producer task reads SSE frames off the connection, decodes them and
forwards typed events, in arrival order, on the event channel. Errors go
to a separate, unbounded error channel so the producer never blocks on
them. Both channels are closed exactly once when the producer finishes,
whatever the reason.

Usage:
    results = decoder.start()
    async for event in results.events:
        ...
    async for error in results.errors:
        ...

Or drain both at once:
    events, errors = await results.collect()
"""

import asyncio
import copy
import json
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from opentelemetry.trace import SpanKind

from .content import ContentBlock, TEXT, TOOL_USE
from .errors import ConnectionError, ConvoStreamError, MarshalingError, StreamingError
from .events import (
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ErrorEvent,
    INPUT_JSON_DELTA,
    MessageDeltaEvent,
    MessageStartEvent,
    MessageStopEvent,
    NOOP_FRAMES,
    EVENT_DECODERS,
    StreamEvent,
    StreamEventType,
    TERMINAL_FRAMES,
    TEXT_DELTA,
    decode_event,
    iter_sse_frames,
)
from .logs import get_logger
from .models import Message, Usage
from .tracing import get_tracer, record_error
from .transport import Transport


logger = get_logger(__name__)


# ============================================================
# Channels
# ============================================================

class ChannelClosedError(Exception):
    """Send on, or receive from, a closed and drained channel."""


_CLOSED = object()


class Channel:
    """
    Ordered, closable async channel.

    With maxsize > 0 a sender waits while `maxsize` items are unreceived.
    Closing never blocks: receivers get the remaining items, then stop.

    Args:
        maxsize: Maximum unreceived items (0 means unbounded)
    """

    def __init__(self, maxsize: int = 0):
        self.maxsize = maxsize
        self._queue: asyncio.Queue = asyncio.Queue()
        self._slots: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(maxsize) if maxsize > 0 else None
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: Any) -> None:
        """Send an item, waiting for room on a bounded channel."""
        if self._closed:
            raise ChannelClosedError("send on closed channel")
        if self._slots is not None:
            await self._slots.acquire()
            if self._closed:
                self._slots.release()
                raise ChannelClosedError("send on closed channel")
        self._queue.put_nowait(item)

    def send_nowait(self, item: Any) -> None:
        """Send without waiting. Only valid on unbounded channels."""
        if self._closed:
            raise ChannelClosedError("send on closed channel")
        if self._slots is not None:
            raise RuntimeError("send_nowait requires an unbounded channel")
        self._queue.put_nowait(item)

    async def receive(self) -> Any:
        """
        Receive the next item.

        Raises:
            ChannelClosedError: Channel is closed and drained
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other receiver
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosedError("channel closed")
        if self._slots is not None:
            self._slots.release()
        return item

    def close(self) -> None:
        """Close the channel. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.receive()
        except ChannelClosedError:
            raise StopAsyncIteration


# ============================================================
# Cancellation
# ============================================================

class CancelToken:
    """
    Caller-owned cancellation signal for a stream.

    Cancelling closes the connection and both channels promptly. It is
    never reported as an error.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


# ============================================================
# Results
# ============================================================

class StreamResults:
    """
    Handle on a running stream.

    Attributes:
        events: Ordered channel of StreamEvent
        errors: Ordered channel of ConvoStreamError
        message: Assembled assistant message, once message_stop arrived
        folded: True once the message was folded into history
    """

    def __init__(
        self,
        events: Channel,
        errors: Channel,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.events = events
        self.errors = errors
        self.cancel_token = cancel_token or CancelToken()
        self.message: Optional[Message] = None
        self.folded = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def failed(cls, error: Exception) -> "StreamResults":
        """Results for a stream that failed before connecting."""
        results = cls(Channel(), Channel())
        results.errors.send_nowait(error)
        results.events.close()
        results.errors.close()
        return results

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        """Cancel the stream through its token."""
        self.cancel_token.cancel()

    async def wait(self) -> None:
        """Wait for the producer to finish (folding included)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def collect(self) -> Tuple[List[StreamEvent], List[Exception]]:
        """Drain both channels concurrently, then wait for the producer."""

        async def drain(channel: Channel) -> List[Any]:
            return [item async for item in channel]

        events, errors = await asyncio.gather(drain(self.events), drain(self.errors))
        await self.wait()
        return events, errors


# ============================================================
# Accumulator
# ============================================================

class MessageAccumulator:
    """
    Assembles one assistant message from stream events.

    Blocks are keyed by index; deltas for an index are appended in
    arrival order and indices may interleave. Tool input arrives as
    partial JSON and is parsed when the message is assembled.
    """

    def __init__(self):
        self._message: Optional[Message] = None
        self._blocks: Dict[int, ContentBlock] = {}
        self._json_buffers: Dict[int, List[str]] = {}

    @property
    def started(self) -> bool:
        return self._message is not None

    def apply(self, event: StreamEvent) -> None:
        """
        Fold one event into the message.

        Raises:
            MarshalingError: The event violates the protocol order
                (e.g. a content block before message_start).
        """
        if isinstance(event, MessageStartEvent):
            if self.started:
                raise MarshalingError("duplicate message_start", frame=event.type.value)
            message = copy.deepcopy(event.message)
            self._blocks = dict(enumerate(message.content))
            message.content = []
            if message.usage is None:
                message.usage = Usage()
            self._message = message
            return

        if not self.started:
            raise MarshalingError(
                f"{event.type.value} received before message_start",
                frame=event.type.value,
            )

        if isinstance(event, ContentBlockStartEvent):
            self._blocks[event.index] = copy.deepcopy(event.content_block)
        elif isinstance(event, ContentBlockDeltaEvent):
            self._apply_delta(event)
        elif isinstance(event, MessageDeltaEvent):
            self._message.stop_reason = event.stop_reason
            self._message.stop_sequence = event.stop_sequence
            self._message.usage.output_tokens = event.usage.output_tokens

    def _apply_delta(self, event: ContentBlockDeltaEvent) -> None:
        block = self._blocks.get(event.index)
        if block is None:
            raise MarshalingError(
                f"delta for unknown content block {event.index}",
                frame=event.type.value,
            )

        if event.delta.type == TEXT_DELTA:
            if block.type != TEXT:
                raise MarshalingError(
                    f"text_delta for {block.type} block {event.index}",
                    frame=event.type.value,
                )
            block.text = (block.text or "") + (event.delta.text or "")
        elif event.delta.type == INPUT_JSON_DELTA:
            if block.type != TOOL_USE:
                raise MarshalingError(
                    f"input_json_delta for {block.type} block {event.index}",
                    frame=event.type.value,
                )
            self._json_buffers.setdefault(event.index, []).append(event.delta.partial_json or "")

    def message(self) -> Message:
        """
        Return the assembled message, blocks ordered by index.

        Raises:
            MarshalingError: No message_start seen, or tool input is not
                valid JSON.
        """
        if self._message is None:
            raise MarshalingError("stream produced no message")

        message = copy.deepcopy(self._message)
        for index in sorted(self._blocks):
            block = copy.deepcopy(self._blocks[index])
            buffer = "".join(self._json_buffers.get(index, []))
            if buffer:
                try:
                    block.input = json.loads(buffer)
                except ValueError as e:
                    raise MarshalingError(
                        f"invalid tool input JSON for block {index}: {e}"
                    ) from e
            message.content.append(block)
        return message


# ============================================================
# Decoder
# ============================================================

class DecoderState(str, Enum):
    """Lifecycle of one stream."""
    PENDING = "pending"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class StreamDecoder:
    """
    Consumes one SSE connection and produces StreamResults.

    The request body is built and validated before the decoder is
    created; the decoder never touches conversation state. When the
    stream completes normally, `on_complete` receives the assembled
    message, unless some frame failed to decode.

    Args:
        transport: Transport used to open the connection
        url: Messages endpoint URL
        body: Encoded request body
        cancel_token: Token the caller may use to stop the stream
        on_complete: Called with the assembled message on message_stop
        event_buffer: Unreceived events allowed before the producer waits
    """

    def __init__(
        self,
        transport: Transport,
        url: str,
        body: bytes,
        cancel_token: Optional[CancelToken] = None,
        on_complete: Optional[Callable[[Message], None]] = None,
        event_buffer: int = 1,
    ):
        self.transport = transport
        self.url = url
        self.body = body
        self.cancel_token = cancel_token or CancelToken()
        self.on_complete = on_complete
        self.event_buffer = event_buffer
        self.state = DecoderState.PENDING
        self.decode_errors = 0

    def start(self) -> StreamResults:
        """
        Start the producer task. Must be called from a running event loop.
        """
        results = StreamResults(
            Channel(self.event_buffer), Channel(), cancel_token=self.cancel_token
        )

        if self.cancel_token.cancelled:
            logger.info("Stream cancelled before connecting")
            self._transition(DecoderState.CLOSED)
            results.events.close()
            results.errors.close()
            return results

        task = asyncio.create_task(self._run(results))
        watcher = asyncio.create_task(self._watch(task))
        task.add_done_callback(lambda _: watcher.cancel())
        results._task = task
        return results

    def _transition(self, state: DecoderState) -> None:
        logger.debug("Stream state %s -> %s", self.state.value, state.value)
        self.state = state

    async def _watch(self, task: asyncio.Task) -> None:
        await self.cancel_token.wait()
        task.cancel()

    async def _run(self, results: StreamResults) -> None:
        with get_tracer().start_as_current_span(
            "messages.stream", kind=SpanKind.CLIENT, attributes={"http.url": self.url}
        ) as span:
            try:
                self._transition(DecoderState.CONNECTING)
                async with self.transport.open_stream(self.url, self.body) as lines:
                    self._transition(DecoderState.OPEN)
                    await self._consume(lines, results)
            except asyncio.CancelledError:
                if not self.cancel_token.cancelled:
                    raise
                logger.info("Stream cancelled by caller")
                span.set_attribute("ai.stream.cancelled", True)
            except ConvoStreamError as e:
                if self.cancel_token.cancelled:
                    logger.info("Stream cancelled by caller", error=repr(e))
                    span.set_attribute("ai.stream.cancelled", True)
                else:
                    logger.warning("Stream failed: %s", e.message, code=e.code)
                    record_error(span, e)
                    results.errors.send_nowait(e)
            except Exception as e:
                logger.exception("Unexpected error in stream producer")
                record_error(span, e)
                results.errors.send_nowait(e)
            finally:
                self._transition(DecoderState.CLOSED)
                span.set_attribute("ai.stream.decode_errors", self.decode_errors)
                results.events.close()
                results.errors.close()

    async def _consume(self, lines, results: StreamResults) -> None:
        accumulator = MessageAccumulator()

        async for frame in iter_sse_frames(lines):
            if frame.event not in EVENT_DECODERS:
                logger.warning("Dropping unknown frame", frame=frame.event)
                continue

            try:
                event = decode_event(frame.event, frame.data)
                if frame.event in NOOP_FRAMES:
                    logger.debug("Dropping %s frame", frame.event)
                    continue
                if not isinstance(event, ErrorEvent):
                    accumulator.apply(event)
            except MarshalingError as e:
                if frame.event in TERMINAL_FRAMES:
                    raise
                self.decode_errors += 1
                logger.warning("Frame decode failed: %s", e.message, frame=frame.event)
                results.errors.send_nowait(e)
                continue

            await results.events.send(event)

            if isinstance(event, ErrorEvent):
                raise StreamingError(
                    f"stream error: {event.error_type}: {event.message}",
                    error_type=event.error_type,
                )

            if isinstance(event, MessageStopEvent):
                self._transition(DecoderState.CLOSING)
                self._complete(accumulator, results)
                return

        raise ConnectionError(
            f"stream ended before {StreamEventType.MESSAGE_STOP.value}", url=self.url
        )

    def _complete(self, accumulator: MessageAccumulator, results: StreamResults) -> None:
        message = accumulator.message()
        results.message = message

        if self.decode_errors:
            logger.warning(
                "Not folding streamed message after decode errors",
                decode_errors=self.decode_errors,
            )
            return

        if self.on_complete is not None:
            self.on_complete(message)
            results.folded = True
