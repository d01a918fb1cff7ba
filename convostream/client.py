"""
convostream - Conversation Client

Main entry point: owns one conversation and extends it by blocking
sends or incremental streams.

Example:
    >>> config = ClientConfig.from_env(model="haiku")
    >>> with ConversationClient(config) as client:
    ...     client.add_user("Hello!")
    ...     reply = client.send()
    ...     print(reply.text)
"""

from __future__ import annotations

import copy
import functools
import json
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import ClientConfig
from .content import TEXT, ContentBlock, image_block, text_block, tool_result_block
from .errors import (
    ConfigurationError,
    ConvoStreamError,
    MarshalingError,
    PersistenceError,
    ValidationError,
)
from .logs import LogContext, get_logger
from .models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    Conversation,
    GenerationParams,
    Message,
    ToolChoice,
    ToolParam,
    validate_message,
)
from .request_builder import RequestBuilder
from .store import BaseConversationStore
from .stream import CancelToken, StreamDecoder, StreamResults
from .tracing import trace_api_call
from .transport import Transport


logger = get_logger(__name__)


class ConversationClient:
    """
    Conversation controller.

    History is mutated only here, under one lock. Every mutating call is
    all-or-nothing: on failure the history is left as it was.

    Args:
        config: Validated client configuration
        store: Optional store; when set, every appended reply is persisted
        transport: Optional transport (defaults to one built from config)
        params: Default generation parameters

    Raises:
        ConfigurationError: config is missing
        ValidationError: params are invalid for the configured model
    """

    def __init__(
        self,
        config: ClientConfig,
        store: Optional[BaseConversationStore] = None,
        transport: Optional[Transport] = None,
        params: Optional[GenerationParams] = None,
    ):
        if config is None:
            raise ConfigurationError("config is required", code="missing_config")

        self.config = config
        self.store = store
        self.transport = transport or Transport(config)
        self._builder = RequestBuilder(config)
        self._params = params.copy() if params is not None else GenerationParams()
        self._builder.check_params(self._params)
        self._conversation = Conversation(model=config.model.name)
        self._lock = threading.Lock()

    # ============================================================
    # Accessors
    # ============================================================

    @property
    def model(self) -> str:
        """Model name of the current conversation."""
        with self._lock:
            return self._conversation.model

    @property
    def conversation(self) -> Conversation:
        """Copy of the current conversation."""
        with self._lock:
            return copy.deepcopy(self._conversation)

    @property
    def messages(self) -> List[Message]:
        """Copy of the current message history."""
        with self._lock:
            return copy.deepcopy(self._conversation.messages)

    @property
    def request_params(self) -> GenerationParams:
        """Copy of the default generation parameters."""
        return self._params.copy()

    # ============================================================
    # Turns
    # ============================================================

    def add_turn(self, role: str, content: Sequence[ContentBlock]) -> Message:
        """
        Validate and append one message.

        Raises:
            ValidationError: Unknown role or invalid content. Nothing is
                appended.
        """
        message = Message(role=role, content=copy.deepcopy(list(content)))
        validate_message(message)

        with self._lock:
            self._conversation.messages.append(message)
            self._conversation.touch()
            count = len(self._conversation.messages)

        logger.debug("Message appended", role=role, blocks=len(message.content), count=count)
        return copy.deepcopy(message)

    def add_user(self, text: str) -> Message:
        return self.add_turn(USER_ROLE, [text_block(text)])

    def add_assistant(self, text: str) -> Message:
        return self.add_turn(ASSISTANT_ROLE, [text_block(text)])

    def add_user_image(self, data: bytes, media_type: str, prompt: Optional[str] = None) -> Message:
        """Append a user turn holding an image and an optional text prompt."""
        content = [image_block(data, media_type)]
        if prompt:
            content.append(text_block(prompt))
        return self.add_turn(USER_ROLE, content)

    def add_tool_result(
        self,
        tool_use_id: str,
        content: str,
        is_error: Optional[bool] = None
    ) -> Message:
        """Append a user turn answering a tool_use block."""
        return self.add_turn(USER_ROLE, [tool_result_block(tool_use_id, content, is_error)])

    # ============================================================
    # Parameters
    # ============================================================

    def set_system_prompt(self, prompt: Optional[str]) -> None:
        self._params.system = prompt

    def set_user_id(self, user_id: Optional[str]) -> None:
        self._params.user_id = user_id

    def set_max_tokens(self, max_tokens: int) -> None:
        """
        Set max output tokens.

        Raises:
            ValidationError: Above the current model's ceiling, or below 1.
        """
        candidate = self._params.copy(max_tokens=max_tokens)
        self._builder.check_params(candidate, self._builder.resolve_spec(self.model))
        self._params = candidate

    def set_streaming(self, stream: bool) -> None:
        self._params.stream = stream

    def add_tool(
        self,
        name: str,
        input_schema: Optional[Dict[str, Any]] = None,
        description: str = ""
    ) -> None:
        tool = ToolParam(name=name, description=description)
        if input_schema is not None:
            tool.input_schema = copy.deepcopy(input_schema)
        self._params.tools.append(tool)

    def set_tool_choice_auto(self) -> None:
        self._params.tool_choice = ToolChoice.auto()

    def set_tool_choice_any(self) -> None:
        self._params.tool_choice = ToolChoice.any()

    def set_tool_choice_tool(self, name: str) -> None:
        self._params.tool_choice = ToolChoice.tool(name)

    # ============================================================
    # Operations
    # ============================================================

    def send(self, params: Optional[GenerationParams] = None) -> Message:
        """
        Send the conversation and append the reply.

        Streaming is always off for this call.

        Args:
            params: Parameters for this call only (defaults to the
                client's parameters)

        Returns:
            The assistant reply (a copy).

        Raises:
            ValidationError: Request failed validation; nothing was sent
            TransportError: HTTP exchange failed
            MarshalingError: Request or response could not be encoded/decoded,
                or the reply has no content that could be sent back
            PersistenceError: Reply could not be persisted; it is not kept
        """
        effective = (params or self._params).copy(stream=False)

        with self._operation("send"):
            conversation = self.conversation
            request = self._builder.build(conversation, effective)
            body = request.to_json()

            with trace_api_call("messages.send", model=request.model) as span:
                raw = self.transport.post(self.config.messages_url, body)
                reply = self._decode_reply(raw)
                if reply.usage is not None:
                    span.set_attribute("ai.tokens.input", reply.usage.input_tokens)
                    span.set_attribute("ai.tokens.output", reply.usage.output_tokens)

            reply = self._append_reply(reply, conversation)
            logger.info("Reply appended", stop_reason=reply.stop_reason or "")
            return copy.deepcopy(reply)

    async def stream(
        self,
        params: Optional[GenerationParams] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> StreamResults:
        """
        Stream a reply to the conversation.

        Returns immediately with the results; events and errors arrive on
        its channels. When the stream completes without decode errors the
        assembled message is appended to history, exactly like send().
        If the history changed while the stream was running, the message
        is not appended and a ValidationError is reported instead.
        A request that fails validation returns results holding that one
        error, with both channels closed.

        Args:
            params: Parameters for this call only
            cancel_token: Token to stop the stream early
        """
        effective = (params or self._params).copy(stream=True)

        with self._operation("stream"):
            conversation = self.conversation
            try:
                request = self._builder.build(conversation, effective)
                body = request.to_json()
            except ConvoStreamError as e:
                logger.warning("Stream rejected before connecting: %s", e.message, code=e.code)
                return StreamResults.failed(e)

            decoder = StreamDecoder(
                self.transport,
                self.config.messages_url,
                body,
                cancel_token=cancel_token,
                on_complete=functools.partial(self._fold, base=conversation),
            )
            # The producer task inherits the current log context
            return decoder.start()

    def reset_conversation(self, model: Optional[str] = None) -> None:
        """
        Start a new, empty conversation, optionally on another model.

        Stored state is untouched until the next save.

        Raises:
            ConfigurationError: model is not in the model table
        """
        with self._lock:
            if model is not None:
                self.config = self.config.with_model(model)
                self._builder = RequestBuilder(self.config)
            self._conversation = Conversation(model=self.config.model.name)
        logger.info("Conversation reset", model=self.config.model.name)

    def save_conversation(self) -> None:
        """
        Persist the current conversation.

        Raises:
            ConfigurationError: No store configured
            PersistenceError: Store write failed
        """
        store = self._require_store()
        with self._lock:
            store.save(self._conversation)

    def load_conversation(self) -> Optional[Conversation]:
        """
        Replace the current conversation with the stored one.

        Returns:
            Copy of the loaded conversation, or None if the store is
            empty (the current conversation is kept).

        Raises:
            ConfigurationError: No store configured
            PersistenceError: Store read or decode failed
        """
        store = self._require_store()
        loaded = store.load()
        if loaded is None:
            return None

        with self._lock:
            self._conversation = loaded
            logger.info(
                "Conversation loaded",
                loaded_conversation=loaded.id,
                count=len(loaded.messages),
            )
            return copy.deepcopy(loaded)

    # ============================================================
    # Internals
    # ============================================================

    @contextmanager
    def _operation(self, operation: str) -> Iterator[LogContext]:
        with self._lock:
            conversation_id = self._conversation.id
            model = self._conversation.model
        ctx = LogContext(
            request_id=f"op_{uuid.uuid4().hex[:12]}",
            conversation_id=conversation_id,
            model=model,
            operation=operation,
        )
        token = LogContext.set_current(ctx)
        try:
            yield ctx
        finally:
            LogContext.reset(token)

    def _require_store(self) -> BaseConversationStore:
        if self.store is None:
            raise ConfigurationError("no conversation store configured", code="missing_store")
        return self.store

    def _decode_reply(self, raw: bytes) -> Message:
        try:
            data = json.loads(raw)
            reply = Message.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise MarshalingError(f"unmarshaling response: {e!r}") from e
        if reply.role != ASSISTANT_ROLE:
            raise MarshalingError(f"unexpected reply role: {reply.role!r}")
        return reply

    def _clean_reply(self, reply: Message) -> Message:
        """
        Return a copy of the reply that can be sent back in a later request.

        Empty text blocks are dropped.

        Raises:
            MarshalingError: Nothing sendable is left, or a block is invalid
        """
        cleaned = copy.deepcopy(reply)
        cleaned.content = [
            block for block in cleaned.content
            if not (block.type == TEXT and not block.text)
        ]
        if not cleaned.content:
            raise MarshalingError("reply has no content", code="empty_reply")
        try:
            validate_message(cleaned)
        except ValidationError as e:
            raise MarshalingError(f"invalid reply: {e.message}") from e
        return cleaned

    def _append_reply(self, reply: Message, base: Conversation) -> Message:
        """
        Append a reply to the history its request was built from, then persist.

        `base` is the conversation snapshot the request was built from. A
        failed persist removes the reply again.

        Raises:
            MarshalingError: Reply has no sendable content
            ValidationError: History changed since the request was built
            PersistenceError: Store write failed
        """
        reply = self._clean_reply(reply)

        with self._lock:
            if (
                self._conversation.id != base.id
                or len(self._conversation.messages) != len(base.messages)
            ):
                raise ValidationError(
                    "conversation changed while the request was in flight; reply not appended",
                    param="messages",
                    code="conversation_changed",
                )

            previous_updated = self._conversation.updated
            self._conversation.messages.append(copy.deepcopy(reply))
            self._conversation.touch()

            if self.store is None:
                return reply
            try:
                self.store.save(self._conversation)
            except PersistenceError:
                self._conversation.messages.pop()
                self._conversation.updated = previous_updated
                logger.warning("Persist failed, reply rolled back")
                raise
            return reply

    def _fold(self, message: Message, base: Conversation) -> None:
        self._append_reply(message, base)
        logger.info("Streamed reply folded", stop_reason=message.stop_reason or "")

    # ============================================================
    # Lifecycle
    # ============================================================

    def close(self) -> None:
        """Close the sync HTTP client."""
        self.transport.close()

    async def aclose(self) -> None:
        """Close all HTTP clients."""
        await self.transport.aclose()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()
