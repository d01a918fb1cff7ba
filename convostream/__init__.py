"""
convostream

Streaming conversation client for the Anthropic Messages API.

Quick Start:
    from convostream import ClientConfig, ConversationClient

    config = ClientConfig.from_env(model="haiku")
    client = ConversationClient(config)

    # Blocking send
    client.add_user("Hello!")
    reply = client.send()
    print(reply.text)

    # Streaming
    client.add_user("Tell me a story")
    results = await client.stream()
    async for event in results.events:
        if event.type == "content_block_delta":
            print(event.delta.text, end="", flush=True)
    async for error in results.errors:
        print("stream error:", error)

    # Persistence
    client = ConversationClient(config, store=FileConversationStore("chat.json"))
    client.load_conversation()
"""

from .version import __version__
from .client import ConversationClient
from .config import (
    ClientConfig,
    ConfigBuilder,
    ModelSpec,
    MODELS,
    resolve_model,
)
from .content import (
    ContentBlock,
    ImageSource,
    ToolResultContent,
    SUPPORTED_MEDIA_TYPES,
    text_block,
    image_block,
    tool_use_block,
    tool_result_block,
    validate_block,
)
from .models import (
    Conversation,
    Message,
    Usage,
    ToolParam,
    ToolChoice,
    GenerationParams,
    GenerationRequest,
    STOP_REASONS,
    validate_message,
)
from .events import (
    StreamEvent,
    StreamEventType,
    MessageStartEvent,
    ContentBlockStartEvent,
    ContentBlockDeltaEvent,
    ContentBlockStopEvent,
    ContentDelta,
    MessageDeltaEvent,
    MessageStopEvent,
    ErrorEvent,
    PingEvent,
)
from .stream import (
    CancelToken,
    Channel,
    ChannelClosedError,
    StreamDecoder,
    StreamResults,
)
from .store import (
    BaseConversationStore,
    FileConversationStore,
    InMemoryConversationStore,
)
from .request_builder import RequestBuilder
from .transport import Transport
from .errors import (
    ConvoStreamError,
    ConfigurationError,
    ValidationError,
    MarshalingError,
    StreamingError,
    PersistenceError,
    TransportError,
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    RequestTooLargeError,
    RateLimitError,
    APIError,
    OverloadedError,
    ConnectionError,
    TimeoutError,
    is_retryable_error,
)
from .logs import setup_logging, get_logger, LogContext

__all__ = [
    "__version__",
    # Client
    "ConversationClient",
    # Configuration
    "ClientConfig",
    "ConfigBuilder",
    "ModelSpec",
    "MODELS",
    "resolve_model",
    # Content
    "ContentBlock",
    "ImageSource",
    "ToolResultContent",
    "SUPPORTED_MEDIA_TYPES",
    "text_block",
    "image_block",
    "tool_use_block",
    "tool_result_block",
    "validate_block",
    # Models
    "Conversation",
    "Message",
    "Usage",
    "ToolParam",
    "ToolChoice",
    "GenerationParams",
    "GenerationRequest",
    "STOP_REASONS",
    "validate_message",
    # Streaming
    "StreamEvent",
    "StreamEventType",
    "MessageStartEvent",
    "ContentBlockStartEvent",
    "ContentBlockDeltaEvent",
    "ContentBlockStopEvent",
    "ContentDelta",
    "MessageDeltaEvent",
    "MessageStopEvent",
    "ErrorEvent",
    "PingEvent",
    "CancelToken",
    "Channel",
    "ChannelClosedError",
    "StreamDecoder",
    "StreamResults",
    # Persistence
    "BaseConversationStore",
    "FileConversationStore",
    "InMemoryConversationStore",
    # Building blocks
    "RequestBuilder",
    "Transport",
    # Errors
    "ConvoStreamError",
    "ConfigurationError",
    "ValidationError",
    "MarshalingError",
    "StreamingError",
    "PersistenceError",
    "TransportError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "RequestTooLargeError",
    "RateLimitError",
    "APIError",
    "OverloadedError",
    "ConnectionError",
    "TimeoutError",
    "is_retryable_error",
    # Logging
    "setup_logging",
    "get_logger",
    "LogContext",
]
