"""
convostream - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Shared client configuration
- SSE body builders and httpx mock transports for unit tests
"""

import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from convostream.config import ClientConfig, ConfigBuilder
from convostream.transport import Transport


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Configuration
# ============================================================

TEST_API_KEY = "sk-ant-test-key"


@pytest.fixture
def config() -> ClientConfig:
    """Client config for the haiku model."""
    return (
        ConfigBuilder()
        .with_api_key(TEST_API_KEY)
        .with_model("haiku")
        .with_base_url("https://api.test")
        .build()
    )


# ============================================================
# SSE Helpers
# ============================================================

def sse_frame(name: str, data: Any) -> str:
    """Render one SSE frame. Strings are sent as-is, anything else as JSON."""
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"event: {name}\ndata: {payload}\n\n"


def sse_body(*frames: str) -> bytes:
    return "".join(frames).encode("utf-8")


def message_start(message_id: str = "msg_01") -> str:
    return sse_frame("message_start", {
        "type": "message_start",
        "message": {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": "claude-3-haiku-20240307",
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": 12, "output_tokens": 1},
        },
    })


def content_block_start(index: int = 0, block: Optional[Dict[str, Any]] = None) -> str:
    return sse_frame("content_block_start", {
        "type": "content_block_start",
        "index": index,
        "content_block": block or {"type": "text", "text": ""},
    })


def text_delta(text: str, index: int = 0) -> str:
    return sse_frame("content_block_delta", {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "text_delta", "text": text},
    })


def json_delta(partial_json: str, index: int = 0) -> str:
    return sse_frame("content_block_delta", {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": partial_json},
    })


def content_block_stop(index: int = 0) -> str:
    return sse_frame("content_block_stop", {"type": "content_block_stop", "index": index})


def message_delta(stop_reason: str = "end_turn", output_tokens: int = 5) -> str:
    return sse_frame("message_delta", {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason, "stop_sequence": None},
        "usage": {"output_tokens": output_tokens},
    })


def message_stop() -> str:
    return sse_frame("message_stop", {"type": "message_stop"})


def ping() -> str:
    return sse_frame("ping", {"type": "ping"})


def error_frame(error_type: str = "overloaded_error", message: str = "Overloaded") -> str:
    return sse_frame("error", {
        "type": "error",
        "error": {"type": error_type, "message": message},
    })


def hi_there_frames() -> List[str]:
    """Wire frames for a streamed "Hi there" reply, with no-op frames mixed in."""
    return [
        message_start(),
        content_block_start(0),
        ping(),
        text_delta("Hi"),
        text_delta(" there"),
        content_block_stop(0),
        message_delta("end_turn"),
        message_stop(),
    ]


# ============================================================
# Mock HTTP
# ============================================================

def sse_response(*frames: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=sse_body(*frames),
    )


@pytest.fixture
def mock_anthropic_response() -> Dict[str, Any]:
    """Standard non-streaming Messages API response."""
    return {
        "id": "msg_test123",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": "Hello! I'm a mock Claude response."}],
        "model": "claude-3-haiku-20240307",
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 10, "output_tokens": 8},
    }


class RecordingHandler:
    """
    httpx.MockTransport handler that records requests.

    Usage:
        handler = RecordingHandler(lambda request: httpx.Response(200, json={...}))
        transport = make_transport(config, handler)
    """

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def last_body(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


def make_transport(config: ClientConfig, handler: Callable) -> Transport:
    """Transport whose sync and async clients both route to `handler`."""
    mock = httpx.MockTransport(handler)
    return Transport(
        config,
        client=httpx.Client(transport=mock),
        async_client=httpx.AsyncClient(transport=mock),
    )


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield
