"""
convostream - Conversation Client Tests
"""

import asyncio
import json

import httpx
import pytest

from conftest import (
    RecordingHandler,
    hi_there_frames,
    make_transport,
    message_delta,
    message_start,
    message_stop,
    content_block_start,
    sse_response,
    text_delta,
)
from convostream.client import ConversationClient
from convostream.content import ContentBlock
from convostream.errors import (
    ConfigurationError,
    MarshalingError,
    PersistenceError,
    RateLimitError,
    ValidationError,
)
from convostream.models import GenerationParams, Message
from convostream.store import (
    BaseConversationStore,
    FileConversationStore,
    InMemoryConversationStore,
)


class FailingStore(BaseConversationStore):
    """Store whose writes always fail."""

    def __init__(self):
        self.attempts = 0

    def load(self):
        return None

    def save(self, conversation):
        self.attempts += 1
        raise PersistenceError("disk full", path="/tmp/chat.json")


@pytest.fixture
def reply_handler(mock_anthropic_response):
    return RecordingHandler(lambda request: httpx.Response(200, json=mock_anthropic_response))


@pytest.fixture
def client(config, reply_handler):
    return ConversationClient(config, transport=make_transport(config, reply_handler))


def stream_client(config, frames, store=None):
    handler = RecordingHandler(lambda request: sse_response(*frames))
    return ConversationClient(config, store=store, transport=make_transport(config, handler)), handler


# ============================================================
# Turns
# ============================================================

class TestTurns:
    """Appending turns."""

    def test_add_user(self, client):
        before = client.conversation.updated

        message = client.add_user("Hello")

        assert message.role == "user"
        assert [m.text for m in client.messages] == ["Hello"]
        assert client.conversation.updated >= before

    def test_invalid_turn_not_appended(self, client):
        client.add_user("Hello")

        with pytest.raises(ValidationError):
            client.add_turn("assistant", [ContentBlock(type="text", text="ok"), ContentBlock(type="video")])

        assert len(client.messages) == 1

    def test_invalid_role(self, client):
        with pytest.raises(ValidationError):
            client.add_turn("system", [ContentBlock(type="text", text="x")])
        assert client.messages == []

    def test_add_user_image(self, client):
        message = client.add_user_image(b"\xff\xd8jpeg", "image/jpeg", prompt="What is this?")

        assert [b.type for b in message.content] == ["image", "text"]

    def test_add_user_image_bad_media_type(self, client):
        with pytest.raises(ValidationError):
            client.add_user_image(b"data", "image/tiff")
        assert client.messages == []

    def test_add_tool_result(self, client):
        message = client.add_tool_result("toolu_01", "18C", is_error=False)

        assert message.role == "user"
        assert message.content[0].tool_use_id == "toolu_01"

    def test_accessors_return_copies(self, client):
        client.add_user("Hello")

        client.messages[0].content[0].text = "changed"
        client.conversation.messages.clear()

        assert client.messages[0].text == "Hello"


# ============================================================
# Send
# ============================================================

class TestSend:
    """Blocking send."""

    def test_send_appends_reply(self, client, reply_handler):
        client.add_user("Hello")

        reply = client.send()

        assert reply.text == "Hello! I'm a mock Claude response."
        assert [m.role for m in client.messages] == ["user", "assistant"]
        assert client.messages[1].id == "msg_test123"
        body = reply_handler.last_body
        assert body["model"] == "claude-3-haiku-20240307"
        assert body["max_tokens"] == 4096
        assert body["stream"] is False

    def test_send_forces_non_streaming(self, client, reply_handler):
        client.set_streaming(True)
        client.add_user("Hello")

        client.send()

        assert reply_handler.last_body["stream"] is False

    def test_send_uses_parameters(self, client, reply_handler):
        client.set_system_prompt("Be brief.")
        client.set_user_id("user-42")
        client.set_max_tokens(256)
        client.add_tool("get_weather", {"type": "object", "properties": {"city": {"type": "string"}}})
        client.set_tool_choice_tool("get_weather")
        client.add_user("Weather in Paris?")

        client.send()

        body = reply_handler.last_body
        assert body["system"] == "Be brief."
        assert body["metadata"] == {"user_id": "user-42"}
        assert body["max_tokens"] == 256
        assert body["tools"][0]["input_schema"]["properties"]["city"] == {"type": "string"}
        assert body["tool_choice"] == {"type": "tool", "name": "get_weather"}

    def test_per_call_params(self, client, reply_handler):
        client.add_user("Hello")

        client.send(GenerationParams(max_tokens=10, temperature=0.1))

        assert reply_handler.last_body["max_tokens"] == 10
        assert client.request_params.max_tokens is None

    def test_validation_failure_leaves_history(self, client, reply_handler):
        client.add_user("Hello")

        with pytest.raises(ValidationError):
            client.send(GenerationParams(temperature=0.5, top_p=0.5))

        assert len(client.messages) == 1
        assert reply_handler.requests == []

    def test_empty_conversation(self, client, reply_handler):
        with pytest.raises(ValidationError):
            client.send()
        assert reply_handler.requests == []

    def test_transport_failure_leaves_history(self, config):
        transport = make_transport(config, lambda request: httpx.Response(429))
        client = ConversationClient(config, transport=transport)
        client.add_user("Hello")

        with pytest.raises(RateLimitError):
            client.send()

        assert len(client.messages) == 1

    def test_bad_reply_leaves_history(self, config):
        transport = make_transport(config, lambda request: httpx.Response(200, content=b"<html>"))
        client = ConversationClient(config, transport=transport)
        client.add_user("Hello")

        with pytest.raises(MarshalingError):
            client.send()

        assert len(client.messages) == 1

    def test_empty_reply_leaves_history(self, config, mock_anthropic_response):
        mock_anthropic_response["content"] = []
        transport = make_transport(
            config, lambda request: httpx.Response(200, json=mock_anthropic_response)
        )
        client = ConversationClient(config, transport=transport)
        client.add_user("Hello")

        with pytest.raises(MarshalingError) as exc:
            client.send()

        assert exc.value.code == "empty_reply"
        assert len(client.messages) == 1

    def test_empty_text_blocks_dropped(self, config, mock_anthropic_response):
        """A reply is stored in a form later requests accept."""
        mock_anthropic_response["content"] = [
            {"type": "text", "text": ""},
            {"type": "text", "text": "Hi"},
        ]
        handler = RecordingHandler(lambda request: httpx.Response(200, json=mock_anthropic_response))
        client = ConversationClient(config, transport=make_transport(config, handler))
        client.add_user("Hello")

        reply = client.send()
        client.add_user("Again")
        client.send()

        assert [block.text for block in reply.content] == ["Hi"]
        assert handler.last_body["messages"][1]["content"] == [{"type": "text", "text": "Hi"}]
        assert len(client.messages) == 4

    def test_send_persists(self, config, reply_handler):
        store = InMemoryConversationStore()
        client = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        client.add_user("Hello")

        client.send()

        assert len(store.load().messages) == 2

    def test_persist_failure_rolls_back(self, config, reply_handler):
        store = FailingStore()
        client = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        client.add_user("Hello")
        updated = client.conversation.updated

        with pytest.raises(PersistenceError):
            client.send()

        assert store.attempts == 1
        assert len(client.messages) == 1
        assert client.conversation.updated == updated

    def test_follow_up_turn(self, client, reply_handler):
        client.add_user("Hello")
        client.send()
        client.add_user("And again")

        client.send()

        assert [m["role"] for m in reply_handler.last_body["messages"]] == ["user", "assistant", "user"]
        assert len(client.messages) == 4


# ============================================================
# Parameters
# ============================================================

class TestParameters:
    """Parameter setters."""

    def test_max_tokens_ceiling(self, client):
        client.set_max_tokens(4096)

        with pytest.raises(ValidationError):
            client.set_max_tokens(4097)

        assert client.request_params.max_tokens == 4096

    def test_invalid_default_params(self, config):
        with pytest.raises(ValidationError):
            ConversationClient(config, params=GenerationParams(max_tokens=5000))

    def test_tool_choice_setters(self, client):
        client.set_tool_choice_auto()
        assert client.request_params.tool_choice.type == "auto"
        client.set_tool_choice_any()
        assert client.request_params.tool_choice.type == "any"

    def test_request_params_is_copy(self, client):
        client.request_params.tools.append("x")
        assert client.request_params.tools == []

    def test_missing_config(self):
        with pytest.raises(ConfigurationError):
            ConversationClient(None)


# ============================================================
# Stream
# ============================================================

class TestStream:
    """Streaming through the client."""

    @pytest.mark.asyncio
    async def test_stream_folds_reply(self, config):
        client, handler = stream_client(config, hi_there_frames())
        client.add_user("Hello")

        results = await client.stream()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert len(events) == 6
        assert errors == []
        assert results.folded is True
        assert [m.text for m in client.messages] == ["Hello", "Hi there"]
        assert handler.last_body["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_persists(self, config, tmp_path):
        store = FileConversationStore(tmp_path / "chat.json")
        client, _ = stream_client(config, hi_there_frames(), store=store)
        client.add_user("Hello")

        results = await client.stream()
        await asyncio.wait_for(results.collect(), timeout=2)

        assert [m.text for m in store.load().messages] == ["Hello", "Hi there"]

    @pytest.mark.asyncio
    async def test_stream_with_tools_fails_before_connecting(self, config):
        client, handler = stream_client(config, hi_there_frames())
        client.add_tool("get_weather")
        client.add_user("Hello")

        results = await client.stream()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert events == []
        assert len(errors) == 1
        assert isinstance(errors[0], ValidationError)
        assert handler.requests == []
        assert len(client.messages) == 1

    @pytest.mark.asyncio
    async def test_stream_with_decode_error_not_folded(self, config):
        frames = [
            message_start(),
            content_block_start(0),
            "event: content_block_delta\ndata: {broken\n\n",
            text_delta("Hi"),
            message_delta(),
            message_stop(),
        ]
        client, _ = stream_client(config, frames)
        client.add_user("Hello")

        results = await client.stream()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert len(errors) == 1
        assert results.folded is False
        assert len(client.messages) == 1

    @pytest.mark.asyncio
    async def test_stream_without_text_not_folded(self, config):
        frames = [message_start(), content_block_start(0), message_delta(), message_stop()]
        client, _ = stream_client(config, frames)
        client.add_user("Hello")

        results = await client.stream()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert [type(e) for e in errors] == [MarshalingError]
        assert errors[0].code == "empty_reply"
        assert results.message is not None
        assert results.folded is False
        assert len(client.messages) == 1

    @pytest.mark.asyncio
    async def test_history_changed_during_stream(self, config, mock_anthropic_response):
        """A reply sent while the stream runs wins; the stream is not folded."""
        release = asyncio.Event()

        async def body():
            yield message_start().encode()
            yield content_block_start(0).encode()
            yield text_delta("Hi").encode()
            await release.wait()
            yield message_delta().encode()
            yield message_stop().encode()

        def handler(request):
            if json.loads(request.content)["stream"]:
                return httpx.Response(200, content=body())
            return httpx.Response(200, json=mock_anthropic_response)

        client = ConversationClient(config, transport=make_transport(config, handler))
        client.add_user("Hello")

        results = await client.stream()
        await asyncio.wait_for(results.events.receive(), timeout=2)
        client.send()
        release.set()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert [type(e) for e in errors] == [ValidationError]
        assert errors[0].code == "conversation_changed"
        assert results.folded is False
        assert results.message.text == "Hi"
        assert [m.role for m in client.messages] == ["user", "assistant"]
        assert client.messages[1].text == "Hello! I'm a mock Claude response."

    @pytest.mark.asyncio
    async def test_reset_during_stream(self, config):
        release = asyncio.Event()

        async def body():
            yield message_start().encode()
            await release.wait()
            yield content_block_start(0).encode()
            yield text_delta("Hi").encode()
            yield message_stop().encode()

        client = ConversationClient(
            config, transport=make_transport(config, lambda request: httpx.Response(200, content=body()))
        )
        client.add_user("Hello")

        results = await client.stream()
        await asyncio.wait_for(results.events.receive(), timeout=2)
        client.reset_conversation()
        release.set()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert [type(e) for e in errors] == [ValidationError]
        assert client.messages == []

    @pytest.mark.asyncio
    async def test_stream_persist_failure_rolls_back(self, config):
        client, _ = stream_client(config, hi_there_frames(), store=FailingStore())
        client.add_user("Hello")

        results = await client.stream()
        events, errors = await asyncio.wait_for(results.collect(), timeout=2)

        assert [type(e) for e in errors] == [PersistenceError]
        assert results.folded is False
        assert len(client.messages) == 1


# ============================================================
# Conversation Lifecycle
# ============================================================

class TestConversationLifecycle:
    """Reset, save and load."""

    def test_reset(self, client):
        client.add_user("Hello")
        old_id = client.conversation.id

        client.reset_conversation()

        assert client.messages == []
        assert client.conversation.id != old_id
        assert client.model == "claude-3-haiku-20240307"

    def test_reset_switch_model(self, client, reply_handler):
        client.reset_conversation(model="opus")
        client.add_user("Hello")
        client.send()

        assert client.model == "claude-3-opus-20240229"
        assert reply_handler.last_body["model"] == "claude-3-opus-20240229"

    def test_reset_unknown_model(self, client):
        client.add_user("Hello")

        with pytest.raises(ConfigurationError):
            client.reset_conversation(model="gpt-4o")

        assert len(client.messages) == 1

    def test_reset_keeps_stored_state(self, config, reply_handler):
        store = InMemoryConversationStore()
        client = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        client.add_user("Hello")
        client.save_conversation()

        client.reset_conversation()

        assert len(store.load().messages) == 1

    def test_save_and_load(self, config, reply_handler, tmp_path):
        store = FileConversationStore(tmp_path / "chat.json")
        client = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        client.add_user("Hello")
        client.save_conversation()
        saved = client.conversation

        other = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        loaded = other.load_conversation()

        assert loaded == saved
        assert other.conversation == saved

    def test_load_missing_keeps_current(self, config, reply_handler, tmp_path):
        store = FileConversationStore(tmp_path / "absent.json")
        client = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        client.add_user("Hello")

        assert client.load_conversation() is None
        assert len(client.messages) == 1

    def test_load_loaded_model_used(self, config, reply_handler):
        """A loaded conversation keeps its own model."""
        store = InMemoryConversationStore()
        opus = ConversationClient(config.with_model("opus"), store=store)
        opus.add_user("Hello")
        opus.save_conversation()

        client = ConversationClient(config, store=store, transport=make_transport(config, reply_handler))
        client.load_conversation()
        client.send()

        assert reply_handler.last_body["model"] == "claude-3-opus-20240229"

    def test_no_store(self, client):
        with pytest.raises(ConfigurationError):
            client.save_conversation()
        with pytest.raises(ConfigurationError):
            client.load_conversation()

    def test_context_manager(self, config, reply_handler):
        transport = make_transport(config, reply_handler)

        with ConversationClient(config, transport=transport):
            pass

        assert transport._client.is_closed
