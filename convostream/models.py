"""
convostream - Data Models

Messages, conversations and generation requests.
"""

from __future__ import annotations

import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .content import ContentBlock, TEXT, validate_block
from .errors import MarshalingError, ValidationError


# ============================================================
# Constants
# ============================================================

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
ROLES = (USER_ROLE, ASSISTANT_ROLE)

STOP_REASONS: Dict[str, str] = {
    "end_turn": "the model reached a natural stopping point",
    "max_tokens": "we exceeded the requested max_tokens or the model's maximum",
    "stop_sequence": "one of your provided custom stop_sequences was generated",
    "tool_use": "the model requests use of a tool",
}

TOOL_CHOICE_TYPES = ("auto", "any", "tool")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Message Models
# ============================================================

@dataclass
class Usage:
    """Token usage information."""
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Usage:
        return cls(
            input_tokens=data.get("input_tokens") or 0,
            output_tokens=data.get("output_tokens") or 0,
        )

    def to_dict(self) -> Dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class Message:
    """
    A message in a conversation.

    Assistant replies also carry provider metadata (id, model, stop reason,
    usage); user turns leave those empty.
    """
    role: str
    content: List[ContentBlock] = field(default_factory=list)
    id: str = ""
    model: str = ""
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    type: str = "message"
    usage: Optional[Usage] = None

    @classmethod
    def user(cls, text: str) -> Message:
        """Create a user message holding one text block."""
        return cls(role=USER_ROLE, content=[ContentBlock(type=TEXT, text=text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        """Create an assistant message holding one text block."""
        return cls(role=ASSISTANT_ROLE, content=[ContentBlock(type=TEXT, text=text)])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Message:
        """Create from an API response or persisted dictionary."""
        usage = data.get("usage")
        return cls(
            role=data["role"],
            content=[ContentBlock.from_dict(block) for block in data.get("content") or []],
            id=data.get("id") or "",
            model=data.get("model") or "",
            stop_reason=data.get("stop_reason"),
            stop_sequence=data.get("stop_sequence"),
            type=data.get("type") or "message",
            usage=Usage.from_dict(usage) if usage is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Full representation, used for persistence."""
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "role": self.role,
            "content": [block.to_dict() for block in self.content],
            "model": self.model,
        }
        if self.stop_reason is not None:
            result["stop_reason"] = self.stop_reason
        if self.stop_sequence is not None:
            result["stop_sequence"] = self.stop_sequence
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        return result

    def to_param(self) -> Dict[str, Any]:
        """Wire representation inside a request's messages list."""
        return {
            "role": self.role,
            "content": [block.to_dict() for block in self.content],
        }

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(block.text or "" for block in self.content if block.type == TEXT)

    @property
    def tool_uses(self) -> List[ContentBlock]:
        """tool_use blocks requested by the model."""
        return [block for block in self.content if block.type == "tool_use"]

    @property
    def stop_reason_description(self) -> str:
        return STOP_REASONS.get(self.stop_reason or "", "")


def validate_message(message: Message) -> None:
    """
    Validate a message's role and every content block.

    Raises:
        ValidationError: Unknown role, empty content, or an invalid block.
    """
    if message.role not in ROLES:
        raise ValidationError(f"invalid role: {message.role!r}", param="role")
    if not message.content:
        raise ValidationError("message content cannot be empty", param="content")
    for block in message.content:
        try:
            validate_block(block)
        except ValidationError as e:
            raise ValidationError(f"invalid content block: {e.message}", param=e.param) from e


def validate_turn_order(messages: List[Message]) -> None:
    """
    Check the conversation is sendable: non-empty, starts with a user
    turn, and roles alternate.
    """
    if not messages:
        raise ValidationError("conversation has no messages", param="messages")
    if messages[0].role != USER_ROLE:
        raise ValidationError(
            f"first message must have role {USER_ROLE!r}, got {messages[0].role!r}",
            param="messages[0].role",
        )
    for i in range(1, len(messages)):
        if messages[i].role == messages[i - 1].role:
            raise ValidationError(
                f"roles must alternate: messages {i - 1} and {i} are both {messages[i].role!r}",
                param=f"messages[{i}].role",
            )


@dataclass
class Conversation:
    """
    A conversation: identity, model, timestamps and ordered messages.
    """
    model: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)
    messages: List[Message] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Conversation:
        return cls(
            id=data["id"],
            model=data["model"],
            created=datetime.fromisoformat(data["created"]),
            updated=datetime.fromisoformat(data["updated"]),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }

    def touch(self) -> None:
        """Update the modification timestamp."""
        self.updated = utcnow()


# ============================================================
# Tool Calling
# ============================================================

@dataclass
class ToolParam:
    """A tool the model may use."""
    name: str
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"name": self.name, "input_schema": self.input_schema}
        if self.description:
            result["description"] = self.description
        return result


@dataclass
class ToolChoice:
    """How the model should use the provided tools."""
    type: str = "auto"
    name: Optional[str] = None

    @classmethod
    def auto(cls) -> ToolChoice:
        return cls(type="auto")

    @classmethod
    def any(cls) -> ToolChoice:
        return cls(type="any")

    @classmethod
    def tool(cls, name: str) -> ToolChoice:
        return cls(type="tool", name=name)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type}
        if self.name is not None:
            result["name"] = self.name
        return result


# ============================================================
# Request Models
# ============================================================

@dataclass
class GenerationParams:
    """
    Caller-facing generation parameters.

    max_tokens defaults to the model's maximum when left unset.
    """
    max_tokens: Optional[int] = None
    system: Optional[str] = None
    user_id: Optional[str] = None
    stop_sequences: Optional[List[str]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    tools: List[ToolParam] = field(default_factory=list)
    tool_choice: Optional[ToolChoice] = None
    stream: bool = False

    def copy(self, **changes: Any) -> GenerationParams:
        """Deep copy with the given fields replaced."""
        params = copy.deepcopy(self)
        for key, value in changes.items():
            setattr(params, key, value)
        return params


@dataclass
class GenerationRequest:
    """A fully built Messages API request."""
    model: str
    messages: List[Message]
    max_tokens: int
    system: Optional[str] = None
    user_id: Optional[str] = None
    stop_sequences: Optional[List[str]] = None
    stream: bool = False
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    tool_choice: Optional[ToolChoice] = None
    tools: List[ToolParam] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire request body."""
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_param() for m in self.messages],
            "max_tokens": self.max_tokens,
            "stream": self.stream,
        }

        if self.system is not None:
            payload["system"] = self.system
        if self.user_id is not None:
            payload["metadata"] = {"user_id": self.user_id}
        if self.stop_sequences:
            payload["stop_sequences"] = list(self.stop_sequences)
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        if self.top_k is not None:
            payload["top_k"] = self.top_k
        if self.tool_choice is not None:
            payload["tool_choice"] = self.tool_choice.to_dict()
        if self.tools:
            payload["tools"] = [t.to_dict() for t in self.tools]

        return payload

    def to_json(self) -> bytes:
        """
        Encode the request body.

        Raises:
            MarshalingError: A field (e.g. tool input) is not JSON-serializable.
        """
        try:
            return json.dumps(self.to_dict(), allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MarshalingError(f"marshaling input: {e}") from e
