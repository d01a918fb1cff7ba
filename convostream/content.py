"""
convostream - Content Blocks

Content block value types and their validation rules.

A ContentBlock is a tagged variant: its `type` decides which of the
optional fields must be present. Each tag has one pure validation
function; validate_block() dispatches on the tag.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import ValidationError


# ============================================================
# Constants
# ============================================================

TEXT = "text"
IMAGE = "image"
TOOL_USE = "tool_use"
TOOL_RESULT = "tool_result"

BASE64_SOURCE = "base64"
SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


# ============================================================
# Value Types
# ============================================================

@dataclass
class ImageSource:
    """Inline image payload."""
    media_type: str
    data: str
    type: str = BASE64_SOURCE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ImageSource:
        return cls(
            type=data["type"],
            media_type=data.get("media_type", ""),
            data=data.get("data", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "media_type": self.media_type, "data": self.data}


@dataclass
class ToolResultContent:
    """One item nested inside a tool_result block (text or image)."""
    type: str
    text: Optional[str] = None
    source: Optional[ImageSource] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ToolResultContent:
        source = data.get("source")
        return cls(
            type=data["type"],
            text=data.get("text"),
            source=ImageSource.from_dict(source) if source is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type}
        if self.text is not None:
            result["text"] = self.text
        if self.source is not None:
            result["source"] = self.source.to_dict()
        return result


@dataclass
class ContentBlock:
    """
    A single typed unit of message content.

    Fields used per tag:
    - text: text
    - image: source
    - tool_use: id, name, input
    - tool_result: tool_use_id, content, is_error
    """
    type: str
    text: Optional[str] = None
    source: Optional[ImageSource] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Any] = None
    tool_use_id: Optional[str] = None
    is_error: Optional[bool] = None
    content: List[ToolResultContent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ContentBlock:
        """Create from a wire/persisted dictionary."""
        source = data.get("source")
        nested = data.get("content") or []
        if isinstance(nested, str):
            # tool_result may carry a bare string instead of a list of items
            nested = [{"type": TEXT, "text": nested}]
        return cls(
            type=data["type"],
            text=data.get("text"),
            source=ImageSource.from_dict(source) if source is not None else None,
            id=data.get("id"),
            name=data.get("name"),
            input=data.get("input"),
            tool_use_id=data.get("tool_use_id"),
            is_error=data.get("is_error"),
            content=[ToolResultContent.from_dict(item) for item in nested],
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to wire format, omitting fields not set."""
        result: Dict[str, Any] = {"type": self.type}

        if self.text is not None:
            result["text"] = self.text
        if self.source is not None:
            result["source"] = self.source.to_dict()
        if self.id is not None:
            result["id"] = self.id
        if self.name is not None:
            result["name"] = self.name
        if self.input is not None:
            result["input"] = self.input
        if self.tool_use_id is not None:
            result["tool_use_id"] = self.tool_use_id
        if self.is_error is not None:
            result["is_error"] = self.is_error
        if self.content:
            result["content"] = [item.to_dict() for item in self.content]

        return result


# ============================================================
# Constructors
# ============================================================

def text_block(text: str) -> ContentBlock:
    """Create a text block."""
    return ContentBlock(type=TEXT, text=text)


def image_block(data: bytes, media_type: str) -> ContentBlock:
    """
    Create a base64 image block from raw image bytes.

    The caller supplies the media type; it must be one of
    SUPPORTED_MEDIA_TYPES.
    """
    encoded = base64.b64encode(data).decode("ascii")
    return ContentBlock(
        type=IMAGE,
        source=ImageSource(media_type=media_type, data=encoded),
    )


def tool_use_block(id: str, name: str, input: Any) -> ContentBlock:
    """Create a tool_use block."""
    return ContentBlock(type=TOOL_USE, id=id, name=name, input=input)


def tool_result_block(
    tool_use_id: str,
    content: str,
    is_error: Optional[bool] = None
) -> ContentBlock:
    """Create a tool_result block holding a single text item."""
    return ContentBlock(
        type=TOOL_RESULT,
        tool_use_id=tool_use_id,
        is_error=is_error,
        content=[ToolResultContent(type=TEXT, text=content)],
    )


# ============================================================
# Validation
# ============================================================

def validate_image_source(source: Optional[ImageSource]) -> None:
    """Validate an inline image source."""
    if source is None:
        raise ValidationError("source is required for image content", param="source")
    if source.type != BASE64_SOURCE:
        raise ValidationError(
            f"only {BASE64_SOURCE} type is supported for image source, got {source.type!r}",
            param="source.type",
        )
    if source.media_type not in SUPPORTED_MEDIA_TYPES:
        raise ValidationError(
            f"invalid media type: {source.media_type!r}",
            param="source.media_type",
        )
    if not source.data:
        raise ValidationError("data is required for image source", param="source.data")


def _validate_text(block: ContentBlock) -> None:
    if not isinstance(block.text, str) or block.text == "":
        raise ValidationError("text is required for text content", param="text")


def _validate_image(block: ContentBlock) -> None:
    validate_image_source(block.source)


def _validate_tool_use(block: ContentBlock) -> None:
    if block.id is None or block.name is None or block.input is None:
        raise ValidationError(
            "id, name, and input are required for tool_use content",
            param="tool_use",
        )


def _validate_tool_result(block: ContentBlock) -> None:
    if block.tool_use_id is None or not block.content:
        raise ValidationError(
            "tool_use_id and content are required for tool_result content",
            param="tool_result",
        )
    for item in block.content:
        validate_tool_result_content(item)


def validate_tool_result_content(item: Optional[ToolResultContent]) -> None:
    """Validate one item nested in a tool_result (text or image only)."""
    if item is None:
        raise ValidationError("tool result content cannot be None", param="content")
    if item.type == TEXT:
        if not isinstance(item.text, str) or item.text == "":
            raise ValidationError(
                "text is required for text tool result content",
                param="content.text",
            )
    elif item.type == IMAGE:
        validate_image_source(item.source)
    else:
        raise ValidationError(
            f"invalid tool result content type: {item.type}",
            param="content.type",
        )


BLOCK_VALIDATORS: Dict[str, Callable[[ContentBlock], None]] = {
    TEXT: _validate_text,
    IMAGE: _validate_image,
    TOOL_USE: _validate_tool_use,
    TOOL_RESULT: _validate_tool_result,
}


def validate_block(block: ContentBlock) -> None:
    """
    Validate a content block against the rules for its tag.

    Raises:
        ValidationError: Unknown tag or a required field missing.
    """
    validator = BLOCK_VALIDATORS.get(block.type)
    if validator is None:
        raise ValidationError(f"invalid content type: {block.type}", param="type")
    validator(block)
