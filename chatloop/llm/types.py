"""Core types for the LLM subsystem."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ImageData:
    """An image attachment hoisted out of a tool result for vision input."""

    base64: str
    format: str = "image/jpeg"
    filename: str = "attachment"
    type: str = "image"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "format": self.format,
            "base64": self.base64,
            "filename": self.filename,
        }


@dataclass
class ToolCall:
    """
    A resolved tool call with parsed arguments.

    *metadata* is an opaque bag (e.g. Gemini thought signatures) that must be
    echoed back to the provider verbatim on the next request.
    """

    id: str
    name: str
    arguments: dict
    type: str = "function"
    raw_arguments: str = ""
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "arguments": self.arguments,
            "raw_arguments": self.raw_arguments,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=data.get("arguments") or {},
            type=data.get("type") or "function",
            raw_arguments=data.get("raw_arguments", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Message:
    """
    A single message in a conversation.

    ``role`` is one of ``system``, ``user``, ``assistant`` or ``tool``.
    Tool messages carry ``tool_call_id`` and ``name``; assistant messages
    produced by a passthrough tool carry ``tool_source``.
    """

    role: str
    content: str | None = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    image_data: ImageData | None = None
    tool_source: str | None = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            d["name"] = self.name
        if self.image_data is not None:
            d["image_data"] = self.image_data.to_dict()
        if self.tool_source is not None:
            d["tool_source"] = self.tool_source
        if self.metadata:
            d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        image = data.get("image_data")
        calls = data.get("tool_calls")
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(c) for c in calls] if calls else None,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            image_data=ImageData(
                base64=image["base64"],
                format=image.get("format", "image/jpeg"),
                filename=image.get("filename", "attachment"),
            ) if image else None,
            tool_source=data.get("tool_source"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ToolCallDelta:
    """
    One streamed fragment of a tool call.

    Every field except *index* is optional; vendor parsers fill in whatever
    the current network event carried.  *arguments* is a raw character
    fragment, not parsed data.
    """

    index: int
    id: str | None = None
    type: str | None = None
    name: str | None = None
    arguments: str | dict | None = None
    metadata: dict | None = None


@dataclass
class StreamEvent:
    """
    The normalized event every vendor parser produces for one network event.
    """

    content: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None
    complete: bool = False
    images: list[dict] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    grounding_metadata: dict | None = None
    error: bool = False
    error_message: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class AssembledResponse:
    """
    The complete assistant turn after consuming the full stream.
    """

    content: str
    tool_calls: list[ToolCall]
    finish_reason: str | None = None
    complete: bool = False
    metadata: dict = field(default_factory=dict)
    repairs: list[str] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        """``True`` when the turn produced an answer rather than tool calls."""
        return not self.tool_calls


@dataclass
class ModelConfig:
    """Per-request model selection and credentials."""

    id: str
    provider: str
    model: str = ""
    url: str = ""
    api_key: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict = field(default_factory=dict)

    @property
    def wire_name(self) -> str:
        return self.model or self.id


@dataclass
class RequestOptions:
    temperature: float = 0.7
    max_tokens: int = 4096
    tools: list[dict] | None = None
    response_format: str | None = None
    response_schema: dict | None = None
    stream: bool = True


# ---------------------------------------------------------------------------
# Name and finish-reason normalization
# ---------------------------------------------------------------------------

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_VALID_NAME_START = re.compile(r"^[A-Za-z_]")

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_CONTENT_FILTER = "content_filter"


def normalize_tool_name(name: str | None) -> str:
    """Make a tool name acceptable to every provider's function-name rules."""
    normalized = _INVALID_NAME_CHARS.sub("_", name or "")
    if normalized and not _VALID_NAME_START.match(normalized):
        return f"tool_{normalized}"
    return normalized or "unnamed_tool"


def normalize_finish_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    lowered = reason.lower()
    if lowered in ("stop", "end_turn"):
        return FINISH_STOP
    if lowered in ("length", "max_tokens"):
        return FINISH_LENGTH
    if lowered in ("tool_calls", "tool_use"):
        return FINISH_TOOL_CALLS
    if lowered in ("content_filter", "safety", "recitation"):
        return FINISH_CONTENT_FILTER
    return reason
