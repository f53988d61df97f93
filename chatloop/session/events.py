"""
Client-facing event model.

Everything the orchestrator tells a chat client travels as a ``ChatEvent``
through the ``Broadcaster``.  Events are immutable once created and can be
serialized to/from dicts for SSE or websocket delivery.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Base event
# ---------------------------------------------------------------------------


@dataclass
class ChatEvent:
    """
    A single event emitted for one conversation.

    Attributes
    ----------
    event_type:
        One of the ``EVENT_*`` constants below.
    payload:
        Event-specific data as a JSON-compatible dict.
    conversation_id:
        The conversation the event belongs to.
    event_id:
        Unique identifier for the event (UUID4).
    timestamp:
        UTC timestamp of event creation.
    """

    event_type: str
    payload: dict[str, Any]
    conversation_id: str = ""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatEvent:
        data = dict(data)
        ts = data.get("timestamp")
        if isinstance(ts, str):
            data["timestamp"] = datetime.fromisoformat(ts)
        return cls(**data)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

EVENT_ACTION_START = "action_start"
EVENT_CONTENT_CHUNK = "content_chunk"
EVENT_THINKING = "thinking"
EVENT_IMAGE = "image"
EVENT_GROUNDING = "grounding"
EVENT_TOOL_CALL_START = "tool_call_start"
EVENT_TOOL_CALL_END = "tool_call_end"
EVENT_CLARIFICATION = "clarification"
EVENT_TOOL_STREAM_COMPLETE = "tool_stream_complete"
EVENT_ERROR = "error"
EVENT_DONE = "done"

SOURCE_MODEL = "model"
SOURCE_TOOL = "tool"


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def action_start_event(conversation_id: str, action: str, message: str) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_ACTION_START,
        payload={"action": action, "message": message},
        conversation_id=conversation_id,
    )


def content_chunk_event(
    conversation_id: str,
    content: str,
    source: str = SOURCE_MODEL,
    tool_name: str | None = None,
) -> ChatEvent:
    """Create a ``content_chunk`` event (model text or tool-streamed text)."""
    payload: dict[str, Any] = {"content": content, "source": source}
    if tool_name is not None:
        payload["tool_name"] = tool_name
    return ChatEvent(
        event_type=EVENT_CONTENT_CHUNK,
        payload=payload,
        conversation_id=conversation_id,
    )


def thinking_event(conversation_id: str, content: str) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_THINKING,
        payload={"content": content},
        conversation_id=conversation_id,
    )


def image_event(conversation_id: str, image: dict[str, Any]) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_IMAGE,
        payload=dict(image),
        conversation_id=conversation_id,
    )


def grounding_event(conversation_id: str, metadata: dict[str, Any]) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_GROUNDING,
        payload={"metadata": metadata},
        conversation_id=conversation_id,
    )


def tool_call_start_event(
    conversation_id: str,
    tool_name: str,
    tool_input: dict[str, Any],
) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_TOOL_CALL_START,
        payload={"tool_name": tool_name, "tool_input": tool_input},
        conversation_id=conversation_id,
    )


def tool_call_end_event(
    conversation_id: str,
    tool_name: str,
    tool_output: Any,
    error: bool = False,
) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_TOOL_CALL_END,
        payload={"tool_name": tool_name, "tool_output": tool_output, "error": error},
        conversation_id=conversation_id,
    )


def clarification_event(conversation_id: str, request: dict[str, Any]) -> ChatEvent:
    """Create a ``clarification`` event carrying the client-facing question."""
    return ChatEvent(
        event_type=EVENT_CLARIFICATION,
        payload=dict(request),
        conversation_id=conversation_id,
    )


def tool_stream_complete_event(
    conversation_id: str,
    tool_name: str,
    content: str,
) -> ChatEvent:
    return ChatEvent(
        event_type=EVENT_TOOL_STREAM_COMPLETE,
        payload={"tool_name": tool_name, "content": content},
        conversation_id=conversation_id,
    )


def error_event(
    conversation_id: str,
    message: str,
    code: str | None = None,
    details: Any = None,
    **extra: Any,
) -> ChatEvent:
    payload: dict[str, Any] = {"message": message}
    if code is not None:
        payload["code"] = code
    if details is not None:
        payload["details"] = details
    payload.update(extra)
    return ChatEvent(
        event_type=EVENT_ERROR,
        payload=payload,
        conversation_id=conversation_id,
    )


def done_event(
    conversation_id: str,
    finish_reason: str,
    truncated: bool = False,
    tool_name: str | None = None,
) -> ChatEvent:
    """
    Create a ``done`` event.

    ``truncated`` is set when the loop stopped at its iteration ceiling
    rather than on a final answer.
    """
    payload: dict[str, Any] = {"finish_reason": finish_reason}
    if truncated:
        payload["truncated"] = True
    if tool_name is not None:
        payload["tool_name"] = tool_name
    return ChatEvent(
        event_type=EVENT_DONE,
        payload=payload,
        conversation_id=conversation_id,
    )
