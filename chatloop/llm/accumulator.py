"""
Reconstructs one assistant response from a stream of ``StreamEvent`` objects.

Design goals:
  - Forward every content fragment to the broadcaster the moment it arrives;
    the accumulator never buffers text silently.
  - Merge ``ToolCallDelta`` fragments into one slot per stream index.
    Arguments use smart concatenation so an empty-object delta emitted by
    some providers cannot corrupt a valid in-progress buffer.
  - Parse argument strings only when the stream is finished, with a repair
    pass for the usual malformations.  A call whose arguments cannot be
    repaired gets ``{}`` and the incident is recorded in ``self.repairs``;
    the turn itself never fails because of it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from chatloop.errors import ArgumentRepairError
from chatloop.llm.types import (
    FINISH_TOOL_CALLS,
    AssembledResponse,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
)
from chatloop.session.broadcaster import Broadcaster
from chatloop.session.events import (
    content_chunk_event,
    grounding_event,
    image_event,
    thinking_event,
)

logger = logging.getLogger(__name__)

EMPTY_OBJECT = "{}"


def _is_placeholder(fragment: str) -> bool:
    return not fragment.strip() or fragment.strip() == EMPTY_OBJECT


def merge_arguments(existing: str, fragment: str | None) -> str:
    """
    Smart concatenation of a streamed argument buffer.

    An empty or ``{}`` buffer is replaced outright by the new fragment; a
    blank or ``{}`` fragment arriving on a buffer that already holds data
    is discarded.
    """
    if not fragment:
        return existing
    if _is_placeholder(existing):
        return fragment
    if _is_placeholder(fragment):
        return existing
    return existing + fragment


def _loads_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def repair_arguments(raw: str) -> str:
    """
    Return a well-formed JSON object string for *raw*.

    Already-valid input is returned unchanged.  Otherwise adjacent objects
    glued together as ``}{`` are merged and a missing leading or trailing
    brace is added.  Raises ``ArgumentRepairError`` when nothing works.
    """
    if not raw.strip():
        return EMPTY_OBJECT
    if _loads_object(raw) is not None:
        return raw

    candidate = raw.replace("}{", ",")
    if _loads_object(candidate) is not None:
        return candidate

    candidate = candidate.strip()
    if not candidate.startswith("{"):
        candidate = "{" + candidate
    if not candidate.endswith("}"):
        candidate = candidate + "}"
    if _loads_object(candidate) is not None:
        return candidate

    raise ArgumentRepairError(f"Unparseable tool arguments: {raw[:200]!r}", details=raw)


def parse_arguments(raw: str) -> dict:
    return json.loads(repair_arguments(raw))


@dataclass
class PartialToolCall:
    """Accumulator slot for one stream index."""

    index: int
    id: str | None = None
    type: str | None = None
    name: str = ""
    arguments: str = ""
    metadata: dict = field(default_factory=dict)

    def merge(self, delta: ToolCallDelta) -> None:
        if delta.id:
            self.id = delta.id
        if delta.type:
            self.type = delta.type
        if delta.name:
            self.name = delta.name
        fragment = delta.arguments
        if isinstance(fragment, dict):
            fragment = json.dumps(fragment)
        self.arguments = merge_arguments(self.arguments, fragment)
        if delta.metadata:
            self.metadata.update(delta.metadata)


class DeltaAccumulator:
    """
    Consumes the normalized events of one streaming response.

    Parameters
    ----------
    broadcaster:
        Receives content, thinking, image and grounding fragments live.
    conversation_id:
        Key used for every forwarded event.
    """

    def __init__(self, broadcaster: Broadcaster, conversation_id: str) -> None:
        self.broadcaster = broadcaster
        self.conversation_id = conversation_id
        self._content: list[str] = []
        self._slots: dict[int, PartialToolCall] = {}
        self.finish_reason: str | None = None
        self.complete = False
        self.metadata: dict = {}
        self.repairs: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def pending(self) -> dict[int, PartialToolCall]:
        return self._slots

    def feed(self, event: StreamEvent) -> None:
        """Merge one normalized event into the running state."""
        for text in event.content:
            if text:
                self._content.append(text)
                self.broadcaster.emit(content_chunk_event(self.conversation_id, text))

        for text in event.thinking:
            if text:
                self.broadcaster.emit(thinking_event(self.conversation_id, text))

        for image in event.images:
            self.broadcaster.emit(image_event(self.conversation_id, image))

        if event.grounding_metadata:
            self.broadcaster.emit(
                grounding_event(self.conversation_id, event.grounding_metadata)
            )

        for delta in event.tool_calls:
            slot = self._slots.get(delta.index)
            if slot is None:
                slot = self._slots[delta.index] = PartialToolCall(index=delta.index)
            slot.merge(delta)

        if event.metadata:
            self.metadata.update(event.metadata)

        if event.finish_reason:
            self.finish_reason = event.finish_reason

        if event.complete:
            self.complete = True

    def result(self) -> AssembledResponse:
        """
        Finalize the response.

        Returns an ``AssembledResponse`` whose ``tool_calls`` is empty when
        the turn is a final answer.
        """
        calls: list[ToolCall] = []
        if self.finish_reason == FINISH_TOOL_CALLS or self._slots:
            for idx in sorted(self._slots):
                slot = self._slots[idx]
                name = slot.name.strip()
                if not name:
                    continue
                calls.append(self._finalize(slot, name))

        return AssembledResponse(
            content=self.content,
            tool_calls=calls,
            finish_reason=self.finish_reason,
            complete=self.complete,
            metadata=dict(self.metadata),
            repairs=list(self.repairs),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finalize(self, slot: PartialToolCall, name: str) -> ToolCall:
        try:
            args = parse_arguments(slot.arguments)
        except ArgumentRepairError:
            logger.warning(
                "Could not repair arguments for %s (index %d) in %s: %r",
                name,
                slot.index,
                self.conversation_id,
                slot.arguments[:200],
            )
            self.repairs.append(f"tool_call_args_unrepairable idx={slot.index} name={name}")
            args = {}

        return ToolCall(
            id=slot.id or f"call_{slot.index}",
            name=name,
            arguments=args,
            type=slot.type or "function",
            raw_arguments=slot.arguments,
            metadata=dict(slot.metadata),
        )
