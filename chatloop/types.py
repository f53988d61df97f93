from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatloop.llm.types import Message


@dataclass
class ToolContext:
    """Conversation context handed to every tool invocation."""

    conversation_id: str
    user: Any = None
    app_config: Any = None
    passthrough: bool = False


class OutcomeKind(str, Enum):
    REGULAR = "regular"
    CLARIFICATION = "clarification"
    PASSTHROUGH = "passthrough"
    ERROR = "error"


@dataclass
class ToolOutcome:
    """
    Result of dispatching one tool call.

    ``message`` is what goes into history: a ``tool`` message for regular,
    error and clarification outcomes, an ``assistant`` message for
    passthrough.  A passthrough outcome also carries ``ack``, the ``tool``
    message that answers the call itself.
    """

    kind: OutcomeKind
    message: Message
    tool_id: str
    clarification: dict | None = None
    ack: Message | None = None
    error: dict | None = None

    @property
    def ends_turn(self) -> bool:
        return self.kind in (OutcomeKind.CLARIFICATION, OutcomeKind.PASSTHROUGH)


class TurnStatus(str, Enum):
    FINAL = "final"
    PAUSED = "paused"
    PASSTHROUGH = "passthrough"
    TRUNCATED = "truncated"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class TurnResult:
    status: TurnStatus
    iterations: int
    history: list[Message] = field(default_factory=list)
    finish_reason: str | None = None
    error: dict | None = None


class ErrorCode:
    VALIDATION_ERROR = "validation_error"
    TOOL_EXCEPTION = "tool_exception"
    UNKNOWN_TOOL = "unknown_tool"
    CLARIFICATION_INVALID = "clarification_invalid"
    CLARIFICATION_LIMIT = "clarification_limit"
    PASSTHROUGH_FAILED = "passthrough_failed"
