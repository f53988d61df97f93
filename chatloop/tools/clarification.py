"""
The ``ask_user`` clarification tool.

Instead of guessing, a model can call ``ask_user`` to collect structured
input from the human.  The tool itself only validates and normalizes the
request; the dispatcher turns its result into a ``clarification`` event and
pauses the conversation loop until the answer arrives out-of-band.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from chatloop.errors import ClarificationValidationError
from chatloop.tools.base import Tool
from chatloop.tools.validation import ToolValidator
from chatloop.types import ToolContext

logger = logging.getLogger(__name__)

CLARIFICATION_TOOL_NAME = "ask_user"

MAX_QUESTION_LENGTH = 500
MAX_OPTIONS_COUNT = 20
MAX_OPTION_LENGTH = 100
MAX_PATTERN_LENGTH = 200
MAX_PLACEHOLDER_LENGTH = 200
MAX_VALIDATION_MESSAGE_LENGTH = 200
MAX_CONTEXT_LENGTH = 500
MAX_CLARIFICATIONS_PER_CONVERSATION = 10

SUPPORTED_INPUT_TYPES = ("text", "select", "multiselect", "confirm", "number", "date")

# Server-side input type -> client-facing input type.
INPUT_TYPE_MAP = {
    "text": "text",
    "select": "single_select",
    "multiselect": "multi_select",
    "confirm": "single_select",
    "number": "number",
    "date": "date",
}

CONFIRM_OPTIONS = (
    {"label": "Yes", "value": "yes"},
    {"label": "No", "value": "no"},
)

# Patterns with nested quantifiers backtrack exponentially.
UNSAFE_REGEX_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"\(\.\*\)\+",
        r"\(\.\+\)\+",
        r"\([^)]*\+[^)]*\)\+",
        r"\([^)]*\*[^)]*\)\+",
        r"\([^)]*\+[^)]*\)\*",
        r"\([^)]*\*[^)]*\)\*",
        r"\(\[.*?\]\+\)\+",
        r"\(\[.*?\]\*\)\+",
        r"\(\?:.*?\+.*?\)\+",
        r"\(\?:.*?\*.*?\)\+",
    )
)

ASK_USER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {
            "type": "string",
            "description": "The question to ask the user.",
            "maxLength": MAX_QUESTION_LENGTH,
        },
        "input_type": {
            "type": "string",
            "enum": list(SUPPORTED_INPUT_TYPES),
            "description": "Kind of answer expected (default: text).",
        },
        "options": {
            "type": "array",
            "maxItems": MAX_OPTIONS_COUNT,
            "items": {
                "type": "object",
                "properties": {
                    "label": {"type": "string"},
                    "value": {"type": ["string", "number", "boolean"]},
                },
                "required": ["label"],
            },
            "description": "Choices for select and multiselect questions.",
        },
        "allow_other": {
            "type": "boolean",
            "description": "Allow a free-text answer besides the options.",
        },
        "allow_skip": {
            "type": "boolean",
            "description": "Allow the user to skip the question.",
        },
        "placeholder": {"type": "string"},
        "validation": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "min": {"type": "number"},
                "max": {"type": "number"},
                "message": {"type": "string"},
            },
        },
        "context": {
            "type": "string",
            "description": "Why the question is being asked.",
        },
    },
    "required": ["question"],
    "additionalProperties": False,
}


def validate_regex_pattern(pattern: str) -> None:
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise ClarificationValidationError(
            f"Regex pattern too long (max {MAX_PATTERN_LENGTH} characters)"
        )
    for unsafe in UNSAFE_REGEX_PATTERNS:
        if unsafe.search(pattern):
            raise ClarificationValidationError(
                "Regex pattern contains potentially unsafe nested quantifiers (ReDoS risk)"
            )
    try:
        re.compile(pattern)
    except re.error as e:
        raise ClarificationValidationError(f"Invalid regex pattern: {e}") from e


def validate_options(options: list | None) -> None:
    if not options:
        return
    if len(options) > MAX_OPTIONS_COUNT:
        raise ClarificationValidationError(
            f"Too many options (max {MAX_OPTIONS_COUNT}, got {len(options)})"
        )
    for i, option in enumerate(options):
        if not isinstance(option, dict):
            raise ClarificationValidationError(f"Option at index {i} must be an object")
        label = option.get("label")
        if not label or not isinstance(label, str):
            raise ClarificationValidationError(f"Option at index {i} must have a string label")
        if len(label) > MAX_OPTION_LENGTH:
            raise ClarificationValidationError(
                f"Option label at index {i} too long (max {MAX_OPTION_LENGTH} chars)"
            )
        if "value" in option and len(str(option["value"])) > MAX_OPTION_LENGTH:
            raise ClarificationValidationError(
                f"Option value at index {i} too long (max {MAX_OPTION_LENGTH} chars)"
            )


def validate_clarification_params(params: dict) -> None:
    """Raise ``ClarificationValidationError`` if *params* are not acceptable."""
    question = params.get("question")
    if not question or not isinstance(question, str):
        raise ClarificationValidationError("Question is required and must be a string")
    if len(question) > MAX_QUESTION_LENGTH:
        raise ClarificationValidationError(
            f"Question too long (max {MAX_QUESTION_LENGTH} chars, got {len(question)})"
        )

    input_type = params.get("input_type") or "text"
    if input_type not in SUPPORTED_INPUT_TYPES:
        raise ClarificationValidationError(
            f"Invalid input_type. Supported types: {', '.join(SUPPORTED_INPUT_TYPES)}"
        )

    options = params.get("options")
    if input_type in ("select", "multiselect"):
        if not options or not isinstance(options, list):
            raise ClarificationValidationError(
                f"Options array is required for input_type '{input_type}'"
            )
    validate_options(options)

    ok, err = ToolValidator.validate_schema(ASK_USER_SCHEMA, params)
    if not ok:
        raise ClarificationValidationError(err or "Invalid clarification parameters")

    validation = params.get("validation") or {}
    if validation.get("pattern"):
        validate_regex_pattern(validation["pattern"])

    lo, hi = validation.get("min"), validation.get("max")
    if lo is not None and hi is not None and float(lo) > float(hi):
        raise ClarificationValidationError("validation.min must not exceed validation.max")


def build_clarification_request(params: dict) -> dict[str, Any]:
    """Normalize validated parameters into the server-side request shape."""
    input_type = params.get("input_type") or "text"
    request: dict[str, Any] = {
        "question": params["question"],
        "input_type": input_type,
        "allow_skip": bool(params.get("allow_skip", False)),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    options = params.get("options")
    if options:
        request["options"] = [
            {"label": o["label"], "value": o.get("value", o["label"])} for o in options
        ]
    if params.get("allow_other"):
        request["allow_other"] = True
    if params.get("placeholder"):
        request["placeholder"] = str(params["placeholder"])[:MAX_PLACEHOLDER_LENGTH]

    validation = params.get("validation")
    if validation:
        rules: dict[str, Any] = {}
        if validation.get("pattern"):
            rules["pattern"] = validation["pattern"]
        if validation.get("min") is not None:
            rules["min"] = float(validation["min"])
        if validation.get("max") is not None:
            rules["max"] = float(validation["max"])
        if validation.get("message"):
            rules["message"] = str(validation["message"])[:MAX_VALIDATION_MESSAGE_LENGTH]
        request["validation"] = rules

    if params.get("context"):
        request["context"] = str(params["context"])[:MAX_CONTEXT_LENGTH]
    return request


def question_id_for(conversation_id: str, tool_call_id: str) -> str:
    """Stable id: the same tool call always yields the same question id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{conversation_id}:{tool_call_id}"))


def to_client_payload(request: dict, question_id: str, tool_call_id: str) -> dict[str, Any]:
    """
    Translate a request into the client-facing vocabulary.

    ``confirm`` becomes a two-option ``single_select``; the original type
    stays available as ``sourceInputType``.
    """
    input_type = request.get("input_type", "text")
    payload: dict[str, Any] = {
        "questionId": question_id,
        "toolCallId": tool_call_id,
        "question": request["question"],
        "inputType": INPUT_TYPE_MAP[input_type],
        "sourceInputType": input_type,
        "allowOther": bool(request.get("allow_other", False)),
        "allowSkip": bool(request.get("allow_skip", False)),
        "timestamp": request.get("timestamp"),
    }
    if input_type == "confirm":
        payload["options"] = [dict(o) for o in CONFIRM_OPTIONS]
    elif request.get("options"):
        payload["options"] = [dict(o) for o in request["options"]]
    for key in ("placeholder", "validation", "context"):
        if request.get(key):
            payload[key] = request[key]
    return payload


class AskUserTool(Tool):
    @property
    def name(self) -> str:
        return CLARIFICATION_TOOL_NAME

    @property
    def description(self) -> str:
        return (
            "Ask the user a clarifying question when required information is missing "
            "or ambiguous. Use it instead of guessing. The conversation pauses until "
            "the user answers."
        )

    @property
    def parameters(self) -> dict:
        return ASK_USER_SCHEMA

    @property
    def requires_user_input(self) -> bool:
        return True

    async def execute(self, context: ToolContext, /, **kwargs) -> dict:
        try:
            validate_clarification_params(kwargs)
        except ClarificationValidationError as e:
            logger.warning(
                "ask_user validation failed for %s: %s", context.conversation_id, e.message
            )
            raise
        request = build_clarification_request(kwargs)
        logger.info(
            "Clarification request prepared for %s (%s)",
            context.conversation_id,
            request["input_type"],
        )
        return {"requiresUserInput": True, "clarification": request}


class ClarificationTracker:
    """
    Per-conversation clarification counters.

    A count only ever grows within a conversation; ``reset`` is called when
    the conversation is explicitly ended.
    """

    def __init__(self, max_clarifications: int = MAX_CLARIFICATIONS_PER_CONVERSATION):
        self.max_clarifications = max_clarifications
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def count(self, conversation_id: str) -> int:
        with self._lock:
            return self._counts.get(conversation_id, 0)

    def try_acquire(self, conversation_id: str) -> bool:
        """Increment the count unless the ceiling is reached."""
        with self._lock:
            current = self._counts.get(conversation_id, 0)
            if current >= self.max_clarifications:
                return False
            self._counts[conversation_id] = current + 1
            return True

    def reset(self, conversation_id: str) -> None:
        with self._lock:
            self._counts.pop(conversation_id, None)
