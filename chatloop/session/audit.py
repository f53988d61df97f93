import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

KIND_CHAT_RESPONSE = "chat_response"
KIND_CHAT_ERROR = "chat_error"
KIND_TOOL_USAGE = "tool_usage"
KIND_TOOL_ERROR = "tool_error"
KIND_CLARIFICATION_REQUEST = "clarification_request"

MAX_OUTPUT_CHARS = 1000
REDACTED = "***REDACTED***"


class InteractionLogger:
    """Append-only JSONL audit of turns and tool calls, with size-based rotation."""

    def __init__(
        self,
        path: str,
        *,
        enabled: bool = True,
        max_size_mb: int = 10,
        keep_files: int = 5,
        redaction_patterns: list[str] | None = None,
    ):
        self.enabled = enabled
        self.path = Path(path).expanduser()
        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_size_mb * 1024 * 1024
        self.keep_files = keep_files
        self._redaction_patterns = [re.compile(p) for p in (redaction_patterns or [])]
        self._lock = asyncio.Lock()

    def redact(self, text: str) -> str:
        out = text
        for rx in self._redaction_patterns:
            out = rx.sub(REDACTED, out)
        return out

    def _redact_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {k: self._redact_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._redact_value(v) for v in value]
        return value

    def _output(self, value: Any) -> str:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        return self.redact(text[:MAX_OUTPUT_CHARS])

    async def log(self, kind: str, conversation_id: str, **fields: Any) -> None:
        if not self.enabled:
            return
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "conversation_id": conversation_id,
        }
        record.update(fields)
        line = json.dumps(record, sort_keys=True, default=str) + "\n"
        async with self._lock:
            await self._rotate_if_needed()
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

    async def log_chat_response(
        self,
        conversation_id: str,
        *,
        model_id: str,
        content: str,
        finish_reason: str | None,
        iterations: int,
        user: Any = None,
    ) -> None:
        await self.log(
            KIND_CHAT_RESPONSE,
            conversation_id,
            model_id=model_id,
            output=self._output(content),
            finish_reason=finish_reason,
            iterations=iterations,
            user=_user_id(user),
            success=True,
        )

    async def log_chat_error(
        self,
        conversation_id: str,
        *,
        model_id: str,
        error: dict,
        user: Any = None,
    ) -> None:
        await self.log(
            KIND_CHAT_ERROR,
            conversation_id,
            model_id=model_id,
            error=self._redact_value(error),
            user=_user_id(user),
            success=False,
        )

    async def log_tool_usage(
        self,
        conversation_id: str,
        *,
        tool_id: str,
        tool_call_id: str,
        args: dict,
        output: Any,
        duration_ms: int,
    ) -> None:
        await self.log(
            KIND_TOOL_USAGE,
            conversation_id,
            tool_id=tool_id,
            tool_call_id=tool_call_id,
            args=self._redact_value(args),
            output=self._output(output),
            duration_ms=duration_ms,
            success=True,
        )

    async def log_tool_error(
        self,
        conversation_id: str,
        *,
        tool_id: str,
        tool_call_id: str,
        args: dict,
        error: str,
        duration_ms: int,
    ) -> None:
        await self.log(
            KIND_TOOL_ERROR,
            conversation_id,
            tool_id=tool_id,
            tool_call_id=tool_call_id,
            args=self._redact_value(args),
            error=self.redact(error),
            duration_ms=duration_ms,
            success=False,
        )

    async def log_clarification_request(
        self,
        conversation_id: str,
        *,
        question_id: str,
        question: str,
        input_type: str,
    ) -> None:
        await self.log(
            KIND_CLARIFICATION_REQUEST,
            conversation_id,
            question_id=question_id,
            question=self.redact(question),
            input_type=input_type,
            success=True,
        )

    async def _rotate_if_needed(self) -> None:
        if not self.path.exists() or self.path.stat().st_size < self.max_bytes:
            return

        for i in range(self.keep_files - 1, 0, -1):
            src = self.path.with_suffix(self.path.suffix + f".{i}")
            dst = self.path.with_suffix(self.path.suffix + f".{i + 1}")
            if src.exists():
                src.replace(dst)

        self.path.replace(self.path.with_suffix(self.path.suffix + ".1"))


def _user_id(user: Any) -> Any:
    if user is None or isinstance(user, (str, int)):
        return user
    if isinstance(user, dict):
        return user.get("id")
    return getattr(user, "id", None)
