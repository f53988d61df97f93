"""
Tool dispatch -- one complete tool call in, one ``ToolOutcome`` out.

Classification order:
1. The clarification tool (by normalized name, or any tool whose descriptor
   says ``requires_user_input``) -> ``clarification`` outcome, loop pauses.
2. Tools flagged ``passthrough`` -> the tool's own output streams to the
   client and becomes the assistant answer; the turn ends.
3. Everything else runs as a regular tool and its result is fed back to the
   model.  Failures become ``error`` outcomes, never exceptions.

Only cancellation (``RequestCancelled``) escapes ``execute``.
"""

from __future__ import annotations

import codecs
import json
import logging
import time
import traceback
from typing import Any, Iterable

import httpx

from chatloop.errors import (
    ClarificationValidationError,
    RequestCancelled,
    localize,
)
from chatloop.llm.types import ImageData, Message, ToolCall, normalize_tool_name
from chatloop.session.audit import InteractionLogger
from chatloop.session.broadcaster import Broadcaster
from chatloop.session.controller import CancellationScope
from chatloop.session.events import (
    SOURCE_TOOL,
    clarification_event,
    content_chunk_event,
    tool_call_end_event,
    tool_call_start_event,
    tool_stream_complete_event,
)
from chatloop.tools.clarification import (
    CLARIFICATION_TOOL_NAME,
    AskUserTool,
    ClarificationTracker,
    question_id_for,
    to_client_payload,
)
from chatloop.tools.registry import ToolDescriptor, ToolRegistry
from chatloop.tools.validation import ToolValidator
from chatloop.types import ErrorCode, OutcomeKind, ToolContext, ToolOutcome

logger = logging.getLogger(__name__)


def extract_image_data(obj: Any) -> ImageData | None:
    """
    Depth-first search for an ``imageData`` attachment inside a tool result.

    Recognized shape: ``{"imageData": {"type": "image", "base64": ...}}`` at
    any nesting level of dicts and lists.
    """
    if isinstance(obj, dict):
        image = obj.get("imageData")
        if isinstance(image, dict) and image.get("type") == "image" and image.get("base64"):
            return ImageData(
                base64=image["base64"],
                format=image.get("format") or "image/jpeg",
                filename=image.get("filename") or "attachment",
            )
        children: Iterable[Any] = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        found = extract_image_data(child)
        if found is not None:
            return found
    return None


def error_body(tool_id: str, message: str, details: Any = None, code: str | None = None) -> dict:
    body: dict[str, Any] = {"error": True, "message": message, "toolId": tool_id}
    if code:
        body["code"] = code
    if details is not None:
        body["details"] = details
    return body


class ToolDispatcher:
    """
    Executes tool calls on behalf of the conversation loop.

    Parameters
    ----------
    registry:
        Where tools are looked up and run.
    broadcaster:
        Receives ``tool_call_start``/``tool_call_end``, clarification and
        tool-streamed content events.
    clarifications:
        Per-conversation clarification counters.
    audit:
        Optional interaction logger for ``tool_usage``/``tool_error``.
    clarification_tool:
        Name of the reserved clarification tool.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        broadcaster: Broadcaster,
        clarifications: ClarificationTracker,
        audit: InteractionLogger | None = None,
        clarification_tool: str = CLARIFICATION_TOOL_NAME,
        default_language: str = "en",
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.clarifications = clarifications
        self.audit = audit
        self.clarification_tool = clarification_tool
        self.default_language = default_language
        self._fallback_ask_user = AskUserTool()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_clarification(self, tool_name: str) -> bool:
        if normalize_tool_name(tool_name) == normalize_tool_name(self.clarification_tool):
            return True
        d = self.registry.resolve(tool_name)
        return bool(d and d.requires_user_input)

    async def execute(
        self,
        tool_call: ToolCall,
        available_tools: Iterable[str] | None,
        conversation_id: str,
        *,
        user: Any = None,
        app_config: Any = None,
        scope: CancellationScope | None = None,
        language: str | None = None,
    ) -> ToolOutcome:
        context = ToolContext(conversation_id=conversation_id, user=user, app_config=app_config)

        if self.is_clarification(tool_call.name):
            return await self._clarify(tool_call, context, scope, language)

        descriptor = self._lookup(tool_call.name, available_tools)
        self.broadcaster.emit(
            tool_call_start_event(conversation_id, tool_call.name, tool_call.arguments)
        )
        if descriptor is None:
            body = error_body(
                tool_call.name,
                f"Tool execution failed: Unknown tool: {tool_call.name}",
                code=ErrorCode.UNKNOWN_TOOL,
            )
            return await self._error(tool_call, context, body, duration_ms=0)

        if descriptor.passthrough:
            return await self._passthrough(tool_call, descriptor, context, scope)
        return await self._regular(tool_call, descriptor, context, scope)

    # ------------------------------------------------------------------
    # Regular protocol
    # ------------------------------------------------------------------

    async def _regular(
        self,
        tool_call: ToolCall,
        descriptor: ToolDescriptor,
        context: ToolContext,
        scope: CancellationScope | None,
    ) -> ToolOutcome:
        valid, error_msg = ToolValidator.validate(descriptor.tool, tool_call.arguments)
        if not valid:
            body = error_body(
                descriptor.tool_id,
                f"Validation error: {error_msg}",
                code=ErrorCode.VALIDATION_ERROR,
            )
            return await self._error(tool_call, context, body, duration_ms=0)

        start = time.monotonic()
        try:
            result = await self._run(descriptor.tool_id, tool_call.arguments, context, scope)
        except RequestCancelled:
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Tool %s failed in %s: %s", descriptor.tool_id, context.conversation_id, e)
            body = error_body(
                descriptor.tool_id,
                f"Tool execution failed: {e or type(e).__name__}",
                details="".join(traceback.format_exception_only(type(e), e)).strip(),
                code=ErrorCode.TOOL_EXCEPTION,
            )
            return await self._error(tool_call, context, body, duration_ms=duration_ms)

        duration_ms = int((time.monotonic() - start) * 1000)
        message = Message(
            role="tool",
            content=json.dumps(result, default=str),
            tool_call_id=tool_call.id,
            name=tool_call.name,
        )
        image = extract_image_data(result)
        if image is not None:
            logger.info("Tool %s returned image data for vision analysis", descriptor.tool_id)
            message.image_data = image
            message.content = f"Retrieved image: {image.filename}"

        self.broadcaster.emit(
            tool_call_end_event(context.conversation_id, tool_call.name, result)
        )
        await self._record(
            "log_tool_usage",
            context.conversation_id,
            tool_id=descriptor.tool_id,
            tool_call_id=tool_call.id,
            args=tool_call.arguments,
            output=result,
            duration_ms=duration_ms,
        )
        return ToolOutcome(kind=OutcomeKind.REGULAR, message=message, tool_id=descriptor.tool_id)

    # ------------------------------------------------------------------
    # Clarification protocol
    # ------------------------------------------------------------------

    async def _clarify(
        self,
        tool_call: ToolCall,
        context: ToolContext,
        scope: CancellationScope | None,
        language: str | None,
    ) -> ToolOutcome:
        cid = context.conversation_id
        self.broadcaster.emit(tool_call_start_event(cid, tool_call.name, tool_call.arguments))

        descriptor = self.registry.resolve(tool_call.name)
        try:
            if descriptor is not None:
                result = await self._run(descriptor.tool_id, tool_call.arguments, context, scope)
            else:
                result = await self._fallback_ask_user.execute(context, **tool_call.arguments)
        except RequestCancelled:
            raise
        except ClarificationValidationError as e:
            body = error_body(
                tool_call.name,
                f"Invalid clarification request: {e.message}",
                code=ErrorCode.CLARIFICATION_INVALID,
            )
            return await self._error(tool_call, context, body, duration_ms=0)
        except Exception as e:
            body = error_body(
                tool_call.name,
                f"Tool execution failed: {e or type(e).__name__}",
                code=ErrorCode.TOOL_EXCEPTION,
            )
            return await self._error(tool_call, context, body, duration_ms=0)

        request = result.get("clarification") if isinstance(result, dict) else None
        if not isinstance(request, dict) or not request.get("question"):
            body = error_body(
                tool_call.name,
                "Invalid clarification request: tool returned no question",
                code=ErrorCode.CLARIFICATION_INVALID,
            )
            return await self._error(tool_call, context, body, duration_ms=0)

        if not self.clarifications.try_acquire(cid):
            logger.info(
                "Clarification limit (%d) reached for %s",
                self.clarifications.max_clarifications,
                cid,
            )
            body = error_body(
                tool_call.name,
                localize("clarification_limit", {}, language, self.default_language),
                code=ErrorCode.CLARIFICATION_LIMIT,
            )
            return await self._error(tool_call, context, body, duration_ms=0)

        question_id = question_id_for(cid, tool_call.id)
        payload = to_client_payload(request, question_id, tool_call.id)
        self.broadcaster.emit(clarification_event(cid, payload))
        self.broadcaster.emit(
            tool_call_end_event(
                cid, tool_call.name, {"awaitingUserInput": True, "questionId": question_id}
            )
        )
        await self._record(
            "log_clarification_request",
            cid,
            question_id=question_id,
            question=request["question"],
            input_type=request.get("input_type", "text"),
        )

        # Placeholder only; the answer replaces it when the user responds.
        message = Message(
            role="tool",
            content=json.dumps({"status": "awaiting_user_input", "questionId": question_id}),
            tool_call_id=tool_call.id,
            name=tool_call.name,
        )
        return ToolOutcome(
            kind=OutcomeKind.CLARIFICATION,
            message=message,
            tool_id=descriptor.tool_id if descriptor else self.clarification_tool,
            clarification={"questionId": question_id, "request": request, "payload": payload},
        )

    # ------------------------------------------------------------------
    # Passthrough protocol
    # ------------------------------------------------------------------

    async def _passthrough(
        self,
        tool_call: ToolCall,
        descriptor: ToolDescriptor,
        context: ToolContext,
        scope: CancellationScope | None,
    ) -> ToolOutcome:
        context.passthrough = True
        cid = context.conversation_id
        tool_id = descriptor.tool_id
        start = time.monotonic()

        async def consume() -> str:
            response = await self.registry.run(tool_id, tool_call.arguments, context)
            return await self._drain(cid, tool_call.name, response)

        try:
            if scope is not None:
                content = await scope.race(consume())
            else:
                content = await consume()
        except RequestCancelled:
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Passthrough tool %s failed in %s: %s", tool_id, cid, e)
            body = error_body(
                tool_id,
                f"Passthrough tool execution failed: {e or type(e).__name__}",
                details="".join(traceback.format_exception_only(type(e), e)).strip(),
                code=ErrorCode.PASSTHROUGH_FAILED,
            )
            self.broadcaster.emit(tool_call_end_event(cid, tool_call.name, body, error=True))
            await self._audit_error(tool_call, context, tool_id, body, duration_ms)
            return ToolOutcome(
                kind=OutcomeKind.PASSTHROUGH,
                message=Message(
                    role="assistant",
                    content=f"I encountered an error while processing your request: {body['message']}",
                    tool_source=tool_id,
                    metadata={"tool_call_id": tool_call.id, "error": True},
                ),
                tool_id=tool_id,
                ack=self._ack(tool_call, body),
                error=body,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        self.broadcaster.emit(tool_stream_complete_event(cid, tool_call.name, content))
        self.broadcaster.emit(tool_call_end_event(cid, tool_call.name, {"answer": content}))
        await self._record(
            "log_tool_usage",
            cid,
            tool_id=tool_id,
            tool_call_id=tool_call.id,
            args=tool_call.arguments,
            output={"answer": content, "streaming": True},
            duration_ms=duration_ms,
        )
        return ToolOutcome(
            kind=OutcomeKind.PASSTHROUGH,
            message=Message(
                role="assistant",
                content=content,
                tool_source=tool_id,
                metadata={"tool_call_id": tool_call.id},
            ),
            tool_id=tool_id,
            ack=self._ack(tool_call, {"passthrough": True, "delivered": True}),
        )

    async def _drain(self, conversation_id: str, tool_name: str, response: Any) -> str:
        """Forward every fragment of a passthrough result and return the full text."""
        parts: list[str] = []

        def forward(text: str) -> None:
            if text:
                parts.append(text)
                self.broadcaster.emit(
                    content_chunk_event(conversation_id, text, SOURCE_TOOL, tool_name)
                )

        if isinstance(response, httpx.Response):
            try:
                async for text in response.aiter_text():
                    forward(text)
            finally:
                await response.aclose()
        elif hasattr(response, "__aiter__"):
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            async for chunk in response:
                if isinstance(chunk, (bytes, bytearray)):
                    forward(decoder.decode(bytes(chunk)))
                elif chunk:
                    forward(str(chunk))
            forward(decoder.decode(b"", final=True))
        elif isinstance(response, (bytes, bytearray)):
            forward(bytes(response).decode("utf-8", errors="replace"))
        elif isinstance(response, str):
            forward(response)
        elif isinstance(response, dict):
            answer = response.get("answer")
            forward(answer if isinstance(answer, str) else json.dumps(response, indent=2, default=str))
        elif response is not None:
            forward(json.dumps(response, indent=2, default=str) if isinstance(response, list) else str(response))
        return "".join(parts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lookup(self, name: str, available_tools: Iterable[str] | None) -> ToolDescriptor | None:
        descriptor = self.registry.resolve(name)
        if descriptor is None or available_tools is None:
            return descriptor
        allowed = {normalize_tool_name(t) for t in available_tools}
        if descriptor.name in allowed or normalize_tool_name(descriptor.tool_id) in allowed:
            return descriptor
        return None

    async def _run(
        self,
        tool_id: str,
        args: dict,
        context: ToolContext,
        scope: CancellationScope | None,
    ) -> Any:
        if scope is not None:
            return await scope.race(self.registry.run(tool_id, args, context))
        return await self.registry.run(tool_id, args, context)

    @staticmethod
    def _ack(tool_call: ToolCall, body: dict) -> Message:
        return Message(
            role="tool",
            content=json.dumps(body),
            tool_call_id=tool_call.id,
            name=tool_call.name,
        )

    async def _error(
        self,
        tool_call: ToolCall,
        context: ToolContext,
        body: dict,
        duration_ms: int,
    ) -> ToolOutcome:
        self.broadcaster.emit(
            tool_call_end_event(context.conversation_id, tool_call.name, body, error=True)
        )
        await self._audit_error(tool_call, context, body["toolId"], body, duration_ms)
        return ToolOutcome(
            kind=OutcomeKind.ERROR,
            message=self._ack(tool_call, body),
            tool_id=body["toolId"],
            error=body,
        )

    async def _audit_error(
        self,
        tool_call: ToolCall,
        context: ToolContext,
        tool_id: str,
        body: dict,
        duration_ms: int,
    ) -> None:
        await self._record(
            "log_tool_error",
            context.conversation_id,
            tool_id=tool_id,
            tool_call_id=tool_call.id,
            args=tool_call.arguments,
            error=body["message"],
            duration_ms=duration_ms,
        )

    async def _record(self, method: str, conversation_id: str, **fields: Any) -> None:
        if self.audit is None:
            return
        try:
            await getattr(self.audit, method)(conversation_id, **fields)
        except Exception:
            logger.exception("Audit log failed")
