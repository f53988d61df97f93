"""
Orchestrator core -- the conversation loop that ties everything together.

One turn:
1. Opens a cancellation scope for the conversation (superseding any turn
   still running for the same id).
2. Builds a provider request from the full history and streams the response
   through a ``DeltaAccumulator`` under the scope's deadline.
3. Stops on a final answer, or dispatches the tool calls sequentially.
4. Pauses on a clarification, ends on a passthrough, otherwise feeds the
   tool results back and loops, up to ``max_iterations`` provider calls.

The broadcaster is the primary result channel; ``TurnResult`` is returned
for callers that want a summary.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from chatloop.errors import (
    DEFAULT_LANGUAGE,
    ClarificationNotFound,
    RequestCancelled,
    RequestTimedOut,
    StreamProcessingError,
    translate_error,
)
from chatloop.llm.accumulator import DeltaAccumulator
from chatloop.llm.providers.base import Provider, ProviderRequest
from chatloop.llm.router import ProviderRouter
from chatloop.llm.transport import ProviderTransport
from chatloop.llm.types import (
    FINISH_STOP,
    AssembledResponse,
    Message,
    ModelConfig,
    RequestOptions,
)
from chatloop.orchestrator.dispatcher import ToolDispatcher
from chatloop.session.audit import InteractionLogger
from chatloop.session.broadcaster import Broadcaster
from chatloop.session.controller import (
    REASON_ABORTED,
    REASON_ENDED,
    CancellationScope,
    SessionController,
)
from chatloop.session.events import action_start_event, done_event, error_event
from chatloop.session.store import ConversationStore
from chatloop.tools.clarification import CLARIFICATION_TOOL_NAME, ClarificationTracker
from chatloop.tools.registry import ToolRegistry
from chatloop.types import OutcomeKind, TurnResult, TurnStatus

logger = logging.getLogger(__name__)

FINISH_CLARIFICATION = "clarification"
FINISH_PASSTHROUGH = "tool_passthrough_complete"
FINISH_MAX_ITERATIONS = "max_iterations"


@dataclass
class ConversationContext:
    """What a paused conversation needs to resume; kept in memory only."""

    model: ModelConfig
    tools: list[str] | None = None
    user: Any = None
    language: str | None = None
    app_config: Any = None
    response_schema: dict | None = None


class Orchestrator:
    """
    Multi-turn, tool-calling conversation loop.

    Parameters
    ----------
    router : ProviderRouter
        Resolves ``ModelConfig.provider`` to a request builder / parser.
    transport : ProviderTransport
        Issues provider requests and yields raw stream payloads.
    registry : ToolRegistry
        Registered tools.
    broadcaster : Broadcaster
        Receives every client-facing event.
    controller : SessionController
        Per-conversation single-flight scopes.  Its ``on_timeout`` callback
        is taken over by the orchestrator.
    store : ConversationStore
        History and pending clarifications.  An in-memory store is opened
        on first use when omitted.
    audit : InteractionLogger
        Optional interaction log.
    max_iterations : int
        Hard ceiling of provider calls per turn.
    max_clarifications : int
        Clarification requests allowed per conversation.
    request_timeout : float
        Wall-clock deadline of one provider call, in seconds.
    """

    def __init__(
        self,
        router: ProviderRouter,
        transport: ProviderTransport,
        registry: ToolRegistry,
        broadcaster: Broadcaster,
        *,
        controller: SessionController | None = None,
        store: ConversationStore | None = None,
        audit: InteractionLogger | None = None,
        max_iterations: int = 10,
        max_clarifications: int = 10,
        request_timeout: float = 300.0,
        clarification_tool: str = CLARIFICATION_TOOL_NAME,
        system_prompt: str = "",
        default_language: str = DEFAULT_LANGUAGE,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> None:
        self.router = router
        self.transport = transport
        self.registry = registry
        self.broadcaster = broadcaster
        self.controller = controller or SessionController(default_timeout=request_timeout)
        self.controller.on_timeout = self._report_timeout
        self.store = store
        self.audit = audit
        self.max_iterations = max_iterations
        self.request_timeout = request_timeout
        self.system_prompt = system_prompt
        self.default_language = default_language
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.clarifications = ClarificationTracker(max_clarifications)
        self.dispatcher = ToolDispatcher(
            registry,
            broadcaster,
            self.clarifications,
            audit=audit,
            clarification_tool=clarification_tool,
            default_language=default_language,
        )
        self._contexts: dict[str, ConversationContext] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_turn(
        self,
        conversation_id: str,
        history: list[Message],
        model: ModelConfig,
        tools: Iterable[str] | None = None,
        *,
        user: Any = None,
        language: str | None = None,
        app_config: Any = None,
        response_schema: dict | None = None,
    ) -> TurnResult:
        """
        Run one turn for *conversation_id* starting from *history*.

        *history* must already end with the new user message.  *tools* are
        the tool ids offered to the model (``None`` offers every registered
        tool).
        """
        context = ConversationContext(
            model=model,
            tools=list(tools) if tools is not None else None,
            user=user,
            language=language,
            app_config=app_config,
            response_schema=response_schema,
        )
        self._contexts[conversation_id] = context
        return await self._run_turn(conversation_id, list(history), context)

    async def respond_to_clarification(
        self,
        conversation_id: str,
        question_id: str,
        answer: Any,
        *,
        skipped: bool = False,
    ) -> TurnResult:
        """
        Resume a paused conversation with the user's answer.

        Raises ``ClarificationNotFound`` if *question_id* is not pending for
        *conversation_id*.
        """
        store = await self._get_store()
        context = self._contexts.get(conversation_id)
        history = await store.load_history(conversation_id)
        if context is None or history is None:
            raise ClarificationNotFound(
                f"No paused conversation {conversation_id}", details=question_id
            )
        pending = await store.pop_pending_clarification(conversation_id, question_id)
        if pending is None:
            raise ClarificationNotFound(
                f"No pending clarification {question_id} for {conversation_id}",
                details=question_id,
            )

        body: dict[str, Any] = {"questionId": question_id, "answer": answer}
        if skipped:
            body["skipped"] = True
        history.append(
            Message(
                role="tool",
                content=json.dumps(body),
                tool_call_id=pending["tool_call_id"],
                name=pending["tool_name"],
            )
        )
        logger.info("Resuming %s after clarification %s", conversation_id, question_id)
        return await self._run_turn(conversation_id, history, context)

    async def end_conversation(self, conversation_id: str) -> None:
        """Cancel any in-flight call and forget everything about the conversation."""
        self.controller.cancel(conversation_id, REASON_ENDED)
        self.clarifications.reset(conversation_id)
        self._contexts.pop(conversation_id, None)
        store = await self._get_store()
        await store.delete_conversation(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        """Abort the in-flight turn, if any.  History is left untouched."""
        return self.controller.cancel(conversation_id, REASON_ABORTED)

    async def close(self) -> None:
        if self.store is not None:
            await self.store.close()

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        conversation_id: str,
        history: list[Message],
        context: ConversationContext,
    ) -> TurnResult:
        scope = self.controller.begin(conversation_id)
        result: TurnResult | None = None
        try:
            result = await self._loop(conversation_id, history, context, scope)
            return result
        finally:
            self.controller.end(conversation_id, scope)
            paused = result is not None and result.status == TurnStatus.PAUSED
            # Only a paused conversation can be resumed; a newer turn owns its own entry.
            if (
                not paused
                and self.controller.current(conversation_id) is None
                and self._contexts.get(conversation_id) is context
            ):
                del self._contexts[conversation_id]

    async def _loop(
        self,
        cid: str,
        history: list[Message],
        context: ConversationContext,
        scope: CancellationScope,
    ) -> TurnResult:
        iterations = 0
        try:
            while iterations < self.max_iterations:
                iterations += 1
                response = await self._call_provider(cid, history, context, scope, iterations)

                if response.is_final:
                    history.append(
                        Message(
                            role="assistant",
                            content=response.content,
                            metadata=dict(response.metadata),
                        )
                    )
                    await self._save(cid, history, scope)
                    finish_reason = response.finish_reason or FINISH_STOP
                    self.broadcaster.emit(done_event(cid, finish_reason))
                    await self._audit_response(cid, context, response.content, finish_reason, iterations)
                    return TurnResult(TurnStatus.FINAL, iterations, list(history), finish_reason)

                calls = response.tool_calls
                self.broadcaster.emit(
                    action_start_event(
                        cid,
                        "tool_calls",
                        f"Using tool(s): {', '.join(c.name for c in calls)}",
                    )
                )
                assistant = Message(
                    role="assistant",
                    content=response.content or None,
                    tool_calls=list(calls),
                    metadata=dict(response.metadata),
                )
                history.append(assistant)

                for position, call in enumerate(calls):
                    scope.raise_if_cancelled()
                    outcome = await self.dispatcher.execute(
                        call,
                        context.tools,
                        cid,
                        user=context.user,
                        app_config=context.app_config,
                        scope=scope,
                        language=context.language,
                    )

                    if outcome.kind == OutcomeKind.CLARIFICATION:
                        # Calls after this one were never dispatched.
                        assistant.tool_calls = list(calls[: position + 1])
                        store = await self._get_store()
                        await store.add_pending_clarification(
                            cid,
                            outcome.clarification["questionId"],
                            tool_call_id=call.id,
                            tool_name=call.name,
                            request=outcome.clarification["request"],
                        )
                        await self._save(cid, history, scope)
                        self.broadcaster.emit(
                            done_event(cid, FINISH_CLARIFICATION, tool_name=call.name)
                        )
                        return TurnResult(
                            TurnStatus.PAUSED, iterations, list(history), FINISH_CLARIFICATION
                        )

                    if outcome.kind == OutcomeKind.PASSTHROUGH:
                        assistant.tool_calls = list(calls[: position + 1])
                        history.append(outcome.ack)
                        history.append(outcome.message)
                        await self._save(cid, history, scope)
                        self.broadcaster.emit(
                            done_event(cid, FINISH_PASSTHROUGH, tool_name=outcome.tool_id)
                        )
                        await self._audit_response(
                            cid, context, outcome.message.content or "", FINISH_PASSTHROUGH, iterations
                        )
                        return TurnResult(
                            TurnStatus.PASSTHROUGH,
                            iterations,
                            list(history),
                            FINISH_PASSTHROUGH,
                            error=outcome.error,
                        )

                    history.append(outcome.message)

                await self._save(cid, history, scope)

            logger.warning(
                "Conversation %s stopped after %d iterations without a final answer",
                cid,
                iterations,
            )
            self.broadcaster.emit(done_event(cid, FINISH_MAX_ITERATIONS, truncated=True))
            return TurnResult(TurnStatus.TRUNCATED, iterations, list(history), FINISH_MAX_ITERATIONS)

        except RequestTimedOut as e:
            logger.info("Turn for %s timed out after %ss", cid, e.timeout)
            error = translate_error(e, context.language, self.default_language)
            await self._audit_error(cid, context, error)
            return TurnResult(TurnStatus.TIMED_OUT, iterations, list(history), error=error)
        except RequestCancelled as e:
            logger.debug("Turn for %s cancelled (%s)", cid, e.reason)
            return TurnResult(TurnStatus.CANCELLED, iterations, list(history))
        except Exception as e:
            error = translate_error(e, context.language, self.default_language)
            logger.error("Turn for %s failed: %s (%s)", cid, e, error["code"], exc_info=True)
            extra = {k: v for k, v in error.items() if k not in ("message", "code", "details")}
            self.broadcaster.emit(
                error_event(cid, error["message"], error["code"], error["details"], **extra)
            )
            await self._audit_error(cid, context, error)
            await self._save(cid, history, scope)
            return TurnResult(TurnStatus.FAILED, iterations, list(history), error=error)

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    async def _call_provider(
        self,
        cid: str,
        history: list[Message],
        context: ConversationContext,
        scope: CancellationScope,
        iteration: int,
    ) -> AssembledResponse:
        provider = self.router.get(context.model.provider)
        tools_schema = self.registry.to_openai_schema(context.tools)
        options = RequestOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=tools_schema or None,
            response_schema=context.response_schema,
        )
        request = provider.build_request(
            context.model, self._messages(history), context.model.api_key, options
        )
        logger.debug(
            "Provider call %d/%d for %s (%s)",
            iteration,
            self.max_iterations,
            cid,
            context.model.id,
        )

        accumulator = DeltaAccumulator(self.broadcaster, cid)
        scope.arm(self.request_timeout)
        try:
            await scope.race(self._consume(provider, request, context.model, accumulator, scope))
        finally:
            scope.disarm()

        response = accumulator.result()
        if response.repairs:
            logger.warning("Tool-call argument repairs in %s: %s", cid, response.repairs)
        return response

    async def _consume(
        self,
        provider: Provider,
        request: ProviderRequest,
        model: ModelConfig,
        accumulator: DeltaAccumulator,
        scope: CancellationScope,
    ) -> None:
        stream = self.transport.stream(request, model.id, provider.name)
        try:
            async for data in stream:
                scope.raise_if_cancelled()
                event = provider.parse_event(data)
                if event.error:
                    raise StreamProcessingError(
                        event.error_message or "Malformed stream event", details=data[:500]
                    )
                accumulator.feed(event)
        finally:
            await stream.aclose()

    def _messages(self, history: list[Message]) -> list[Message]:
        if self.system_prompt and not (history and history[0].role == "system"):
            return [Message(role="system", content=self.system_prompt)] + history
        return history

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_store(self) -> ConversationStore:
        if self.store is None:
            self.store = ConversationStore(":memory:")
            await self.store.init()
        return self.store

    async def _save(self, cid: str, history: list[Message], scope: CancellationScope) -> None:
        # A superseded turn must not overwrite the newer turn's history.
        if self.controller.current(cid) is not scope:
            return
        store = await self._get_store()
        await store.save_history(cid, history)

    def _report_timeout(self, conversation_id: str, timeout: float) -> None:
        context = self._contexts.get(conversation_id)
        language = context.language if context else None
        error = translate_error(
            RequestTimedOut(conversation_id, timeout), language, self.default_language
        )
        self.broadcaster.emit(
            error_event(conversation_id, error["message"], error["code"], error["details"])
        )

    async def _audit_response(
        self,
        cid: str,
        context: ConversationContext,
        content: str,
        finish_reason: str,
        iterations: int,
    ) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.log_chat_response(
                cid,
                model_id=context.model.id,
                content=content,
                finish_reason=finish_reason,
                iterations=iterations,
                user=context.user,
            )
        except Exception:
            logger.exception("Audit log failed")

    async def _audit_error(self, cid: str, context: ConversationContext, error: dict) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.log_chat_error(
                cid, model_id=context.model.id, error=error, user=context.user
            )
        except Exception:
            logger.exception("Audit log failed")
