"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.

The provider only shapes requests and parses stream payloads; the HTTP
round-trip lives in ``chatloop.llm.transport``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from chatloop.llm.providers.base import Provider, ProviderRequest
from chatloop.llm.types import (
    ImageData,
    Message,
    ModelConfig,
    RequestOptions,
    StreamEvent,
    ToolCallDelta,
    normalize_finish_reason,
)

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.openai.com/v1/chat/completions"

# Keys of a streamed tool call that belong to the OpenAI schema itself;
# anything else is vendor metadata to be echoed back verbatim.
_TOOL_CALL_KEYS = {"index", "id", "type", "function"}


def _image_part(image: ImageData) -> dict:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.format};base64,{image.base64}"},
    }


class OpenAICompatProvider(Provider):
    """
    Request builder and stream parser for OpenAI-compatible endpoints.

    Parameters
    ----------
    default_url:
        Used when the ``ModelConfig`` does not carry its own ``url``.
    """

    def __init__(self, default_url: str = DEFAULT_URL) -> None:
        self._default_url = default_url

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "openai-compat"

    def build_request(
        self,
        model: ModelConfig,
        history: list[Message],
        api_key: str,
        options: RequestOptions,
    ) -> ProviderRequest:
        body: dict[str, Any] = {
            "model": model.wire_name,
            "messages": self._wire_messages(history),
            "stream": options.stream,
            "temperature": model.temperature if model.temperature is not None else options.temperature,
            "max_tokens": model.max_tokens or options.max_tokens,
        }
        if options.tools:
            body["tools"] = options.tools
            body["tool_choice"] = "auto"
        if options.response_schema:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": "response",
                    "schema": options.response_schema,
                    "strict": True,
                },
            }
        elif options.response_format == "json":
            body["response_format"] = {"type": "json_object"}
        body.update(model.extra)

        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        logger.debug(
            "REQUEST: model=%s tools=%d messages=%d",
            model.wire_name,
            len(options.tools) if options.tools else 0,
            len(body["messages"]),
        )
        return ProviderRequest(url=model.url or self._default_url, headers=headers, body=body)

    def parse_event(self, data: str) -> StreamEvent:
        event = StreamEvent()
        if not data:
            return event
        if data.strip() == "[DONE]":
            event.complete = True
            return event

        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse SSE data: %s", data[:200])
            event.error = True
            event.error_message = f"Error parsing OpenAI response: {e}"
            return event

        if not isinstance(parsed, dict):
            return event

        error = parsed.get("error")
        if error:
            event.error = True
            if isinstance(error, dict):
                event.error_message = error.get("message") or json.dumps(error)
            else:
                event.error_message = str(error)
            return event

        choices = parsed.get("choices") or []
        if not choices:
            return event
        choice = choices[0]

        # A full (non-streaming) message arrives as "message" instead of "delta".
        delta = choice.get("delta")
        if delta is None:
            delta = choice.get("message") or {}
            event.complete = True

        if delta.get("content"):
            event.content.append(delta["content"])
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            event.thinking.append(reasoning)

        for position, raw in enumerate(delta.get("tool_calls") or []):
            event.tool_calls.append(self._tool_delta(raw, position))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            event.finish_reason = normalize_finish_reason(finish_reason)
            event.complete = True
        return event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _tool_delta(raw: dict, position: int) -> ToolCallDelta:
        func = raw.get("function") or {}
        metadata = {k: v for k, v in raw.items() if k not in _TOOL_CALL_KEYS}
        return ToolCallDelta(
            index=raw.get("index", position),
            id=raw.get("id"),
            type=raw.get("type"),
            name=func.get("name"),
            arguments=func.get("arguments"),
            metadata=metadata or None,
        )

    def _wire_messages(self, history: list[Message]) -> list[dict]:
        wire: list[dict] = []
        pending_images: list[ImageData] = []

        def flush_images() -> None:
            # Tool messages cannot carry images, so hoisted tool-result
            # images are re-sent as one user vision message after the tool block.
            if not pending_images:
                return
            parts: list[dict] = [{"type": "text", "text": "Images returned by the tools above:"}]
            parts.extend(_image_part(img) for img in pending_images)
            wire.append({"role": "user", "content": parts})
            pending_images.clear()

        for msg in history:
            if msg.role != "tool":
                flush_images()

            if msg.role == "tool":
                m: dict[str, Any] = {
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content or "",
                }
                if msg.name:
                    m["name"] = msg.name
                if msg.image_data is not None:
                    pending_images.append(msg.image_data)
                wire.append(m)
                continue

            if msg.role == "user" and msg.image_data is not None:
                content: Any = [
                    {"type": "text", "text": msg.content or ""},
                    _image_part(msg.image_data),
                ]
            else:
                content = msg.content

            m = {"role": msg.role, "content": content}
            if msg.tool_calls:
                m["tool_calls"] = []
                for tc in msg.tool_calls:
                    wire_call: dict[str, Any] = {
                        "id": tc.id,
                        "type": tc.type or "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    wire_call.update(tc.metadata)
                    m["tool_calls"].append(wire_call)
            wire.append(m)

        flush_images()
        return wire
