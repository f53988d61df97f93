"""
Error taxonomy and user-facing error translation.

Every failure the orchestrator reports carries a stable ``code`` that maps to
an entry in the message catalog below.  ``translate_error`` turns an exception
into the ``{message, code, details}`` body that is broadcast to the client.
"""

from __future__ import annotations

import json
from typing import Any

import httpx


class ChatloopError(Exception):
    """Base class for all orchestrator errors."""

    code = "internal_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class RequestCancelled(ChatloopError):
    """The in-flight request was superseded or deliberately aborted."""

    code = "request_cancelled"

    def __init__(self, conversation_id: str, reason: str = "aborted") -> None:
        super().__init__(f"Request for {conversation_id} cancelled ({reason})")
        self.conversation_id = conversation_id
        self.reason = reason


class RequestTimedOut(RequestCancelled):
    """The wall-clock deadline of a provider call expired."""

    code = "request_timeout"

    def __init__(self, conversation_id: str, timeout: float) -> None:
        super().__init__(conversation_id, reason="timeout")
        self.message = f"Request timed out after {timeout:g} seconds"
        self.args = (self.message,)
        self.timeout = timeout


_CONTEXT_WINDOW_MARKERS = (
    "context length",
    "context_length_exceeded",
    "maximum context",
    "too many tokens",
    "prompt is too long",
    "input is too long",
)


class ProviderHttpError(ChatloopError):
    """Non-2xx response from a vendor API."""

    code = "llm_api_error"

    def __init__(
        self,
        status: int,
        provider: str,
        body: str = "",
        code: str | None = None,
        vendor_message: str | None = None,
    ) -> None:
        super().__init__(
            vendor_message or f"HTTP {status} from {provider}",
            code=code,
            details=body,
        )
        self.status = status
        self.provider = provider
        self.body = body
        self.vendor_message = vendor_message

    @property
    def is_context_window_error(self) -> bool:
        haystack = f"{self.vendor_message or ''} {self.body}".lower()
        return any(marker in haystack for marker in _CONTEXT_WINDOW_MARKERS)

    @classmethod
    def from_response(cls, status: int, provider: str, body: str) -> ProviderHttpError:
        """Classify a failed response and pull out the vendor's own message."""
        if status == 401:
            code = "authentication_failed"
        elif status == 400 and ("api key" in body.lower() or "api_key" in body.lower()):
            code = "authentication_failed"
        elif status == 429:
            code = "rate_limit_exceeded"
        elif status >= 500:
            code = "service_error"
        else:
            code = "llm_api_error"
        return cls(
            status,
            provider,
            body=body,
            code=code,
            vendor_message=extract_vendor_message(body),
        )


def extract_vendor_message(body: str) -> str | None:
    """
    Best-effort extraction of a human-readable message from an error body.

    Handles the shapes used by the common vendors::

        {"error": {"message": "..."}}          # OpenAI, Anthropic, Mistral
        [{"error": {"message": "..."}}]        # Google (list wrapped)
        {"message": "..."} / {"detail": "..."}  # vLLM and friends
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError, TypeError):
        return None

    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return None

    error = data.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    for key in ("message", "detail"):
        if isinstance(data.get(key), str):
            return data[key]
    return None


class StreamProcessingError(ChatloopError):
    """A vendor parser reported a malformed or failed event mid-stream."""

    code = "processing_error"


class ClarificationValidationError(ChatloopError):
    """The model sent invalid parameters to the clarification tool."""

    code = "clarification_invalid"


class ClarificationNotFound(ChatloopError):
    code = "clarification_not_found"


class ArgumentRepairError(ChatloopError):
    code = "argument_repair_failed"


# ---------------------------------------------------------------------------
# Localization
# ---------------------------------------------------------------------------

DEFAULT_LANGUAGE = "en"

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "request_timeout": "The request timed out after {timeout} seconds. Please try again.",
        "authentication_failed": "Authentication with {provider} failed. Please check the API key.",
        "rate_limit_exceeded": "{provider} is rate limiting requests. Please wait a moment and retry.",
        "service_error": "{provider} is currently unavailable. Please try again later.",
        "llm_api_error": "The language model returned an error (HTTP {status}).",
        "context_window_exceeded": "The conversation is too long for this model. Please start a new chat or shorten your message.",
        "processing_error": "The response from the language model could not be processed.",
        "network_error": "Could not reach the language model service.",
        "internal_error": "An unexpected error occurred.",
        "tool_execution_failed": "Tool {toolId} failed: {error}",
        "clarification_limit": "Clarification limit reached. Proceed with the information available and make reasonable assumptions.",
    },
    "de": {
        "request_timeout": "Die Anfrage wurde nach {timeout} Sekunden abgebrochen. Bitte erneut versuchen.",
        "authentication_failed": "Die Anmeldung bei {provider} ist fehlgeschlagen. Bitte den API-Schluessel pruefen.",
        "rate_limit_exceeded": "{provider} begrenzt die Anfragen. Bitte kurz warten und erneut versuchen.",
        "service_error": "{provider} ist derzeit nicht erreichbar. Bitte spaeter erneut versuchen.",
        "llm_api_error": "Das Sprachmodell hat einen Fehler gemeldet (HTTP {status}).",
        "context_window_exceeded": "Die Unterhaltung ist zu lang fuer dieses Modell. Bitte einen neuen Chat beginnen oder die Nachricht kuerzen.",
        "processing_error": "Die Antwort des Sprachmodells konnte nicht verarbeitet werden.",
        "network_error": "Der Sprachmodell-Dienst ist nicht erreichbar.",
        "internal_error": "Ein unerwarteter Fehler ist aufgetreten.",
        "tool_execution_failed": "Werkzeug {toolId} ist fehlgeschlagen: {error}",
    },
}


def localize(
    key: str,
    params: dict[str, Any] | None = None,
    language: str | None = None,
    default_language: str = DEFAULT_LANGUAGE,
) -> str:
    """
    Look up *key* in the catalog for *language*.

    Falls back to *default_language*, then to ``"Error: <key>"``.
    Placeholders of the form ``{name}`` are substituted from *params*;
    unknown placeholders are left as-is.
    """
    lang = language or default_language
    template = MESSAGES.get(lang, {}).get(key)
    if template is None:
        template = MESSAGES.get(default_language, {}).get(key)
    if template is None:
        return f"Error: {key}"
    message = template
    for name, value in (params or {}).items():
        message = message.replace("{" + name + "}", str(value))
    return message


def translate_error(
    exc: BaseException,
    language: str | None = None,
    default_language: str = DEFAULT_LANGUAGE,
) -> dict[str, Any]:
    """Build the ``{message, code, details}`` body reported to the client."""
    if isinstance(exc, RequestTimedOut):
        message = localize(
            "request_timeout", {"timeout": f"{exc.timeout:g}"}, language, default_language
        )
        return {"message": message, "code": exc.code, "details": exc.message}

    if isinstance(exc, ProviderHttpError):
        key = "context_window_exceeded" if exc.is_context_window_error else exc.code
        message = localize(
            key,
            {"provider": exc.provider, "status": exc.status},
            language,
            default_language,
        )
        return {
            "message": message,
            "code": str(exc.status),
            "details": exc.body,
            "isContextWindowError": exc.is_context_window_error,
        }

    if isinstance(exc, ChatloopError):
        translated = localize(exc.code, {}, language, default_language)
        if translated.startswith("Error:"):
            translated = exc.message
        return {"message": translated, "code": exc.code, "details": exc.details or exc.message}

    if isinstance(exc, httpx.HTTPError):
        return {
            "message": localize("network_error", {}, language, default_language),
            "code": "network_error",
            "details": str(exc),
        }

    return {
        "message": localize("internal_error", {}, language, default_language),
        "code": "internal_error",
        "details": str(exc),
    }
