"""Abstract base class for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from chatloop.llm.types import Message, ModelConfig, RequestOptions, StreamEvent


@dataclass
class ProviderRequest:
    """A fully shaped HTTP request, ready for the transport."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict = field(default_factory=dict)
    method: str = "POST"


class Provider(ABC):
    """
    A provider adapts one vendor's wire format to the normalized contract.

    Implementations must support:
      - Building the HTTP request for a conversation (``build_request``).
      - Turning one decoded stream payload into a ``StreamEvent``
        (``parse_event``).

    Providers hold no connection state; the transport owns the HTTP client.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used for routing (e.g. ``"openai-compat"``)."""
        ...

    @abstractmethod
    def build_request(
        self,
        model: ModelConfig,
        history: list[Message],
        api_key: str,
        options: RequestOptions,
    ) -> ProviderRequest:
        ...

    @abstractmethod
    def parse_event(self, data: str) -> StreamEvent:
        """
        Convert one raw stream payload (the text of an SSE ``data:`` field)
        into a ``StreamEvent``.

        Malformed payloads are reported as ``StreamEvent(error=True, ...)``
        rather than raised.
        """
        ...
