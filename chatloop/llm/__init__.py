"""LLM subsystem -- normalized types, providers, transport and delta accumulation."""

from chatloop.llm.types import (
    AssembledResponse,
    ImageData,
    Message,
    ModelConfig,
    RequestOptions,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
)
from chatloop.llm.accumulator import DeltaAccumulator
from chatloop.llm.router import ProviderRouter
from chatloop.llm.transport import ProviderTransport, RequestThrottler

__all__ = [
    "AssembledResponse",
    "DeltaAccumulator",
    "ImageData",
    "Message",
    "ModelConfig",
    "ProviderRouter",
    "ProviderTransport",
    "RequestOptions",
    "RequestThrottler",
    "StreamEvent",
    "ToolCall",
    "ToolCallDelta",
]
