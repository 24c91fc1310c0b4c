"""Parley: one canonical chat schema over interchangeable LLM adapters.

Public API:
    - Router / RouterBuilder: handle-based dispatch with retries
    - build_router(): config-driven router construction
    - ChatRequest, Message, ChatOptions, ...: the canonical type model
    - RequestPatch: runtime request overrides
    - RetryPolicy: bounded exponential backoff
"""

from __future__ import annotations

import logging

from parley.config import (
    ApiKeyCredential,
    BearerCredential,
    ModelConfig,
    NoCredential,
    ProviderKind,
    ServiceAccountCredential,
    build_router,
)
from parley.errors import (
    AbortedError,
    AuthError,
    ConfigurationError,
    ErrorKind,
    HandleNotFoundError,
    ModelNotFoundError,
    NotImplementedFeatureError,
    ParleyError,
    ProviderError,
    RateLimitError,
    StreamClosedError,
    TokenLimitExceededError,
    TransportError,
    UnknownError,
    UnsupportedFeatureError,
    ValidationError,
)
from parley.patch import RequestPatch, apply_patch
from parley.providers import (
    AnthropicMessagesProvider,
    GoogleGeminiProvider,
    HttpProvider,
    MockProvider,
    OpenAIChatProvider,
    OpenAIResponsesProvider,
    Provider,
)
from parley.retry import RetryPolicy
from parley.router import Router, RouterBuilder
from parley.sse import ChatStream
from parley.transport import HttpxTransport, Transport
from parley.types import (
    AudioPart,
    Base64Source,
    CapabilityDescriptor,
    ChatChunk,
    ChatOptions,
    ChatRequest,
    ChatResponse,
    CustomEvent,
    DataPart,
    Done,
    ErrorEvent,
    FileIdSource,
    FilePart,
    FinishReason,
    FinishSignal,
    ImageDetail,
    ImagePart,
    Message,
    ReasoningDelta,
    ReasoningOptions,
    ResponseFormat,
    Role,
    TextDelta,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallDelta,
    ToolCallPart,
    ToolChoice,
    ToolDefinition,
    ToolKind,
    ToolResult,
    ToolResultPart,
    UrlSource,
    VideoPart,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("parley-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("parley").addHandler(logging.NullHandler())

__all__ = [
    "AbortedError",
    "AnthropicMessagesProvider",
    "ApiKeyCredential",
    "AudioPart",
    "AuthError",
    "Base64Source",
    "BearerCredential",
    "CapabilityDescriptor",
    "ChatChunk",
    "ChatOptions",
    "ChatRequest",
    "ChatResponse",
    "ChatStream",
    "ConfigurationError",
    "CustomEvent",
    "DataPart",
    "Done",
    "ErrorEvent",
    "ErrorKind",
    "FileIdSource",
    "FilePart",
    "FinishReason",
    "FinishSignal",
    "GoogleGeminiProvider",
    "HandleNotFoundError",
    "HttpProvider",
    "HttpxTransport",
    "ImageDetail",
    "ImagePart",
    "Message",
    "MockProvider",
    "ModelConfig",
    "ModelNotFoundError",
    "NoCredential",
    "NotImplementedFeatureError",
    "OpenAIChatProvider",
    "OpenAIResponsesProvider",
    "ParleyError",
    "Provider",
    "ProviderError",
    "ProviderKind",
    "RateLimitError",
    "ReasoningDelta",
    "ReasoningOptions",
    "RequestPatch",
    "ResponseFormat",
    "RetryPolicy",
    "Role",
    "Router",
    "RouterBuilder",
    "ServiceAccountCredential",
    "StreamClosedError",
    "TextDelta",
    "TextPart",
    "TokenLimitExceededError",
    "TokenUsage",
    "ToolCall",
    "ToolCallDelta",
    "ToolCallPart",
    "ToolChoice",
    "ToolDefinition",
    "ToolKind",
    "ToolResult",
    "ToolResultPart",
    "Transport",
    "TransportError",
    "UnknownError",
    "UnsupportedFeatureError",
    "UrlSource",
    "ValidationError",
    "VideoPart",
    "apply_patch",
    "build_router",
]
