"""Canonical request/response/event vocabulary shared by every adapter.

Values here are frozen dataclasses so a request can be handed to several
adapters (or retried) without anyone mutating it underneath. Vendor JSON never
appears in these types except inside explicit passthrough slots
(``DataPart``, ``CustomOutput``, ``CustomEvent``, ``ProviderMetadata.raw``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Union

if TYPE_CHECKING:
    from parley.errors import ParleyError


class Role(str, Enum):
    """Author of a message."""

    SYSTEM = "system"
    DEVELOPER = "developer"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ImageDetail(str, Enum):
    """Detail preset requested for image inspection."""

    LOW = "low"
    HIGH = "high"
    AUTO = "auto"


class ToolKind(str, Enum):
    """Category of a tool definition or tool call."""

    FUNCTION = "function"
    FILE_SEARCH = "file_search"
    WEB_SEARCH = "web_search"
    COMPUTER_USE = "computer_use"
    CUSTOM = "custom"


class FinishReason(str, Enum):
    """Why generation stopped."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    FUNCTION_CALL = "function_call"
    ERROR = "error"
    OTHER = "other"


# --- Media sources ---


@dataclass(frozen=True)
class UrlSource:
    """Public URL reachable by the provider."""

    url: str


@dataclass(frozen=True)
class Base64Source:
    """Inline base64 payload."""

    data: str
    mime_type: str | None = None


@dataclass(frozen=True)
class FileIdSource:
    """Provider-managed file identifier."""

    file_id: str


MediaSource = Union[UrlSource, Base64Source, FileIdSource]


# --- Content parts ---


@dataclass(frozen=True)
class TextPart:
    """Plain text."""

    text: str
    kind: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ImagePart:
    """Image input."""

    source: MediaSource
    detail: ImageDetail | None = None
    metadata: dict[str, Any] | None = None
    kind: Literal["image"] = field(default="image", init=False)


@dataclass(frozen=True)
class AudioPart:
    """Audio input."""

    source: MediaSource
    mime_type: str | None = None
    metadata: dict[str, Any] | None = None
    kind: Literal["audio"] = field(default="audio", init=False)


@dataclass(frozen=True)
class VideoPart:
    """Video input."""

    source: MediaSource
    mime_type: str | None = None
    metadata: dict[str, Any] | None = None
    kind: Literal["video"] = field(default="video", init=False)


@dataclass(frozen=True)
class FilePart:
    """Reference to a provider-side file."""

    file_id: str
    purpose: str | None = None
    metadata: dict[str, Any] | None = None
    kind: Literal["file"] = field(default="file", init=False)


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is decoded JSON (usually a dict); adapters serialize it to
    whatever the vendor expects.
    """

    name: str
    arguments: Any = None
    id: str | None = None
    kind: ToolKind = ToolKind.FUNCTION


@dataclass(frozen=True)
class ToolResult:
    """Output of a tool execution, correlated by ``call_id``."""

    call_id: str | None
    output: Any
    is_error: bool = False
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolCallPart:
    """Assistant-authored tool call inside a message."""

    call: ToolCall
    kind: Literal["tool_call"] = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultPart:
    """Tool-authored result inside a message."""

    result: ToolResult
    kind: Literal["tool_result"] = field(default="tool_result", init=False)


@dataclass(frozen=True)
class DataPart:
    """Opaque vendor-defined content forwarded verbatim."""

    data: Any
    kind: Literal["data"] = field(default="data", init=False)


ContentPart = Union[
    TextPart,
    ImagePart,
    AudioPart,
    VideoPart,
    FilePart,
    ToolCallPart,
    ToolResultPart,
    DataPart,
]


@dataclass(frozen=True)
class Message:
    """One conversational turn."""

    role: Role
    content: tuple[ContentPart, ...] = ()
    name: str | None = None
    metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        # Accept plain strings and lists at the edge; store canonical forms.
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if not isinstance(self.content, tuple):
            object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, (TextPart(text),))

    @classmethod
    def developer(cls, text: str) -> Message:
        return cls(Role.DEVELOPER, (TextPart(text),))

    @classmethod
    def user(cls, text: str, *parts: ContentPart) -> Message:
        return cls(Role.USER, (TextPart(text), *parts))

    @classmethod
    def assistant(cls, text: str = "", *calls: ToolCall) -> Message:
        content: list[ContentPart] = [TextPart(text)] if text else []
        content.extend(ToolCallPart(c) for c in calls)
        return cls(Role.ASSISTANT, tuple(content))

    @classmethod
    def tool(cls, call_id: str, output: Any, *, is_error: bool = False) -> Message:
        return cls(
            Role.TOOL,
            (ToolResultPart(ToolResult(call_id=call_id, output=output, is_error=is_error)),),
        )


# --- Request ---


@dataclass(frozen=True)
class ReasoningOptions:
    """Reasoning/thinking controls; ``effort`` is low/medium/high or a vendor string."""

    effort: str | None = None
    budget_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatOptions:
    """Sampling and generation controls shared across providers."""

    #: Overrides the adapter's default model when set.
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    parallel_tool_calls: bool | None = None
    reasoning: ReasoningOptions | None = None
    #: Provider-specific top-level fields (service tiers, safety settings, ...).
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call."""

    name: str
    kind: ToolKind = ToolKind.FUNCTION
    description: str | None = None
    #: JSON Schema describing the tool input.
    parameters: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    #: For ``ToolKind.CUSTOM``: vendor tool type and raw configuration.
    custom_name: str | None = None
    config: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolChoice:
    """How the model may use tools."""

    mode: Literal["auto", "any", "none", "tool", "custom"]
    name: str | None = None
    value: Any = None

    @classmethod
    def auto(cls) -> ToolChoice:
        return cls("auto")

    @classmethod
    def any(cls) -> ToolChoice:
        return cls("any")

    @classmethod
    def none(cls) -> ToolChoice:
        return cls("none")

    @classmethod
    def tool(cls, name: str) -> ToolChoice:
        return cls("tool", name=name)

    @classmethod
    def custom(cls, value: Any) -> ToolChoice:
        return cls("custom", value=value)


@dataclass(frozen=True)
class ResponseFormat:
    """Output formatting requirement."""

    type: Literal["text", "json_object", "json_schema", "custom"]
    schema: dict[str, Any] | None = None
    name: str | None = None
    value: Any = None

    @classmethod
    def text(cls) -> ResponseFormat:
        return cls("text")

    @classmethod
    def json_object(cls) -> ResponseFormat:
        return cls("json_object")

    @classmethod
    def json_schema(
        cls, schema: dict[str, Any], *, name: str = "response"
    ) -> ResponseFormat:
        return cls("json_schema", schema=schema, name=name)

    @classmethod
    def custom(cls, value: Any) -> ResponseFormat:
        return cls("custom", value=value)


@dataclass(frozen=True)
class ChatRequest:
    """A vendor-neutral chat request, built fresh per call."""

    messages: tuple[Message, ...]
    options: ChatOptions = field(default_factory=ChatOptions)
    tools: tuple[ToolDefinition, ...] = ()
    tool_choice: ToolChoice | None = None
    response_format: ResponseFormat | None = None
    metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))


# --- Response ---


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by the provider."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    reasoning_tokens: int | None = None
    total_tokens: int | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class ProviderMetadata:
    """Where a response came from."""

    provider: str = ""
    request_id: str | None = None
    endpoint: str | None = None
    raw: Any = None


@dataclass(frozen=True)
class MessageOutput:
    message: Message
    index: int = 0


@dataclass(frozen=True)
class ToolCallOutput:
    call: ToolCall
    index: int = 0


@dataclass(frozen=True)
class ToolResultOutput:
    result: ToolResult
    index: int = 0


@dataclass(frozen=True)
class ReasoningOutput:
    text: str
    index: int = 0


@dataclass(frozen=True)
class CustomOutput:
    data: Any
    index: int = 0


OutputItem = Union[
    MessageOutput, ToolCallOutput, ToolResultOutput, ReasoningOutput, CustomOutput
]


@dataclass(frozen=True)
class ChatResponse:
    """Result of one non-streaming call."""

    outputs: tuple[OutputItem, ...] = ()
    usage: TokenUsage | None = None
    finish_reason: FinishReason | None = None
    model: str | None = None
    provider: ProviderMetadata = field(default_factory=ProviderMetadata)

    @property
    def text(self) -> str:
        """Concatenated text of all message outputs."""
        chunks: list[str] = []
        for item in self.outputs:
            if isinstance(item, MessageOutput):
                chunks.extend(
                    p.text for p in item.message.content if isinstance(p, TextPart)
                )
        return "".join(chunks)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [item.call for item in self.outputs if isinstance(item, ToolCallOutput)]


# --- Streaming ---


@dataclass(frozen=True)
class TextDelta:
    text: str
    index: int = 0


@dataclass(frozen=True)
class ToolCallDelta:
    """Incremental tool call; ``arguments_delta`` is a raw JSON text fragment."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    is_finished: bool = False


@dataclass(frozen=True)
class ReasoningDelta:
    text: str
    index: int = 0


@dataclass(frozen=True)
class FinishSignal:
    reason: FinishReason
    index: int = 0


@dataclass(frozen=True)
class Done:
    """Terminal marker: the provider finished the stream cleanly."""


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal marker: the stream failed and will produce nothing further."""

    error: ParleyError


@dataclass(frozen=True)
class CustomEvent:
    """Raw vendor event passed through for callers that need it."""

    data: Any


ChatEvent = Union[
    TextDelta,
    ToolCallDelta,
    ReasoningDelta,
    FinishSignal,
    Done,
    ErrorEvent,
    CustomEvent,
]


@dataclass(frozen=True)
class ChatChunk:
    """One step of a streaming response; events are in provider order."""

    events: tuple[ChatEvent, ...] = ()
    usage: TokenUsage | None = None
    is_terminal: bool = False
    provider: ProviderMetadata = field(default_factory=ProviderMetadata)

    def __post_init__(self) -> None:
        if not isinstance(self.events, tuple):
            object.__setattr__(self, "events", tuple(self.events))


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Static feature flags declared once per adapter instance."""

    stream: bool = False
    image_input: bool = False
    audio_input: bool = False
    video_input: bool = False
    tools: bool = False
    structured_output: bool = False
    parallel_tool_calls: bool = False
