"""Shared request validators.

Adapters call these instead of hand-rolling checks so the same logical
violation always surfaces with the same error kind and wording.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from parley.errors import UnsupportedFeatureError, ValidationError
from parley.types import (
    AudioPart,
    ImagePart,
    Role,
    TextPart,
    ToolResultPart,
    VideoPart,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from parley.types import (
        CapabilityDescriptor,
        ChatRequest,
        Message,
        ToolResult,
    )

TOOL_RESULT_MESSAGE = "tool role expects a single ToolResult content"
CONVERSATION_MESSAGE = "request requires at least one user/assistant message"
EMPTY_CONTENT_MESSAGE = "message must contain at least one content part"

_CONVERSATION_ROLES = frozenset({Role.USER, Role.ASSISTANT, Role.TOOL})


def require_conversation_message(messages: Iterable[Message]) -> None:
    """Raise unless at least one non-system message is present.

    Tool messages count: they always follow an assistant turn.
    """
    if not any(m.role in _CONVERSATION_ROLES for m in messages):
        raise ValidationError(
            CONVERSATION_MESSAGE,
            hint="Add a Message.user(...) turn; system text alone is not a conversation.",
        )


def require_single_tool_result(message: Message) -> ToolResult:
    """Return the only ToolResult of a tool-role message."""
    if len(message.content) != 1 or not isinstance(message.content[0], ToolResultPart):
        raise ValidationError(TOOL_RESULT_MESSAGE)
    return message.content[0].result


def require_content(message: Message) -> None:
    if not message.content:
        raise ValidationError(EMPTY_CONTENT_MESSAGE)


def require_supported_parts(
    message: Message, allowed: Iterable[str], *, provider: str
) -> None:
    """Raise UnsupportedFeatureError for any part whose ``kind`` is not allowed."""
    allowed_kinds = frozenset(allowed)
    for part in message.content:
        if part.kind not in allowed_kinds:
            raise UnsupportedFeatureError(
                f"{part.kind}_content",
                message=(
                    f"{provider} does not support {part.kind} content "
                    f"in {message.role.value} messages"
                ),
            )


def require_capabilities(
    request: ChatRequest, capabilities: CapabilityDescriptor, *, provider: str
) -> None:
    """Reject requests that use features the descriptor does not declare."""
    if request.tools and not capabilities.tools:
        raise UnsupportedFeatureError(
            "tools", message=f"{provider} does not support tools"
        )
    if request.response_format is not None and request.response_format.type in (
        "json_object",
        "json_schema",
    ):
        if not capabilities.structured_output:
            raise UnsupportedFeatureError(
                "structured_output",
                message=f"{provider} does not support structured output",
            )
    if request.options.parallel_tool_calls and not capabilities.parallel_tool_calls:
        raise UnsupportedFeatureError(
            "parallel_tool_calls",
            message=f"{provider} does not support parallel tool calls",
        )

    checks = (
        (ImagePart, capabilities.image_input, "image_input"),
        (AudioPart, capabilities.audio_input, "audio_input"),
        (VideoPart, capabilities.video_input, "video_input"),
    )
    for message in request.messages:
        for part in message.content:
            for part_type, supported, feature in checks:
                if isinstance(part, part_type) and not supported:
                    raise UnsupportedFeatureError(
                        feature, message=f"{provider} does not support {feature}"
                    )


def resolve_model(
    request: ChatRequest, default_model: str | None, *, provider: str
) -> str:
    """Pick the request's model override, else the adapter default."""
    model = request.options.model or default_model
    if not model:
        raise ValidationError(
            f"model is required for {provider}",
            hint="Set ChatOptions.model or configure default_model for this handle.",
        )
    return model


def text_of(message: Message, *, provider: str, separator: str = "\n") -> str:
    """Join the text parts of a message, rejecting any other part kind."""
    require_supported_parts(message, ("text",), provider=provider)
    return separator.join(p.text for p in message.content if isinstance(p, TextPart))
