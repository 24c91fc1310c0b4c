"""Anthropic Messages API adapter."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from parley.errors import ProviderError, UnsupportedFeatureError, ValidationError
from parley.providers.base import HttpProvider, request_id_from_headers
from parley.types import (
    Base64Source,
    CapabilityDescriptor,
    ChatChunk,
    ChatResponse,
    CustomEvent,
    DataPart,
    Done,
    FinishReason,
    FinishSignal,
    ImagePart,
    Message,
    MessageOutput,
    ProviderMetadata,
    ReasoningDelta,
    ReasoningOutput,
    Role,
    TextDelta,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallDelta,
    ToolCallOutput,
    ToolCallPart,
    ToolKind,
    ToolResultPart,
)
from parley.validation import (
    require_content,
    require_conversation_message,
    require_single_tool_result,
    resolve_model,
    text_of,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from parley.patch import RequestPatch
    from parley.transport import Transport
    from parley.types import (
        ChatEvent,
        ChatRequest,
        ContentPart,
        ReasoningOptions,
        ToolChoice,
        ToolDefinition,
        ToolResult,
    )

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


def convert_stop_reason(reason: str) -> FinishReason:
    return _STOP_REASONS.get(reason, FinishReason.OTHER)


class AnthropicMessagesProvider(HttpProvider):
    """Anthropic Messages (``/v1/messages``).

    System and developer messages are folded into the top-level ``system``
    field. ``max_output_tokens`` is mandatory. The stream ends with a
    ``message_stop`` event rather than a sentinel payload.
    """

    provider_name = "anthropic_messages"
    default_base_url = ANTHROPIC_BASE_URL
    stream_sentinel = None

    def __init__(
        self,
        *,
        transport: Transport,
        api_key: str,
        base_url: str | None = None,
        default_model: str | None = None,
        version: str = ANTHROPIC_VERSION,
        beta: str | None = None,
        patch: RequestPatch | None = None,
        auth_header: str | None = None,
        capabilities: CapabilityDescriptor | None = None,
    ) -> None:
        super().__init__(
            transport=transport,
            api_key=api_key,
            base_url=base_url,
            default_model=default_model,
            patch=patch,
            auth_header=auth_header,
            capabilities=capabilities,
        )
        self._version = version
        self._beta = beta

    @classmethod
    def default_capabilities(cls) -> CapabilityDescriptor:
        return CapabilityDescriptor(
            stream=True,
            image_input=True,
            audio_input=False,
            video_input=False,
            tools=True,
            structured_output=False,
            parallel_tool_calls=True,
        )

    def endpoint(self) -> str:
        if self.base_url.endswith("/v1"):
            return f"{self.base_url}/messages"
        return f"{self.base_url}/v1/messages"

    def auth_headers(self) -> dict[str, str]:
        headers = {
            self._auth_header or "x-api-key": self._api_key,
            "anthropic-version": self._version,
        }
        if self._beta:
            headers["anthropic-beta"] = self._beta
        return headers

    # --- Request ---

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        options = request.options
        model = resolve_model(request, self.default_model, provider=self.name)
        require_conversation_message(request.messages)

        system: list[str] = []
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role in (Role.SYSTEM, Role.DEVELOPER):
                text = text_of(message, provider=self.name)
                if text:
                    system.append(text)
            else:
                messages.append(self._convert_message(message))

        if options.max_output_tokens is None:
            raise ValidationError(
                f"{self.name} requires ChatOptions.max_output_tokens (mapped to max_tokens)",
                hint="Set ChatOptions(max_output_tokens=...) for this handle.",
            )

        body: dict[str, Any] = {"model": model, "messages": messages}
        if system:
            body["system"] = "\n\n".join(system)
        body["max_tokens"] = options.max_output_tokens
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.top_p is not None:
            body["top_p"] = options.top_p

        if options.reasoning is not None:
            thinking = _build_thinking(options.reasoning)
            if thinking is not None:
                body["thinking"] = thinking

        if request.tools:
            body["tools"] = [_convert_tool(t) for t in request.tools]
        if request.tool_choice is not None:
            parallel = (
                options.parallel_tool_calls
                if options.parallel_tool_calls is not None
                else True
            )
            choice = _convert_tool_choice(request.tool_choice, parallel=parallel)
            if choice is not None:
                body["tool_choice"] = choice
        if request.metadata:
            body["metadata"] = dict(request.metadata)
        body.update(options.extra)
        body["stream"] = stream
        return body

    def _convert_message(self, message: Message) -> dict[str, Any]:
        if message.role is Role.TOOL:
            result = require_single_tool_result(message)
            return {"role": "user", "content": [_tool_result_block(result)]}

        require_content(message)
        blocks = [self._convert_part(part) for part in message.content]
        role = "assistant" if message.role is Role.ASSISTANT else "user"
        return {"role": role, "content": blocks}

    def _convert_part(self, part: ContentPart) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            if not isinstance(part.source, Base64Source):
                raise UnsupportedFeatureError(
                    "image_source_non_base64",
                    message=f"{self.name} only accepts base64 image sources",
                )
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": part.source.mime_type or "image/png",
                    "data": part.source.data,
                },
            }
        if isinstance(part, ToolCallPart):
            return {
                "type": "tool_use",
                "id": part.call.id,
                "name": part.call.name,
                "input": part.call.arguments if part.call.arguments is not None else {},
            }
        if isinstance(part, ToolResultPart):
            return _tool_result_block(part.result)
        if isinstance(part, DataPart):
            return part.data
        raise UnsupportedFeatureError(
            f"{part.kind}_content",
            message=f"{self.name} does not support {part.kind} content",
        )

    # --- Response ---

    def parse_response(
        self, payload: Any, *, headers: Mapping[str, str]
    ) -> ChatResponse:
        parts: list[ContentPart] = []
        outputs: list[Any] = []
        calls: list[ToolCallOutput] = []
        for block in payload.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                parts.append(TextPart(block.get("text", "")))
            elif kind == "tool_use":
                calls.append(
                    ToolCallOutput(
                        ToolCall(
                            name=block.get("name") or "",
                            arguments=block.get("input", {}),
                            id=block.get("id"),
                        )
                    )
                )
            elif kind == "thinking":
                outputs.append(ReasoningOutput(block.get("thinking", "")))
            else:
                parts.append(DataPart(block))

        if parts:
            outputs.append(MessageOutput(Message(Role.ASSISTANT, tuple(parts))))
        outputs.extend(calls)

        reason = payload.get("stop_reason")
        return ChatResponse(
            outputs=tuple(outputs),
            usage=convert_usage(payload.get("usage")),
            finish_reason=convert_stop_reason(reason) if isinstance(reason, str) else None,
            model=payload.get("model"),
            provider=ProviderMetadata(
                provider=self.name,
                request_id=payload.get("id") or request_id_from_headers(headers),
                endpoint=self.endpoint(),
                raw=payload,
            ),
        )

    def map_stream_payload(
        self, payload: Any, state: dict[str, Any]
    ) -> ChatChunk | None:
        kind = payload.get("type") if isinstance(payload, dict) else None
        events: list[ChatEvent] = []
        usage: TokenUsage | None = None
        terminal = False

        if kind == "message_start":
            message = payload.get("message") or {}
            state["usage"] = message.get("usage") or {}
            usage = convert_usage(state["usage"])
        elif kind == "content_block_start":
            block = payload.get("content_block") or {}
            index = payload.get("index", 0)
            if block.get("type") == "tool_use":
                state.setdefault("tool_blocks", set()).add(index)
                events.append(
                    ToolCallDelta(index=index, id=block.get("id"), name=block.get("name"))
                )
        elif kind == "content_block_delta":
            delta = payload.get("delta") or {}
            index = payload.get("index", 0)
            if delta.get("type") == "input_json_delta":
                events.append(
                    ToolCallDelta(index=index, arguments_delta=delta.get("partial_json"))
                )
            elif delta.get("type") == "thinking_delta":
                events.append(ReasoningDelta(delta.get("thinking", ""), index=index))
            elif isinstance(delta.get("text"), str):
                events.append(TextDelta(delta["text"], index=index))
        elif kind == "content_block_stop":
            index = payload.get("index", 0)
            if index in state.get("tool_blocks", ()):
                events.append(ToolCallDelta(index=index, is_finished=True))
        elif kind == "message_delta":
            delta = payload.get("delta") or {}
            raw_usage = payload.get("usage") or delta.get("usage")
            if isinstance(raw_usage, dict):
                usage = convert_usage({**state.get("usage", {}), **raw_usage})
            reason = delta.get("stop_reason")
            if isinstance(reason, str):
                events.append(FinishSignal(convert_stop_reason(reason)))
        elif kind == "message_stop":
            events.append(Done())
            terminal = True
        elif kind == "error":
            error = payload.get("error") or {}
            raise ProviderError(
                f"{self.name} stream error: {error.get('message', 'unknown error')}",
                provider=self.name,
                raw=payload,
            )

        events.append(CustomEvent(payload))
        return ChatChunk(events=tuple(events), usage=usage, is_terminal=terminal)


def convert_usage(usage: Any) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("input_tokens")
    completion = usage.get("output_tokens")
    total = None
    if prompt is not None or completion is not None:
        total = (prompt or 0) + (completion or 0)
    details = {
        k: v
        for k, v in usage.items()
        if k not in ("input_tokens", "output_tokens") and v is not None
    }
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        details=details or None,
    )


def _tool_result_block(result: ToolResult) -> dict[str, Any]:
    if not result.call_id:
        raise ValidationError(
            "tool_result content requires call_id (mapped to tool_use_id)"
        )
    output = result.output if isinstance(result.output, str) else json.dumps(result.output)
    return {
        "type": "tool_result",
        "tool_use_id": result.call_id,
        "content": output,
        "is_error": result.is_error,
    }


def _build_thinking(reasoning: ReasoningOptions) -> dict[str, Any] | None:
    explicit = reasoning.extra.get("thinking")
    if explicit is not None:
        return explicit
    if reasoning.budget_tokens is None:
        return None
    thinking: dict[str, Any] = {"type": "enabled", "budget_tokens": reasoning.budget_tokens}
    thinking.update(reasoning.extra)
    return thinking


def _convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    if tool.kind is ToolKind.FUNCTION:
        obj: dict[str, Any] = {
            "type": "custom",
            "name": tool.name,
            "input_schema": tool.parameters or {"type": "object"},
        }
        if tool.description is not None:
            obj["description"] = tool.description
        return obj
    if tool.kind is ToolKind.CUSTOM:
        if tool.config is not None:
            return dict(tool.config)
        return {"type": tool.custom_name or tool.name, "name": tool.name}
    raise ValidationError(
        "Anthropic tools currently only support function or custom tool configs"
    )


def _convert_tool_choice(choice: ToolChoice, *, parallel: bool) -> Any:
    if choice.mode == "none":
        return None
    if choice.mode == "custom":
        return choice.value
    obj: dict[str, Any] = {"type": choice.mode, "disable_parallel_tool_use": not parallel}
    if choice.mode == "tool":
        obj["name"] = choice.name
    return obj
