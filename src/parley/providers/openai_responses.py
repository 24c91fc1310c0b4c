"""OpenAI Responses API adapter.

System and developer text becomes ``instructions``; every other message is an
``input`` item. Tool calls and tool results travel as ``function_call`` and
``function_call_output`` items. The stream is a sequence of typed events that
ends with ``response.completed`` (or ``response.incomplete``); a trailing
``[DONE]`` payload is accepted too.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from parley.errors import ProviderError, UnsupportedFeatureError, ValidationError
from parley.providers.base import request_id_from_headers
from parley.providers.openai import OpenAIBaseProvider
from parley.types import (
    AudioPart,
    Base64Source,
    CapabilityDescriptor,
    ChatChunk,
    ChatResponse,
    CustomEvent,
    CustomOutput,
    DataPart,
    Done,
    FileIdSource,
    FilePart,
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
    ToolResult,
    ToolResultOutput,
    ToolResultPart,
    UrlSource,
)
from parley.validation import require_single_tool_result, resolve_model, text_of

if TYPE_CHECKING:
    from collections.abc import Mapping

    from parley.types import (
        ChatEvent,
        ChatRequest,
        ContentPart,
        ResponseFormat,
        ToolChoice,
        ToolDefinition,
    )

_BUILTIN_TOOL_TYPES = {
    ToolKind.FILE_SEARCH: "file_search",
    ToolKind.WEB_SEARCH: "web_search_preview",
    ToolKind.COMPUTER_USE: "computer_use_preview",
}

_INCOMPLETE_REASONS = {
    "max_output_tokens": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def convert_status(
    status: str | None,
    *,
    error: Any = None,
    incomplete_details: Any = None,
    has_tool_calls: bool = False,
) -> FinishReason | None:
    """Derive a finish reason from a response's ``status``."""
    if error:
        return FinishReason.ERROR
    if status == "completed":
        return FinishReason.TOOL_CALLS if has_tool_calls else FinishReason.STOP
    if status == "incomplete":
        reason = (
            incomplete_details.get("reason")
            if isinstance(incomplete_details, dict)
            else None
        )
        return _INCOMPLETE_REASONS.get(reason, FinishReason.OTHER)
    if status == "failed":
        return FinishReason.ERROR
    if status is None:
        return None
    return FinishReason.OTHER


class OpenAIResponsesProvider(OpenAIBaseProvider):
    """OpenAI Responses (``/v1/responses``)."""

    provider_name = "openai_responses"

    @classmethod
    def default_capabilities(cls) -> CapabilityDescriptor:
        # Audio and video input are not documented for Responses yet.
        return CapabilityDescriptor(
            stream=True,
            image_input=True,
            audio_input=False,
            video_input=False,
            tools=True,
            structured_output=True,
            parallel_tool_calls=True,
        )

    def endpoint(self) -> str:
        if self.base_url.endswith("/v1"):
            return f"{self.base_url}/responses"
        return f"{self.base_url}/v1/responses"

    # --- Request ---

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        options = request.options
        body: dict[str, Any] = {
            "model": resolve_model(request, self.default_model, provider=self.name),
        }

        instructions: list[str] = []
        items: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role in (Role.SYSTEM, Role.DEVELOPER):
                text = text_of(message, provider=self.name)
                if text:
                    instructions.append(text)
            else:
                items.extend(self._convert_message(message))
        if items:
            body["input"] = items
        if instructions:
            body["instructions"] = "\n\n".join(instructions)

        optional = {
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_output_tokens": options.max_output_tokens,
            "parallel_tool_calls": options.parallel_tool_calls,
        }
        body.update({k: v for k, v in optional.items() if v is not None})

        if options.reasoning is not None:
            reasoning: dict[str, Any] = {}
            if options.reasoning.effort is not None:
                reasoning["effort"] = options.reasoning.effort
            reasoning.update(options.reasoning.extra)
            if reasoning:
                body["reasoning"] = reasoning

        if request.tools:
            body["tools"] = [_convert_tool(t) for t in request.tools]
        if request.tool_choice is not None:
            body["tool_choice"] = _convert_tool_choice(request.tool_choice)
        if request.response_format is not None:
            body["text"] = _convert_text_config(request.response_format)
        if request.metadata:
            body["metadata"] = dict(request.metadata)
        # include, service_tier, previous_response_id, user, ...
        body.update(options.extra)
        body["stream"] = stream
        return body

    def _convert_message(self, message: Message) -> list[dict[str, Any]]:
        if message.role is Role.TOOL:
            result = require_single_tool_result(message)
            return [_function_call_output(result)]

        content: list[dict[str, Any]] = []
        calls: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ToolCallPart):
                calls.append(_function_call(part.call))
            elif isinstance(part, ToolResultPart):
                raise ValidationError(
                    "tool results must be sent in a tool role message"
                )
            else:
                content.append(self._convert_part(part, role=message.role))

        items: list[dict[str, Any]] = []
        if content or not calls:
            item: dict[str, Any] = {
                "type": "message",
                "role": message.role.value,
                "content": content,
            }
            items.append(item)
        items.extend(calls)
        return items

    def _convert_part(self, part: ContentPart, *, role: Role) -> dict[str, Any]:
        if isinstance(part, TextPart):
            kind = "output_text" if role is Role.ASSISTANT else "input_text"
            return {"type": kind, "text": part.text}
        if isinstance(part, ImagePart):
            detail = part.detail.value if part.detail is not None else "auto"
            source = part.source
            if isinstance(source, UrlSource):
                return {"type": "input_image", "image_url": source.url, "detail": detail}
            if isinstance(source, Base64Source):
                mime = source.mime_type or "application/octet-stream"
                return {
                    "type": "input_image",
                    "image_url": f"data:{mime};base64,{source.data}",
                    "detail": detail,
                }
            return {"type": "input_image", "file_id": source.file_id, "detail": detail}
        if isinstance(part, AudioPart):
            source = part.source
            if isinstance(source, Base64Source):
                data = source.data
            elif isinstance(source, FileIdSource):
                data = source.file_id
            else:
                data = source.url
            return {
                "type": "input_audio",
                "input_audio": {"data": data, "format": part.mime_type or "wav"},
            }
        if isinstance(part, FilePart):
            return {"type": "input_file", "file_id": part.file_id}
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
        outputs: list[Any] = []
        for index, item in enumerate(payload.get("output") or []):
            kind = item.get("type")
            if kind == "message":
                outputs.append(MessageOutput(_output_message(item), index=index))
            elif kind == "function_call":
                outputs.append(ToolCallOutput(_output_function_call(item), index=index))
            elif kind == "function_call_output":
                outputs.append(
                    ToolResultOutput(
                        ToolResult(
                            call_id=item.get("call_id"),
                            output=_decode_json(item.get("output") or ""),
                        ),
                        index=index,
                    )
                )
            elif kind == "reasoning" and _reasoning_text(item):
                outputs.append(ReasoningOutput(_reasoning_text(item), index=index))
            else:
                outputs.append(CustomOutput(item, index=index))

        return ChatResponse(
            outputs=tuple(outputs),
            usage=convert_usage(payload.get("usage")),
            finish_reason=convert_status(
                payload.get("status"),
                error=payload.get("error"),
                incomplete_details=payload.get("incomplete_details"),
                has_tool_calls=any(isinstance(o, ToolCallOutput) for o in outputs),
            ),
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
        kind = payload["type"]
        index = payload.get("output_index", 0)
        events: list[ChatEvent] = []

        if kind == "response.output_text.delta":
            if not payload.get("delta"):
                return None
            events.append(TextDelta(payload["delta"], index=index))
        elif kind in (
            "response.reasoning_summary_text.delta",
            "response.reasoning_text.delta",
        ):
            events.append(ReasoningDelta(payload.get("delta") or "", index=index))
        elif kind == "response.output_item.added":
            item = payload.get("item") or {}
            if item.get("type") != "function_call":
                return ChatChunk(events=(CustomEvent(payload),))
            state.setdefault("tool_items", set()).add(index)
            events.append(
                ToolCallDelta(index=index, id=item.get("call_id"), name=item.get("name"))
            )
        elif kind == "response.function_call_arguments.delta":
            events.append(ToolCallDelta(index=index, arguments_delta=payload.get("delta")))
        elif kind == "response.output_item.done":
            if index not in state.get("tool_items", ()):
                return ChatChunk(events=(CustomEvent(payload),))
            events.append(ToolCallDelta(index=index, is_finished=True))
        elif kind in ("response.completed", "response.incomplete"):
            response = payload.get("response")
            if not isinstance(response, dict):
                raise ProviderError(
                    f"{kind} event missing response", provider=self.name, raw=payload
                )
            reason = convert_status(
                response.get("status"),
                error=response.get("error"),
                incomplete_details=response.get("incomplete_details"),
                has_tool_calls=bool(state.get("tool_items")),
            )
            if reason is not None:
                events.append(FinishSignal(reason))
            events.append(Done())
            return ChatChunk(
                events=tuple(events),
                usage=convert_usage(response.get("usage")),
                is_terminal=True,
                provider=ProviderMetadata(
                    provider=self.name,
                    request_id=response.get("id"),
                    endpoint=self.endpoint(),
                    raw=response,
                ),
            )
        elif kind in ("response.failed", "error"):
            error = payload.get("error")
            if not isinstance(error, dict):
                response = payload.get("response") or {}
                error = response.get("error") or {}
            raise ProviderError(
                f"{self.name} stream error: {error.get('message', 'unknown error')}",
                provider=self.name,
                raw=payload,
            )
        else:
            # response.created, response.in_progress, content_part.*, ...
            events.append(CustomEvent(payload))

        return ChatChunk(events=tuple(events))


def convert_usage(usage: Any) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    details = usage.get("output_tokens_details")
    reasoning = details.get("reasoning_tokens") if isinstance(details, dict) else None
    return TokenUsage(
        prompt_tokens=usage.get("input_tokens"),
        completion_tokens=usage.get("output_tokens"),
        reasoning_tokens=reasoning,
        total_tokens=usage.get("total_tokens"),
    )


def _output_message(item: dict[str, Any]) -> Message:
    content = item.get("content")
    parts: list[ContentPart] = []
    if isinstance(content, str):
        parts.append(TextPart(content))
    elif isinstance(content, list):
        for part in content:
            if part.get("type") == "output_text" and isinstance(part.get("text"), str):
                parts.append(TextPart(part["text"]))
            else:
                # refusal, citations and annotations pass through untouched
                parts.append(DataPart(part))
    return Message(
        Role(item.get("role") or "assistant"),
        tuple(parts),
        name=item.get("name"),
    )


def _output_function_call(item: dict[str, Any]) -> ToolCall:
    return ToolCall(
        name=item.get("name") or "",
        arguments=_decode_json(item.get("arguments") or ""),
        id=item.get("call_id"),
    )


def _reasoning_text(item: dict[str, Any]) -> str:
    summary = item.get("summary")
    if not isinstance(summary, list):
        return ""
    return "\n".join(
        entry["text"]
        for entry in summary
        if isinstance(entry, dict) and isinstance(entry.get("text"), str)
    )


def _decode_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _function_call(call: ToolCall) -> dict[str, Any]:
    if call.kind is not ToolKind.FUNCTION:
        raise ValidationError("OpenAI Responses only replays function tool calls")
    if not call.id:
        raise ValidationError("tool call missing id (mapped to call_id)")
    return {
        "type": "function_call",
        "call_id": call.id,
        "name": call.name,
        "arguments": json.dumps(call.arguments if call.arguments is not None else {}),
    }


def _function_call_output(result: ToolResult) -> dict[str, Any]:
    if not result.call_id:
        raise ValidationError("tool message missing call_id")
    output = result.output if isinstance(result.output, str) else json.dumps(result.output)
    return {"type": "function_call_output", "call_id": result.call_id, "output": output}


def _convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    if tool.kind is ToolKind.FUNCTION:
        obj: dict[str, Any] = {"type": "function", "name": tool.name, "strict": True}
        if tool.description is not None:
            obj["description"] = tool.description
        if tool.parameters is not None:
            obj["parameters"] = tool.parameters
        for key, value in (tool.metadata or {}).items():
            if key not in ("type", "name", "parameters"):
                obj[key] = value
        return obj
    if tool.kind in _BUILTIN_TOOL_TYPES:
        obj = dict(tool.metadata or {})
        obj.setdefault("type", _BUILTIN_TOOL_TYPES[tool.kind])
        return obj
    if tool.config is not None:
        return dict(tool.config)
    return {"type": tool.custom_name or tool.name, "name": tool.name}


def _convert_tool_choice(choice: ToolChoice) -> Any:
    if choice.mode == "auto":
        return "auto"
    if choice.mode == "any":
        return "required"
    if choice.mode == "none":
        return "none"
    if choice.mode == "tool":
        return {"type": "function", "name": choice.name}
    return choice.value


def _convert_text_config(fmt: ResponseFormat) -> Any:
    if fmt.type == "json_schema":
        return {
            "format": {
                "type": "json_schema",
                "name": fmt.name or "response",
                "schema": fmt.schema,
            }
        }
    if fmt.type == "custom":
        # The value is the whole ``text`` object.
        return fmt.value
    return {"format": {"type": fmt.type}}
