"""OpenAI Chat Completions adapter."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from parley.errors import UnsupportedFeatureError, ValidationError
from parley.providers.base import HttpProvider, request_id_from_headers
from parley.types import (
    AudioPart,
    Base64Source,
    CapabilityDescriptor,
    ChatChunk,
    ChatResponse,
    DataPart,
    FileIdSource,
    FilePart,
    FinishReason,
    FinishSignal,
    ImagePart,
    Message,
    MessageOutput,
    ProviderMetadata,
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
    UrlSource,
)
from parley.validation import require_single_tool_result, resolve_model

if TYPE_CHECKING:
    from collections.abc import Mapping

    from parley.patch import RequestPatch
    from parley.transport import Transport
    from parley.types import (
        ChatEvent,
        ChatRequest,
        ContentPart,
        ResponseFormat,
        ToolChoice,
        ToolDefinition,
    )

OPENAI_BASE_URL = "https://api.openai.com"

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    "function_call": FinishReason.FUNCTION_CALL,
}


def convert_finish_reason(reason: str) -> FinishReason:
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


class OpenAIBaseProvider(HttpProvider):
    """Credentials and headers shared by the OpenAI APIs."""

    default_base_url = OPENAI_BASE_URL

    def __init__(
        self,
        *,
        transport: Transport,
        api_key: str,
        base_url: str | None = None,
        default_model: str | None = None,
        organization: str | None = None,
        project: str | None = None,
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
        self._organization = organization
        self._project = project

    def auth_headers(self) -> dict[str, str]:
        if self._auth_header:
            headers = {self._auth_header: self._api_key}
        else:
            headers = {"authorization": f"Bearer {self._api_key}"}
        if self._organization:
            headers["openai-organization"] = self._organization
        if self._project:
            headers["openai-project"] = self._project
        return headers


class OpenAIChatProvider(OpenAIBaseProvider):
    """OpenAI Chat Completions (``/v1/chat/completions``)."""

    provider_name = "openai_chat"

    @classmethod
    def default_capabilities(cls) -> CapabilityDescriptor:
        return CapabilityDescriptor(
            stream=True,
            image_input=True,
            audio_input=True,
            video_input=False,
            tools=True,
            structured_output=True,
            parallel_tool_calls=True,
        )

    def endpoint(self) -> str:
        if self.base_url.endswith("/v1"):
            return f"{self.base_url}/chat/completions"
        return f"{self.base_url}/v1/chat/completions"

    # --- Request ---

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        options = request.options
        body: dict[str, Any] = {
            "model": resolve_model(request, self.default_model, provider=self.name),
            "messages": [self._convert_message(m) for m in request.messages],
        }
        optional = {
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_output_tokens,
            "presence_penalty": options.presence_penalty,
            "frequency_penalty": options.frequency_penalty,
            "parallel_tool_calls": options.parallel_tool_calls,
        }
        body.update({k: v for k, v in optional.items() if v is not None})

        if options.reasoning is not None:
            if options.reasoning.effort is not None:
                body["reasoning_effort"] = options.reasoning.effort
            if options.reasoning.budget_tokens is not None:
                body["max_reasoning_tokens"] = options.reasoning.budget_tokens
            body.update(options.reasoning.extra)

        if request.tools:
            body["tools"] = [_convert_tool(t) for t in request.tools]
        if request.tool_choice is not None:
            body["tool_choice"] = _convert_tool_choice(request.tool_choice)
        if request.response_format is not None:
            body["response_format"] = _convert_response_format(request.response_format)
        if request.metadata:
            body["metadata"] = dict(request.metadata)
        body.update(options.extra)
        body["stream"] = stream
        return body

    def _convert_message(self, message: Message) -> dict[str, Any]:
        obj: dict[str, Any] = {"role": message.role.value}
        if message.name:
            obj["name"] = message.name

        if message.role is Role.TOOL:
            result = require_single_tool_result(message)
            if not result.call_id:
                raise ValidationError("tool message missing call_id")
            obj["tool_call_id"] = result.call_id
            obj["content"] = _stringify(result.output)
            return obj

        parts: list[dict[str, Any]] = []
        calls: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ToolCallPart):
                calls.append(_convert_tool_call(part.call))
            elif isinstance(part, ToolResultPart):
                raise ValidationError(
                    "tool results must be sent in a tool role message"
                )
            else:
                parts.append(self._convert_part(part))
        obj["content"] = parts or None
        if calls:
            obj["tool_calls"] = calls
        return obj

    def _convert_part(self, part: ContentPart) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            detail = part.detail.value if part.detail is not None else "auto"
            source = part.source
            if isinstance(source, UrlSource):
                return {"type": "image_url", "image_url": {"url": source.url, "detail": detail}}
            if isinstance(source, Base64Source):
                mime = source.mime_type or "application/octet-stream"
                return {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime};base64,{source.data}", "detail": detail},
                }
            return {"type": "input_image", "input_image": {"file_id": source.file_id}}
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
                "input_audio": {"data": data, "format": _audio_format(part.mime_type)},
            }
        if isinstance(part, FilePart):
            return {"type": "file", "file": {"file_id": part.file_id}}
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
        finish: FinishReason | None = None
        for choice in payload.get("choices") or []:
            index = choice.get("index", 0)
            message = choice.get("message")
            if isinstance(message, dict):
                outputs.append(
                    MessageOutput(_response_message(message), index=index)
                )
                outputs.extend(
                    ToolCallOutput(_response_tool_call(call), index=index)
                    for call in message.get("tool_calls") or []
                )
            reason = choice.get("finish_reason")
            if finish is None and isinstance(reason, str):
                finish = convert_finish_reason(reason)

        return ChatResponse(
            outputs=tuple(outputs),
            usage=convert_usage(payload.get("usage")),
            finish_reason=finish,
            model=payload.get("model"),
            provider=ProviderMetadata(
                provider=self.name,
                request_id=payload.get("id") or request_id_from_headers(headers),
                endpoint=self.endpoint(),
                raw=payload,
            ),
        )

    def map_stream_payload(
        self, payload: Any, state: dict[str, Any],  # noqa: ARG002
    ) -> ChatChunk | None:
        events: list[ChatEvent] = []
        for choice in payload.get("choices") or []:
            index = choice.get("index", 0)
            reason = choice.get("finish_reason")
            delta = choice.get("delta") or {}

            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TextDelta(content, index=index))
            elif isinstance(content, list):
                events.extend(
                    TextDelta(p["text"], index=index)
                    for p in content
                    if isinstance(p, dict) and p.get("text")
                )

            for call in delta.get("tool_calls") or []:
                function = call.get("function") or {}
                events.append(
                    ToolCallDelta(
                        index=call.get("index", index),
                        id=call.get("id"),
                        name=function.get("name"),
                        arguments_delta=function.get("arguments"),
                        is_finished=reason == "tool_calls",
                    )
                )
            if isinstance(reason, str):
                events.append(FinishSignal(convert_finish_reason(reason), index=index))

        usage = convert_usage(payload.get("usage"))
        if not events and usage is None:
            return None
        return ChatChunk(events=tuple(events), usage=usage)


def convert_usage(usage: Any) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    details = usage.get("completion_tokens_details")
    reasoning = details.get("reasoning_tokens") if isinstance(details, dict) else None
    return TokenUsage(
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
        reasoning_tokens=reasoning if reasoning is not None else usage.get("reasoning_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


def _response_message(message: dict[str, Any]) -> Message:
    content = message.get("content")
    parts: list[ContentPart] = []
    if isinstance(content, str):
        parts.append(TextPart(content))
    elif isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") in ("text", "output_text"):
                parts.append(TextPart(item.get("text", "")))
            else:
                parts.append(DataPart(item))
    return Message(
        Role(message.get("role") or "assistant"),
        tuple(parts),
        name=message.get("name"),
    )


def _response_tool_call(call: dict[str, Any]) -> ToolCall:
    function = call.get("function") or {}
    raw_args = function.get("arguments")
    arguments: Any = None
    if isinstance(raw_args, str):
        try:
            arguments = json.loads(raw_args)
        except ValueError:
            arguments = raw_args
    return ToolCall(
        name=function.get("name") or "",
        arguments=arguments,
        id=call.get("id"),
    )


def _convert_tool_call(call: ToolCall) -> dict[str, Any]:
    if call.kind is not ToolKind.FUNCTION:
        raise ValidationError("OpenAI only supports function tool calls")
    obj: dict[str, Any] = {
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
    }
    if call.id:
        obj["id"] = call.id
    return obj


def _convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    if tool.kind is not ToolKind.FUNCTION:
        raise ValidationError("OpenAI Chat tools only support function definitions")
    function: dict[str, Any] = {"name": tool.name}
    if tool.description is not None:
        function["description"] = tool.description
    if tool.parameters is not None:
        function["parameters"] = tool.parameters
    return {"type": "function", "function": function}


def _convert_tool_choice(choice: ToolChoice) -> Any:
    if choice.mode == "auto":
        return "auto"
    if choice.mode == "any":
        return "required"
    if choice.mode == "none":
        return "none"
    if choice.mode == "tool":
        return {"type": "function", "function": {"name": choice.name}}
    return choice.value


def _convert_response_format(fmt: ResponseFormat) -> Any:
    if fmt.type == "json_schema":
        return {
            "type": "json_schema",
            "json_schema": {"name": fmt.name or "response", "schema": fmt.schema},
        }
    if fmt.type == "custom":
        return fmt.value
    return {"type": fmt.type}


def _audio_format(mime_type: str | None) -> str:
    if not mime_type:
        return "wav"
    return mime_type.rsplit("/", 1)[-1]


def _stringify(output: Any) -> str:
    return output if isinstance(output, str) else json.dumps(output)
