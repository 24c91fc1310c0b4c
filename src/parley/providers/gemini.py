"""Google Gemini ``generateContent`` adapter."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from parley.errors import ValidationError
from parley.providers._errors import error_from_status
from parley.providers.base import HttpProvider, request_id_from_headers
from parley.types import (
    AudioPart,
    Base64Source,
    CapabilityDescriptor,
    ChatChunk,
    ChatResponse,
    CustomEvent,
    DataPart,
    Done,
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
    VideoPart,
)
from parley.validation import require_single_tool_result, resolve_model, text_of

if TYPE_CHECKING:
    from collections.abc import Mapping

    from parley.errors import ParleyError
    from parley.types import (
        ChatEvent,
        ChatRequest,
        ContentPart,
        ReasoningOptions,
        ResponseFormat,
        ToolChoice,
        ToolDefinition,
    )

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
GEMINI_API_VERSION = "v1beta"

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "MALFORMED_FUNCTION_CALL": FinishReason.FUNCTION_CALL,
}
_FILTER_REASONS = frozenset(
    {
        "SAFETY",
        "RECITATION",
        "LANGUAGE",
        "BLOCKLIST",
        "PROHIBITED_CONTENT",
        "SPII",
        "IMAGE_SAFETY",
    }
)
_DEFAULT_MIME = {
    ImagePart: "image/jpeg",
    AudioPart: "audio/mpeg",
    VideoPart: "video/mp4",
}


def convert_finish_reason(reason: str) -> FinishReason:
    if reason in _FILTER_REASONS:
        return FinishReason.CONTENT_FILTER
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


def normalize_model(model: str) -> str:
    """Prefix bare model names with ``models/``."""
    return model if model.startswith("models/") else f"models/{model}"


class GoogleGeminiProvider(HttpProvider):
    """Google Gemini (``/v1beta/models/{model}:generateContent``).

    The model is part of the URL, so the same adapter instance posts to a
    different endpoint per model. Streaming uses ``streamGenerateContent``
    with ``alt=sse``; the stream ends with the chunk whose candidates carry a
    ``finishReason``.
    """

    provider_name = "google_gemini"
    default_base_url = GEMINI_BASE_URL

    @classmethod
    def default_capabilities(cls) -> CapabilityDescriptor:
        return CapabilityDescriptor(
            stream=True,
            image_input=True,
            audio_input=True,
            video_input=True,
            tools=True,
            structured_output=True,
            parallel_tool_calls=True,
        )

    def endpoint(self) -> str:
        if self.base_url.endswith(f"/{GEMINI_API_VERSION}"):
            return self.base_url
        return f"{self.base_url}/{GEMINI_API_VERSION}"

    def model_endpoint(self, model: str, *, stream: bool = False) -> str:
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        return f"{self.endpoint()}/{normalize_model(model)}:{method}"

    def request_url(self, request: ChatRequest, *, stream: bool) -> str:
        model = resolve_model(request, self.default_model, provider=self.name)
        return self.model_endpoint(model, stream=stream)

    def auth_headers(self) -> dict[str, str]:
        return {self._auth_header or "x-goog-api-key": self._api_key}

    def parse_error(
        self,
        status_code: int,
        raw_body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> ParleyError:
        """Classify a Google RPC status body (``{"error": {"code", "message", "status"}}``)."""
        text = (
            raw_body.decode("utf-8", errors="replace")
            if isinstance(raw_body, bytes)
            else raw_body
        )
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        error = parsed.get("error") if isinstance(parsed, dict) else None
        if not isinstance(error, dict):
            return super().parse_error(status_code, raw_body, headers)

        message = error.get("message")
        if not isinstance(message, str) or not message:
            message = "unknown error"
        status = error.get("status")
        if isinstance(status, str) and status:
            message = f"{message} ({status})"
        return error_from_status(
            self.name,
            status_code,
            message=message,
            code=status if isinstance(status, str) else None,
            headers=headers,
            raw=parsed,
        )

    # --- Request ---

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:  # noqa: ARG002
        system: list[str] = []
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}
        for message in request.messages:
            if message.role in (Role.SYSTEM, Role.DEVELOPER):
                text = text_of(message, provider=self.name)
                if text:
                    system.append(text)
            else:
                contents.append(self._convert_message(message, call_names))

        if not contents:
            raise ValidationError(
                "Gemini GenerateContent request requires at least one content message"
            )
        body: dict[str, Any] = {"contents": contents}
        if system:
            body["system_instruction"] = {
                "role": "system",
                "parts": [{"text": "\n\n".join(system)}],
            }

        generation = _generation_config(request)
        if generation is not None:
            body["generationConfig"] = generation

        if request.tools:
            body["tools"] = [_convert_tool(t) for t in request.tools]
        if request.tool_choice is not None:
            config = _convert_tool_choice(request.tool_choice)
            if config is not None:
                body["toolConfig"] = config
        if request.metadata:
            body["metadata"] = dict(request.metadata)
        # safetySettings, cachedContent, ...
        body.update(request.options.extra)
        return body

    def _convert_message(
        self, message: Message, call_names: dict[str, str]
    ) -> dict[str, Any]:
        if message.role is Role.TOOL:
            result = require_single_tool_result(message)
            return {"role": "user", "parts": [_function_response(result, call_names)]}

        parts: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ToolCallPart):
                if part.call.id:
                    call_names[part.call.id] = part.call.name
                parts.append(_function_call(part.call))
            elif isinstance(part, ToolResultPart):
                parts.append(_function_response(part.result, call_names))
            else:
                parts.append(_convert_part(part))
        role = "model" if message.role is Role.ASSISTANT else message.role.value
        return {"role": role, "parts": parts}

    # --- Response ---

    def parse_response(
        self, payload: Any, *, headers: Mapping[str, str]
    ) -> ChatResponse:
        outputs: list[Any] = []
        finish: FinishReason | None = None
        for position, candidate in enumerate(payload.get("candidates") or []):
            index = candidate.get("index", position)
            content = candidate.get("content")
            if isinstance(content, dict):
                outputs.extend(_candidate_outputs(content, index))
            reason = candidate.get("finishReason")
            if finish is None and isinstance(reason, str):
                finish = convert_finish_reason(reason)
        if finish is None and _blocked(payload):
            finish = FinishReason.CONTENT_FILTER

        return ChatResponse(
            outputs=tuple(outputs),
            usage=convert_usage(payload.get("usageMetadata")),
            finish_reason=finish,
            model=payload.get("modelVersion"),
            provider=ProviderMetadata(
                provider=self.name,
                request_id=payload.get("responseId") or request_id_from_headers(headers),
                raw=payload,
            ),
        )

    def map_stream_payload(
        self, payload: Any, state: dict[str, Any]
    ) -> ChatChunk | None:
        events: list[ChatEvent] = []
        candidates = payload.get("candidates") or []
        finished = 0
        for position, candidate in enumerate(candidates):
            index = candidate.get("index", position)
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                events.append(_part_event(part, index, state))
            reason = candidate.get("finishReason")
            if isinstance(reason, str):
                finished += 1
                events.append(FinishSignal(convert_finish_reason(reason), index=index))

        if not candidates and _blocked(payload):
            events.append(FinishSignal(FinishReason.CONTENT_FILTER))
            terminal = True
        else:
            terminal = bool(candidates) and finished == len(candidates)
        if terminal:
            events.append(Done())

        usage = convert_usage(payload.get("usageMetadata"))
        if not events and usage is None:
            return None
        return ChatChunk(
            events=tuple(events),
            usage=usage,
            is_terminal=terminal,
            provider=ProviderMetadata(
                provider=self.name, request_id=payload.get("responseId")
            ),
        )


def convert_usage(usage: Any) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    known = ("promptTokenCount", "candidatesTokenCount", "totalTokenCount")
    details = {k: v for k, v in usage.items() if k not in known and v is not None}
    return TokenUsage(
        prompt_tokens=usage.get("promptTokenCount"),
        completion_tokens=usage.get("candidatesTokenCount"),
        reasoning_tokens=usage.get("thoughtsTokenCount"),
        total_tokens=usage.get("totalTokenCount"),
        details=details or None,
    )


def _blocked(payload: dict[str, Any]) -> bool:
    feedback = payload.get("promptFeedback")
    return isinstance(feedback, dict) and bool(feedback.get("blockReason"))


def _candidate_outputs(content: dict[str, Any], index: int) -> list[Any]:
    role = content.get("role")
    message_role = Role.ASSISTANT if role in (None, "model") else Role(role)
    parts: list[ContentPart] = []
    thoughts: list[str] = []
    calls: list[ToolCallOutput] = []
    results: list[ToolResultOutput] = []
    for part in content.get("parts") or []:
        call = part.get("functionCall")
        response = part.get("functionResponse")
        if isinstance(call, dict):
            calls.append(
                ToolCallOutput(
                    ToolCall(
                        name=call.get("name") or "",
                        arguments=call.get("args") or {},
                        id=call.get("id"),
                    ),
                    index=index,
                )
            )
        elif isinstance(response, dict):
            results.append(
                ToolResultOutput(
                    ToolResult(call_id=response.get("id"), output=response.get("response")),
                    index=index,
                )
            )
        elif isinstance(part.get("text"), str) and part["text"]:
            if part.get("thought"):
                thoughts.append(part["text"])
            else:
                parts.append(TextPart(part["text"]))
        else:
            # inlineData, executableCode, codeExecutionResult, ...
            parts.append(DataPart(part))

    outputs: list[Any] = []
    if thoughts:
        outputs.append(ReasoningOutput("\n\n".join(thoughts), index=index))
    outputs.append(MessageOutput(Message(message_role, tuple(parts)), index=index))
    outputs.extend(calls)
    outputs.extend(results)
    return outputs


def _part_event(part: dict[str, Any], index: int, state: dict[str, Any]) -> ChatEvent:
    call = part.get("functionCall")
    if isinstance(call, dict):
        # Calls arrive whole; give each its own slot so parallel calls stay apart.
        slot = state.get("tool_calls", 0)
        state["tool_calls"] = slot + 1
        return ToolCallDelta(
            index=slot,
            id=call.get("id"),
            name=call.get("name"),
            arguments_delta=json.dumps(call.get("args") or {}),
            is_finished=True,
        )
    text = part.get("text")
    if isinstance(text, str) and text:
        if part.get("thought"):
            return ReasoningDelta(text, index=index)
        return TextDelta(text, index=index)
    return CustomEvent(part)


def _function_call(call: ToolCall) -> dict[str, Any]:
    if call.kind is not ToolKind.FUNCTION:
        raise ValidationError("Gemini only replays function tool calls")
    obj: dict[str, Any] = {
        "name": call.name,
        "args": call.arguments if call.arguments is not None else {},
    }
    if call.id:
        obj["id"] = call.id
    return {"functionCall": obj}


def _function_response(result: ToolResult, call_names: dict[str, str]) -> dict[str, Any]:
    name = (result.metadata or {}).get("name") or call_names.get(result.call_id or "")
    if not name:
        raise ValidationError(
            "Gemini tool results need the function name",
            hint="Include the assistant tool call earlier in the conversation, "
            "or set ToolResult.metadata['name'].",
        )
    output = result.output
    if isinstance(output, str):
        try:
            output = json.loads(output)
        except ValueError:
            output = {"result": output}
    if not isinstance(output, dict):
        output = {"result": output}
    obj: dict[str, Any] = {"name": name, "response": output}
    if result.call_id:
        obj["id"] = result.call_id
    return {"functionResponse": obj}


def _convert_part(part: ContentPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"text": part.text}
    if isinstance(part, (ImagePart, AudioPart, VideoPart)):
        declared = part.mime_type if isinstance(part, (AudioPart, VideoPart)) else None
        source = part.source
        if isinstance(source, Base64Source):
            mime = source.mime_type or declared or _DEFAULT_MIME[type(part)]
            return {"inlineData": {"mimeType": mime, "data": source.data}}
        uri = source.url if isinstance(source, UrlSource) else source.file_id
        mime = declared or "application/octet-stream"
        return {"fileData": {"mimeType": mime, "fileUri": uri}}
    if isinstance(part, FilePart):
        return {"fileData": {"mimeType": "application/octet-stream", "fileUri": part.file_id}}
    if isinstance(part, DataPart):
        return part.data
    raise ValidationError(f"Gemini does not support {part.kind} content")


def _generation_config(request: ChatRequest) -> dict[str, Any] | None:
    options = request.options
    fields = {
        "temperature": options.temperature,
        "topP": options.top_p,
        "maxOutputTokens": options.max_output_tokens,
        "presencePenalty": options.presence_penalty,
        "frequencyPenalty": options.frequency_penalty,
    }
    config = {k: v for k, v in fields.items() if v is not None}
    if options.reasoning is not None:
        thinking = _thinking_config(options.reasoning)
        if thinking:
            config["thinkingConfig"] = thinking

    fmt = request.response_format
    if fmt is not None:
        if fmt.type == "custom":
            # The value is the whole generationConfig.
            return fmt.value
        config.update(_response_mime(fmt))
    return config or None


def _thinking_config(reasoning: ReasoningOptions) -> dict[str, Any]:
    thinking: dict[str, Any] = {}
    if reasoning.budget_tokens is not None:
        thinking["thinkingBudget"] = reasoning.budget_tokens
    thinking.update(reasoning.extra)
    return thinking


def _response_mime(fmt: ResponseFormat) -> dict[str, Any]:
    if fmt.type == "json_object":
        return {"response_mime_type": "application/json"}
    if fmt.type == "json_schema":
        return {"response_mime_type": "application/json", "response_schema": fmt.schema}
    return {}


def _convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    if tool.kind is ToolKind.FUNCTION:
        declaration: dict[str, Any] = {"name": tool.name}
        if tool.description is not None:
            declaration["description"] = tool.description
        if tool.parameters is not None:
            declaration["parameters"] = tool.parameters
        return {"functionDeclarations": [declaration]}
    if tool.kind is ToolKind.CUSTOM:
        if tool.config is not None:
            return dict(tool.config)
        return {"type": tool.custom_name or tool.name, "name": tool.name}
    raise ValidationError(
        "Gemini tools currently only support function definitions or custom tool configs"
    )


def _convert_tool_choice(choice: ToolChoice) -> Any:
    if choice.mode == "auto":
        return None
    if choice.mode == "any":
        return {"functionCallingConfig": {"mode": "any"}}
    if choice.mode == "none":
        return {"functionCallingConfig": {"mode": "none"}}
    if choice.mode == "tool":
        return {
            "functionCallingConfig": {"mode": "any", "allowedFunctionNames": [choice.name]}
        }
    return choice.value
