"""Mock provider for offline use and testing."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from parley.errors import UnsupportedFeatureError
from parley.providers._errors import parse_error_body
from parley.sse import ChatStream
from parley.types import (
    CapabilityDescriptor,
    ChatChunk,
    ChatResponse,
    Done,
    FinishReason,
    FinishSignal,
    Message,
    MessageOutput,
    ProviderMetadata,
    Role,
    TextDelta,
    TextPart,
    TokenUsage,
)
from parley.validation import require_capabilities, resolve_model

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from parley.errors import ParleyError
    from parley.types import ChatRequest

MOCK_MODEL = "mock-echo"


class MockProvider:
    """Deterministic echo adapter; never touches the network.

    Replies with ``echo: <last user text>`` (truncated to 100 characters).
    Streaming splits the reply into word-sized text deltas.
    """

    def __init__(
        self,
        *,
        default_model: str | None = MOCK_MODEL,
        capabilities: CapabilityDescriptor | None = None,
        name: str = "mock",
    ) -> None:
        self._default_model = default_model
        self._capabilities = capabilities or CapabilityDescriptor(
            stream=True, tools=True, structured_output=True
        )
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def capabilities(self) -> CapabilityDescriptor:
        return self._capabilities

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        require_capabilities(request, self.capabilities, provider=self.name)
        return {
            "model": resolve_model(request, self._default_model, provider=self.name),
            "prompt": _last_user_text(request),
            "stream": stream,
        }

    def parse_error(
        self,
        status_code: int,
        raw_body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> ParleyError:
        return parse_error_body(self.name, status_code, raw_body, headers)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Return a deterministic echo response."""
        body = self.build_body(request, stream=False)
        text = _reply(body["prompt"])
        return ChatResponse(
            outputs=(MessageOutput(Message(Role.ASSISTANT, (TextPart(text),))),),
            usage=_usage(body["prompt"], text),
            finish_reason=FinishReason.STOP,
            model=body["model"],
            provider=ProviderMetadata(provider=self.name),
        )

    async def stream_chat(self, request: ChatRequest) -> ChatStream:
        """Stream the echo reply word by word."""
        if not self.capabilities.stream:
            raise UnsupportedFeatureError("stream", message=f"{self.name} does not stream")
        body = self.build_body(request, stream=True)
        return ChatStream(self._chunks(body["prompt"]))

    async def _chunks(self, prompt: str) -> AsyncIterator[ChatChunk]:
        metadata = ProviderMetadata(provider=self.name)
        text = _reply(prompt)
        words = text.split(" ")
        for i, word in enumerate(words):
            piece = word if i == len(words) - 1 else f"{word} "
            yield ChatChunk(events=(TextDelta(piece),), provider=metadata)
        yield ChatChunk(
            events=(FinishSignal(FinishReason.STOP),),
            usage=_usage(prompt, text),
            provider=metadata,
        )
        yield ChatChunk(events=(Done(),), is_terminal=True, provider=metadata)


def _last_user_text(request: ChatRequest) -> str:
    for message in reversed(request.messages):
        if message.role is Role.USER:
            texts = [p.text for p in message.content if isinstance(p, TextPart)]
            if any(t.strip() for t in texts):
                return " ".join(texts)
    return ""


def _reply(prompt: str) -> str:
    return f"echo: {prompt[:100]}"


def _usage(prompt: str, reply: str) -> TokenUsage:
    prompt_tokens = len(prompt.split())
    completion_tokens = len(reply.split())
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )
