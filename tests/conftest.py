"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and the shared provider
test double. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from parley.providers._errors import parse_error_body
from parley.sse import ChatStream
from parley.types import (
    CapabilityDescriptor,
    ChatChunk,
    ChatRequest,
    ChatResponse,
    Done,
    FinishReason,
    Message,
    MessageOutput,
    Role,
    TextDelta,
    TextPart,
)

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeProvider:
    """Provider test double for router behavior verification.

    Records every request and replies ``ok:<last text>``. Use to test dispatch
    without a transport.
    """

    adapter_name: str = "fake"
    chat_calls: int = 0
    stream_calls: int = 0
    requests: list[ChatRequest] = field(default_factory=list)
    _capabilities: CapabilityDescriptor = field(
        default_factory=lambda: CapabilityDescriptor(stream=True, tools=True)
    )

    @property
    def name(self) -> str:
        return self.adapter_name

    @property
    def capabilities(self) -> CapabilityDescriptor:
        return self._capabilities

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        return {"messages": len(request.messages), "stream": stream}

    def parse_error(self, status_code: int, raw_body: Any, headers: Any = None) -> Any:
        return parse_error_body(self.name, status_code, raw_body, headers)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.chat_calls += 1
        self.requests.append(request)
        return ChatResponse(
            outputs=(
                MessageOutput(Message(Role.ASSISTANT, (TextPart(_reply(request)),))),
            ),
            finish_reason=FinishReason.STOP,
        )

    async def stream_chat(self, request: ChatRequest) -> ChatStream:
        self.stream_calls += 1
        self.requests.append(request)
        text = _reply(request)

        async def chunks():
            yield ChatChunk(events=(TextDelta(text),))
            yield ChatChunk(events=(Done(),), is_terminal=True)

        return ChatStream(chunks())


def _reply(request: ChatRequest) -> str:
    last = request.messages[-1] if request.messages else None
    texts = [p.text for p in last.content if isinstance(p, TextPart)] if last else []
    return f"ok:{''.join(texts)}"


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears OPENAI_*, ANTHROPIC_* and GEMINI_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("OPENAI_", "ANTHROPIC_", "GEMINI_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
