"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off transport and provider subclasses as coverage expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any

from parley.transport import HttpRequest, HttpResponse, HttpStreamResponse
from parley.types import ChatResponse
from tests.conftest import FakeProvider


def sse(*payloads: Any) -> bytes:
    """Encode payloads as SSE ``data:`` events (strings are sent verbatim)."""
    out = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode("utf-8")


@dataclass
class StreamScript:
    """Scripted streaming response: status, headers and body chunks.

    An exception in ``chunks`` is raised when the body reaches it.
    """

    chunks: list[bytes | BaseException] = field(default_factory=list)
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class FakeTransport:
    """Transport that replays scripted responses and records requests."""

    responses: list[HttpResponse | BaseException] = field(default_factory=list)
    streams: list[StreamScript | BaseException] = field(default_factory=list)
    requests: list[HttpRequest] = field(default_factory=list)
    closed_streams: int = 0
    chunks_read: int = 0

    @property
    def last_body(self) -> dict[str, Any]:
        body = self.requests[-1].body
        assert body is not None
        return json.loads(body)

    async def send(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def send_stream(self, request: HttpRequest) -> HttpStreamResponse:
        self.requests.append(request)
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item

        async def body():
            for chunk in item.chunks:
                if isinstance(chunk, BaseException):
                    raise chunk
                self.chunks_read += 1
                yield chunk

        async def close() -> None:
            self.closed_streams += 1

        return HttpStreamResponse(
            status_code=item.status_code,
            headers=dict(item.headers),
            body=body(),
            close=close,
        )


def json_response(
    payload: Any, status_code: int = 200, headers: dict[str, str] | None = None
) -> HttpResponse:
    return HttpResponse(
        status_code=status_code,
        headers=headers or {},
        body=json.dumps(payload).encode("utf-8"),
    )


@dataclass
class ScriptedProvider(FakeProvider):
    """FakeProvider that returns a scripted sequence of results/exceptions.

    The same script drives ``chat`` and ``stream_chat`` so retry tests can
    count establishing attempts for either path.
    """

    script: list[ChatResponse | BaseException] = field(default_factory=list)

    async def chat(self, request):
        if not self.script:
            return await super().chat(request)
        self.chat_calls += 1
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream_chat(self, request):
        # Only exceptions are meaningful here; a scripted response falls back
        # to the default single-delta stream.
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                self.stream_calls += 1
                raise item
        return await super().stream_chat(request)
