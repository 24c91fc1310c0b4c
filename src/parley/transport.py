"""HTTP transport contract and the httpx-backed implementation.

Adapters only see ``Transport``; tests substitute fixed-payload doubles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from parley.errors import TransportError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0


@dataclass(frozen=True)
class HttpRequest:
    """One outgoing request; ``body`` is already serialized."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


@dataclass(frozen=True)
class HttpResponse:
    """A fully read response."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpStreamResponse:
    """A response whose body is consumed incrementally.

    The caller owns the response and must ``aclose()`` it; ``ChatStream`` does
    this automatically.
    """

    def __init__(
        self,
        status_code: int,
        headers: dict[str, str],
        body: AsyncIterator[bytes],
        *,
        close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers = headers
        self.body = body
        self._close = close
        self.closed = False

    async def aread(self) -> bytes:
        """Read the rest of the body (used for error responses)."""
        parts = [chunk async for chunk in self.body]
        return b"".join(parts)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._close is not None:
            await self._close()


@runtime_checkable
class Transport(Protocol):
    """Minimal HTTP client surface adapters depend on."""

    async def send(self, request: HttpRequest) -> HttpResponse:
        """Send a request and read the whole response."""
        ...

    async def send_stream(self, request: HttpRequest) -> HttpStreamResponse:
        """Send a request and return once status and headers are known."""
        ...


class HttpxTransport:
    """``Transport`` on top of ``httpx.AsyncClient``.

    httpx failures surface as ``TransportError`` with the original exception
    chained. A client passed in stays owned by the caller; otherwise one is
    created lazily and closed by ``aclose()``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout_s = timeout_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def send(self, request: HttpRequest) -> HttpResponse:
        client = self._get_client()
        try:
            response = await client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
            )
        except httpx.HTTPError as exc:
            raise _transport_error(exc, request) from exc
        return HttpResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    async def send_stream(self, request: HttpRequest) -> HttpStreamResponse:
        client = self._get_client()
        built = client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.body,
        )
        try:
            response = await client.send(built, stream=True)
        except httpx.HTTPError as exc:
            raise _transport_error(exc, request) from exc

        async def body() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as exc:
                raise _transport_error(exc, request) from exc

        return HttpStreamResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=body(),
            close=response.aclose,
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _transport_error(exc: httpx.HTTPError, request: HttpRequest) -> TransportError:
    kind = "timed out" if isinstance(exc, httpx.TimeoutException) else "failed"
    logger.debug("%s %s %s: %s", request.method, request.url, kind, exc)
    return TransportError(
        f"{request.method} {request.url} {kind}: {exc}",
        hint="Check network connectivity and the configured base_url.",
    )
