from __future__ import annotations

import json

import httpx
import pytest

from parley.errors import TransportError
from parley.transport import HttpRequest, HttpxTransport, Transport

pytestmark = pytest.mark.unit


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_httpx_transport_satisfies_protocol() -> None:
    assert isinstance(HttpxTransport(), Transport)


@pytest.mark.asyncio
async def test_send_round_trips_request_and_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True}, headers={"x-request-id": "r1"})

    async with _client(handler) as client:
        transport = HttpxTransport(client)
        response = await transport.send(
            HttpRequest("POST", "https://api.test/v1/x", {"a": "1"}, b'{"q": 1}')
        )

    assert seen[0].headers["a"] == "1"
    assert seen[0].content == b'{"q": 1}'
    assert response.status_code == 200
    assert response.headers["x-request-id"] == "r1"
    assert json.loads(response.text) == {"ok": True}


@pytest.mark.asyncio
async def test_send_stream_yields_body_and_closes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"data: 1\n\ndata: [DONE]\n\n")

    async with _client(handler) as client:
        transport = HttpxTransport(client)
        response = await transport.send_stream(HttpRequest("POST", "https://api.test/s"))
        body = b"".join([chunk async for chunk in response.body])
        await response.aclose()
        await response.aclose()

    assert body == b"data: 1\n\ndata: [DONE]\n\n"
    assert response.closed


@pytest.mark.asyncio
async def test_connection_failure_becomes_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        transport = HttpxTransport(client)
        with pytest.raises(TransportError, match="POST https://api.test/x failed"):
            await transport.send(HttpRequest("POST", "https://api.test/x"))
        with pytest.raises(TransportError):
            await transport.send_stream(HttpRequest("POST", "https://api.test/x"))


@pytest.mark.asyncio
async def test_timeout_is_reported_as_timed_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransportError, match="timed out"):
            await HttpxTransport(client).send(HttpRequest("GET", "https://api.test/x"))


@pytest.mark.asyncio
async def test_borrowed_client_is_not_closed() -> None:
    client = _client(lambda request: httpx.Response(204))
    transport = HttpxTransport(client)

    await transport.aclose()

    assert not client.is_closed
    await client.aclose()
