"""Provider protocol and the shared HTTP adapter engine."""

from __future__ import annotations

import asyncio
from dataclasses import replace
import functools
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from parley.errors import ParleyError, ProviderError, UnsupportedFeatureError
from parley.providers._errors import parse_error_body, wrap_transport_error
from parley.sse import DONE_SENTINEL, decode_stream
from parley.transport import HttpRequest
from parley.types import CapabilityDescriptor
from parley.validation import require_capabilities

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from parley.patch import RequestPatch
    from parley.sse import ChatStream
    from parley.transport import Transport
    from parley.types import ChatChunk, ChatRequest, ChatResponse

logger = logging.getLogger(__name__)


@runtime_checkable
class Provider(Protocol):
    """Adapter contract: one vendor API behind the canonical types."""

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a request and return the complete response."""
        ...

    async def stream_chat(self, request: ChatRequest) -> ChatStream:
        """Open a streaming response; returns once the call is established."""
        ...

    @property
    def capabilities(self) -> CapabilityDescriptor:
        """Static feature flags of this adapter instance."""
        ...

    @property
    def name(self) -> str:
        """Stable identifier used in logs, errors and provider metadata."""
        ...

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        """Translate a canonical request into the vendor JSON body."""
        ...

    def parse_error(
        self,
        status_code: int,
        raw_body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> ParleyError:
        """Classify a non-2xx vendor response."""
        ...


class HttpProvider:
    """Shared engine for JSON-over-HTTP adapters.

    Subclasses supply the vendor strategy (``endpoint``, ``auth_headers``,
    ``build_body``, ``parse_response``, ``map_stream_payload``); this class
    does the rest: capability checks, patching, serialization, transport
    calls, error classification and stream decoding.
    """

    provider_name = "http"
    default_base_url = ""
    #: Terminal SSE payload, or ``None`` when the vendor ends with an event.
    stream_sentinel: str | None = DONE_SENTINEL

    def __init__(
        self,
        *,
        transport: Transport,
        api_key: str,
        base_url: str | None = None,
        default_model: str | None = None,
        patch: RequestPatch | None = None,
        auth_header: str | None = None,
        capabilities: CapabilityDescriptor | None = None,
    ) -> None:
        self._transport = transport
        self._api_key = api_key
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._default_model = default_model
        self._patch = patch
        self._auth_header = auth_header
        self._capabilities = capabilities or self.default_capabilities()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(base_url={self._base_url!r}, "
            f"default_model={self._default_model!r})"
        )

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def capabilities(self) -> CapabilityDescriptor:
        return self._capabilities

    @property
    def default_model(self) -> str | None:
        return self._default_model

    @property
    def base_url(self) -> str:
        return self._base_url

    # --- Vendor strategy ---

    @classmethod
    def default_capabilities(cls) -> CapabilityDescriptor:
        return CapabilityDescriptor()

    def endpoint(self) -> str:
        raise NotImplementedError

    def request_url(self, request: ChatRequest, *, stream: bool) -> str:  # noqa: ARG002
        """URL for one call; vendors that route by model or mode override this."""
        return self.endpoint()

    def auth_headers(self) -> dict[str, str]:
        raise NotImplementedError

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(
        self, payload: Any, *, headers: Mapping[str, str]
    ) -> ChatResponse:
        raise NotImplementedError

    def map_stream_payload(
        self, payload: Any, state: dict[str, Any]
    ) -> ChatChunk | None:
        """Map one decoded SSE payload; *state* is private to one stream."""
        raise NotImplementedError

    def parse_error(
        self,
        status_code: int,
        raw_body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> ParleyError:
        return parse_error_body(self.name, status_code, raw_body, headers)

    # --- Engine ---

    def prepare(self, request: ChatRequest, *, stream: bool) -> HttpRequest:
        """Build the outgoing HTTP request, patch applied."""
        require_capabilities(request, self.capabilities, provider=self.name)
        body = self.build_body(request, stream=stream)
        url = self.request_url(request, stream=stream)
        headers = {"content-type": "application/json", **self.auth_headers()}
        if stream:
            headers["accept"] = "text/event-stream"
        if self._patch is not None and not self._patch.is_empty:
            patched = self._patch.apply(body, headers, url)
            body, headers, url = patched.body, patched.headers, patched.url
        return HttpRequest(
            method="POST",
            url=url,
            headers=headers,
            body=json.dumps(body).encode("utf-8"),
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        http_request = self.prepare(request, stream=False)
        logger.debug("POST %s (%s, stream=False)", http_request.url, self.name)
        response = await self._call(self._transport.send, http_request)
        if not 200 <= response.status_code < 300:
            raise self.parse_error(response.status_code, response.body, response.headers)
        try:
            payload = json.loads(response.body)
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned a non-JSON response",
                provider=self.name,
                status_code=response.status_code,
                raw=response.text,
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError(
                f"{self.name} returned a {type(payload).__name__} instead of a JSON object",
                provider=self.name,
                status_code=response.status_code,
                raw=payload,
            )
        try:
            result = self.parse_response(payload, headers=response.headers)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderError(
                f"failed to parse {self.name} response: {exc}",
                provider=self.name,
                status_code=response.status_code,
                raw=payload,
            ) from exc
        if result.provider.endpoint is None:
            metadata = replace(result.provider, endpoint=http_request.url)
            result = replace(result, provider=metadata)
        return result

    async def stream_chat(self, request: ChatRequest) -> ChatStream:
        if not self.capabilities.stream:
            raise UnsupportedFeatureError("stream", message=f"{self.name} does not stream")
        http_request = self.prepare(request, stream=True)
        logger.debug("POST %s (%s, stream=True)", http_request.url, self.name)
        response = await self._call(self._transport.send_stream, http_request)
        if not 200 <= response.status_code < 300:
            try:
                raw = await response.aread()
            finally:
                await response.aclose()
            raise self.parse_error(response.status_code, raw, response.headers)
        return decode_stream(
            response.body,
            map_payload=functools.partial(self.map_stream_payload, state={}),
            provider=self.name,
            endpoint=http_request.url,
            sentinel=self.stream_sentinel,
            close=response.aclose,
        )

    async def _call(
        self, send: Callable[[HttpRequest], Awaitable[Any]], request: HttpRequest
    ) -> Any:
        try:
            return await send(request)
        except (ParleyError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise wrap_transport_error(exc, provider=self.name) from exc


def request_id_from_headers(headers: Mapping[str, str]) -> str | None:
    """Vendor request id, if the response carried one."""
    for name, value in headers.items():
        if name.lower() in ("x-request-id", "request-id"):
            return value
    return None
