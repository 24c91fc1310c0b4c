"""Server-Sent Events decoding into canonical chat chunks.

Two layers:

- ``SSEDecoder`` frames raw bytes into ``SSEEvent`` values. It buffers partial
  lines, so splitting the input at arbitrary byte offsets (including in the
  middle of a multi-byte UTF-8 character) never changes the result.
- ``decode_stream`` drives a decoder over an async byte source, parses each
  payload as JSON and hands it to the adapter's mapping function. The result
  is a ``ChatStream`` that always ends with exactly one terminal chunk.

A malformed payload ends the stream with an ``ErrorEvent``; decoding is never
resumed past corrupted input.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import json
import logging
from typing import TYPE_CHECKING, Any

from parley.errors import ParleyError, ProviderError, StreamClosedError, TransportError
from parley.types import (
    ChatChunk,
    ChatResponse,
    Done,
    ErrorEvent,
    FinishSignal,
    Message,
    MessageOutput,
    ProviderMetadata,
    ReasoningDelta,
    ReasoningOutput,
    Role,
    TextDelta,
    TextPart,
    ToolCall,
    ToolCallDelta,
    ToolCallOutput,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable

    from parley.types import ChatEvent, FinishReason, TokenUsage

    MapPayload = Callable[[Any], "ChatChunk | None"]

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEEvent:
    """One dispatched event; ``data`` joins multiple data lines with newlines."""

    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None


class SSEDecodeError(ValueError):
    """Raised when a complete line is not valid UTF-8.

    ``pending`` holds events completed earlier in the same ``feed`` call so
    callers can keep ordering intact before reporting the failure.
    """

    def __init__(self, message: str, *, pending: list[SSEEvent]) -> None:
        super().__init__(message)
        self.pending = pending


class SSEDecoder:
    """Incremental SSE framer.

    Lines end with ``\\n`` or ``\\r\\n``. A blank line dispatches the event
    collected so far; events without any ``data`` line are dropped.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None
        self._retry: int | None = None

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        """Consume *chunk* and return every event it completed, in order."""
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer.extend(chunk)

        events: list[SSEEvent] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            event = self._process_line(self._decode(raw, events))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Finish input: treat buffered bytes as a last line and dispatch."""
        events: list[SSEEvent] = []
        if self._buffer:
            raw = bytes(self._buffer)
            self._buffer.clear()
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            event = self._process_line(self._decode(raw, events))
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    @staticmethod
    def _decode(raw: bytes, pending: list[SSEEvent]) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SSEDecodeError(
                f"invalid UTF-8 in event stream: {exc}", pending=pending
            ) from exc

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        elif name == "retry" and value.isascii() and value.isdigit():
            self._retry = int(value)
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(
            data="\n".join(self._data),
            event=self._event,
            id=self._id,
            retry=self._retry,
        )
        self._data = []
        self._event = None
        return event


class ChatStream:
    """Single-use async iterator of ``ChatChunk`` values.

    The last chunk produced is always terminal. Closing the stream (explicitly,
    by leaving ``async with``, or by exhausting it) releases the underlying
    transport.
    """

    def __init__(
        self,
        chunks: AsyncIterator[ChatChunk],
        *,
        close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._chunks = chunks
        self._close = close
        self._started = False
        self._closed = False

    def __aiter__(self) -> AsyncIterator[ChatChunk]:
        if self._started:
            raise RuntimeError("ChatStream can only be iterated once")
        self._started = True
        return self._iterate()

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    async def _iterate(self) -> AsyncIterator[ChatChunk]:
        try:
            async for chunk in self._chunks:
                yield chunk
                if chunk.is_terminal:
                    break
        finally:
            await self.aclose()

    async def events(self) -> AsyncIterator[ChatEvent]:
        """Flatten the stream into its events."""
        async for chunk in self:
            for event in chunk.events:
                yield event

    async def aclose(self) -> None:
        """Stop decoding and close the transport; safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._chunks, "aclose", None)
        try:
            if callable(aclose):
                await aclose()
        finally:
            if self._close is not None:
                try:
                    await self._close()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Stream transport cleanup failed: %s", exc)

    async def collect(self) -> ChatResponse:
        """Drain the stream into a ``ChatResponse``.

        Text and reasoning deltas are concatenated per index, tool call
        fragments are joined and their arguments decoded as JSON. An
        ``ErrorEvent`` is raised as its error.
        """
        texts: dict[int, list[str]] = {}
        reasoning: dict[int, list[str]] = {}
        calls: dict[int, dict[str, Any]] = {}
        finish: FinishReason | None = None
        usage: TokenUsage | None = None
        provider = ProviderMetadata()

        async for chunk in self:
            provider = chunk.provider
            if chunk.usage is not None:
                usage = chunk.usage
            for event in chunk.events:
                if isinstance(event, ErrorEvent):
                    raise event.error
                if isinstance(event, TextDelta):
                    texts.setdefault(event.index, []).append(event.text)
                elif isinstance(event, ReasoningDelta):
                    reasoning.setdefault(event.index, []).append(event.text)
                elif isinstance(event, ToolCallDelta):
                    slot = calls.setdefault(
                        event.index, {"id": None, "name": None, "arguments": []}
                    )
                    if event.id:
                        slot["id"] = event.id
                    if event.name:
                        slot["name"] = event.name
                    if event.arguments_delta:
                        slot["arguments"].append(event.arguments_delta)
                elif isinstance(event, FinishSignal):
                    finish = event.reason

        outputs: list[Any] = [
            ReasoningOutput(text="".join(parts), index=index)
            for index, parts in sorted(reasoning.items())
        ]
        outputs.extend(
            MessageOutput(
                Message(Role.ASSISTANT, (TextPart("".join(parts)),)), index=index
            )
            for index, parts in sorted(texts.items())
        )
        for index, slot in sorted(calls.items()):
            outputs.append(
                ToolCallOutput(
                    ToolCall(
                        name=slot["name"] or "",
                        arguments=_decode_arguments("".join(slot["arguments"])),
                        id=slot["id"],
                    ),
                    index=index,
                )
            )
        return ChatResponse(
            outputs=tuple(outputs),
            usage=usage,
            finish_reason=finish,
            provider=provider,
        )


def decode_stream(
    source: AsyncIterable[bytes | str],
    *,
    map_payload: MapPayload,
    provider: str,
    endpoint: str | None = None,
    sentinel: str | None = DONE_SENTINEL,
    close: Callable[[], Awaitable[None]] | None = None,
) -> ChatStream:
    """Wrap an SSE byte source in a ``ChatStream``.

    Args:
        source: Raw response body; chunk boundaries are arbitrary.
        map_payload: Turns one decoded JSON payload into a chunk, or ``None``
            when the payload carries nothing worth emitting.
        provider: Name recorded in each chunk's ``ProviderMetadata``.
        endpoint: Optional URL recorded alongside the provider name.
        sentinel: Payload text that ends the stream cleanly; ``None`` when
            the vendor signals completion through a mapped terminal chunk.
        close: Called once when the stream is closed for any reason.
    """
    metadata = ProviderMetadata(provider=provider, endpoint=endpoint)
    return ChatStream(
        _chunks(source, map_payload, metadata, sentinel),
        close=close,
    )


async def _chunks(
    source: AsyncIterable[bytes | str],
    map_payload: MapPayload,
    metadata: ProviderMetadata,
    sentinel: str | None,
) -> AsyncIterator[ChatChunk]:
    decoder = SSEDecoder()
    try:
        async for raw in source:
            try:
                events = decoder.feed(raw)
            except SSEDecodeError as exc:
                for event in exc.pending:
                    chunk = _to_chunk(event, map_payload, metadata, sentinel)
                    if chunk is not None:
                        yield chunk
                        if chunk.is_terminal:
                            return
                yield _terminal_error(
                    ProviderError(str(exc), provider=metadata.provider), metadata
                )
                return
            for event in events:
                chunk = _to_chunk(event, map_payload, metadata, sentinel)
                if chunk is not None:
                    yield chunk
                    if chunk.is_terminal:
                        return
    except TransportError as exc:
        logger.debug("Stream from %s failed mid-flight: %s", metadata.provider, exc)
        yield _terminal_error(exc, metadata)
        return

    try:
        tail = decoder.flush()
    except SSEDecodeError as exc:
        tail = exc.pending
        trailing_error: ParleyError | None = ProviderError(
            str(exc), provider=metadata.provider
        )
    else:
        trailing_error = None
    for event in tail:
        chunk = _to_chunk(event, map_payload, metadata, sentinel)
        if chunk is not None:
            yield chunk
            if chunk.is_terminal:
                return
    if trailing_error is None:
        trailing_error = StreamClosedError(
            f"{metadata.provider} stream ended before a terminal event"
        )
    yield _terminal_error(trailing_error, metadata)


def _to_chunk(
    event: SSEEvent,
    map_payload: MapPayload,
    metadata: ProviderMetadata,
    sentinel: str | None,
) -> ChatChunk | None:
    if sentinel is not None and event.data.strip() == sentinel:
        return ChatChunk(events=(Done(),), is_terminal=True, provider=metadata)

    try:
        payload = json.loads(event.data)
    except ValueError as exc:
        return _terminal_error(
            ProviderError(
                f"invalid JSON in {metadata.provider} stream payload: {exc}",
                provider=metadata.provider,
                raw=event.data,
            ),
            metadata,
        )

    try:
        chunk = map_payload(payload)
    except ParleyError as exc:
        return _terminal_error(exc, metadata)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        # Valid JSON that does not have the vendor's event shape.
        return _terminal_error(
            ProviderError(
                f"failed to parse {metadata.provider} stream payload: {exc}",
                provider=metadata.provider,
                raw=event.data,
            ),
            metadata,
        )
    if chunk is None:
        return None

    terminal = chunk.is_terminal or any(
        isinstance(e, (Done, ErrorEvent)) for e in chunk.events
    )
    if not chunk.provider.provider:
        chunk = replace(chunk, provider=metadata)
    if terminal != chunk.is_terminal:
        chunk = replace(chunk, is_terminal=terminal)
    return chunk


def _terminal_error(error: ParleyError, metadata: ProviderMetadata) -> ChatChunk:
    return ChatChunk(events=(ErrorEvent(error),), is_terminal=True, provider=metadata)


def _decode_arguments(raw: str) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return raw
