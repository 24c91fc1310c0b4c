"""Handle-based dispatch to registered adapters.

A ``Router`` maps caller-chosen handles to shared adapter instances. It is built
once through ``RouterBuilder`` and read-only afterwards, so concurrent calls
need no locking.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import TYPE_CHECKING

from parley.errors import HandleNotFoundError, ValidationError
from parley.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from parley.providers.base import Provider
    from parley.sse import ChatStream
    from parley.types import CapabilityDescriptor, ChatRequest, ChatResponse

logger = logging.getLogger(__name__)


class RouterBuilder:
    """Accumulates registrations; duplicates are reported by ``build()``."""

    def __init__(self) -> None:
        self._entries: list[tuple[str, Provider]] = []
        self._retry = RetryPolicy()

    def register(self, handle: str, adapter: Provider) -> RouterBuilder:
        self._entries.append((handle, adapter))
        return self

    def retry_policy(self, policy: RetryPolicy) -> RouterBuilder:
        self._retry = policy
        return self

    def build(self) -> Router:
        adapters: dict[str, Provider] = {}
        for handle, adapter in self._entries:
            if handle in adapters:
                raise ValidationError(
                    f"duplicate handle: {handle}",
                    hint="Each handle may be registered only once.",
                )
            adapters[handle] = adapter
        logger.debug("Built router with handles: %s", ", ".join(adapters))
        return Router(adapters, retry=self._retry)


class Router:
    """Resolves handles and runs calls through the retry engine."""

    def __init__(
        self, adapters: Mapping[str, Provider], *, retry: RetryPolicy | None = None
    ) -> None:
        self._adapters: Mapping[str, Provider] = MappingProxyType(dict(adapters))
        self._retry = retry or RetryPolicy()

    @staticmethod
    def builder() -> RouterBuilder:
        return RouterBuilder()

    @property
    def adapters(self) -> Mapping[str, Provider]:
        """Read-only view of the handle → adapter mapping."""
        return self._adapters

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    def adapter(self, handle: str) -> Provider:
        try:
            return self._adapters[handle]
        except KeyError:
            raise HandleNotFoundError(
                handle, hint=f"Registered handles: {', '.join(self._adapters) or '(none)'}"
            ) from None

    def capabilities(self, handle: str) -> CapabilityDescriptor:
        return self.adapter(handle).capabilities

    def handles(self) -> list[str]:
        return list(self._adapters)

    def handles_supporting(
        self, predicate: Callable[[CapabilityDescriptor], bool]
    ) -> list[str]:
        """Handles whose descriptor satisfies *predicate*, in registration order."""
        return [h for h, a in self._adapters.items() if predicate(a.capabilities)]

    def handles_supporting_tools(self) -> list[str]:
        return self.handles_supporting(lambda c: c.tools)

    def handles_supporting_stream(self) -> list[str]:
        return self.handles_supporting(lambda c: c.stream)

    async def chat(
        self, handle: str, request: ChatRequest, *, retry: RetryPolicy | None = None
    ) -> ChatResponse:
        adapter = self.adapter(handle)
        logger.debug("chat via %s (%s)", handle, adapter.name)
        return await retry_async(
            lambda: adapter.chat(request), policy=retry or self._retry
        )

    async def stream_chat(
        self, handle: str, request: ChatRequest, *, retry: RetryPolicy | None = None
    ) -> ChatStream:
        """Open a stream; only establishing it is retried, never iteration."""
        adapter = self.adapter(handle)
        logger.debug("stream_chat via %s (%s)", handle, adapter.name)
        return await retry_async(
            lambda: adapter.stream_chat(request), policy=retry or self._retry
        )
