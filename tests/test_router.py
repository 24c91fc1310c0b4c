"""Router contract: handle resolution, capability filters, and retry wiring."""

from __future__ import annotations

import pytest

from parley.errors import (
    ErrorKind,
    HandleNotFoundError,
    RateLimitError,
    TransportError,
    ValidationError,
)
from parley.providers import MockProvider, Provider
from parley.retry import RetryPolicy
from parley.router import Router
from parley.types import CapabilityDescriptor, ChatRequest, Message, TextDelta
from tests.conftest import FakeProvider
from tests.helpers import ScriptedProvider

pytestmark = pytest.mark.contract

NO_WAIT = RetryPolicy(max_attempts=3, base_delay_s=0.0)


def _request(text: str = "hi") -> ChatRequest:
    return ChatRequest(messages=(Message.user(text),))


def test_fake_provider_satisfies_protocol() -> None:
    assert isinstance(FakeProvider(), Provider)
    assert isinstance(MockProvider(), Provider)


def test_duplicate_handle_fails_build() -> None:
    first, second = FakeProvider(), FakeProvider()
    builder = Router.builder().register("a", first).register("a", second)

    with pytest.raises(ValidationError, match="duplicate handle: a"):
        builder.build()

    assert first.chat_calls == second.chat_calls == 0


@pytest.mark.asyncio
async def test_unknown_handle_is_distinct_error() -> None:
    router = Router.builder().register("a", FakeProvider()).build()

    with pytest.raises(HandleNotFoundError) as excinfo:
        await router.chat("b", _request())
    assert excinfo.value.kind is ErrorKind.VALIDATION
    assert "handle not found: b" in str(excinfo.value)

    with pytest.raises(HandleNotFoundError):
        router.capabilities("b")
    with pytest.raises(HandleNotFoundError):
        await router.stream_chat("b", _request())


@pytest.mark.asyncio
async def test_chat_dispatches_to_registered_adapter() -> None:
    a, b = FakeProvider(adapter_name="a"), FakeProvider(adapter_name="b")
    router = Router.builder().register("fast", a).register("smart", b).build()

    response = await router.chat("smart", _request("question"))

    assert response.text == "ok:question"
    assert (a.chat_calls, b.chat_calls) == (0, 1)


def test_capability_filters() -> None:
    router = (
        Router.builder()
        .register("both", FakeProvider())
        .register(
            "plain",
            FakeProvider(_capabilities=CapabilityDescriptor()),
        )
        .register(
            "stream_only",
            FakeProvider(_capabilities=CapabilityDescriptor(stream=True)),
        )
        .build()
    )

    assert router.handles() == ["both", "plain", "stream_only"]
    assert router.handles_supporting_stream() == ["both", "stream_only"]
    assert router.handles_supporting_tools() == ["both"]
    assert router.handles_supporting(lambda c: not c.stream) == ["plain"]
    assert router.capabilities("plain") == CapabilityDescriptor()


def test_adapter_mapping_is_read_only() -> None:
    router = Router.builder().register("a", FakeProvider()).build()

    with pytest.raises(TypeError):
        router.adapters["b"] = FakeProvider()  # type: ignore[index]


@pytest.mark.asyncio
async def test_chat_retries_transient_failures() -> None:
    adapter = ScriptedProvider(
        script=[TransportError("reset"), RateLimitError("slow")]
    )
    router = Router.builder().register("a", adapter).retry_policy(NO_WAIT).build()

    response = await router.chat("a", _request("x"))

    assert response.text == "ok:x"
    assert adapter.chat_calls == 3


@pytest.mark.asyncio
async def test_chat_does_not_retry_validation() -> None:
    adapter = ScriptedProvider(script=[ValidationError("bad")])
    router = Router.builder().register("a", adapter).retry_policy(NO_WAIT).build()

    with pytest.raises(ValidationError):
        await router.chat("a", _request())
    assert adapter.chat_calls == 1


@pytest.mark.asyncio
async def test_per_call_policy_overrides_router_policy() -> None:
    adapter = ScriptedProvider(script=[RateLimitError("slow")])
    router = Router.builder().register("a", adapter).retry_policy(NO_WAIT).build()

    with pytest.raises(RateLimitError):
        await router.chat("a", _request(), retry=RetryPolicy.no_retry())
    assert adapter.chat_calls == 1


@pytest.mark.asyncio
async def test_stream_establishment_is_retried() -> None:
    adapter = ScriptedProvider(script=[TransportError("refused")])
    router = Router.builder().register("a", adapter).retry_policy(NO_WAIT).build()

    stream = await router.stream_chat("a", _request("s"))
    events = [e async for e in stream.events()]

    assert events[0] == TextDelta("ok:s")
    assert adapter.stream_calls == 2
