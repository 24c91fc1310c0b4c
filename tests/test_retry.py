from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from parley.errors import (
    AuthError,
    ProviderError,
    RateLimitError,
    TransportError,
    ValidationError,
)
from parley.retry import (
    RetryPolicy,
    compute_backoff_delay,
    retry_after_from_headers,
    retry_async,
    should_retry,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    """Record backoff sleeps instead of waiting."""
    recorded: list[float] = []

    async def fake_sleep(delay: float) -> None:
        recorded.append(delay)

    monkeypatch.setattr("parley.retry.asyncio.sleep", fake_sleep)
    return recorded


class Flaky:
    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        item = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.mark.asyncio
async def test_rate_limit_is_retried_until_attempts_exhausted(sleeps) -> None:
    op = Flaky(RateLimitError("slow down"))

    with pytest.raises(RateLimitError):
        await retry_async(op, policy=RetryPolicy(max_attempts=3))

    assert op.calls == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_validation_error_is_not_retried(sleeps) -> None:
    op = Flaky(ValidationError("bad"))

    with pytest.raises(ValidationError):
        await retry_async(op, policy=RetryPolicy(max_attempts=3))

    assert op.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_transport_error_recovers(sleeps) -> None:
    op = Flaky(TransportError("reset"), "ok")

    assert await retry_async(op, policy=RetryPolicy(max_attempts=3)) == "ok"
    assert op.calls == 2


@pytest.mark.asyncio
async def test_retry_after_overrides_backoff(sleeps) -> None:
    op = Flaky(RateLimitError("wait", retry_after_s=4.25), "ok")

    await retry_async(op, policy=RetryPolicy(base_delay_s=0.1))

    assert sleeps == [4.25]


@pytest.mark.asyncio
async def test_max_elapsed_clamps_delay(sleeps) -> None:
    op = Flaky(RateLimitError("wait", retry_after_s=30.0), "ok")

    await retry_async(op, policy=RetryPolicy(max_elapsed_s=2.0))

    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 2.0


@pytest.mark.asyncio
async def test_exhausted_elapsed_budget_stops_retrying(sleeps) -> None:
    op = Flaky(TransportError("reset"))

    with pytest.raises(TransportError):
        await retry_async(op, policy=RetryPolicy(max_attempts=5, max_elapsed_s=0.0))

    assert op.calls == 1


@pytest.mark.asyncio
async def test_cancellation_interrupts_backoff() -> None:
    op = Flaky(RateLimitError("wait", retry_after_s=60.0))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(retry_async(op, policy=RetryPolicy()), timeout=0.05)

    assert op.calls == 1


def test_only_rate_limit_and_transport_are_retryable() -> None:
    assert should_retry(RateLimitError("r"))
    assert should_retry(TransportError("t"))
    assert not should_retry(AuthError("a"))
    assert not should_retry(ProviderError("p", provider="x", status_code=503))
    assert not should_retry(RuntimeError("foreign"))
    assert not should_retry(asyncio.CancelledError())


def test_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(base_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0)
    delays = [compute_backoff_delay(policy, retry_index=i) for i in range(1, 6)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_stays_within_bounds() -> None:
    policy = RetryPolicy(base_delay_s=1.0, jitter=True)
    for _ in range(50):
        assert 0.0 <= compute_backoff_delay(policy, retry_index=2) <= 2.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_s": -1},
        {"backoff_multiplier": 0},
        {"max_delay_s": -0.1},
        {"max_elapsed_s": -1},
    ],
)
def test_policy_rejects_invalid_values(kwargs) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"Retry-After": "3"}, 3.0),
        ({"retry-after": " 1.5 "}, 1.5),
        ({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, None),
        ({"Retry-After": "-2"}, None),
        ({"x-other": "1"}, None),
        (None, None),
    ],
)
def test_retry_after_from_headers(headers, expected) -> None:
    assert retry_after_from_headers(headers) == expected


@pytest.mark.asyncio
async def test_factory_is_awaited_fresh_on_each_attempt(sleeps) -> None:
    factory = AsyncMock(side_effect=[TransportError("reset"), "done"])

    assert await retry_async(factory, policy=RetryPolicy()) == "done"
    assert factory.await_count == 2
