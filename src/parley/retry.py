"""Minimal async retry with explicit error contracts.

Design goals:
- Classification by ``ErrorKind``, never by message text
- Explicit state (policy + attempt counters)
- Provider wait hints win over computed backoff
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, Any, TypeVar

from parley.errors import ErrorKind, ParleyError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

T = TypeVar("T")

logger = logging.getLogger(__name__)

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.TRANSPORT}
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter."""

    max_attempts: int = 3
    base_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 8.0
    jitter: bool = False  # "full jitter" when enabled
    max_elapsed_s: float | None = None

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.base_delay_s < 0:
            raise ValueError("RetryPolicy.base_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)


def should_retry(exc: BaseException) -> bool:
    """Return True when *exc* is a transient failure worth another attempt.

    Contract:
    - Cancellation is never retried.
    - Only ``RATE_LIMIT`` and ``TRANSPORT`` kinds are retried; every other
      ``ParleyError`` and any foreign exception surfaces immediately.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    return isinstance(exc, ParleyError) and exc.kind in RETRYABLE_KINDS


def compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    """Delay before retry number *retry_index* (1 for the first retry)."""
    base = policy.base_delay_s * (policy.backoff_multiplier ** max(0, retry_index - 1))
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    # Full jitter: uniform in [0, base].
    return random.random() * base  # noqa: S311


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, RateLimitError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def retry_after_from_headers(headers: Mapping[str, Any] | None) -> float | None:
    """Parse a numeric ``Retry-After`` header (seconds), any name casing."""
    if not headers:
        return None
    for name, raw in headers.items():
        if name.lower() != "retry-after":
            continue
        if not isinstance(raw, str):
            return None
        try:
            seconds = float(raw.strip())
        except ValueError:
            # HTTP-date form is not interpreted.
            return None
        return seconds if seconds >= 0 else None
    return None


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry,
) -> T:
    """Run an async factory with bounded retries.

    The backoff sleep is a plain ``asyncio.sleep`` so task cancellation or an
    enclosing ``asyncio.timeout`` interrupts it immediately.
    """
    start = time.monotonic()
    last_exc: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            last_exc = exc
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            retry_after = _retry_after_from_error(exc)
            delay = (
                retry_after
                if retry_after is not None
                else compute_backoff_delay(policy, retry_index=attempt)
            )

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                getattr(exc, "kind", type(exc).__name__),
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    if last_exc is None:  # pragma: no cover
        raise RuntimeError("retry_async exhausted without an exception")
    raise last_exc
