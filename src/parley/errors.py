"""Exception hierarchy for Parley.

Every failure surfaced by the library is a ``ParleyError`` subclass tagged with
an ``ErrorKind``. Callers (and the retry engine) branch on the kind rather than
on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class ErrorKind(str, Enum):
    """Stable classification shared by adapters, the engine, and callers."""

    TRANSPORT = "transport"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    UNSUPPORTED_FEATURE = "unsupported_feature"
    PROVIDER = "provider"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    MODEL_NOT_FOUND = "model_not_found"
    STREAM_CLOSED = "stream_closed"
    INVALID_CONFIG = "invalid_config"
    ABORTED = "aborted"
    NOT_IMPLEMENTED = "not_implemented"
    UNKNOWN = "unknown"


class ParleyError(Exception):
    """Base exception for all Parley errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class TransportError(ParleyError):
    """Network or I/O failure while talking to a provider."""

    kind = ErrorKind.TRANSPORT


class AuthError(ParleyError):
    """Credential rejected, missing, or unsupported."""

    kind = ErrorKind.AUTH


class RateLimitError(ParleyError):
    """Provider throttled the request.

    ``retry_after_s`` carries the provider's explicit wait hint when one was
    sent (usually the ``Retry-After`` header).
    """

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retry_after_s = retry_after_s


class ValidationError(ParleyError):
    """Request violates an invariant of the canonical type model."""

    kind = ErrorKind.VALIDATION


class HandleNotFoundError(ValidationError):
    """The router has no adapter registered under the requested handle."""

    def __init__(self, handle: str, *, hint: str | None = None) -> None:
        super().__init__(f"handle not found: {handle}", hint=hint)
        self.handle = handle


class UnsupportedFeatureError(ParleyError):
    """The selected adapter does not implement a requested feature."""

    kind = ErrorKind.UNSUPPORTED_FEATURE

    def __init__(
        self, feature: str, *, message: str | None = None, hint: str | None = None
    ) -> None:
        super().__init__(message or f"feature unsupported: {feature}", hint=hint)
        self.feature = feature


class ProviderError(ParleyError):
    """Opaque vendor failure that could not be normalized further."""

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        hint: str | None = None,
        status_code: int | None = None,
        raw: Any = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.status_code = status_code
        self.raw = raw


class TokenLimitExceededError(ParleyError):
    """Prompt or requested completion exceeds the model's token budget."""

    kind = ErrorKind.TOKEN_LIMIT_EXCEEDED

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        estimated: int | None = None,
        limit: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.estimated = estimated
        self.limit = limit


class ModelNotFoundError(ParleyError):
    """Requested model or deployment could not be resolved by the provider."""

    kind = ErrorKind.MODEL_NOT_FOUND

    def __init__(
        self, message: str, *, hint: str | None = None, model: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.model = model


class StreamClosedError(ParleyError):
    """A stream ended or was aborted before a terminal signal arrived."""

    kind = ErrorKind.STREAM_CLOSED


class ConfigurationError(ParleyError):
    """Configuration validation or resolution failed."""

    kind = ErrorKind.INVALID_CONFIG

    def __init__(
        self, message: str, *, hint: str | None = None, field: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.field = field


class AbortedError(ParleyError):
    """The caller cancelled the request."""

    kind = ErrorKind.ABORTED


class NotImplementedFeatureError(ParleyError):
    """Placeholder for functionality an adapter has not implemented yet."""

    kind = ErrorKind.NOT_IMPLEMENTED

    def __init__(self, feature: str, *, hint: str | None = None) -> None:
        super().__init__(f"not implemented: {feature}", hint=hint)
        self.feature = feature


class UnknownError(ParleyError):
    """Catch-all for opaque or unexpected failures."""

    kind = ErrorKind.UNKNOWN


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
