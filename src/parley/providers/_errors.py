"""Shared provider-side error helpers.

Adapters classify vendor failures through ``error_from_status`` so that retry
decisions stay kind-based and every vendor maps the same status to the same
``ErrorKind``.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

import httpx

from parley.errors import (
    AuthError,
    ModelNotFoundError,
    ParleyError,
    ProviderError,
    RateLimitError,
    TokenLimitExceededError,
    TransportError,
    UnknownError,
    ValidationError,
    _walk_exception_chain,
)
from parley.retry import retry_after_from_headers

if TYPE_CHECKING:
    from collections.abc import Mapping

_TOKEN_LIMIT_CODES = frozenset(
    {
        "context_length_exceeded",
        "max_context_length_exceeded",
        "prompt_tokens_exceeded",
        "context_window_exceeded",
    }
)
_TOKEN_LIMIT_HINTS = (
    "context length",
    "context window",
    "token limit",
    "maximum output tokens",
    "max output tokens",
    "prompt is too long",
)
_MODEL_NOT_FOUND_CODES = frozenset({"model_not_found", "not_found_error"})
_QUOTED_RE = re.compile(r"`([^`]+)`|\"([^\"]+)\"|'([^']+)'")

_ENV_VARS = {
    "openai_chat": "OPENAI_API_KEY",
    "openai_responses": "OPENAI_API_KEY",
    "anthropic_messages": "ANTHROPIC_API_KEY",
    "google_gemini": "GEMINI_API_KEY",
}


def looks_like_token_limit_error(code: str | None, message: str) -> bool:
    """Heuristic: does a vendor error describe an exhausted token budget?"""
    if code:
        lowered_code = code.lower()
        if lowered_code in _TOKEN_LIMIT_CODES or "token" in lowered_code:
            return True
    lowered = message.lower()
    return any(hint in lowered for hint in _TOKEN_LIMIT_HINTS)


def _looks_like_model_not_found(
    status_code: int, code: str | None, message: str
) -> bool:
    lowered = message.lower()
    if code and code.lower() == "model_not_found":
        return True
    if status_code == 404 and "model" in lowered:
        return True
    return bool(
        code
        and code.lower() in _MODEL_NOT_FOUND_CODES
        and "model" in lowered
    )


def extract_model_identifier(message: str) -> str | None:
    """Return the first backtick/double/single-quoted token in *message*."""
    m = _QUOTED_RE.search(message)
    if m is None:
        return None
    return next(g for g in m.groups() if g is not None)


def _auth_hint(provider: str) -> str:
    env_var = _ENV_VARS.get(provider, "the provider API key")
    return f"Check credentials/permissions (try setting {env_var})."


def error_from_status(
    provider: str,
    status_code: int,
    *,
    message: str,
    code: str | None = None,
    error_type: str | None = None,
    headers: Mapping[str, str] | None = None,
    raw: Any = None,
) -> ParleyError:
    """Classify a non-2xx vendor response.

    Order matters: token-limit and model-not-found heuristics refine what would
    otherwise be a plain validation or provider failure.
    """
    detail = f"{provider} error (status {status_code}): {message}"
    code_or_type = code or error_type

    if status_code in (401, 403):
        return AuthError(detail, hint=_auth_hint(provider))
    if status_code == 429:
        return RateLimitError(
            detail,
            retry_after_s=retry_after_from_headers(headers),
            hint="Reduce request rate or wait before retrying.",
        )
    if looks_like_token_limit_error(code_or_type, message):
        return TokenLimitExceededError(detail)
    if _looks_like_model_not_found(status_code, code_or_type, message):
        return ModelNotFoundError(detail, model=extract_model_identifier(message))
    if status_code in (400, 422):
        return ValidationError(detail)
    return ProviderError(detail, provider=provider, status_code=status_code, raw=raw)


def wrap_transport_error(exc: BaseException, *, provider: str) -> ParleyError:
    """Map an exception raised by a transport into the error taxonomy."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, ParleyError):
        return exc

    for e in _walk_exception_chain(exc):
        if isinstance(
            e,
            (httpx.TimeoutException, httpx.RequestError, TimeoutError, ConnectionError),
        ):
            return TransportError(f"{provider} request failed: {exc}")
    return UnknownError(f"{provider} request failed: {exc}")


def parse_error_body(
    provider: str,
    status_code: int,
    raw_body: bytes | str,
    headers: Mapping[str, str] | None = None,
) -> ParleyError:
    """Classify a ``{"error": {"message", "type", "code"}}`` response body.

    Bodies that do not have that shape surface verbatim as ``ProviderError``.
    """
    text = (
        raw_body.decode("utf-8", errors="replace")
        if isinstance(raw_body, bytes)
        else raw_body
    )
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    error = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(error, dict):
        return ProviderError(
            f"status {status_code}: {text}",
            provider=provider,
            status_code=status_code,
            raw=text,
        )

    message = error.get("message")
    if not isinstance(message, str) or not message:
        message = "unknown error"
    code = error.get("code")
    code_str = str(code) if code is not None else None
    if code_str:
        message = f"{message} ({code_str})"
    error_type = error.get("type")
    return error_from_status(
        provider,
        status_code,
        message=message,
        code=code_str,
        error_type=error_type if isinstance(error_type, str) else None,
        headers=headers,
        raw=parsed,
    )
