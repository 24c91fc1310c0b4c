from __future__ import annotations

import asyncio

import httpx
import pytest

from parley.errors import (
    AuthError,
    ConfigurationError,
    ErrorKind,
    HandleNotFoundError,
    ModelNotFoundError,
    ParleyError,
    ProviderError,
    RateLimitError,
    TokenLimitExceededError,
    TransportError,
    UnknownError,
    UnsupportedFeatureError,
    ValidationError,
    _walk_exception_chain,
)
from parley.providers._errors import (
    error_from_status,
    extract_model_identifier,
    looks_like_token_limit_error,
    parse_error_body,
    wrap_transport_error,
)

pytestmark = pytest.mark.unit


def test_error_carries_message_and_hint() -> None:
    err = AuthError("bad key", hint="set OPENAI_API_KEY")

    assert str(err) == "bad key"
    assert err.message == "bad key"
    assert err.hint == "set OPENAI_API_KEY"
    assert err.kind is ErrorKind.AUTH


def test_every_error_is_a_parley_error_with_a_kind() -> None:
    errors = [
        TransportError("t"),
        AuthError("a"),
        RateLimitError("r"),
        ValidationError("v"),
        UnsupportedFeatureError("tools"),
        ProviderError("p", provider="x"),
        TokenLimitExceededError("tok"),
        ModelNotFoundError("m"),
        ConfigurationError("c"),
        UnknownError("u"),
    ]
    kinds = {e.kind for e in errors}

    assert all(isinstance(e, ParleyError) for e in errors)
    assert len(kinds) == len(errors)


def test_handle_not_found_is_a_validation_error() -> None:
    err = HandleNotFoundError("fast")

    assert isinstance(err, ValidationError)
    assert err.kind is ErrorKind.VALIDATION
    assert str(err) == "handle not found: fast"
    assert err.handle == "fast"


def test_unsupported_feature_default_message() -> None:
    err = UnsupportedFeatureError("video_input")
    assert err.feature == "video_input"
    assert "video_input" in str(err)


def test_walk_exception_chain_handles_cycles() -> None:
    a = RuntimeError("a")
    b = ValueError("b")
    a.__cause__ = b
    b.__context__ = a

    assert list(_walk_exception_chain(a)) == [a, b]


# --- Status classification ---


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, AuthError),
        (403, AuthError),
        (429, RateLimitError),
        (400, ValidationError),
        (422, ValidationError),
        (500, ProviderError),
        (503, ProviderError),
    ],
)
def test_error_from_status_maps_status_codes(status: int, expected: type) -> None:
    err = error_from_status("openai_chat", status, message="nope")
    assert type(err) is expected
    assert "status" in str(err)


def test_auth_error_hint_names_env_var() -> None:
    err = error_from_status("anthropic_messages", 401, message="invalid x-api-key")
    assert err.hint is not None
    assert "ANTHROPIC_API_KEY" in err.hint


def test_rate_limit_reads_retry_after_header() -> None:
    err = error_from_status(
        "openai_chat", 429, message="slow down", headers={"Retry-After": "7"}
    )
    assert isinstance(err, RateLimitError)
    assert err.retry_after_s == 7.0


def test_rate_limit_beats_token_limit_wording() -> None:
    err = error_from_status("openai_chat", 429, message="token limit per minute")
    assert isinstance(err, RateLimitError)


@pytest.mark.parametrize(
    ("code", "message"),
    [
        ("context_length_exceeded", "too long"),
        ("max_tokens_exceeded", "x"),
        (None, "This model's maximum context length is 8192. Context length exceeded"),
        (None, "prompt is too long: 300000 tokens > 200000 maximum"),
    ],
)
def test_token_limit_heuristic(code: str | None, message: str) -> None:
    assert looks_like_token_limit_error(code, message)
    err = error_from_status("openai_chat", 400, message=message, code=code)
    assert isinstance(err, TokenLimitExceededError)


def test_token_limit_heuristic_ignores_unrelated_errors() -> None:
    assert not looks_like_token_limit_error("invalid_request_error", "bad role")


def test_model_not_found_extracts_identifier() -> None:
    err = error_from_status(
        "openai_chat",
        404,
        message="The model `gpt-9` does not exist",
        code="model_not_found",
    )
    assert isinstance(err, ModelNotFoundError)
    assert err.model == "gpt-9"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("model `a-1` missing", "a-1"),
        ('model "b-2" missing', "b-2"),
        ("model 'c-3' missing", "c-3"),
        ("no quotes here", None),
    ],
)
def test_extract_model_identifier(message: str, expected: str | None) -> None:
    assert extract_model_identifier(message) == expected


# --- Error bodies ---


def test_parse_error_body_structured() -> None:
    raw = b'{"error": {"message": "Invalid value", "type": "invalid_request_error", "code": "bad_param"}}'

    err = parse_error_body("openai_chat", 400, raw)

    assert isinstance(err, ValidationError)
    assert "Invalid value (bad_param)" in str(err)
    assert str(err).startswith("openai_chat error (status 400)")


def test_parse_error_body_unstructured_is_provider_error() -> None:
    err = parse_error_body("openai_chat", 502, b"<html>Bad Gateway</html>")

    assert isinstance(err, ProviderError)
    assert err.status_code == 502
    assert str(err) == "status 502: <html>Bad Gateway</html>"


def test_parse_error_body_missing_message_uses_placeholder() -> None:
    err = parse_error_body("openai_chat", 500, '{"error": {}}')
    assert "unknown error" in str(err)


# --- Transport wrapping ---


def test_wrap_transport_error_maps_httpx_failures() -> None:
    exc = httpx.ConnectError("refused")
    err = wrap_transport_error(exc, provider="openai_chat")
    assert isinstance(err, TransportError)


def test_wrap_transport_error_finds_cause_in_chain() -> None:
    try:
        try:
            raise TimeoutError("slow")
        except TimeoutError as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as exc:
        err = wrap_transport_error(exc, provider="x")
    assert isinstance(err, TransportError)


def test_wrap_transport_error_passes_parley_errors_through() -> None:
    original = AuthError("nope")
    assert wrap_transport_error(original, provider="x") is original


def test_wrap_transport_error_unknown_for_foreign_exceptions() -> None:
    err = wrap_transport_error(KeyError("k"), provider="x")
    assert isinstance(err, UnknownError)


def test_wrap_transport_error_reraises_cancellation() -> None:
    with pytest.raises(asyncio.CancelledError):
        wrap_transport_error(asyncio.CancelledError(), provider="x")
