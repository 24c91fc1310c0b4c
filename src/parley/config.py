"""Configuration entries and the config-driven router builder.

Entries arrive already parsed (from a file, env, or code); this module is the
validation wall between that data and adapter construction. Everything is
checked before the first adapter is registered, so a bad entry never leaves a
half-built router behind.
"""

from __future__ import annotations

from enum import Enum
import logging
import os
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError as PydanticValidationError,
    field_validator,
)

from parley.errors import AuthError, ConfigurationError, ValidationError
from parley.patch import RequestPatch
from parley.providers.anthropic import ANTHROPIC_VERSION, AnthropicMessagesProvider
from parley.providers.gemini import GoogleGeminiProvider
from parley.providers.mock import MockProvider
from parley.providers.openai import OpenAIChatProvider
from parley.providers.openai_responses import OpenAIResponsesProvider
from parley.router import Router

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from parley.providers.base import Provider
    from parley.retry import RetryPolicy
    from parley.transport import Transport

load_dotenv()

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Adapter families a config entry can select."""

    OPENAI_CHAT = "openai_chat"
    OPENAI_RESPONSES = "openai_responses"
    ANTHROPIC_MESSAGES = "anthropic_messages"
    GOOGLE_GEMINI = "google_gemini"
    MOCK = "mock"


# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[ProviderKind, str] = {
    ProviderKind.OPENAI_CHAT: "OPENAI_API_KEY",
    ProviderKind.OPENAI_RESPONSES: "OPENAI_API_KEY",
    ProviderKind.ANTHROPIC_MESSAGES: "ANTHROPIC_API_KEY",
    ProviderKind.GOOGLE_GEMINI: "GEMINI_API_KEY",
}


def _normalize_secret(v: Any) -> Any:
    """Trim whitespace and map empty values to None."""
    if isinstance(v, SecretStr):
        v = v.get_secret_value()
    if isinstance(v, str):
        s = v.strip()
        return SecretStr(s) if s else None
    return v


class ApiKeyCredential(BaseModel):
    """API key, inline or read from an environment variable.

    With neither ``key`` nor ``env`` set, the provider's standard variable
    (``OPENAI_API_KEY``, ``ANTHROPIC_API_KEY``, ``GEMINI_API_KEY``) is used.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["api_key"] = "api_key"
    key: SecretStr | None = None
    env: str | None = None
    #: Send the raw key in this header instead of the provider default.
    header: str | None = None

    normalize_key = field_validator("key", mode="before")(_normalize_secret)


class BearerCredential(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["bearer"] = "bearer"
    token: SecretStr

    normalize_token = field_validator("token", mode="before")(_normalize_secret)


class ServiceAccountCredential(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["service_account"] = "service_account"
    info: dict[str, Any]

    def __repr__(self) -> str:
        return "ServiceAccountCredential(info=<redacted>)"


class NoCredential(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["none"] = "none"


Credential = Annotated[
    Union[ApiKeyCredential, BearerCredential, ServiceAccountCredential, NoCredential],
    Field(discriminator="type"),
]


class ModelConfig(BaseModel):
    """One handle → adapter entry."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    handle: str = Field(min_length=1)
    provider: ProviderKind
    credential: Credential = Field(default_factory=NoCredential)
    default_model: str | None = None
    base_url: str | None = None
    #: Provider-specific settings (``organization``/``project``, ``version``/``beta``).
    extra: dict[str, Any] = Field(default_factory=dict)
    patch: RequestPatch | None = None

    @field_validator("handle", "default_model", "base_url", mode="before")
    @classmethod
    def strip_strings(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("patch", mode="before")
    @classmethod
    def parse_patch(cls, v: Any) -> Any:
        # RequestPatch validates itself and raises ConfigurationError directly.
        if isinstance(v, dict):
            return RequestPatch.from_mapping(v)
        return v

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ModelConfig:
        """Validate raw config data, reporting failures as ConfigurationError."""
        try:
            return cls.model_validate(dict(data))
        except PydanticValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            loc = ".".join(str(p) for p in first.get("loc", ()))
            handle = data.get("handle", "<unnamed>")
            raise ConfigurationError(
                f"invalid config entry {handle!r}: {first.get('msg', exc)}"
                + (f" (at {loc})" if loc else ""),
                field=loc or None,
                hint="Check the entry against ModelConfig's fields.",
            ) from exc

    def resolve_api_key(self) -> tuple[str, str | None]:
        """Return ``(secret, header_override)`` for HTTP adapters.

        Raises AuthError for credentials the adapter cannot use.
        """
        cred = self.credential
        name = self.provider.value
        if isinstance(cred, BearerCredential):
            return cred.token.get_secret_value(), None
        if isinstance(cred, ApiKeyCredential):
            if cred.key is not None:
                return cred.key.get_secret_value(), cred.header
            env_var = cred.env or _API_KEY_ENV_VARS.get(self.provider)
            value = os.environ.get(env_var, "").strip() if env_var else ""
            if value:
                return value, cred.header
            raise AuthError(
                f"provider {name} requires credential",
                hint=f"Set {env_var} or put the key in the credential entry.",
            )
        if isinstance(cred, ServiceAccountCredential):
            raise AuthError(f"provider {name} does not support service account credential")
        raise AuthError(
            f"provider {name} requires credential",
            hint=f"Add an api_key credential (or set {_API_KEY_ENV_VARS.get(self.provider, 'an API key')}).",
        )

    def build_provider(self, transport: Transport) -> Provider:
        factory = _FACTORIES[self.provider]
        return factory(self, transport)


def _take_extra(config: ModelConfig, known: tuple[str, ...]) -> dict[str, Any]:
    unknown = set(config.extra) - set(known)
    if unknown:
        logger.debug(
            "Ignoring unknown extra keys for %s: %s",
            config.handle,
            ", ".join(sorted(unknown)),
        )
    return {k: config.extra[k] for k in known if config.extra.get(k) is not None}


def _build_openai(config: ModelConfig, transport: Transport) -> Provider:
    api_key, header = config.resolve_api_key()
    extra = _take_extra(config, ("organization", "project"))
    provider_cls = (
        OpenAIResponsesProvider
        if config.provider is ProviderKind.OPENAI_RESPONSES
        else OpenAIChatProvider
    )
    return provider_cls(
        transport=transport,
        api_key=api_key,
        auth_header=header,
        base_url=config.base_url,
        default_model=config.default_model,
        organization=extra.get("organization"),
        project=extra.get("project"),
        patch=config.patch,
    )


def _build_anthropic(config: ModelConfig, transport: Transport) -> Provider:
    api_key, header = config.resolve_api_key()
    extra = _take_extra(config, ("version", "beta"))
    return AnthropicMessagesProvider(
        transport=transport,
        api_key=api_key,
        auth_header=header,
        base_url=config.base_url,
        default_model=config.default_model,
        version=extra.get("version", ANTHROPIC_VERSION),
        beta=extra.get("beta"),
        patch=config.patch,
    )


def _build_gemini(config: ModelConfig, transport: Transport) -> Provider:
    api_key, header = config.resolve_api_key()
    _take_extra(config, ())
    return GoogleGeminiProvider(
        transport=transport,
        api_key=api_key,
        auth_header=header,
        base_url=config.base_url,
        default_model=config.default_model,
        patch=config.patch,
    )


def _build_mock(config: ModelConfig, transport: Transport) -> Provider:  # noqa: ARG001
    # The mock adapter opts in to every credential type, including none.
    _take_extra(config, ())
    if config.default_model:
        return MockProvider(default_model=config.default_model)
    return MockProvider()


_FACTORIES: dict[ProviderKind, Callable[[ModelConfig, Transport], Provider]] = {
    ProviderKind.OPENAI_CHAT: _build_openai,
    ProviderKind.OPENAI_RESPONSES: _build_openai,
    ProviderKind.ANTHROPIC_MESSAGES: _build_anthropic,
    ProviderKind.GOOGLE_GEMINI: _build_gemini,
    ProviderKind.MOCK: _build_mock,
}


def build_router(
    entries: Iterable[ModelConfig | Mapping[str, Any]],
    transport: Transport,
    *,
    retry: RetryPolicy | None = None,
) -> Router:
    """Build a router from ordered config entries.

    Fails with ``ValidationError("duplicate handle: X")`` or ``AuthError``
    before any adapter is registered.
    """
    configs = [
        e if isinstance(e, ModelConfig) else ModelConfig.from_mapping(e)
        for e in entries
    ]

    seen: set[str] = set()
    for config in configs:
        if config.handle in seen:
            raise ValidationError(
                f"duplicate handle: {config.handle}",
                hint="Each handle may be registered only once.",
            )
        seen.add(config.handle)

    adapters = [(c.handle, c.build_provider(transport)) for c in configs]

    builder = Router.builder()
    if retry is not None:
        builder.retry_policy(retry)
    for handle, adapter in adapters:
        builder.register(handle, adapter)
    return builder.build()
