"""
convostream - Client Configuration

Immutable client configuration plus the static model table.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from .errors import ConfigurationError


DEFAULT_BASE_URL = "https://api.anthropic.com"
MESSAGES_PATH = "/v1/messages"
API_VERSION = "2023-06-01"
DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True)
class ModelSpec:
    """A model known to the client."""
    name: str
    max_output_tokens: int


# Short aliases to model specs. Read-only.
MODELS: Mapping[str, ModelSpec] = MappingProxyType({
    "opus": ModelSpec(name="claude-3-opus-20240229", max_output_tokens=4096),
    "sonnet": ModelSpec(name="claude-3-sonnet-20240229", max_output_tokens=4096),
    "haiku": ModelSpec(name="claude-3-haiku-20240307", max_output_tokens=4096),
    "sonnet35": ModelSpec(name="claude-3-5-sonnet-20240620", max_output_tokens=4096),
})


def resolve_model(
    model: str,
    models: Mapping[str, ModelSpec] = MODELS
) -> Optional[ModelSpec]:
    """
    Look up a model by alias or by full model name.

    Returns:
        The ModelSpec, or None if the model is unknown.
    """
    if model in models:
        return models[model]
    for spec in models.values():
        if spec.name == model:
            return spec
    return None


@dataclass(frozen=True)
class ClientConfig:
    """
    Client configuration.

    Build through ConfigBuilder or ClientConfig.from_env(); both validate
    that the API key and model are present and the model is known.

    Attributes:
        api_key: API key sent as x-api-key
        model: Resolved ModelSpec
        base_url: API base URL
        api_version: Value of the anthropic-version header
        timeout: Request timeout in seconds
        models: Model table used for alias resolution
    """
    api_key: str
    model: ModelSpec
    base_url: str = DEFAULT_BASE_URL
    api_version: str = API_VERSION
    timeout: float = DEFAULT_TIMEOUT
    models: Mapping[str, ModelSpec] = field(default_factory=lambda: MODELS, repr=False)

    def __repr__(self) -> str:
        return (
            f"ClientConfig(api_key='***', model={self.model.name!r}, "
            f"base_url={self.base_url!r}, api_version={self.api_version!r}, "
            f"timeout={self.timeout})"
        )

    @property
    def messages_url(self) -> str:
        """Full URL of the Messages endpoint."""
        return f"{self.base_url}{MESSAGES_PATH}"

    @property
    def headers(self) -> dict:
        """Protocol headers sent on every request."""
        return {
            "x-api-key": self.api_key,
            "content-type": "application/json",
            "anthropic-version": self.api_version,
        }

    def with_model(self, model: str) -> "ClientConfig":
        """Return a copy of this config using another model from the table."""
        return self.builder_from(self).with_model(model).build()

    @staticmethod
    def builder() -> "ConfigBuilder":
        return ConfigBuilder()

    @staticmethod
    def builder_from(config: "ClientConfig") -> "ConfigBuilder":
        """Start a builder pre-populated from an existing config."""
        return (
            ConfigBuilder()
            .with_api_key(config.api_key)
            .with_model(config.model.name)
            .with_base_url(config.base_url)
            .with_api_version(config.api_version)
            .with_timeout(config.timeout)
            .with_models(config.models)
        )

    @classmethod
    def from_env(
        cls,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> "ClientConfig":
        """
        Build a config from arguments, falling back to environment variables.

        Environment:
            ANTHROPIC_API_KEY: API key
            CONVOSTREAM_MODEL: Model alias or name
            CONVOSTREAM_BASE_URL: Base URL override
        """
        builder = ConfigBuilder().with_timeout(timeout)

        key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if key:
            builder.with_api_key(key)

        model_name = model or os.getenv("CONVOSTREAM_MODEL")
        if model_name:
            builder.with_model(model_name)

        url = base_url or os.getenv("CONVOSTREAM_BASE_URL")
        if url:
            builder.with_base_url(url)

        return builder.build()


class ConfigBuilder:
    """
    Validated builder for ClientConfig.

    Example:
        >>> config = (
        ...     ConfigBuilder()
        ...     .with_api_key("sk-ant-xxx")
        ...     .with_model("haiku")
        ...     .build()
        ... )
    """

    def __init__(self):
        self._api_key: Optional[str] = None
        self._model: Optional[str] = None
        self._base_url: str = DEFAULT_BASE_URL
        self._api_version: str = API_VERSION
        self._timeout: float = DEFAULT_TIMEOUT
        self._models: Mapping[str, ModelSpec] = MODELS

    def with_api_key(self, api_key: str) -> "ConfigBuilder":
        self._api_key = api_key
        return self

    def with_model(self, model: str) -> "ConfigBuilder":
        """Set the model by alias ("haiku") or full name."""
        self._model = model
        return self

    def with_base_url(self, base_url: str) -> "ConfigBuilder":
        self._base_url = base_url.rstrip("/")
        return self

    def with_api_version(self, api_version: str) -> "ConfigBuilder":
        self._api_version = api_version
        return self

    def with_timeout(self, timeout: float) -> "ConfigBuilder":
        self._timeout = timeout
        return self

    def with_models(self, models: Mapping[str, ModelSpec]) -> "ConfigBuilder":
        """Replace the model table (e.g. to add models unknown to this release)."""
        self._models = MappingProxyType(dict(models))
        return self

    def build(self) -> ClientConfig:
        """
        Validate and build the configuration.

        Raises:
            ConfigurationError: Missing API key or model, unknown model,
                or a non-positive timeout.
        """
        if not self._api_key:
            raise ConfigurationError(
                "missing API key: pass api_key or set ANTHROPIC_API_KEY",
                code="missing_api_key",
            )
        if not self._model:
            raise ConfigurationError(
                "missing model: choose one of " + ", ".join(sorted(self._models)),
                code="missing_model",
            )

        spec = resolve_model(self._model, self._models)
        if spec is None:
            raise ConfigurationError(
                f"invalid model: {self._model}",
                code="invalid_model",
                details={"known_models": sorted(self._models)},
            )

        if self._timeout <= 0:
            raise ConfigurationError(
                f"timeout must be positive, got {self._timeout}",
                code="invalid_timeout",
            )

        return ClientConfig(
            api_key=self._api_key,
            model=spec,
            base_url=self._base_url,
            api_version=self._api_version,
            timeout=self._timeout,
            models=self._models,
        )
