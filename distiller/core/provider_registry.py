"""
Provider registry: holds the active provider configuration as a versioned,
immutable snapshot and builds adapters from it.

Jobs call `snapshot()` once when they start and keep that snapshot for
their whole lifetime, so a configuration swap never reaches a job that is
already in flight.
"""

import logging
import threading
from typing import Callable
from urllib.parse import urlparse

from distiller.core.constants import (
    Provider, ProviderMode, ONLINE_PROVIDERS, PROVIDER_INFO,
    MIN_REQUEST_TIMEOUT_SEC, MAX_REQUEST_TIMEOUT_SEC,
)
from distiller.core.error_codes import ConfigurationError, JobError
from distiller.core.models import ConfigSnapshot, ProviderConfig
from distiller.core.provider_base import ProviderAdapter, validate_api_key_format
from distiller.core.provider_ollama import OllamaProvider
from distiller.core.provider_openai import (
    OpenAIProvider, DeepseekProvider, GrokProvider, MicrosoftProvider,
)
from distiller.core.provider_anthropic import AnthropicProvider
from distiller.core.provider_google import GoogleProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[ProviderAdapter]] = {
    Provider.OLLAMA: OllamaProvider,
    Provider.OPENAI: OpenAIProvider,
    Provider.ANTHROPIC: AnthropicProvider,
    Provider.GOOGLE: GoogleProvider,
    Provider.MICROSOFT: MicrosoftProvider,
    Provider.GROK: GrokProvider,
    Provider.DEEPSEEK: DeepseekProvider,
}

AdapterFactory = Callable[[ProviderConfig], ProviderAdapter]


def is_valid_url(value: str | None) -> bool:
    if not value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def validate_provider_config(config: ProviderConfig) -> list[str]:
    """Static checks (no network). Returns a list of problems, empty if OK."""
    errors = []

    if config.mode not in (ProviderMode.OFFLINE, ProviderMode.ONLINE):
        errors.append(f"Invalid mode {config.mode!r}; expected 'offline' or 'online'")
    elif config.mode == ProviderMode.OFFLINE:
        if config.provider != Provider.OLLAMA:
            errors.append("Offline mode requires the local Ollama provider")
        if not config.model or not config.model.strip():
            errors.append("Ollama model name is required")
        if not is_valid_url(config.endpoint or PROVIDER_INFO[Provider.OLLAMA]['endpoint']):
            errors.append("Ollama endpoint must be a valid http(s) URL")
    else:
        if config.provider not in ONLINE_PROVIDERS:
            errors.append(f"AI provider must be one of: {', '.join(ONLINE_PROVIDERS)}")
        else:
            ok, key_error = validate_api_key_format(config.provider, config.api_key)
            if not ok:
                errors.append(key_error)
            if config.provider == Provider.MICROSOFT and not config.endpoint:
                errors.append("Microsoft provider requires the Azure OpenAI endpoint")
        if config.endpoint and not is_valid_url(config.endpoint):
            errors.append("Endpoint override must be a valid http(s) URL")

    if not (MIN_REQUEST_TIMEOUT_SEC <= config.timeout_sec <= MAX_REQUEST_TIMEOUT_SEC):
        errors.append(f"Request timeout must be between {MIN_REQUEST_TIMEOUT_SEC} "
                      f"and {MAX_REQUEST_TIMEOUT_SEC} seconds")
    return errors


def create_adapter(config: ProviderConfig) -> ProviderAdapter:
    cls = PROVIDER_CLASSES.get(config.provider)
    if cls is None:
        raise ConfigurationError(f"Unknown AI provider: {config.provider}")
    return cls(config)


class ProviderRegistry:
    """Owns the single active provider configuration."""

    def __init__(self, adapter_factory: AdapterFactory = create_adapter):
        self._lock = threading.Lock()
        self._snapshot: ConfigSnapshot | None = None
        self._version = 0
        self._factory = adapter_factory

    def configure(self, config: ProviderConfig, verify: bool = True) -> ConfigSnapshot:
        """
        Validate `config` and make it the active configuration.
        With verify=True the backend is contacted first; nothing changes
        unless every check passes.
        """
        errors = validate_provider_config(config)
        if errors:
            raise ConfigurationError("; ".join(errors))

        if verify:
            adapter = self.create_adapter(config)
            try:
                ok, error = adapter.validate_configuration()
            finally:
                adapter.close()
            if not ok:
                raise ConfigurationError(error or "Provider validation failed")

        with self._lock:
            self._version += 1
            snapshot = ConfigSnapshot(version=self._version, config=config)
            self._snapshot = snapshot

        logger.info("Active AI provider is now %s / %s (config v%d)",
                    config.provider, config.model, snapshot.version)
        return snapshot

    def snapshot(self) -> ConfigSnapshot:
        with self._lock:
            snapshot = self._snapshot
        if snapshot is None:
            raise ConfigurationError("No AI provider configured")
        return snapshot

    @property
    def is_configured(self) -> bool:
        with self._lock:
            return self._snapshot is not None

    def create_adapter(self, config: ProviderConfig) -> ProviderAdapter:
        try:
            return self._factory(config)
        except JobError as e:
            raise ConfigurationError(e.message) from e

    def test_connection(self, config: ProviderConfig | None = None) -> dict:
        """Round-trip latency check for diagnostics; never raises."""
        try:
            adapter = self.create_adapter(config or self.snapshot().config)
        except ConfigurationError as e:
            return {'success': False, 'latency_ms': 0, 'error': str(e)}
        try:
            return adapter.test_connection()
        finally:
            adapter.close()
