"""
Application configuration manager.
Stores settings in a JSON file under the application support directory.
API keys are never written here; they live in the Keychain.
"""

import json
import logging
from pathlib import Path

from distiller.core.constants import (
    CONFIG_PATH, DEFAULT_UPLOAD_ROOT, Provider, ProviderMode, ONLINE_PROVIDERS,
    PROVIDER_INFO, DEFAULT_OLLAMA_ENDPOINT, DEFAULT_CONCURRENT_JOBS, MAX_CONCURRENT_JOBS,
    DEFAULT_REQUEST_TIMEOUT_SEC, MIN_REQUEST_TIMEOUT_SEC, MAX_REQUEST_TIMEOUT_SEC,
    DEFAULT_MAX_PENDING_JOBS, MAX_PENDING_JOBS_LIMIT,
)
from distiller.core.models import ProviderConfig
from distiller.core.security_utils import keychain_get_api_key

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'mode': ProviderMode.OFFLINE,
    'concurrent_processing': DEFAULT_CONCURRENT_JOBS,
    'max_pending_jobs': DEFAULT_MAX_PENDING_JOBS,
    'request_timeout_sec': DEFAULT_REQUEST_TIMEOUT_SEC,
    'offline_model': '',
    'offline_endpoint': DEFAULT_OLLAMA_ENDPOINT,
    'online_provider': Provider.OPENAI,
    'online_model': PROVIDER_INFO[Provider.OPENAI]['default_model'],
    'online_endpoint': None,
    'upload_root': str(DEFAULT_UPLOAD_ROOT),
    'cookies_path': None,
}

# Keys that must never reach the JSON file
_SECRET_KEYS = {'api_key', 'apiKey', 'online_api_key'}


def _clamp_int(key: str, value, low: int, high: int, default: int) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r — using default", key, value)
        return default
    return max(low, min(high, value))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    if key in _SECRET_KEYS:
                        continue
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        if key in _SECRET_KEYS:
            raise ValueError("API keys are stored in the Keychain, not in config.json")
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def update(self, values: dict):
        """Apply several settings at once, saving a single time."""
        for key, value in values.items():
            if key in _SECRET_KEYS:
                raise ValueError("API keys are stored in the Keychain, not in config.json")
            self._data[key] = self._validate(key, value)
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'concurrent_processing':
            return _clamp_int(key, value, 1, MAX_CONCURRENT_JOBS, DEFAULT_CONCURRENT_JOBS)

        if key == 'max_pending_jobs':
            return _clamp_int(key, value, 1, MAX_PENDING_JOBS_LIMIT, DEFAULT_MAX_PENDING_JOBS)

        if key == 'request_timeout_sec':
            return _clamp_int(key, value, MIN_REQUEST_TIMEOUT_SEC, MAX_REQUEST_TIMEOUT_SEC,
                              DEFAULT_REQUEST_TIMEOUT_SEC)

        if key == 'mode':
            if value not in (ProviderMode.OFFLINE, ProviderMode.ONLINE):
                logger.warning("Invalid mode %r — using offline", value)
                return ProviderMode.OFFLINE

        if key == 'online_provider':
            if value not in ONLINE_PROVIDERS:
                logger.warning("Invalid online_provider %r — using openai", value)
                return Provider.OPENAI

        if key in ('offline_model', 'online_model'):
            return str(value or '').strip()

        if key in ('offline_endpoint', 'online_endpoint'):
            value = str(value).strip() if value else None
            return value or (DEFAULT_OLLAMA_ENDPOINT if key == 'offline_endpoint' else None)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Typed accessors ───────────────────────────────────────────────

    @property
    def concurrent_processing(self) -> int:
        return self._data.get('concurrent_processing', DEFAULT_CONCURRENT_JOBS)

    @property
    def max_pending_jobs(self) -> int:
        return self._data.get('max_pending_jobs', DEFAULT_MAX_PENDING_JOBS)

    @property
    def upload_root(self) -> Path:
        return Path(self._data.get('upload_root') or DEFAULT_UPLOAD_ROOT)

    @property
    def cookies_path(self) -> Path | None:
        value = self._data.get('cookies_path')
        return Path(value) if value else None

    def provider_config(self, api_key: str | None = None) -> ProviderConfig:
        """
        Build the ProviderConfig described by the current settings.
        Online mode takes `api_key` if given, else the Keychain entry.
        """
        timeout = self._data.get('request_timeout_sec', DEFAULT_REQUEST_TIMEOUT_SEC)
        if self._data.get('mode') == ProviderMode.ONLINE:
            provider = self._data.get('online_provider', Provider.OPENAI)
            return ProviderConfig(
                mode=ProviderMode.ONLINE,
                provider=provider,
                model=self._data.get('online_model') or PROVIDER_INFO[provider]['default_model'],
                endpoint=self._data.get('online_endpoint'),
                api_key=api_key or keychain_get_api_key(provider),
                timeout_sec=timeout,
            )
        return ProviderConfig(
            mode=ProviderMode.OFFLINE,
            provider=Provider.OLLAMA,
            model=self._data.get('offline_model', ''),
            endpoint=self._data.get('offline_endpoint') or DEFAULT_OLLAMA_ENDPOINT,
            timeout_sec=timeout,
        )
