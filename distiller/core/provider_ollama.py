"""
Local Ollama server adapter (offline mode).
"""

import logging

import requests

from distiller.core.constants import Provider, VALIDATION_TIMEOUT_SEC
from distiller.core.provider_base import ProviderAdapter
from distiller.core.error_codes import JobError
from distiller.core.retry_policy import classify_request_exception

logger = logging.getLogger(__name__)


class OllamaProvider(ProviderAdapter):
    provider_id = Provider.OLLAMA
    requires_api_key = False

    def _complete(self, prompt: str, max_tokens: int, temperature: float,
                  timeout: float) -> str:
        data = self._post_json(
            f"{self.endpoint}/api/generate",
            {
                'model': self.model,
                'prompt': prompt,
                'stream': False,
                'options': {
                    'temperature': temperature,
                    'num_predict': max_tokens,
                },
            },
            timeout=timeout,
        )
        text = data.get('response') if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise self._invalid_response()
        return text.strip()

    def list_local_models(self) -> list[str]:
        """Names of the models pulled on the Ollama server."""
        try:
            resp = self.session.get(f"{self.endpoint}/api/tags",
                                    timeout=VALIDATION_TIMEOUT_SEC)
        except requests.exceptions.RequestException as e:
            raise classify_request_exception(e, self.display_name)
        if resp.status_code != 200:
            raise self._classify_response(resp)
        try:
            models = resp.json().get('models', [])
        except (ValueError, AttributeError):
            raise self._invalid_response()
        return [m.get('name', '') for m in models if isinstance(m, dict)]

    def get_available_models(self) -> list[str]:
        try:
            return self.list_local_models()
        except JobError as e:
            logger.warning("Could not list Ollama models: %s", e.message)
            return []

    def validate_configuration(self) -> tuple[bool, str | None]:
        if not self.model:
            return False, "Ollama model name is required"
        try:
            names = self.list_local_models()
        except JobError as e:
            return False, f"Ollama validation failed: {e.message}"
        # "llama3" matches "llama3:latest"
        if not any(n == self.model or n.split(':', 1)[0] == self.model for n in names):
            return False, f'Model "{self.model}" is not available on {self.endpoint}'
        return True, None
