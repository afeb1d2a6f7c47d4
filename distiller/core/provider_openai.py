"""
Adapters for backends speaking the OpenAI chat-completions dialect:
OpenAI, Deepseek, Grok (xAI) and Microsoft (Azure OpenAI deployments).
"""

import logging

from distiller.core.constants import Provider, AZURE_API_VERSION
from distiller.core.provider_base import ProviderAdapter

logger = logging.getLogger(__name__)


class OpenAIProvider(ProviderAdapter):
    provider_id = Provider.OPENAI

    def _chat_url(self) -> str:
        return f"{self.endpoint}/chat/completions"

    def _auth_headers(self) -> dict:
        return {'Authorization': f"Bearer {self.api_key}"}

    def _payload(self, prompt: str, max_tokens: int, temperature: float) -> dict:
        return {
            'model': self.model,
            'messages': [{'role': 'user', 'content': prompt}],
            'max_tokens': max_tokens,
            'temperature': temperature,
        }

    def _complete(self, prompt: str, max_tokens: int, temperature: float,
                  timeout: float) -> str:
        data = self._post_json(
            self._chat_url(),
            self._payload(prompt, max_tokens, temperature),
            timeout=timeout,
            headers=self._auth_headers(),
            params=self._query_params(),
        )
        try:
            content = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise self._invalid_response()
        if not isinstance(content, str):
            raise self._invalid_response()

        usage = data.get('usage') or {}
        logger.debug("%s tokens used: %s", self.display_name,
                     usage.get('total_tokens', 'unknown'))
        return content.strip()

    def _query_params(self) -> dict | None:
        return None


class DeepseekProvider(OpenAIProvider):
    provider_id = Provider.DEEPSEEK


class GrokProvider(OpenAIProvider):
    provider_id = Provider.GROK


class MicrosoftProvider(OpenAIProvider):
    """Azure OpenAI: the model name is the deployment name."""

    provider_id = Provider.MICROSOFT

    def _chat_url(self) -> str:
        return f"{self.endpoint}/openai/deployments/{self.model}/chat/completions"

    def _auth_headers(self) -> dict:
        return {'api-key': self.api_key}

    def _payload(self, prompt: str, max_tokens: int, temperature: float) -> dict:
        payload = super()._payload(prompt, max_tokens, temperature)
        del payload['model']
        return payload

    def _query_params(self) -> dict | None:
        return {'api-version': AZURE_API_VERSION}
