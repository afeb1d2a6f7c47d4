"""
Anthropic Messages API adapter.
"""

from distiller.core.constants import Provider, ANTHROPIC_API_VERSION
from distiller.core.provider_base import ProviderAdapter


class AnthropicProvider(ProviderAdapter):
    provider_id = Provider.ANTHROPIC

    def _complete(self, prompt: str, max_tokens: int, temperature: float,
                  timeout: float) -> str:
        data = self._post_json(
            f"{self.endpoint}/messages",
            {
                'model': self.model,
                'max_tokens': max_tokens,
                'temperature': temperature,
                'messages': [{'role': 'user', 'content': prompt}],
            },
            timeout=timeout,
            headers={
                'x-api-key': self.api_key,
                'anthropic-version': ANTHROPIC_API_VERSION,
            },
        )
        blocks = data.get('content') if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            raise self._invalid_response()
        text = ''.join(b.get('text', '') for b in blocks
                       if isinstance(b, dict) and b.get('type') == 'text')
        if not text:
            raise self._invalid_response()
        return text.strip()
