"""
Google Gemini adapter (generateContent REST endpoint).
"""

import requests

from distiller.core.constants import ErrorKind, Provider
from distiller.core.error_codes import JobError
from distiller.core.provider_base import ProviderAdapter


class GoogleProvider(ProviderAdapter):
    provider_id = Provider.GOOGLE

    def _complete(self, prompt: str, max_tokens: int, temperature: float,
                  timeout: float) -> str:
        data = self._post_json(
            f"{self.endpoint}/models/{self.model}:generateContent",
            {
                'contents': [{'parts': [{'text': prompt}]}],
                'generationConfig': {
                    'temperature': temperature,
                    'maxOutputTokens': max_tokens,
                },
            },
            timeout=timeout,
            headers={'x-goog-api-key': self.api_key},
        )
        try:
            parts = data['candidates'][0]['content']['parts']
        except (KeyError, IndexError, TypeError):
            raise self._invalid_response()
        text = ''.join(p.get('text', '') for p in parts if isinstance(p, dict))
        if not text:
            raise self._invalid_response()
        return text.strip()

    def _classify_response(self, resp: requests.Response) -> JobError:
        error = super()._classify_response(resp)
        # Gemini reports a bad key as 400 INVALID_ARGUMENT
        if error.kind == ErrorKind.BAD_REQUEST and 'API key' in error.message:
            return JobError(ErrorKind.AUTH_ERROR, error.message)
        return error
