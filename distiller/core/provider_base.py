"""
Provider adapter contract.

Every AI backend (local Ollama server or a cloud API) is wrapped by one
ProviderAdapter subclass. Subclasses only implement `_complete`: send one
prompt and return the model's text. Truncation, prompt building, error
classification, validation and connection tests are shared here.
"""

import logging
import re
import time
from abc import ABC, abstractmethod

import requests

from distiller.core.constants import (
    ErrorKind, PROVIDER_INFO, DEFAULT_MAX_OUTPUT_TOKENS, DEFAULT_TEMPERATURE,
    VALIDATION_TIMEOUT_SEC, CONNECTION_TEST_TIMEOUT_SEC, USER_AGENT,
)
from distiller.core.error_codes import JobError
from distiller.core.models import ProviderConfig
from distiller.core.retry_policy import (
    classify_http_status, classify_request_exception, parse_retry_after,
)

logger = logging.getLogger(__name__)

_ORDERED_ITEM_RE = re.compile(r'^(\s*)(\d+)([.)])(\s+)')
_BLANK_RUN_RE = re.compile(r'\n{3,}')

CONNECTION_TEST_PROMPT = 'Please respond with "connection test successful" to confirm the connection.'


def validate_api_key_format(provider: str, api_key: str | None) -> tuple[bool, str | None]:
    """Cheap offline check of a provider's API key shape."""
    info = PROVIDER_INFO.get(provider)
    if info is None:
        return True, None  # Unknown provider, skip validation
    if not info['key_min_length']:
        return True, None
    if not api_key:
        return False, f"{info['name']} API key is required"
    prefix = info['key_prefix']
    if prefix and not api_key.startswith(prefix):
        return False, f'{info["name"]} API key should start with "{prefix}"'
    if len(api_key) < info['key_min_length']:
        return False, f"{info['name']} API key appears to be too short"
    return True, None


def build_distillation_prompt(text: str, options: dict | None = None) -> str:
    options = options or {}
    focus = options.get('focus')
    lines = [
        "Distill the following content into a clear, well-structured summary.",
        "Capture the key ideas, arguments and actionable takeaways.",
        "Use markdown headings and numbered lists where they help.",
    ]
    if focus:
        lines.append(f"Pay particular attention to: {focus}.")
    lines.append("")
    lines.append("CONTENT:")
    lines.append(text)
    return "\n".join(lines)


def renumber_ordered_lists(text: str) -> str:
    """
    Models often restart every item at "1.". Renumber ordered list items
    sequentially per indentation level; any unindented non-list line
    (heading, paragraph, bullet) starts a fresh list.
    """
    out = []
    counters: dict[int, int] = {}
    for line in text.split('\n'):
        m = _ORDERED_ITEM_RE.match(line)
        if m:
            indent = len(m.group(1))
            for level in [k for k in counters if k > indent]:
                del counters[level]
            number = counters.get(indent, 0) + 1
            counters[indent] = number
            line = f"{m.group(1)}{number}{m.group(3)}{m.group(4)}{line[m.end():]}"
        elif line.strip() and not line[:1].isspace():
            counters.clear()
        out.append(line)
    return '\n'.join(out)


def post_process_distillation(text: str) -> str:
    text = text.replace('\r\n', '\n').strip()
    text = '\n'.join(line.rstrip() for line in text.split('\n'))
    text = _BLANK_RUN_RE.sub('\n\n', text)
    return renumber_ordered_lists(text)


class ProviderAdapter(ABC):
    """Uniform interface over one AI backend."""

    provider_id: str = ""
    requires_api_key: bool = True

    def __init__(self, config: ProviderConfig, session: requests.Session | None = None):
        info = PROVIDER_INFO[self.provider_id]
        self.config = config
        self.model = config.model or info['default_model']
        self.endpoint = (config.endpoint or info['endpoint'] or '').rstrip('/')
        self.api_key = config.api_key
        self.timeout = config.timeout_sec

        if self.requires_api_key and not self.api_key:
            raise JobError(ErrorKind.AUTH_ERROR, f"{self.display_name} API key is required")

        self._owns_session = session is None
        self.session = session or requests.Session()
        self.session.headers.setdefault('User-Agent', USER_AGENT)

    # ── Descriptive ───────────────────────────────────────────────────

    @property
    def display_name(self) -> str:
        return PROVIDER_INFO[self.provider_id]['name']

    def get_available_models(self) -> list[str]:
        return list(PROVIDER_INFO[self.provider_id]['models'])

    def get_max_input_length(self) -> int:
        return PROVIDER_INFO[self.provider_id]['max_input_chars']

    def close(self):
        """Release the connection pool of a session this adapter created."""
        if self._owns_session:
            self.session.close()

    # ── Contract ──────────────────────────────────────────────────────

    def preprocess_text(self, text: str) -> str:
        text = text.replace('\r\n', '\n').strip()
        text = _BLANK_RUN_RE.sub('\n\n', text)
        limit = self.get_max_input_length()
        if len(text) > limit:
            logger.info("Truncating input from %d to %d characters for %s",
                        len(text), limit, self.display_name)
            text = text[:limit]
        return text

    def generate_summary(self, text: str, options: dict | None = None) -> str:
        options = options or {}
        processed = self.preprocess_text(text)
        prompt = build_distillation_prompt(processed, options)

        logger.info("Sending request to %s with %d characters (model %s)",
                    self.display_name, len(processed), self.model)
        started = time.monotonic()
        raw = self._complete(
            prompt,
            max_tokens=options.get('max_tokens', DEFAULT_MAX_OUTPUT_TOKENS),
            temperature=options.get('temperature', DEFAULT_TEMPERATURE),
            timeout=self.timeout,
        )
        logger.info("%s response received in %.2fs (%d characters)",
                    self.display_name, time.monotonic() - started, len(raw))

        if not raw.strip():
            raise JobError(ErrorKind.PROVIDER_UNAVAILABLE,
                           f"{self.display_name} returned an empty response")
        return post_process_distillation(raw)

    def validate_configuration(self) -> tuple[bool, str | None]:
        """Key-format check followed by a minimal request."""
        ok, error = validate_api_key_format(self.provider_id, self.api_key)
        if not ok:
            return False, error
        try:
            self._complete("Hello", max_tokens=10, temperature=0.0,
                           timeout=VALIDATION_TIMEOUT_SEC)
        except JobError as e:
            return False, f"{self.display_name} validation failed: {e.message}"
        return True, None

    def test_connection(self) -> dict:
        started = time.monotonic()
        try:
            reply = self._complete(CONNECTION_TEST_PROMPT, max_tokens=20,
                                   temperature=0.0, timeout=CONNECTION_TEST_TIMEOUT_SEC)
        except JobError as e:
            return {
                'success': False,
                'latency_ms': int((time.monotonic() - started) * 1000),
                'error': e.message,
                'error_kind': e.kind,
            }
        return {
            'success': True,
            'latency_ms': int((time.monotonic() - started) * 1000),
            'response': reply.strip(),
        }

    @abstractmethod
    def _complete(self, prompt: str, max_tokens: int, temperature: float,
                  timeout: float) -> str:
        """Send a single prompt, return the raw model text."""

    # ── HTTP helpers ──────────────────────────────────────────────────

    def _post_json(self, url: str, payload: dict, timeout: float,
                   headers: dict | None = None, params: dict | None = None) -> dict:
        try:
            resp = self.session.post(url, json=payload, headers=headers,
                                     params=params, timeout=timeout)
        except requests.exceptions.RequestException as e:
            raise classify_request_exception(e, self.display_name)

        if resp.status_code != 200:
            raise self._classify_response(resp)

        try:
            return resp.json()
        except ValueError:
            raise JobError(ErrorKind.PROVIDER_UNAVAILABLE,
                           f"Failed to parse {self.display_name} response JSON")

    def _classify_response(self, resp: requests.Response) -> JobError:
        detail = self._error_detail(resp)
        retry_after = parse_retry_after(resp.headers.get('Retry-After'))
        error = classify_http_status(
            resp.status_code,
            f"{self.display_name} returned {resp.status_code}: {detail}",
            retry_after,
        )
        logger.warning("%s request failed: %s", self.display_name, error)
        return error

    @staticmethod
    def _error_detail(resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return (resp.text or "No response body")[:300]
        err = body.get('error') if isinstance(body, dict) else None
        if isinstance(err, dict) and err.get('message'):
            return str(err['message'])[:300]
        if isinstance(err, str):
            return err[:300]
        return str(body)[:300]

    def _invalid_response(self) -> JobError:
        return JobError(ErrorKind.PROVIDER_UNAVAILABLE,
                        f"Invalid response format from {self.display_name}")
