#!/usr/bin/env python3
"""
Unit tests for AI provider adapters, the provider registry and the
retry / error classification policy. HTTP is stubbed with a fake session.
"""

import sys
import random
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from distiller.core.constants import (
    ErrorKind, Provider, ProviderMode, AZURE_API_VERSION, ANTHROPIC_API_VERSION,
    DEFAULT_OLLAMA_ENDPOINT,
)
from distiller.core.error_codes import ConfigurationError, JobError
from distiller.core.models import ProviderConfig
from distiller.core.provider_base import (
    validate_api_key_format, build_distillation_prompt, renumber_ordered_lists,
    post_process_distillation,
)
from distiller.core.provider_ollama import OllamaProvider
from distiller.core.provider_openai import (
    OpenAIProvider, DeepseekProvider, GrokProvider, MicrosoftProvider,
)
from distiller.core.provider_anthropic import AnthropicProvider
from distiller.core.provider_google import GoogleProvider
from distiller.core.provider_registry import (
    ProviderRegistry, create_adapter, validate_provider_config,
)
from distiller.core.retry_policy import (
    RetryPolicy, classify_http_status, classify_request_exception, parse_retry_after,
)

OPENAI_KEY = "sk-" + "a" * 60
ANTHROPIC_KEY = "sk-ant-" + "b" * 100
GOOGLE_KEY = "AIza" + "c" * 35
GROK_KEY = "xai-" + "d" * 50
DEEPSEEK_KEY = "sk-" + "e" * 45
AZURE_KEY = "f" * 32


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data=None, text: str = "",
                 headers: dict | None = None):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Stands in for requests.Session; replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[dict] = []
        self.headers: dict = {}

    def _next(self, method: str, url: str, **kwargs):
        self.requests.append({'method': method, 'url': url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, json=None, headers=None, params=None, timeout=None):
        return self._next('POST', url, json=json, headers=headers,
                          params=params, timeout=timeout)

    def get(self, url, timeout=None):
        return self._next('GET', url, timeout=timeout)


def online(provider: str, api_key: str, model: str = "", endpoint: str | None = None):
    return ProviderConfig(mode=ProviderMode.ONLINE, provider=provider, model=model,
                          endpoint=endpoint, api_key=api_key)


def chat_reply(content: str) -> FakeResponse:
    return FakeResponse(json_data={
        'choices': [{'message': {'content': content}}],
        'usage': {'total_tokens': 42},
    })


class TestErrorClassification(unittest.TestCase):

    def test_http_status_mapping(self):
        cases = {
            401: ErrorKind.AUTH_ERROR,
            403: ErrorKind.AUTH_ERROR,
            429: ErrorKind.RATE_LIMITED,
            408: ErrorKind.PROVIDER_UNAVAILABLE,
            500: ErrorKind.PROVIDER_UNAVAILABLE,
            503: ErrorKind.PROVIDER_UNAVAILABLE,
            400: ErrorKind.BAD_REQUEST,
            404: ErrorKind.BAD_REQUEST,
            422: ErrorKind.BAD_REQUEST,
        }
        for status, kind in cases.items():
            with self.subTest(status=status):
                self.assertEqual(classify_http_status(status, "msg").kind, kind)

    def test_retryable_kinds(self):
        self.assertTrue(classify_http_status(429, "slow").retryable)
        self.assertTrue(classify_http_status(502, "down").retryable)
        self.assertFalse(classify_http_status(401, "no").retryable)
        self.assertFalse(classify_http_status(400, "bad").retryable)

    def test_transport_errors(self):
        self.assertEqual(
            classify_request_exception(requests.exceptions.Timeout()).kind,
            ErrorKind.PROVIDER_UNAVAILABLE)
        self.assertEqual(
            classify_request_exception(requests.exceptions.ConnectionError()).kind,
            ErrorKind.PROVIDER_UNAVAILABLE)
        self.assertEqual(
            classify_request_exception(requests.exceptions.MissingSchema("x")).kind,
            ErrorKind.BAD_REQUEST)

    def test_parse_retry_after(self):
        self.assertEqual(parse_retry_after("120"), 120.0)
        self.assertIsNone(parse_retry_after(None))
        self.assertIsNone(parse_retry_after("soon"))
        future = datetime.now(timezone.utc) + timedelta(seconds=90)
        parsed = parse_retry_after(format_datetime(future, usegmt=True))
        self.assertTrue(80 <= parsed <= 91)


class TestRetryPolicy(unittest.TestCase):

    def setUp(self):
        self.policy = RetryPolicy(jitter=0)
        self.limited = JobError(ErrorKind.RATE_LIMITED, "slow down")
        self.down = JobError(ErrorKind.PROVIDER_UNAVAILABLE, "down")

    def test_attempt_limits(self):
        self.assertEqual(self.policy.max_attempts(ErrorKind.RATE_LIMITED), 5)
        self.assertEqual(self.policy.max_attempts(ErrorKind.PROVIDER_UNAVAILABLE), 3)
        self.assertEqual(self.policy.max_attempts(ErrorKind.AUTH_ERROR), 1)
        self.assertTrue(self.policy.should_retry(self.limited, 4))
        self.assertFalse(self.policy.should_retry(self.limited, 5))
        self.assertTrue(self.policy.should_retry(self.down, 2))
        self.assertFalse(self.policy.should_retry(self.down, 3))
        self.assertFalse(self.policy.should_retry(JobError(ErrorKind.BAD_REQUEST, "x"), 1))

    def test_exponential_backoff(self):
        delays = [self.policy.backoff_delay(self.limited, n) for n in (1, 2, 3)]
        self.assertEqual(delays, [2.0, 4.0, 8.0])
        self.assertEqual(self.policy.backoff_delay(self.limited, 10), 60.0)

    def test_jitter_bounds(self):
        policy = RetryPolicy()
        rng = random.Random(7)
        for _ in range(50):
            delay = policy.backoff_delay(self.limited, 1, rng=rng)
            self.assertTrue(1.8 <= delay <= 2.2)

    def test_retry_after_is_floor(self):
        hinted = JobError(ErrorKind.RATE_LIMITED, "slow", retry_after=30)
        self.assertEqual(self.policy.backoff_delay(hinted, 1), 30)
        longest = JobError(ErrorKind.RATE_LIMITED, "slow", retry_after=300)
        self.assertEqual(self.policy.backoff_delay(longest, 1), 300)
        self.assertTrue(self.policy.should_retry(longest, 1))

    def test_retry_after_beyond_limit_stops_retrying(self):
        huge = JobError(ErrorKind.RATE_LIMITED, "slow", retry_after=10000)
        self.assertTrue(self.policy.wait_too_long(huge))
        self.assertFalse(self.policy.should_retry(huge, 1))
        self.assertEqual(self.policy.backoff_delay(huge, 1), 10000)


class TestTextHandling(unittest.TestCase):

    def test_api_key_format(self):
        self.assertEqual(validate_api_key_format(Provider.OPENAI, OPENAI_KEY), (True, None))
        ok, error = validate_api_key_format(Provider.OPENAI, "pk-" + "a" * 60)
        self.assertFalse(ok)
        self.assertIn('"sk-"', error)
        ok, error = validate_api_key_format(Provider.OPENAI, "sk-short")
        self.assertFalse(ok)
        self.assertIn("too short", error)
        self.assertFalse(validate_api_key_format(Provider.ANTHROPIC, None)[0])
        self.assertTrue(validate_api_key_format(Provider.OLLAMA, None)[0])

    def test_prompt_contains_content_and_focus(self):
        prompt = build_distillation_prompt("Body text", {'focus': "pricing"})
        self.assertIn("Body text", prompt)
        self.assertIn("pricing", prompt)
        self.assertNotIn("particular attention", build_distillation_prompt("Body"))

    def test_renumber_ordered_lists(self):
        text = "# Steps\n1. one\n1. two\n1. three\n\n## More\n1. again\n5. next"
        self.assertEqual(
            renumber_ordered_lists(text),
            "# Steps\n1. one\n2. two\n3. three\n\n## More\n1. again\n2. next",
        )

    def test_renumber_nested_lists(self):
        text = "1. top\n   1. inner\n   1. inner\n1. top"
        self.assertEqual(renumber_ordered_lists(text),
                         "1. top\n   1. inner\n   2. inner\n2. top")

    def test_post_process(self):
        raw = "  Summary  \r\n\r\n\r\n\r\n1) a\n1) b  \n"
        self.assertEqual(post_process_distillation(raw), "Summary\n\n1) a\n2) b")

    def test_truncation_is_deterministic(self):
        adapter = DeepseekProvider(online(Provider.DEEPSEEK, DEEPSEEK_KEY),
                                   session=FakeSession())
        text = "word " * 20000
        first = adapter.preprocess_text(text)
        self.assertEqual(len(first), 60000)
        self.assertEqual(first, adapter.preprocess_text(text))
        self.assertEqual(adapter.preprocess_text("short"), "short")


class TestOpenAICompatibleAdapters(unittest.TestCase):

    def test_openai_request_and_reply(self):
        session = FakeSession(chat_reply("1. Point\n1. Another"))
        adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY), session=session)
        self.assertEqual(adapter.generate_summary("Article"), "1. Point\n2. Another")

        sent = session.requests[0]
        self.assertEqual(sent['url'], "https://api.openai.com/v1/chat/completions")
        self.assertEqual(sent['headers'], {'Authorization': f"Bearer {OPENAI_KEY}"})
        self.assertEqual(sent['json']['model'], "gpt-4o-mini")
        self.assertIn("Article", sent['json']['messages'][0]['content'])
        self.assertEqual(sent['timeout'], 60)

    def test_rate_limit_carries_retry_after(self):
        session = FakeSession(FakeResponse(429, {'error': {'message': "Rate limit"}},
                                           headers={'Retry-After': "7"}))
        adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY), session=session)
        with self.assertRaises(JobError) as ctx:
            adapter.generate_summary("Article")
        self.assertEqual(ctx.exception.kind, ErrorKind.RATE_LIMITED)
        self.assertEqual(ctx.exception.retry_after, 7.0)
        self.assertIn("Rate limit", ctx.exception.message)

    def test_http_failures(self):
        cases = [
            (FakeResponse(401, {'error': {'message': "Invalid key"}}), ErrorKind.AUTH_ERROR),
            (FakeResponse(500, text="oops"), ErrorKind.PROVIDER_UNAVAILABLE),
            (FakeResponse(400, {'error': "bad model"}), ErrorKind.BAD_REQUEST),
            (requests.exceptions.Timeout(), ErrorKind.PROVIDER_UNAVAILABLE),
            (FakeResponse(200, {'unexpected': True}), ErrorKind.PROVIDER_UNAVAILABLE),
            (FakeResponse(200, text="<html>"), ErrorKind.PROVIDER_UNAVAILABLE),
            (chat_reply("   "), ErrorKind.PROVIDER_UNAVAILABLE),
        ]
        for response, kind in cases:
            with self.subTest(kind=kind, response=response):
                adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY),
                                         session=FakeSession(response))
                with self.assertRaises(JobError) as ctx:
                    adapter.generate_summary("Article")
                self.assertEqual(ctx.exception.kind, kind)

    def test_deepseek_and_grok_endpoints(self):
        for cls, provider, key, url in (
            (DeepseekProvider, Provider.DEEPSEEK, DEEPSEEK_KEY,
             "https://api.deepseek.com/v1/chat/completions"),
            (GrokProvider, Provider.GROK, GROK_KEY, "https://api.x.ai/v1/chat/completions"),
        ):
            with self.subTest(provider=provider):
                session = FakeSession(chat_reply("ok"))
                cls(online(provider, key), session=session).generate_summary("Text")
                self.assertEqual(session.requests[0]['url'], url)

    def test_microsoft_deployment_request(self):
        session = FakeSession(chat_reply("Azure summary"))
        adapter = MicrosoftProvider(
            online(Provider.MICROSOFT, AZURE_KEY, model="gpt-4",
                   endpoint="https://myres.openai.azure.com/"),
            session=session)
        self.assertEqual(adapter.generate_summary("Text"), "Azure summary")
        sent = session.requests[0]
        self.assertEqual(sent['url'],
                         "https://myres.openai.azure.com/openai/deployments/gpt-4/chat/completions")
        self.assertEqual(sent['headers'], {'api-key': AZURE_KEY})
        self.assertEqual(sent['params'], {'api-version': AZURE_API_VERSION})
        self.assertNotIn('model', sent['json'])

    def test_missing_key_is_auth_error(self):
        with self.assertRaises(JobError) as ctx:
            OpenAIProvider(online(Provider.OPENAI, None), session=FakeSession())
        self.assertEqual(ctx.exception.kind, ErrorKind.AUTH_ERROR)

    def test_validate_configuration(self):
        session = FakeSession(chat_reply("Hi"))
        adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY), session=session)
        self.assertEqual(adapter.validate_configuration(), (True, None))
        self.assertEqual(session.requests[0]['json']['max_tokens'], 10)

        session = FakeSession()
        adapter = OpenAIProvider(online(Provider.OPENAI, "sk-short"), session=session)
        ok, error = adapter.validate_configuration()
        self.assertFalse(ok)
        self.assertEqual(session.requests, [])

        adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY),
                                 session=FakeSession(FakeResponse(401, {'error': "nope"})))
        ok, error = adapter.validate_configuration()
        self.assertFalse(ok)
        self.assertIn("validation failed", error)

    def test_connection_test(self):
        adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY),
                                 session=FakeSession(chat_reply("connection test successful")))
        result = adapter.test_connection()
        self.assertTrue(result['success'])
        self.assertEqual(result['response'], "connection test successful")
        self.assertGreaterEqual(result['latency_ms'], 0)

        adapter = OpenAIProvider(online(Provider.OPENAI, OPENAI_KEY),
                                 session=FakeSession(FakeResponse(503, text="down")))
        result = adapter.test_connection()
        self.assertFalse(result['success'])
        self.assertEqual(result['error_kind'], ErrorKind.PROVIDER_UNAVAILABLE)


class TestOtherAdapters(unittest.TestCase):

    def test_anthropic(self):
        session = FakeSession(FakeResponse(json_data={'content': [
            {'type': 'text', 'text': "Part one. "},
            {'type': 'tool_use', 'id': "x"},
            {'type': 'text', 'text': "Part two."},
        ]}))
        adapter = AnthropicProvider(online(Provider.ANTHROPIC, ANTHROPIC_KEY), session=session)
        self.assertEqual(adapter.generate_summary("Text"), "Part one. Part two.")
        sent = session.requests[0]
        self.assertEqual(sent['url'], "https://api.anthropic.com/v1/messages")
        self.assertEqual(sent['headers']['x-api-key'], ANTHROPIC_KEY)
        self.assertEqual(sent['headers']['anthropic-version'], ANTHROPIC_API_VERSION)
        self.assertEqual(sent['json']['model'], "claude-3-5-sonnet-20241022")

    def test_google(self):
        session = FakeSession(FakeResponse(json_data={
            'candidates': [{'content': {'parts': [{'text': "Gemini says hi"}]}}],
        }))
        adapter = GoogleProvider(online(Provider.GOOGLE, GOOGLE_KEY), session=session)
        self.assertEqual(adapter.generate_summary("Text"), "Gemini says hi")
        sent = session.requests[0]
        self.assertEqual(
            sent['url'],
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent")
        self.assertEqual(sent['headers'], {'x-goog-api-key': GOOGLE_KEY})
        self.assertEqual(sent['json']['generationConfig']['maxOutputTokens'], 1000)

    def test_google_invalid_key_is_auth_error(self):
        session = FakeSession(FakeResponse(400, {'error': {'message': "API key not valid."}}))
        adapter = GoogleProvider(online(Provider.GOOGLE, GOOGLE_KEY), session=session)
        with self.assertRaises(JobError) as ctx:
            adapter.generate_summary("Text")
        self.assertEqual(ctx.exception.kind, ErrorKind.AUTH_ERROR)

    def ollama(self, *responses, model: str = "llama3") -> tuple[OllamaProvider, FakeSession]:
        session = FakeSession(*responses)
        config = ProviderConfig(mode=ProviderMode.OFFLINE, provider=Provider.OLLAMA,
                                model=model, endpoint=DEFAULT_OLLAMA_ENDPOINT)
        return OllamaProvider(config, session=session), session

    def test_ollama_generate(self):
        adapter, session = self.ollama(FakeResponse(json_data={'response': "Local summary"}))
        self.assertEqual(adapter.generate_summary("Text"), "Local summary")
        sent = session.requests[0]
        self.assertEqual(sent['url'], "http://localhost:11434/api/generate")
        self.assertFalse(sent['json']['stream'])
        self.assertEqual(sent['json']['model'], "llama3")
        self.assertEqual(sent['json']['options']['num_predict'], 1000)

    def test_ollama_unreachable(self):
        adapter, _ = self.ollama(requests.exceptions.ConnectionError("refused"))
        with self.assertRaises(JobError) as ctx:
            adapter.generate_summary("Text")
        self.assertEqual(ctx.exception.kind, ErrorKind.PROVIDER_UNAVAILABLE)

    def test_ollama_validation_matches_tagged_models(self):
        tags = FakeResponse(json_data={'models': [{'name': "llama3:latest"},
                                                  {'name': "mistral:7b"}]})
        adapter, session = self.ollama(tags)
        self.assertEqual(adapter.validate_configuration(), (True, None))
        self.assertEqual(session.requests[0]['url'], "http://localhost:11434/api/tags")

        adapter, _ = self.ollama(tags, model="phi3")
        ok, error = adapter.validate_configuration()
        self.assertFalse(ok)
        self.assertIn("phi3", error)

    def test_ollama_lists_models(self):
        adapter, _ = self.ollama(FakeResponse(json_data={'models': [{'name': "llama3:latest"}]}))
        self.assertEqual(adapter.get_available_models(), ["llama3:latest"])
        adapter, _ = self.ollama(requests.exceptions.ConnectionError("refused"))
        self.assertEqual(adapter.get_available_models(), [])


class StubAdapter:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.closed = False

    def validate_configuration(self):
        return (True, None) if self.ok else (False, "Model not available")

    def test_connection(self):
        return {'success': self.ok, 'latency_ms': 1}

    def close(self):
        self.closed = True


class TestProviderRegistry(unittest.TestCase):

    def offline(self, model: str = "llama3", endpoint: str = DEFAULT_OLLAMA_ENDPOINT):
        return ProviderConfig(mode=ProviderMode.OFFLINE, provider=Provider.OLLAMA,
                              model=model, endpoint=endpoint)

    def test_static_validation(self):
        self.assertEqual(validate_provider_config(self.offline()), [])
        self.assertTrue(validate_provider_config(self.offline(model="")))
        self.assertTrue(validate_provider_config(self.offline(endpoint="localhost:11434")))
        self.assertEqual(validate_provider_config(online(Provider.OPENAI, OPENAI_KEY)), [])
        self.assertTrue(validate_provider_config(online(Provider.OPENAI, "sk-short")))
        self.assertTrue(validate_provider_config(online("acme", OPENAI_KEY)))
        self.assertTrue(validate_provider_config(online(Provider.MICROSOFT, AZURE_KEY)))
        self.assertTrue(validate_provider_config(ProviderConfig(
            mode=ProviderMode.OFFLINE, provider=Provider.OLLAMA, model="llama3",
            timeout_sec=1)))

    def test_snapshot_requires_configuration(self):
        registry = ProviderRegistry(adapter_factory=lambda c: StubAdapter())
        self.assertFalse(registry.is_configured)
        with self.assertRaises(ConfigurationError):
            registry.snapshot()

    def test_configure_versions_snapshots(self):
        registry = ProviderRegistry(adapter_factory=lambda c: StubAdapter())
        first = registry.configure(self.offline())
        second = registry.configure(self.offline(model="mistral"))
        self.assertEqual((first.version, second.version), (1, 2))
        self.assertEqual(first.config.model, "llama3")
        self.assertIs(registry.snapshot(), second)

    def test_failed_configure_keeps_previous(self):
        adapters = iter([StubAdapter(ok=True), StubAdapter(ok=False)])
        registry = ProviderRegistry(adapter_factory=lambda c: next(adapters))
        good = registry.configure(self.offline())
        with self.assertRaises(ConfigurationError):
            registry.configure(self.offline(model="phi3"))
        with self.assertRaises(ConfigurationError):
            registry.configure(self.offline(model=""), verify=False)
        self.assertIs(registry.snapshot(), good)

    def test_default_factory_builds_each_variant(self):
        cases = {
            Provider.OPENAI: (OpenAIProvider, OPENAI_KEY, None),
            Provider.ANTHROPIC: (AnthropicProvider, ANTHROPIC_KEY, None),
            Provider.GOOGLE: (GoogleProvider, GOOGLE_KEY, None),
            Provider.GROK: (GrokProvider, GROK_KEY, None),
            Provider.DEEPSEEK: (DeepseekProvider, DEEPSEEK_KEY, None),
            Provider.MICROSOFT: (MicrosoftProvider, AZURE_KEY, "https://r.openai.azure.com"),
        }
        for provider, (cls, key, endpoint) in cases.items():
            with self.subTest(provider=provider):
                adapter = create_adapter(online(provider, key, endpoint=endpoint))
                self.assertIsInstance(adapter, cls)
        self.assertIsInstance(create_adapter(self.offline()), OllamaProvider)
        with self.assertRaises(ConfigurationError):
            create_adapter(online("acme", OPENAI_KEY))

    def test_missing_key_becomes_configuration_error(self):
        registry = ProviderRegistry()
        with self.assertRaises(ConfigurationError) as ctx:
            registry.create_adapter(online(Provider.OPENAI, None))
        self.assertEqual(ctx.exception.__cause__.kind, ErrorKind.AUTH_ERROR)

    def test_test_connection_never_raises(self):
        registry = ProviderRegistry(adapter_factory=lambda c: StubAdapter())
        result = registry.test_connection()
        self.assertFalse(result['success'])
        self.assertIn("No AI provider configured", result['error'])
        registry.configure(self.offline(), verify=False)
        self.assertTrue(registry.test_connection()['success'])

    def test_adapters_are_closed_after_checks(self):
        built = []

        def factory(config):
            built.append(StubAdapter())
            return built[-1]

        registry = ProviderRegistry(adapter_factory=factory)
        registry.configure(self.offline())
        registry.test_connection()
        self.assertEqual(len(built), 2)
        self.assertTrue(all(adapter.closed for adapter in built))

    def test_close_only_releases_own_session(self):
        shared = FakeSession()
        shared.close = mock.Mock()
        OllamaProvider(self.offline(), session=shared).close()
        shared.close.assert_not_called()
        with mock.patch('distiller.core.provider_base.requests.Session') as session_cls:
            OllamaProvider(self.offline()).close()
        session_cls.return_value.close.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
