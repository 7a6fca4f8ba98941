"""Tests for the LLM adapter, response parsing and retries."""

import asyncio
import json
from unittest import mock

import pytest
import requests

from bugscope_cli.errors import LLMUnavailableError, StructuredOutputError
from bugscope_cli.llm import (
    GroqProvider,
    LocalLLM,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    parse_json_response,
    strip_code_fences,
    with_retry,
)
from bugscope_cli.schemas import ReviewResult


def _ollama(reply_payload=None, side_effect=None):
    """Patch requests.post so an Ollama call returns *reply_payload*."""
    patcher = mock.patch("bugscope_cli.llm.requests.post")
    post = patcher.start()
    if side_effect is not None:
        post.side_effect = side_effect
    else:
        post.return_value.json.return_value = reply_payload
    return patcher, post


class TestParseJsonResponse:
    """Tests for tolerant JSON parsing."""

    def test_plain_json(self):
        """Plain JSON parses."""
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        """Code fences are stripped."""
        assert parse_json_response('```json\n[1, 2]\n```') == [1, 2]

    def test_embedded_in_prose(self):
        """JSON is recovered from surrounding prose."""
        assert parse_json_response('Sure! Here it is: {"ok": true} Hope that helps.') == {"ok": True}

    def test_not_json(self):
        """Non-JSON yields None."""
        assert parse_json_response("no structure here") is None
        assert parse_json_response("") is None
        assert parse_json_response(None) is None

    def test_strip_code_fences(self):
        """Bare fences are removed."""
        assert strip_code_fences("```\nplain\n```") == "plain"


class TestProviders:
    """Tests for provider selection and response extraction."""

    def test_default_model_swapped_for_cloud_provider(self):
        """The Ollama default model maps to the cloud default."""
        llm = LocalLLM(model="qwen2.5-coder:7b", provider="groq", api_key="k")

        assert isinstance(llm.provider, GroqProvider)
        assert llm.provider.model == "llama-3.3-70b-versatile"

    def test_openrouter_default_model(self):
        """OpenRouter gets its own default model."""
        llm = LocalLLM(model="qwen2.5-coder:7b", provider="openrouter", api_key="k")

        assert isinstance(llm.provider, OpenRouterProvider)
        assert llm.provider.model == "google/gemini-2.0-flash-exp:free"

    def test_unknown_provider_falls_back_to_ollama(self):
        """Unknown providers use Ollama."""
        llm = LocalLLM(model="m", provider="mystery", endpoint="http://localhost:1/api/generate")

        assert isinstance(llm.provider, OllamaProvider)

    def test_reasoning_field_used_when_content_empty(self):
        """Reasoning models answer through the reasoning field."""
        parsed = {"choices": [{"message": {"content": "", "reasoning": "thought"}}]}

        assert OpenAIProvider._extract_response(parsed) == "thought"

    def test_cloud_provider_without_key(self):
        """A cloud provider without a key gives no answer."""
        assert OpenAIProvider("gpt", api_key="").generate("hi") is None


class TestLocalLLM:
    """Tests for async generation on top of a provider."""

    def test_generate_text(self):
        """Text generation posts a non-streaming request."""
        patcher, post = _ollama({"response": "hello"})
        try:
            llm = LocalLLM(model="m", provider="ollama", endpoint="http://localhost:1/api/generate")
            assert asyncio.run(llm.generate_text("hi")) == "hello"
        finally:
            patcher.stop()

        body = post.call_args.kwargs["json"]
        assert body["model"] == "m"
        assert body["stream"] is False

    def test_call_timeout_reaches_http_request(self):
        """A per-call timeout bounds the HTTP request itself."""
        patcher, post = _ollama({"response": "hello"})
        try:
            llm = LocalLLM(model="m", provider="ollama", endpoint="http://localhost:1/api/generate")
            asyncio.run(llm.generate_text("hi", timeout=2.5))
            asyncio.run(llm.generate_text("hi"))
        finally:
            patcher.stop()

        first, second = post.call_args_list
        assert first.kwargs["timeout"] == 2.5
        assert second.kwargs["timeout"] == 60

    def test_exhausted_timeout_is_clamped(self):
        """An exhausted budget still yields a valid requests timeout."""
        patcher, post = _ollama({"response": "hello"})
        try:
            OllamaProvider("m", "http://localhost:1/api/generate").generate("hi", timeout=0.0)
        finally:
            patcher.stop()

        assert post.call_args.kwargs["timeout"] > 0

    def test_connection_error_is_unavailable(self):
        """Connection errors surface as unavailable."""
        patcher, _ = _ollama(side_effect=requests.ConnectionError("refused"))
        try:
            llm = LocalLLM(model="m", provider="ollama", endpoint="http://localhost:1/api/generate")
            with pytest.raises(LLMUnavailableError):
                asyncio.run(llm.generate_text("hi"))
        finally:
            patcher.stop()

    def test_generate_structured(self):
        """Structured generation validates against the schema."""
        review = {"approved": True, "confidence_adjustment": -10, "issues": ["thin evidence"]}
        patcher, post = _ollama({"response": "```json\n" + json.dumps(review) + "\n```"})
        try:
            llm = LocalLLM(model="m", provider="ollama", endpoint="http://localhost:1/api/generate")
            result = asyncio.run(llm.generate_structured("review this", ReviewResult))
        finally:
            patcher.stop()

        assert isinstance(result, ReviewResult)
        assert result.confidence_adjustment == -10
        assert "JSON Schema" in post.call_args.kwargs["json"]["prompt"]

    def test_generate_structured_validation_error(self):
        """Schema violations raise."""
        patcher, _ = _ollama({"response": json.dumps({"approved": True, "confidence_adjustment": 99})})
        try:
            llm = LocalLLM(model="m", provider="ollama", endpoint="http://localhost:1/api/generate")
            with pytest.raises(StructuredOutputError):
                asyncio.run(llm.generate_structured("review this", ReviewResult))
        finally:
            patcher.stop()

    def test_generate_structured_not_json(self):
        """Non-JSON replies raise."""
        patcher, _ = _ollama({"response": "looks fine to me"})
        try:
            llm = LocalLLM(model="m", provider="ollama", endpoint="http://localhost:1/api/generate")
            with pytest.raises(StructuredOutputError):
                asyncio.run(llm.generate_structured("review this", ReviewResult))
        finally:
            patcher.stop()


class TestWithRetry:
    """Tests for the retry helper."""

    def test_succeeds_after_failures(self):
        """Transient failures are retried until success."""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StructuredOutputError("bad json")
            return "ok"

        assert asyncio.run(with_retry(flaky, attempts=3, delay_seconds=0)) == "ok"
        assert len(calls) == 3

    def test_reraises_last_error(self):
        """The last error is re-raised when attempts run out."""
        calls = []

        async def broken():
            calls.append(1)
            raise LLMUnavailableError(f"down {len(calls)}")

        with pytest.raises(LLMUnavailableError, match="down 2"):
            asyncio.run(with_retry(broken, attempts=2, delay_seconds=0))
        assert len(calls) == 2

    def test_backoff_doubles(self):
        """The wait doubles between attempts."""
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        async def broken():
            raise LLMUnavailableError("down")

        with mock.patch("bugscope_cli.llm.asyncio.sleep", fake_sleep):
            with pytest.raises(LLMUnavailableError):
                asyncio.run(with_retry(broken, attempts=3, delay_seconds=0.5))

        assert sleeps == [0.5, 1.0]
