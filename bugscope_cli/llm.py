"""Multi-provider LLM adapter supporting Ollama, Groq, OpenAI, Anthropic, Gemini and OpenRouter.

Providers are small synchronous HTTP clients.  :class:`LocalLLM` wraps the
configured provider in the async text / structured-generation interface the
pipeline consumes; blocking calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_exponential

from .config import LLM_API_KEY, LLM_ENDPOINT, LLM_MODEL, LLM_PROVIDER
from .config_manager import DEFAULT_CONFIGS
from .errors import LLMUnavailableError, StructuredOutputError

logger = logging.getLogger(__name__)

T = TypeVar("T")
SchemaT = TypeVar("SchemaT", bound=BaseModel)

REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 0.1
OLLAMA_DEFAULT_MODEL = DEFAULT_CONFIGS["ollama"]["model"]


# ===================================================================
# Providers
# ===================================================================

class LLMProvider:
    """Base class for LLM providers."""

    endpoint: str = ""

    def generate(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.1, timeout: Optional[float] = None
    ) -> Optional[str]:
        """Generate a response from the LLM, or ``None`` when unavailable."""
        raise NotImplementedError

    def _post(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        if timeout is None:
            timeout = REQUEST_TIMEOUT_SECONDS
        try:
            response = requests.post(
                url,
                headers={"Content-Type": "application/json", **(headers or {})},
                json=payload,
                timeout=max(timeout, MIN_REQUEST_TIMEOUT_SECONDS),
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("%s request failed: %s", type(self).__name__, exc)
            return None


class OllamaProvider(LLMProvider):
    """Ollama local LLM provider."""

    def __init__(self, model: str, endpoint: str):
        self.model = model
        self.endpoint = endpoint

    def generate(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.1, timeout: Optional[float] = None
    ) -> Optional[str]:
        parsed = self._post(self.endpoint, {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }, timeout=timeout)
        return parsed.get("response") if parsed else None


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (also works with Groq and other OpenAI-compatible APIs)."""

    def __init__(self, model: str, api_key: str, endpoint: str = "https://api.openai.com/v1/chat/completions"):
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint

    def generate(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.1, timeout: Optional[float] = None
    ) -> Optional[str]:
        if not self.api_key:
            return None
        parsed = self._post(
            self.endpoint,
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            {"Authorization": f"Bearer {self.api_key}"},
            timeout=timeout,
        )
        try:
            return self._extract_response(parsed) if parsed else None
        except (KeyError, IndexError, TypeError):
            return None

    @staticmethod
    def _extract_response(parsed: dict) -> Optional[str]:
        """Extract response text, handling reasoning models that return empty content."""
        msg = parsed["choices"][0]["message"]
        content = msg.get("content") or ""
        if content.strip():
            return content
        # Reasoning models put output in 'reasoning' field
        reasoning = msg.get("reasoning") or ""
        return reasoning if reasoning.strip() else (content or None)


class GroqProvider(OpenAIProvider):
    """Groq cloud API provider."""

    def __init__(self, model: str, api_key: str):
        super().__init__(model, api_key, "https://api.groq.com/openai/v1/chat/completions")


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter API provider (OpenAI-compatible, multi-model gateway)."""

    def __init__(self, model: str, api_key: str, endpoint: str = "https://openrouter.ai/api/v1/chat/completions"):
        super().__init__(model, api_key, endpoint)


class AnthropicProvider(LLMProvider):
    """Anthropic Claude API provider."""

    def __init__(self, model: str, api_key: str):
        self.model = model
        self.api_key = api_key
        self.endpoint = "https://api.anthropic.com/v1/messages"

    def generate(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.1, timeout: Optional[float] = None
    ) -> Optional[str]:
        if not self.api_key:
            return None
        parsed = self._post(
            self.endpoint,
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            timeout=timeout,
        )
        try:
            return parsed["content"][0]["text"] if parsed else None
        except (KeyError, IndexError, TypeError):
            return None


class GeminiProvider(LLMProvider):
    """Google Gemini API provider."""

    def __init__(self, model: str, api_key: str):
        self.model = model
        self.api_key = api_key
        self.endpoint = f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def generate(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.1, timeout: Optional[float] = None
    ) -> Optional[str]:
        if not self.api_key:
            return None
        parsed = self._post(
            f"{self.endpoint}?key={self.api_key}",
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
            },
            timeout=timeout,
        )
        try:
            return parsed["candidates"][0]["content"]["parts"][0]["text"] if parsed else None
        except (KeyError, IndexError, TypeError):
            return None


# ===================================================================
# Response parsing
# ===================================================================

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


def strip_code_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```"):
        clean = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", clean))
    return clean.strip()


def parse_json_response(text: Optional[str]) -> Optional[Any]:
    """Parse a model response as JSON, tolerating code fences and chatter.

    Returns ``None`` when no JSON value can be recovered.
    """
    if not text:
        return None
    clean = strip_code_fences(text)
    try:
        return json.loads(clean)
    except ValueError:
        pass

    # Fall back to the outermost object or array embedded in prose
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = clean.find(opener), clean.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(clean[start:end + 1])
            except ValueError:
                continue
    return None


# ===================================================================
# Client interface
# ===================================================================

class LLMClient(Protocol):
    """Text and structured generation as consumed by the pipeline.

    *timeout* bounds a single provider request in seconds.
    """

    async def generate_text(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.1,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[SchemaT],
        model: Optional[str] = None,
        max_tokens: int = 2000,
        timeout: Optional[float] = None,
    ) -> SchemaT:
        ...


# Provider calls block in requests; they get their own pool so a request that
# outlives its caller never holds up event-loop shutdown.
_provider_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="bugscope-llm")


class LocalLLM:
    """Multi-provider LLM manager implementing :class:`LLMClient`."""

    def __init__(
        self,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
    ):
        """Initialize LLM with provider selection.

        Args:
            model: Model name (defaults to config, then the provider default)
            provider: Provider name: "ollama", "groq", "openai", "anthropic", "gemini", "openrouter"
            api_key: API key for cloud providers (defaults to config)
            endpoint: Custom endpoint for Ollama / OpenAI-compatible APIs (defaults to config)
        """
        self.provider_name = (provider or LLM_PROVIDER).lower()
        self.model = model or LLM_MODEL
        self.api_key = api_key or LLM_API_KEY
        self.endpoint = endpoint or LLM_ENDPOINT
        self.provider = self._create_provider(self.model)

    def _create_provider(self, model: str) -> LLMProvider:
        """Create the appropriate provider based on configuration."""
        name = self.provider_name
        if model == OLLAMA_DEFAULT_MODEL and name in DEFAULT_CONFIGS and name != "ollama":
            model = DEFAULT_CONFIGS[name]["model"]

        if name == "groq":
            return GroqProvider(model, self.api_key)
        if name == "openai":
            endpoint = self.endpoint if self.endpoint and "/chat/completions" in self.endpoint else None
            return OpenAIProvider(model, self.api_key, endpoint or "https://api.openai.com/v1/chat/completions")
        if name == "anthropic":
            return AnthropicProvider(model, self.api_key)
        if name == "gemini":
            return GeminiProvider(model, self.api_key)
        if name == "openrouter":
            return OpenRouterProvider(model, self.api_key)
        return OllamaProvider(model, self.endpoint)

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.1,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Blocking generation; ``None`` when the provider gives no answer."""
        provider = self.provider if not model or model == self.model else self._create_provider(model)
        return provider.generate(prompt, max_tokens=max_tokens, temperature=temperature, timeout=timeout)

    async def generate_text(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.1,
        timeout: Optional[float] = None,
    ) -> str:
        loop = asyncio.get_running_loop()
        call = functools.partial(self.generate, prompt, model, max_tokens, temperature, timeout)
        text = await loop.run_in_executor(_provider_executor, call)
        if not text:
            raise LLMUnavailableError(f"LLM provider '{self.provider_name}' returned no response")
        return text

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[SchemaT],
        model: Optional[str] = None,
        max_tokens: int = 2000,
        timeout: Optional[float] = None,
    ) -> SchemaT:
        """Generate JSON matching *schema*; raises :class:`StructuredOutputError` otherwise."""
        structured_prompt = (
            f"{prompt}\n\n"
            "Respond with a single JSON object that validates against this JSON Schema. "
            "Output ONLY the JSON, no markdown or explanation.\n"
            f"{json.dumps(schema.model_json_schema())}"
        )
        text = await self.generate_text(
            structured_prompt, model=model, max_tokens=max_tokens, temperature=0.1, timeout=timeout
        )
        payload = parse_json_response(text)
        if payload is None:
            raise StructuredOutputError(f"{schema.__name__}: response was not JSON")
        try:
            return schema.model_validate(payload)
        except ValidationError as exc:
            raise StructuredOutputError(f"{schema.__name__}: {exc.error_count()} validation errors") from exc


# ===================================================================
# Retry
# ===================================================================

async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay_seconds: float = 1.0,
) -> T:
    """Await ``fn()`` up to *attempts* times with doubling back-off.

    The wait before retry ``n`` is ``delay_seconds * 2 ** (n - 1)``.  The
    last error is re-raised once every attempt has failed.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=delay_seconds),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=asyncio.sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await fn()
    return result
