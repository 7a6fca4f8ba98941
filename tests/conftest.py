"""Pytest configuration and fixtures for BugScope tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

from bugscope_cli.errors import LLMUnavailableError, StructuredOutputError


class FakeLLM:
    """Scripted stand-in for LocalLLM.

    ``texts`` is a queue of replies for ``generate_text``; ``structured`` maps
    a schema class name to a queue of replies for ``generate_structured``.
    A queued exception is raised instead of returned.  An empty queue
    behaves like an unreachable provider.
    """

    def __init__(self, texts: Optional[List[Any]] = None, structured: Optional[Dict[str, List[Any]]] = None):
        self.texts = list(texts or [])
        self.structured = {k: list(v) for k, v in (structured or {}).items()}
        self.prompts: List[str] = []

    async def generate_text(self, prompt, model=None, max_tokens=1024, temperature=0.1, timeout=None):
        self.prompts.append(prompt)
        if not self.texts:
            raise LLMUnavailableError("no scripted text reply")
        reply = self.texts.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def generate_structured(self, prompt, schema, model=None, max_tokens=2000, timeout=None):
        self.prompts.append(prompt)
        queue = self.structured.get(schema.__name__, [])
        if not queue:
            raise StructuredOutputError(f"no scripted {schema.__name__} reply")
        reply = queue.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, dict):
            return schema.model_validate(reply)
        return reply


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path):
    """Keep tests away from ~/.bugscope and make retries instant."""
    monkeypatch.setattr("bugscope_cli.config.CONFIG_FILE", tmp_path / "config.toml")
    monkeypatch.setattr("bugscope_cli.config.RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr("bugscope_cli.config.RETRY_ATTEMPTS", 2)
    monkeypatch.setattr("bugscope_cli.config.CONSISTENCY_SAMPLES", 1)
    monkeypatch.setattr("bugscope_cli.config.ENABLE_REVIEWER", True)
    monkeypatch.setattr("bugscope_cli.config.STAGE_TIMEOUT_SECONDS", 60.0)
    monkeypatch.setattr("bugscope_cli.config.MAX_WORKERS", 4)


@pytest.fixture(autouse=True)
def fake_llm(monkeypatch) -> FakeLLM:
    """Replace LocalLLM in the CLI with a scripted fake so no test touches the network."""
    fake = FakeLLM()
    monkeypatch.setattr("bugscope_cli.cli.LocalLLM", lambda *args, **kwargs: fake)
    return fake


@pytest.fixture
def make_llm() -> Callable[..., FakeLLM]:
    return FakeLLM


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_app() -> Path:
    """Path to the sample TypeScript project."""
    return Path(__file__).parent / "fixtures" / "sample_app"


@pytest.fixture
def checkout_report() -> Dict[str, str]:
    """A bug report with a stack trace into the sample app."""
    return {
        "title": "Checkout crashes with TypeError when submitting order",
        "body": (
            "Clicking the checkout button crashes the page.\n\n"
            "TypeError: Cannot read properties of null (reading 'items')\n"
            "    at loadItems (http://localhost:3000/src/services/orderService.ts:14:15)\n"
            "    at buildPayload (http://localhost:3000/src/services/orderService.ts:9:40)\n"
            "    at handleClick (http://localhost:3000/src/components/CheckoutButton.tsx:15:10)\n"
        ),
    }


@pytest.fixture
def analysis_dict() -> Callable[..., Dict[str, Any]]:
    """Factory for a valid AnalysisResult payload."""

    def build(**overrides: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "is_valid_report": True,
            "severity": "high",
            "category": "runtime_error",
            "root_cause": {
                "summary": "loadItems dereferences a null cart",
                "explanation": "orderService.ts:14 reads cart.items while cart is null.",
                "affected_files": ["src/services/orderService.ts"],
            },
            "suggested_fix": {"steps": ["Load the cart before reading items"], "code_changes": []},
            "prevention": ["Add null checks"],
            "confidence": 80,
        }
        payload.update(overrides)
        return payload

    return build
