"""Configuration manager for BugScope using TOML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

import toml

logger = logging.getLogger(__name__)


# Default configurations for each provider
DEFAULT_CONFIGS = {
    "ollama": {
        "provider": "ollama",
        "model": "qwen2.5-coder:7b",
        "endpoint": "http://127.0.0.1:11434/api/generate",
    },
    "groq": {
        "provider": "groq",
        "model": "llama-3.3-70b-versatile",
        "api_key": "",
    },
    "openai": {
        "provider": "openai",
        "model": "gpt-4.1-mini",
        "api_key": "",
    },
    "anthropic": {
        "provider": "anthropic",
        "model": "claude-3-5-sonnet-20241022",
        "api_key": "",
    },
    "gemini": {
        "provider": "gemini",
        "model": "gemini-2.0-flash",
        "api_key": "",
    },
    "openrouter": {
        "provider": "openrouter",
        "model": "google/gemini-2.0-flash-exp:free",
        "api_key": "",
        "endpoint": "https://openrouter.ai/api/v1/chat/completions",
    },
}

DEFAULT_PIPELINE = {
    "max_files": 25,
    "max_workers": 8,
    "stage_timeout": 60.0,
    "retry_attempts": 3,
    "retry_delay": 1.0,
    "enable_reviewer": True,
    "consistency_samples": 1,
    "consistency_threshold": 0.6,
}


def _config_file() -> Path:
    from .config import CONFIG_FILE

    return CONFIG_FILE


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    config_file = _config_file()
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Could not read %s: %s", config_file, exc)
        return {}


def _save_full_config(config: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    config_file = _config_file()
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w") as f:
            toml.dump(config, f)
        return True
    except OSError as exc:
        logger.warning("Could not write %s: %s", config_file, exc)
        return False


def load_config() -> Dict[str, Any]:
    """Load the ``[llm]`` section.

    Returns:
        Configuration dictionary with provider settings.
        Falls back to Ollama defaults if the file or section is missing.
    """
    full = load_full_config()
    return full.get("llm", DEFAULT_CONFIGS["ollama"].copy())


def save_config(provider: str, model: str, api_key: str = "", endpoint: str = "") -> bool:
    """Save LLM configuration to TOML file.

    Preserves other sections (e.g. ``[pipeline]``) in the file.

    Args:
        provider: Provider name (ollama, groq, openai, anthropic, gemini, openrouter)
        model: Model name
        api_key: API key for cloud providers
        endpoint: Custom endpoint (for Ollama and OpenRouter)

    Returns:
        True if saved successfully, False otherwise
    """
    config = load_full_config()

    config["llm"] = {
        "provider": provider,
        "model": model,
    }
    if api_key:
        config["llm"]["api_key"] = api_key
    if endpoint:
        config["llm"]["endpoint"] = endpoint

    return _save_full_config(config)


# ------------------------------------------------------------------
# Pipeline configuration
# ------------------------------------------------------------------

def load_pipeline_config() -> Dict[str, Any]:
    """Load ``[pipeline]`` settings merged over :data:`DEFAULT_PIPELINE`."""
    merged = DEFAULT_PIPELINE.copy()
    merged.update(load_full_config().get("pipeline", {}))
    return merged


def save_pipeline_config(**settings: Any) -> bool:
    """Update keys in the ``[pipeline]`` section, keeping unknown keys out."""
    config = load_full_config()
    section = config.get("pipeline", {})
    for key, value in settings.items():
        if key not in DEFAULT_PIPELINE:
            raise KeyError(f"Unknown pipeline setting: {key}")
        section[key] = value
    config["pipeline"] = section
    return _save_full_config(config)


def get_provider_config(provider: str) -> Dict[str, Any]:
    """Get default configuration for a specific provider."""
    return DEFAULT_CONFIGS.get(provider, DEFAULT_CONFIGS["ollama"]).copy()
