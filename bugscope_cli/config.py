"""Configuration paths and pipeline defaults for BugScope."""

from __future__ import annotations

import os
from pathlib import Path

from .config_manager import load_config, load_pipeline_config

BASE_DIR = Path(os.environ.get("BUGSCOPE_HOME", str(Path.home() / ".bugscope"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

# Source files considered by discovery (tsx/jsx listed before ts/js on purpose)
SUPPORTED_EXTENSIONS = [".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".rs", ".java", ".kt"]
IGNORED_DIRS = ["node_modules", ".git", "dist", "build", ".next", "coverage", "__pycache__", "vendor"]

# Load configuration from TOML file (if available)
_toml_config = load_config()
_pipeline_config = load_pipeline_config()

# LLM Provider Configuration - loaded from ~/.bugscope/config.toml (set via `bugscope set-llm`)
LLM_PROVIDER = os.environ.get("BUGSCOPE_PROVIDER") or _toml_config.get("provider", "ollama")
LLM_API_KEY = os.environ.get("BUGSCOPE_API_KEY") or _toml_config.get("api_key", "")
LLM_MODEL = os.environ.get("BUGSCOPE_MODEL") or _toml_config.get("model", "qwen2.5-coder:7b")
LLM_ENDPOINT = _toml_config.get("endpoint", "http://127.0.0.1:11434/api/generate")

# Pipeline defaults - `[pipeline]` section
MAX_FILES = int(_pipeline_config.get("max_files", 25))
MAX_WORKERS = int(_pipeline_config.get("max_workers", 8))
STAGE_TIMEOUT_SECONDS = float(_pipeline_config.get("stage_timeout", 60.0))
RETRY_ATTEMPTS = int(_pipeline_config.get("retry_attempts", 3))
RETRY_DELAY_SECONDS = float(_pipeline_config.get("retry_delay", 1.0))
ENABLE_REVIEWER = bool(_pipeline_config.get("enable_reviewer", True))
CONSISTENCY_SAMPLES = int(_pipeline_config.get("consistency_samples", 1))
CONSISTENCY_THRESHOLD = float(_pipeline_config.get("consistency_threshold", 0.6))
