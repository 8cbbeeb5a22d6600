"""Configuration loading for the task loop CLI."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from agentic_task_loop.constants import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_OLLAMA_PORT,
    DEFAULT_OLLAMA_TIMEOUT_S,
    VALID_MODELS,
)


@dataclass
class Config:
    """Application configuration loaded from environment."""

    worker_command: str = "claude"
    model: Optional[str] = None
    max_iterations: Optional[int] = DEFAULT_MAX_ITERATIONS
    auto_pass: bool = True
    multi_repo: bool = False
    local_llm_model: Optional[str] = None
    ollama_host: str = DEFAULT_OLLAMA_HOST
    ollama_port: int = DEFAULT_OLLAMA_PORT
    ollama_timeout: float = DEFAULT_OLLAMA_TIMEOUT_S

    @property
    def local_llm_enabled(self) -> bool:
        return bool(self.local_llm_model)


class ConfigError(Exception):
    """Raised when configuration values are invalid."""
    pass


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(name: str, value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean (true/false), got: {value!r}")


def _parse_int(name: str, value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got: {value!r}")


def parse_max_iterations(value: Optional[str]) -> Optional[int]:
    """
    Parse an iteration budget.

    Returns None for "unlimited" (no cap); otherwise a positive integer.

    Raises:
        ConfigError: If the value is neither "unlimited" nor a positive integer.
    """
    if value is None or value.strip() == "":
        return DEFAULT_MAX_ITERATIONS
    if value.strip().lower() in ("unlimited", "none", "inf", "infinity"):
        return None
    budget = _parse_int("TASKLOOP_MAX_ITERATIONS", value, DEFAULT_MAX_ITERATIONS)
    if budget < 1:
        raise ConfigError(f"TASKLOOP_MAX_ITERATIONS must be >= 1, got: {budget}")
    return budget


def _parse_local_llm(value: Optional[str]) -> Optional[str]:
    # The variable holds a model name; boolean-looking values do not enable it
    if not value or value.strip().lower() in _TRUE_VALUES | _FALSE_VALUES:
        return None
    return value.strip()


def load_config() -> Config:
    """
    Load configuration from environment variables (and a .env file if present).

    Returns:
        Config object with defaults applied for anything unset.

    Raises:
        ConfigError: If a variable is set to an invalid value.
    """
    load_dotenv(find_dotenv(usecwd=True))

    model = os.environ.get("TASKLOOP_MODEL") or None
    if model is not None and model not in VALID_MODELS:
        raise ConfigError(
            f"TASKLOOP_MODEL must be one of {', '.join(VALID_MODELS)}, got: {model!r}\n"
            f"Unset it to let the worker pick its default model."
        )

    return Config(
        worker_command=os.environ.get("TASKLOOP_WORKER_COMMAND") or "claude",
        model=model,
        max_iterations=parse_max_iterations(os.environ.get("TASKLOOP_MAX_ITERATIONS")),
        auto_pass=_parse_bool("TASKLOOP_AUTO_PASS", os.environ.get("TASKLOOP_AUTO_PASS"), True),
        multi_repo=_parse_bool("TASKLOOP_MULTI_REPO", os.environ.get("TASKLOOP_MULTI_REPO"), False),
        local_llm_model=_parse_local_llm(os.environ.get("TASKLOOP_LOCAL_LLM")),
        ollama_host=os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST,
        ollama_port=_parse_int("OLLAMA_PORT", os.environ.get("OLLAMA_PORT"), DEFAULT_OLLAMA_PORT),
        ollama_timeout=float(
            _parse_int("OLLAMA_TIMEOUT", os.environ.get("OLLAMA_TIMEOUT"), int(DEFAULT_OLLAMA_TIMEOUT_S))
        ),
    )
