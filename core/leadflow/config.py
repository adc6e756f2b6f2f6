"""Shared engine configuration.

Centralises reading of ~/.leadflow/configuration.json so that the CLI,
the runtime and the webhook server share one implementation. Environment
variables override file values.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

LEADFLOW_CONFIG_FILE = Path.home() / ".leadflow" / "configuration.json"

DEFAULT_AI_MODEL = "openai/gpt-4o-mini"
DEFAULT_STORE_PATH = Path.home() / ".leadflow" / "store"


def get_leadflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.leadflow/configuration.json."""
    config_file = path or LEADFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}")
        return None


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_max_attempts() -> int:
    """Attempts per side effect or AI call before the lead is escalated."""
    env = _env_int("LEADFLOW_MAX_ATTEMPTS")
    if env is not None:
        return max(1, env)
    return get_leadflow_config().get("retry", {}).get("max_attempts", 3)


def get_lease_ttl() -> float:
    env = _env_int("LEADFLOW_LEASE_TTL")
    if env is not None:
        return float(env)
    return float(get_leadflow_config().get("lease_ttl_seconds", 30))


def get_worker_count() -> int:
    env = _env_int("LEADFLOW_WORKERS")
    if env is not None:
        return max(1, env)
    return get_leadflow_config().get("worker_count", 8)


def get_ai_model() -> str:
    """Return the model string for agent decisions (e.g. 'openai/gpt-4o-mini')."""
    if os.environ.get("LEADFLOW_AI_MODEL"):
        return os.environ["LEADFLOW_AI_MODEL"]
    ai = get_leadflow_config().get("ai", {})
    if ai.get("provider") and ai.get("model"):
        return f"{ai['provider']}/{ai['model']}"
    return DEFAULT_AI_MODEL


def get_ai_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    api_key_env_var = get_leadflow_config().get("ai", {}).get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_store_path() -> Path:
    if os.environ.get("LEADFLOW_STORE_PATH"):
        return Path(os.environ["LEADFLOW_STORE_PATH"]).expanduser()
    configured = get_leadflow_config().get("store_path")
    return Path(configured).expanduser() if configured else DEFAULT_STORE_PATH


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """Exponential backoff for side effects and AI calls."""

    max_attempts: int = field(default_factory=get_max_attempts)
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass
class EngineConfig:
    """Flow engine configuration loaded from ~/.leadflow/configuration.json."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    lease_ttl_seconds: float = field(default_factory=get_lease_ttl)
    lease_wait_seconds: float = 10.0
    max_chain_steps: int = 50
    worker_count: int = field(default_factory=get_worker_count)
    conversation_window: int = 20
    ai_model: str = field(default_factory=get_ai_model)
    ai_api_key: str | None = field(default_factory=get_ai_api_key)
    store_path: Path = field(default_factory=get_store_path)
    max_scheduler_sleep: float = 60.0
