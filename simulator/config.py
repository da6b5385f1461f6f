"""
Simulator settings, read from the environment.

A ``.env`` file in the working directory is loaded first; real environment
variables take precedence over it.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"


@dataclass(frozen=True)
class Settings:
    anthropic_api_key: str | None = None
    model: str = DEFAULT_MODEL
    max_tokens: int = 8000
    default_resolution: int = 100
    max_resolution: int = 500
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (call ``cache_clear()`` to reload)."""
    load_dotenv()
    return Settings(
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
        model=os.environ.get("SIMULATOR_MODEL") or DEFAULT_MODEL,
        max_tokens=_env_int("SIMULATOR_MAX_TOKENS", 8000),
        default_resolution=_env_int("SIMULATOR_DEFAULT_RESOLUTION", 100),
        max_resolution=_env_int("SIMULATOR_MAX_RESOLUTION", 500),
        host=os.environ.get("SIMULATOR_HOST") or "127.0.0.1",
        port=_env_int("SIMULATOR_PORT", 8000),
        log_level=(os.environ.get("SIMULATOR_LOG_LEVEL") or "INFO").upper(),
    )
