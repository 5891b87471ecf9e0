"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".agent-relay"

_DEFAULT_CORS_ORIGINS = [
    "http://localhost:1420",
    "http://127.0.0.1:1420",
    "http://localhost:5173",
]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number); using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not an integer); using %s", name, raw, default)
        return default


@dataclass
class RelayConfig:
    """Server and agent-run configuration."""

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 2026
    cors_origins: list[str] = field(
        default_factory=lambda: list(_DEFAULT_CORS_ORIGINS)
    )

    # Where the command cache and logs live.
    data_dir: Path = DEFAULT_DATA_DIR

    # Agent runs
    default_permission_mode: str = "bypassPermissions"
    max_turns: int = 200
    # Prior-turn window prepended to SDK prompts. At least
    # history_min_turns turns are kept even past the character budget.
    history_max_chars: int = 8000
    history_min_turns: int = 3

    # Caches
    command_cache_ttl_seconds: float = 24 * 60 * 60
    discovery_timeout_seconds: float = 15.0
    health_cache_ttl_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"

    @property
    def command_cache_path(self) -> Path:
        return self.data_dir / "claude-commands.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(sorted(relay_vars)),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        defaults = cls()
        origins_raw = os.getenv("RELAY_CORS_ORIGINS", "")
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()]
        data_dir_raw = os.getenv("RELAY_DATA_DIR", "").strip()

        config = cls(
            host=os.getenv("RELAY_HOST", defaults.host),
            port=_env_int("RELAY_PORT", defaults.port),
            cors_origins=origins or defaults.cors_origins,
            data_dir=Path(data_dir_raw).expanduser() if data_dir_raw else defaults.data_dir,
            default_permission_mode=os.getenv(
                "RELAY_PERMISSION_MODE", defaults.default_permission_mode
            ),
            max_turns=_env_int("RELAY_MAX_TURNS", defaults.max_turns),
            command_cache_ttl_seconds=_env_float(
                "RELAY_COMMAND_CACHE_TTL", defaults.command_cache_ttl_seconds
            ),
            discovery_timeout_seconds=_env_float(
                "RELAY_DISCOVERY_TIMEOUT", defaults.discovery_timeout_seconds
            ),
            health_cache_ttl_seconds=_env_float(
                "RELAY_HEALTH_CACHE_TTL", defaults.health_cache_ttl_seconds
            ),
            log_level=os.getenv("RELAY_LOG_LEVEL", defaults.log_level).upper(),
        )
        logger.info(
            "RelayConfig.from_env: host=%s port=%d data_dir=%s permission_mode=%s",
            config.host, config.port, config.data_dir,
            config.default_permission_mode,
        )
        return config
