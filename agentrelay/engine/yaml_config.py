"""YAML configuration loader.

Values from the environment (RelayConfig.from_env) form the base;
keys present in the YAML file override them.

Example YAML:
    server:
      host: 127.0.0.1
      port: 2026
      cors_origins: [http://localhost:1420]

    agents:
      default_permission_mode: acceptEdits
      max_turns: 100
      history_max_chars: 8000
      history_min_turns: 3

    cache:
      data_dir: ~/.agent-relay
      command_ttl_seconds: 86400
      discovery_timeout_seconds: 15
      health_ttl_seconds: 60

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# (section, yaml key) -> (RelayConfig attribute, coercion)
_FIELD_MAP: dict[tuple[str, str], tuple[str, Any]] = {
    ("server", "host"): ("host", str),
    ("server", "port"): ("port", int),
    ("server", "cors_origins"): ("cors_origins", list),
    ("agents", "default_permission_mode"): ("default_permission_mode", str),
    ("agents", "max_turns"): ("max_turns", int),
    ("agents", "history_max_chars"): ("history_max_chars", int),
    ("agents", "history_min_turns"): ("history_min_turns", int),
    ("cache", "data_dir"): ("data_dir", lambda v: Path(str(v)).expanduser()),
    ("cache", "command_ttl_seconds"): ("command_cache_ttl_seconds", float),
    ("cache", "discovery_timeout_seconds"): ("discovery_timeout_seconds", float),
    ("cache", "health_ttl_seconds"): ("health_cache_ttl_seconds", float),
    ("logging", "level"): ("log_level", lambda v: str(v).upper()),
}


def apply_yaml_data(config: RelayConfig, data: dict[str, Any]) -> RelayConfig:
    """Overlay a parsed YAML mapping onto *config* in place."""
    for (section, key), (attr, coerce) in _FIELD_MAP.items():
        section_data = data.get(section)
        if not isinstance(section_data, dict) or key not in section_data:
            continue
        raw = section_data[key]
        try:
            setattr(config, attr, coerce(raw))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {section}.{key}: {raw!r}") from exc

    known_sections = {section for section, _ in _FIELD_MAP}
    for section in data:
        if section not in known_sections:
            logger.warning("Ignoring unknown config section: %s", section)
    return config


def load_yaml_config(path: str | Path) -> RelayConfig:
    """Load a RelayConfig from a YAML file layered over env defaults."""
    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config file {config_path} must contain a mapping, "
            f"got {type(data).__name__}"
        )

    config = apply_yaml_data(RelayConfig.from_env(), data)
    logger.info("Loaded YAML config from %s", config_path)
    return config
