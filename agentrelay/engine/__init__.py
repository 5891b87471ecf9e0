"""Agent session orchestration: runs, sessions, binaries and caches."""
from .config import RelayConfig
from .errors import (
    API_KEY_ERROR,
    CLAUDE_NOT_FOUND,
    CODEX_NOT_FOUND,
    ConfigError,
    RelayError,
    UnknownProviderError,
)
from .sessions import CancelToken, SessionRegistry

__all__ = [
    "API_KEY_ERROR",
    "CLAUDE_NOT_FOUND",
    "CODEX_NOT_FOUND",
    "CancelToken",
    "ConfigError",
    "RelayConfig",
    "RelayError",
    "SessionRegistry",
    "UnknownProviderError",
]
