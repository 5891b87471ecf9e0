"""Error taxonomy for agent runs.

Backend failures never propagate out of a run as exceptions; they are
reported in-band as ``error`` events. The sentinels below let a client
tell "install the CLI" and "fix your credentials" apart from free-text
failures. The exception classes cover failures at the HTTP and
configuration boundaries.
"""
from __future__ import annotations

import re

CLAUDE_NOT_FOUND = "__CLAUDE_CODE_NOT_FOUND__"
CODEX_NOT_FOUND = "__CODEX_NOT_FOUND__"
API_KEY_ERROR = "__API_KEY_ERROR__"

_AUTH_FAILURE_RE = re.compile(
    r"invalid api key|invalid_api_key|authentication|unauthorized|forbidden"
    r"|\b401\b|\b403\b|please run /login|not logged in|login required",
    re.IGNORECASE,
)


def is_auth_failure(text: str | None) -> bool:
    """True when an error or stderr text looks like a credentials problem."""
    if not text:
        return False
    return _AUTH_FAILURE_RE.search(text) is not None


def classify_error(text: str) -> str:
    """Return the auth sentinel for credential failures, else *text* unchanged."""
    return API_KEY_ERROR if is_auth_failure(text) else text


class RelayError(Exception):
    """Base exception for agent-relay."""


class ConfigError(RelayError):
    """Configuration file or value could not be used."""


class UnknownProviderError(RelayError):
    """Requested provider name does not map to a backend."""
    def __init__(self, provider_name: str, available: list[str]):
        self.provider_name = provider_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Unknown provider '{provider_name}'. "
            f"Available providers: {avail_str}"
        )
