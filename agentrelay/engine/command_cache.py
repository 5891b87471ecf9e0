"""Cache of the slash commands advertised by the SDK backend.

The backend lists its interactive commands (names only) in its ``init``
event. Those names are kept in memory and mirrored to a JSON file
``{"timestamp": <epoch ms>, "commands": [...]}`` so a fresh server
process can answer without starting a run. Entries older than the TTL
are ignored in memory and on disk alike.

When nothing fresh is cached, ``discover()`` runs a short probe of the
backend. Concurrent callers share the one in-flight probe.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from agentrelay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_PROBE_TIMEOUT_SECONDS = 15.0

# Returns the raw advertised command names, or None.
CommandProbe = Callable[[], Awaitable[list[str] | None]]


@dataclass
class SlashCommandInfo:
    name: str
    description: str = ""
    argument_hint: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "description": self.description,
            "argumentHint": self.argument_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SlashCommandInfo:
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            argument_hint=str(data.get("argumentHint") or ""),
        )


def normalize_command_name(name: str) -> str:
    name = name.strip()
    return name[1:] if name.startswith("/") else name


def normalize_commands(raw: Iterable[Any]) -> list[SlashCommandInfo]:
    """Strip one leading slash, drop blanks, dedupe by name (first wins).

    Accepts bare names or dicts with a ``name`` key.
    """
    result: list[SlashCommandInfo] = []
    seen: set[str] = set()
    for item in raw:
        if isinstance(item, str):
            info = SlashCommandInfo(name=item)
        elif isinstance(item, dict):
            info = SlashCommandInfo.from_dict(item)
        else:
            continue
        info.name = normalize_command_name(info.name)
        if not info.name or info.name in seen:
            continue
        seen.add(info.name)
        result.append(info)
    return result


class CommandCache:
    """Memory + disk cache with single-flight discovery."""

    def __init__(
        self,
        path: Path,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        probe: CommandProbe | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.probe = probe
        self._ttl_seconds = ttl_seconds
        self._probe_timeout = probe_timeout
        self._clock = clock
        self._commands: list[SlashCommandInfo] | None = None
        self._written_at: float = 0.0
        self._inflight: asyncio.Future[list[SlashCommandInfo] | None] | None = None

    def _is_fresh(self, written_at: float) -> bool:
        return self._clock() - written_at < self._ttl_seconds

    def get(self) -> list[SlashCommandInfo] | None:
        """Fresh cached commands from memory, then disk; None on a miss."""
        if self._commands and self._is_fresh(self._written_at):
            return list(self._commands)

        loaded = self._load()
        if loaded is None:
            return None
        commands, written_at = loaded
        self._commands = commands
        self._written_at = written_at
        return list(commands)

    def _load(self) -> tuple[list[SlashCommandInfo], float] | None:
        data = read_json(self.path)
        if not isinstance(data, dict):
            return None
        timestamp = data.get("timestamp")
        raw_commands = data.get("commands")
        if not isinstance(timestamp, (int, float)) or not isinstance(raw_commands, list):
            logger.debug("Command cache %s has unexpected shape; ignoring", self.path)
            return None
        written_at = timestamp / 1000.0
        if not self._is_fresh(written_at):
            logger.debug("Command cache %s is stale", self.path)
            return None
        commands = normalize_commands(raw_commands)
        if not commands:
            return None
        return commands, written_at

    def store(self, raw_commands: Iterable[Any]) -> list[SlashCommandInfo]:
        """Normalize and cache commands in memory and on disk."""
        commands = normalize_commands(raw_commands)
        if not commands:
            return []
        now = self._clock()
        self._commands = commands
        self._written_at = now
        try:
            atomic_write_json(self.path, {
                "timestamp": int(now * 1000),
                "commands": [c.to_dict() for c in commands],
            })
            logger.info("Cached %d slash commands to %s", len(commands), self.path)
        except OSError:
            logger.warning("Failed to write command cache %s", self.path, exc_info=True)
        return list(commands)

    async def discover(self) -> list[SlashCommandInfo] | None:
        """Return cached commands or run (or join) a discovery probe."""
        cached = self.get()
        if cached:
            return cached
        if self.probe is None:
            return None
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._probe_once())
        return await asyncio.shield(self._inflight)

    async def _probe_once(self) -> list[SlashCommandInfo] | None:
        assert self.probe is not None
        start = time.monotonic()
        try:
            names = await asyncio.wait_for(self.probe(), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            logger.info(
                "Slash command discovery timed out after %.1fs", self._probe_timeout,
            )
            return None
        except Exception as exc:
            logger.info("Slash command discovery failed: %s", exc)
            return None
        if not names:
            logger.debug("Slash command discovery returned nothing")
            return None
        commands = self.store(names)
        logger.info(
            "Discovered %d slash commands in %.1fs",
            len(commands), time.monotonic() - start,
        )
        return commands or None
