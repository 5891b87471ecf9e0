"""Locate backend CLI binaries.

Desktop apps are often launched without the user's shell profile, so
``PATH`` may be missing the directories where npm, nvm, volta or
Homebrew install CLIs. ``locate_binary`` tries, in order:

1. ``which``/``where`` against an extended PATH,
2. a login-shell ``which`` (POSIX only, bash then zsh),
3. a fixed list of common install locations,
4. an explicit override environment variable.

Every candidate must exist on disk. Failures at any step are logged and
the next strategy is tried. Nothing here caches; callers that poll
(health checks) wrap it in AvailabilityCache.
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ToolSpec:
    """How to find one backend executable."""
    name: str
    env_override: str


TOOLS: dict[str, ToolSpec] = {
    "claude": ToolSpec(name="claude", env_override="CLAUDE_CODE_PATH"),
    "codex": ToolSpec(name="codex", env_override="CODEX_PATH"),
}


def _is_windows(system: str | None = None) -> bool:
    return (system or sys.platform).startswith("win")


def _version_manager_dirs(home: Path) -> list[str]:
    """Bin directories of node versions installed by nvm and fnm."""
    found: list[str] = []
    version_roots = [
        (home / ".nvm" / "versions" / "node", Path("bin")),
        (home / ".local" / "share" / "fnm" / "node-versions", Path("installation") / "bin"),
    ]
    for root, suffix in version_roots:
        try:
            if not root.is_dir():
                continue
            for version_dir in sorted(root.iterdir()):
                found.append(str(version_dir / suffix))
        except OSError:
            logger.debug("Could not enumerate %s", root, exc_info=True)
    return found


def extra_search_dirs(
    home: Path | None = None,
    system: str | None = None,
) -> list[str]:
    """Package-manager install directories not always on a GUI app's PATH."""
    home = home or Path.home()
    if _is_windows(system):
        appdata = os.environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return [
            str(Path(appdata) / "npm"),
            str(home / ".volta" / "bin"),
        ]
    dirs = [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        str(home / ".local" / "bin"),
        str(home / ".npm-global" / "bin"),
        str(home / ".volta" / "bin"),
        str(home / ".asdf" / "shims"),
        str(home / ".bun" / "bin"),
    ]
    dirs.extend(_version_manager_dirs(home))
    return dirs


def extended_path(
    base_path: str | None = None,
    home: Path | None = None,
    system: str | None = None,
) -> str:
    """Return PATH with the extra search directories appended, deduplicated."""
    sep = ";" if _is_windows(system) else ":"
    if base_path is None:
        base_path = os.environ.get("PATH", "")
    entries: list[str] = []
    seen: set[str] = set()
    for entry in base_path.split(sep) + extra_search_dirs(home, system):
        if entry and entry not in seen:
            seen.add(entry)
            entries.append(entry)
    return sep.join(entries)


def common_locations(
    spec: ToolSpec,
    home: Path | None = None,
    system: str | None = None,
) -> list[Path]:
    """Well-known install paths for *spec*, in priority order."""
    home = home or Path.home()
    if _is_windows(system):
        appdata = os.environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return [Path(appdata) / "npm" / f"{spec.name}.cmd"]
    dirs = [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        str(home / ".local" / "bin"),
        str(home / ".npm-global" / "bin"),
        str(home / ".volta" / "bin"),
    ]
    return [Path(d) / spec.name for d in dirs]


def _first_existing_line(output: str) -> str | None:
    for line in output.splitlines():
        candidate = line.strip()
        if candidate and Path(candidate).exists():
            return candidate
    return None


def _run_probe(cmd: list[str], env: dict[str, str] | None = None) -> str | None:
    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=env,
            timeout=_PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Probe %s failed: %s", cmd[0], exc)
        return None
    if completed.returncode != 0:
        return None
    return _first_existing_line(completed.stdout)


def locate_binary(
    tool: str,
    *,
    home: Path | None = None,
    system: str | None = None,
) -> str | None:
    """Find the executable for *tool* ("claude" or "codex").

    Returns an absolute path, or None when nothing usable was found.
    """
    spec = TOOLS.get(tool) or ToolSpec(name=tool, env_override="")
    windows = _is_windows(system)

    # 1. which/where with the extended PATH
    env = dict(os.environ)
    env["PATH"] = extended_path(home=home, system=system)
    finder = ["where", spec.name] if windows else ["which", spec.name]
    found = _run_probe(finder, env=env)
    if found:
        logger.info("Found %s at %s", spec.name, found)
        return found

    # 2. login shells pick up PATH edits made in shell profiles
    if not windows:
        for shell in ("bash", "zsh"):
            found = _run_probe([shell, "-l", "-c", f"which {spec.name}"])
            if found:
                logger.info("Found %s via %s login shell: %s", spec.name, shell, found)
                return found

    # 3. common install locations
    for candidate in common_locations(spec, home=home, system=system):
        if candidate.exists():
            logger.info("Found %s at %s", spec.name, candidate)
            return str(candidate)

    # 4. explicit override
    if spec.env_override:
        override = os.environ.get(spec.env_override, "").strip()
        if override and Path(override).exists():
            logger.info("Using %s from %s", spec.name, spec.env_override)
            return override

    logger.debug("%s not found", spec.name)
    return None


@dataclass
class AvailabilityCache:
    """Caches a per-tool "is installed" boolean for a short TTL."""

    ttl_seconds: float = 60.0
    locator: Callable[[str], str | None] = locate_binary
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, tuple[bool, float]] = field(default_factory=dict, repr=False)

    def is_available(self, tool: str) -> bool:
        now = self.clock()
        cached = self._entries.get(tool)
        if cached is not None and now - cached[1] < self.ttl_seconds:
            return cached[0]
        available = self.locator(tool) is not None
        self._entries[tool] = (available, now)
        return available
