"""Abstract base for agent backends.

Each provider wraps a different agent runtime (Claude Agent SDK,
OpenAI Codex CLI). The HTTP layer calls run() and relays the
AgentEvents it yields; stop() cancels a run by session id.
"""
from __future__ import annotations

import abc
import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Callable

from agentrelay.adapters.events import AgentEvent
from agentrelay.engine.binary_locator import locate_binary
from agentrelay.engine.errors import UnknownProviderError
from agentrelay.engine.sessions import CancelToken, SessionRegistry

logger = logging.getLogger(__name__)

PROCESS_GRACE_SECONDS = 5.0


class ProviderKind(enum.Enum):
    """Backend variant. CLAUDE is SDK-backed, CODEX is CLI-spawned."""
    CLAUDE = "claude"
    CODEX = "codex"

    @classmethod
    def parse(cls, name: str | None) -> ProviderKind:
        """Map a request's provider name (or alias) to a kind.

        A missing name selects CLAUDE.
        """
        key = (name or "claude").strip().lower()
        kind = _PROVIDER_ALIASES.get(key)
        if kind is None:
            raise UnknownProviderError(key, sorted(_PROVIDER_ALIASES))
        return kind


_PROVIDER_ALIASES: dict[str, ProviderKind] = {
    "claude": ProviderKind.CLAUDE,
    "sdk": ProviderKind.CLAUDE,
    "codex": ProviderKind.CODEX,
    "cli": ProviderKind.CODEX,
}


@dataclass(frozen=True)
class AgentConfig:
    """Per-run backend settings supplied by the caller."""
    provider: ProviderKind = ProviderKind.CLAUDE
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None
    cwd: str | None = None

    @classmethod
    def from_model_config(
        cls,
        provider: ProviderKind,
        model_config: dict[str, Any] | None,
        cwd: str | None = None,
    ) -> AgentConfig:
        """Build from the ``modelConfig`` object of an HTTP request."""
        model_config = model_config or {}

        def _opt(key: str) -> str | None:
            value = model_config.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            return None

        return cls(
            provider=provider,
            api_key=_opt("apiKey"),
            base_url=_opt("baseUrl"),
            model=_opt("model"),
            cwd=cwd,
        )


@dataclass(frozen=True)
class ConversationMessage:
    """One prior turn of the conversation ("user" or "assistant")."""
    role: str
    content: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        return cls(
            role=str(data.get("role", "user")),
            content=str(data.get("content") or ""),
        )


async def stream_until_cancelled(
    stream_factory: Callable[[], AsyncGenerator[Any, None]],
    token: CancelToken,
) -> AsyncIterator[Any]:
    """Yield items from a native async stream until it ends or *token* fires.

    The native stream is created, iterated and closed inside one pump
    task; some backends bind their I/O to the task that started it.
    Exceptions raised by the native stream are re-raised here.
    """
    queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

    async def _pump() -> None:
        try:
            async with contextlib.aclosing(stream_factory()) as stream:
                async for item in stream:
                    await queue.put(("item", item))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(("error", exc))
        else:
            await queue.put(("end", None))

    pump_task = asyncio.create_task(_pump())
    cancel_wait = asyncio.ensure_future(token.wait())
    get_task: asyncio.Future[tuple[str, Any]] | None = None
    try:
        while True:
            get_task = asyncio.ensure_future(queue.get())
            await asyncio.wait(
                {get_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED,
            )
            if token.cancelled:
                get_task.cancel()
                return
            kind, payload = get_task.result()
            if kind == "end":
                return
            if kind == "error":
                raise payload
            yield payload
    finally:
        cancel_wait.cancel()
        if get_task is not None and not get_task.done():
            get_task.cancel()
        if not pump_task.done():
            pump_task.cancel()
        await asyncio.gather(pump_task, return_exceptions=True)


async def terminate_process(
    proc: asyncio.subprocess.Process,
    grace_seconds: float = PROCESS_GRACE_SECONDS,
) -> None:
    """SIGTERM a still-running process, then SIGKILL after *grace_seconds*."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning("Process %s ignored SIGTERM; killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


class Provider(abc.ABC):
    """Abstract backend interface.

    Implementations wrap a specific agent runtime:
    - ClaudeProvider: Claude Agent SDK (query())
    - CodexProvider: OpenAI Codex CLI (codex exec --json)

    Every run yields SessionStarted first and Done last, whatever
    happens in between. Backend failures are reported as ErrorEvents,
    never raised.
    """

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        locator: Callable[[str], str | None] = locate_binary,
    ) -> None:
        self.registry = registry if registry is not None else SessionRegistry(self.name)
        self._locator = locator

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name, also the binary to locate."""

    @abc.abstractmethod
    def run(
        self,
        prompt: str,
        config: AgentConfig,
        *,
        conversation: list[ConversationMessage] | None = None,
        permission_mode: str | None = None,
        is_slash_command: bool = False,
    ) -> AsyncIterator[AgentEvent]:
        """Run one prompt and yield normalized events."""

    def stop(self, session_id: str) -> bool:
        """Cancel a running session. False if the id is unknown here."""
        return self.registry.cancel(session_id)

    def locate(self) -> str | None:
        return self._locator(self.name)

    def is_available(self) -> bool:
        return self.locate() is not None
