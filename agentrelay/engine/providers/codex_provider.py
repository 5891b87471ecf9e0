"""OpenAI Codex CLI provider.

Runs ``codex exec --json`` once per prompt, waits for it to exit and
converts the captured JSONL into AgentEvents.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

from agentrelay.adapters.events import (
    AgentEvent,
    Done,
    ErrorEvent,
    ResultEvent,
    SessionStarted,
    TextEvent,
)
from agentrelay.engine.binary_locator import extended_path
from agentrelay.engine.errors import CODEX_NOT_FOUND, classify_error
from agentrelay.engine.sessions import CancelToken, new_session_id

from .base import AgentConfig, ConversationMessage, Provider, terminate_process

logger = logging.getLogger(__name__)


def build_codex_env(
    config: AgentConfig,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Subprocess environment with the run's credentials applied."""
    env = dict(os.environ if base_env is None else base_env)
    env["PATH"] = extended_path(env.get("PATH", ""))

    if config.api_key:
        env["OPENAI_API_KEY"] = config.api_key
        if config.base_url:
            env["OPENAI_BASE_URL"] = config.base_url
        else:
            env.pop("OPENAI_BASE_URL", None)
    elif config.base_url:
        env["OPENAI_BASE_URL"] = config.base_url

    if config.model:
        env["CODEX_MODEL"] = config.model
    return env


def build_codex_cmd(codex_path: str, prompt: str, config: AgentConfig) -> list[str]:
    cmd = [codex_path, "exec", "--json", "--skip-git-repo-check"]
    if config.cwd:
        cmd.extend(["-C", config.cwd])
    if config.model:
        cmd.extend(["-c", f"model={json.dumps(config.model)}"])
    cmd.append(prompt)
    return cmd


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


@dataclass
class CodexOutput:
    """What a finished ``codex exec --json`` run printed."""
    messages: list[str] = field(default_factory=list)
    input_tokens: int | None = None
    cached_input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.messages)

    @property
    def has_usage(self) -> bool:
        return any(
            v is not None
            for v in (self.input_tokens, self.cached_input_tokens, self.output_tokens)
        )


def parse_codex_output(stdout: str) -> CodexOutput:
    """Parse JSONL output. Lines that are not JSON objects are kept as text.

    Codex --json record types include thread.started, turn.started,
    turn.completed, turn.failed, item.started, item.completed and error.
    Only agent_message items and turn usage matter here.
    """
    output = CodexOutput()
    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            record = json.loads(stripped)
        except ValueError:
            output.messages.append(line)
            continue
        if not isinstance(record, dict):
            output.messages.append(line)
            continue

        rtype = record.get("type")
        if rtype == "item.completed":
            item = record.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message":
                text = item.get("text")
                if isinstance(text, str) and text:
                    output.messages.append(text)
        elif rtype == "turn.completed":
            usage = record.get("usage")
            if isinstance(usage, dict):
                output.input_tokens = _optional_int(usage.get("input_tokens"))
                output.cached_input_tokens = _optional_int(usage.get("cached_input_tokens"))
                output.output_tokens = _optional_int(usage.get("output_tokens"))
        else:
            logger.debug("Ignoring codex record type %r", rtype)
    return output


def _signal_terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        pass


class CodexProvider(Provider):
    """Provider backed by the OpenAI Codex CLI.

    Auth: whatever the CLI is logged in with, unless the run's
    AgentConfig carries an API key.
    """

    @property
    def name(self) -> str:
        return "codex"

    async def run(
        self,
        prompt: str,
        config: AgentConfig,
        *,
        conversation: list[ConversationMessage] | None = None,
        permission_mode: str | None = None,
        is_slash_command: bool = False,
    ) -> AsyncIterator[AgentEvent]:
        """Run a Codex agent via ``codex exec``.

        Conversation history and permission modes are not forwarded.
        """
        session_id = new_session_id()
        token = CancelToken()
        self.registry.register(session_id, token)
        try:
            yield SessionStarted(session_id=session_id)
            codex_path = await asyncio.to_thread(self.locate)
            if not codex_path:
                logger.warning("Codex session %s: codex CLI not found", session_id)
                yield ErrorEvent(message=CODEX_NOT_FOUND)
            else:
                execution = self._execute(session_id, token, prompt, config, codex_path)
                async with contextlib.aclosing(execution) as events:
                    async for event in events:
                        yield event
        finally:
            self.registry.unregister(session_id)
            logger.info(
                "Codex session %s ended cancelled=%s", session_id, token.cancelled,
            )
        yield Done()

    async def _execute(
        self,
        session_id: str,
        token: CancelToken,
        prompt: str,
        config: AgentConfig,
        codex_path: str,
    ) -> AsyncIterator[AgentEvent]:
        if token.cancelled:
            return

        cmd = build_codex_cmd(codex_path, prompt, config)
        logger.info(
            "Codex session %s starting model=%s cwd=%s cli=%s",
            session_id, config.model or "<default>",
            config.cwd or os.getcwd(), codex_path,
        )
        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_codex_env(config),
                cwd=config.cwd or None,
            )
        except OSError as exc:
            logger.warning("Codex session %s failed to start: %s", session_id, exc)
            yield ErrorEvent(message=f"Failed to start codex: {exc}")
            return

        token.add_callback(lambda: _signal_terminate(proc))
        communicate = asyncio.ensure_future(proc.communicate())
        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait(
                {communicate, cancel_wait}, return_when=asyncio.FIRST_COMPLETED,
            )
            if not communicate.done():
                await terminate_process(proc)
            stdout_bytes, stderr_bytes = await communicate
        finally:
            cancel_wait.cancel()
            await terminate_process(proc)
            if not communicate.done():
                communicate.cancel()

        stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
        stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
        output = parse_codex_output(stdout)

        text = output.text
        if text.strip():
            yield TextEvent(content=text)
        if output.has_usage:
            yield ResultEvent(
                input_tokens=output.input_tokens,
                cached_input_tokens=output.cached_input_tokens,
                output_tokens=output.output_tokens,
            )

        returncode = proc.returncode
        if returncode and not token.cancelled and not text.strip():
            logger.warning("Codex session %s exited rc=%s", session_id, returncode)
            yield ErrorEvent(message=classify_error(
                stderr.strip() or f"Codex exited with code {returncode}",
            ))
