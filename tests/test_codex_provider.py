from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import patch

import pytest

from agentrelay.adapters.events import (
    Done,
    ErrorEvent,
    ResultEvent,
    SessionStarted,
    TextEvent,
)
from agentrelay.engine.errors import API_KEY_ERROR, CODEX_NOT_FOUND
from agentrelay.engine.providers.base import AgentConfig, ProviderKind, terminate_process
from agentrelay.engine.providers.codex_provider import (
    CodexProvider,
    build_codex_cmd,
    build_codex_env,
    parse_codex_output,
)


def _jsonl(*records: Any) -> str:
    return "\n".join(json.dumps(r) for r in records) + "\n"


def _agent_message(text: str, item_id: str = "item_0") -> dict[str, Any]:
    return {"type": "item.completed", "item": {"id": item_id, "type": "agent_message", "text": text}}


def _usage(inp: int, cached: int, out: int) -> dict[str, Any]:
    return {
        "type": "turn.completed",
        "usage": {"input_tokens": inp, "cached_input_tokens": cached, "output_tokens": out},
    }


class _FakeProcess:
    """Minimal asyncio.subprocess.Process stand-in."""

    def __init__(
        self,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        *,
        hang: bool = False,
        ignore_term: bool = False,
    ) -> None:
        self._stdout = stdout.encode()
        self._stderr = stderr.encode()
        self._final_returncode = returncode
        self._hang = hang
        self._ignore_term = ignore_term
        self._exited = asyncio.Event()
        self.returncode: int | None = None
        self.pid = 4242
        self.terminated = False
        self.killed = False

    def _exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def communicate(self) -> tuple[bytes, bytes]:
        if not self._hang:
            self._exit(self._final_returncode)
        await self._exited.wait()
        return self._stdout, self._stderr

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self._ignore_term:
            self._exit(-15)

    def kill(self) -> None:
        self.killed = True
        self._exit(-9)


class _Spawner:
    def __init__(self, proc: _FakeProcess | None = None, error: Exception | None = None) -> None:
        self.proc = proc
        self.error = error
        self.calls: list[tuple[tuple[str, ...], dict[str, Any]]] = []
        self.spawned = asyncio.Event()

    async def __call__(self, *args: str, **kwargs: Any) -> _FakeProcess:
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        self.spawned.set()
        return self.proc


def _provider(found: bool = True) -> CodexProvider:
    return CodexProvider(locator=lambda name: f"/usr/local/bin/{name}" if found else None)


_CONFIG = AgentConfig(provider=ProviderKind.CODEX)


async def _collect(provider: CodexProvider, spawner: _Spawner, config: AgentConfig = _CONFIG) -> list[Any]:
    with patch("asyncio.create_subprocess_exec", spawner):
        return [e async for e in provider.run("fix the bug", config)]


# ── Output parsing ──

def test_parse_output_keeps_malformed_lines_and_usage() -> None:
    stdout = (
        '{"type": "thread.started", "thread_id": "th_1"}\n'
        "warning: not json\n"
        + _jsonl(
            _agent_message("Hello"),
            {"type": "item.completed", "item": {"type": "command_execution", "command": "ls"}},
            _usage(10, 2, 5),
        )
        + "[1, 2]\n"
    )
    output = parse_codex_output(stdout)
    assert output.messages == ["warning: not json", "Hello", "[1, 2]"]
    assert output.text == "warning: not json\nHello\n[1, 2]"
    assert (output.input_tokens, output.cached_input_tokens, output.output_tokens) == (10, 2, 5)
    assert output.has_usage


def test_parse_output_last_usage_wins() -> None:
    output = parse_codex_output(_jsonl(_usage(1, 0, 1), _usage(30, 10, 7)))
    assert (output.input_tokens, output.cached_input_tokens, output.output_tokens) == (30, 10, 7)
    assert output.messages == []


def test_parse_output_empty() -> None:
    output = parse_codex_output("\n\n")
    assert output.text == ""
    assert not output.has_usage


# ── Command and environment ──

def test_build_cmd_with_cwd_and_model() -> None:
    cmd = build_codex_cmd(
        "/bin/codex", "do it", AgentConfig(provider=ProviderKind.CODEX, cwd="/repo", model="gpt-5"),
    )
    assert cmd == [
        "/bin/codex", "exec", "--json", "--skip-git-repo-check",
        "-C", "/repo", "-c", 'model="gpt-5"', "do it",
    ]


def test_build_cmd_minimal() -> None:
    assert build_codex_cmd("/bin/codex", "hi", _CONFIG) == [
        "/bin/codex", "exec", "--json", "--skip-git-repo-check", "hi",
    ]


def test_build_cmd_quotes_model_as_toml_string() -> None:
    config = AgentConfig(provider=ProviderKind.CODEX, model='we"ird\\name')
    cmd = build_codex_cmd("/bin/codex", "hi", config)
    assert cmd[cmd.index("-c") + 1] == 'model="we\\"ird\\\\name"'


def test_build_env_key_without_base_url_clears_ambient_url() -> None:
    base = {"PATH": "/usr/bin", "OPENAI_BASE_URL": "https://old.test"}
    env = build_codex_env(AgentConfig(provider=ProviderKind.CODEX, api_key="sk-1", model="o3"), base)
    assert env["OPENAI_API_KEY"] == "sk-1"
    assert "OPENAI_BASE_URL" not in env
    assert env["CODEX_MODEL"] == "o3"


def test_build_env_base_url_without_key() -> None:
    env = build_codex_env(
        AgentConfig(provider=ProviderKind.CODEX, base_url="https://proxy.test/v1"), {"PATH": ""},
    )
    assert env["OPENAI_BASE_URL"] == "https://proxy.test/v1"
    assert "OPENAI_API_KEY" not in env


# ── Runs ──

@pytest.mark.asyncio
async def test_run_emits_text_and_usage() -> None:
    proc = _FakeProcess(stdout=_jsonl(_agent_message("Hello"), _agent_message("World"), _usage(12, 4, 6)))
    spawner = _Spawner(proc)
    provider = _provider()
    events = await _collect(provider, spawner)

    assert isinstance(events[0], SessionStarted)
    assert events[1:] == [
        TextEvent(content="Hello\nWorld"),
        ResultEvent(input_tokens=12, cached_input_tokens=4, output_tokens=6),
        Done(),
    ]
    args, kwargs = spawner.calls[0]
    assert args[:4] == ("/usr/local/bin/codex", "exec", "--json", "--skip-git-repo-check")
    assert args[-1] == "fix the bug"
    assert kwargs["stdin"] == asyncio.subprocess.DEVNULL
    assert len(provider.registry) == 0


@pytest.mark.asyncio
async def test_run_passes_cwd_to_subprocess() -> None:
    spawner = _Spawner(_FakeProcess())
    await _collect(_provider(), spawner, AgentConfig(provider=ProviderKind.CODEX, cwd="/work"))
    args, kwargs = spawner.calls[0]
    assert kwargs["cwd"] == "/work"
    assert args[4:6] == ("-C", "/work")


@pytest.mark.asyncio
async def test_auth_failure_maps_to_sentinel() -> None:
    spawner = _Spawner(_FakeProcess(stderr="Error: 401 Unauthorized", returncode=1))
    events = await _collect(_provider(), spawner)
    assert events[1:] == [ErrorEvent(message=API_KEY_ERROR), Done()]


@pytest.mark.asyncio
async def test_nonzero_exit_reports_stderr() -> None:
    spawner = _Spawner(_FakeProcess(stderr="model not available\n", returncode=1))
    events = await _collect(_provider(), spawner)
    assert events[1:] == [ErrorEvent(message="model not available"), Done()]


@pytest.mark.asyncio
async def test_nonzero_exit_without_stderr_reports_code() -> None:
    spawner = _Spawner(_FakeProcess(returncode=2))
    events = await _collect(_provider(), spawner)
    assert events[1:] == [ErrorEvent(message="Codex exited with code 2"), Done()]


@pytest.mark.asyncio
async def test_text_output_suppresses_exit_error() -> None:
    spawner = _Spawner(_FakeProcess(stdout=_jsonl(_agent_message("partial answer")), stderr="boom", returncode=1))
    events = await _collect(_provider(), spawner)
    assert events[1:] == [TextEvent(content="partial answer"), Done()]


@pytest.mark.asyncio
async def test_missing_cli_reports_sentinel() -> None:
    spawner = _Spawner(_FakeProcess())
    events = await _collect(_provider(found=False), spawner)
    assert [type(e) for e in events] == [SessionStarted, ErrorEvent, Done]
    assert events[1].message == CODEX_NOT_FOUND
    assert spawner.calls == []


@pytest.mark.asyncio
async def test_spawn_failure_is_reported() -> None:
    spawner = _Spawner(error=PermissionError("Permission denied"))
    events = await _collect(_provider(), spawner)
    assert isinstance(events[1], ErrorEvent)
    assert events[1].message.startswith("Failed to start codex:")
    assert events[2:] == [Done()]


@pytest.mark.asyncio
async def test_stop_terminates_process_without_error() -> None:
    proc = _FakeProcess(stderr="interrupted", hang=True)
    spawner = _Spawner(proc)
    provider = _provider()

    with patch("asyncio.create_subprocess_exec", spawner):
        run = provider.run("long task", _CONFIG)
        started = await run.__anext__()

        async def _stop_when_spawned() -> None:
            await spawner.spawned.wait()
            assert provider.stop(started.session_id) is True

        stopper = asyncio.create_task(_stop_when_spawned())
        rest = await asyncio.wait_for(_drain(run), timeout=5)
        await stopper

    assert rest == [Done()]
    assert proc.terminated
    assert not proc.killed
    assert len(provider.registry) == 0


@pytest.mark.asyncio
async def test_consumer_cancel_terminates_process() -> None:
    proc = _FakeProcess(hang=True)
    spawner = _Spawner(proc)
    provider = _provider()

    with patch("asyncio.create_subprocess_exec", spawner):
        run = provider.run("long task", _CONFIG)
        await run.__anext__()

        async def _next() -> Any:
            return await run.__anext__()

        pending = asyncio.create_task(_next())
        await spawner.spawned.wait()
        await asyncio.sleep(0)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

    assert proc.terminated
    assert len(provider.registry) == 0


@pytest.mark.asyncio
async def test_terminate_process_kills_after_grace() -> None:
    proc = _FakeProcess(hang=True, ignore_term=True)
    await terminate_process(proc, grace_seconds=0.05)
    assert proc.terminated
    assert proc.killed
    assert proc.returncode == -9


@pytest.mark.asyncio
async def test_terminate_process_skips_exited() -> None:
    proc = _FakeProcess()
    await proc.communicate()
    await terminate_process(proc)
    assert not proc.terminated


async def _drain(run: Any) -> list[Any]:
    return [e async for e in run]
