from __future__ import annotations

import json
import shutil
import tempfile
from pathlib import Path
from typing import Any

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from agentrelay.adapters.events import Done, SessionStarted, TextEvent
from agentrelay.engine.binary_locator import AvailabilityCache
from agentrelay.engine.command_cache import CommandCache
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.providers import build_provider_registry
from agentrelay.engine.providers.base import Provider
from agentrelay.engine.sessions import CancelToken
from agentrelay.server.codex_models import ModelInfo
from agentrelay.server.server import RelayServer
from agentrelay.shared.commands import CODEX_COMMANDS, DEFAULT_CLAUDE_COMMANDS


class _ScriptedProvider(Provider):
    """Echoes the prompt back and records how it was called."""

    def __init__(self, name: str) -> None:
        self._name = name
        super().__init__(locator=lambda tool: None)
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    async def run(self, prompt, config, *, conversation=None, permission_mode=None, is_slash_command=False):
        self.calls.append({
            "prompt": prompt,
            "config": config,
            "conversation": conversation,
            "permission_mode": permission_mode,
            "is_slash_command": is_slash_command,
        })
        yield SessionStarted(session_id=f"{self._name}-1")
        yield TextEvent(content=f"{self._name}: {prompt}")
        yield Done()


def _frames(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(chunk[len("data: "):])
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]


class RelayServerTests(AioHTTPTestCase):
    async def get_application(self) -> web.Application:
        self.tmpdir = Path(tempfile.mkdtemp(prefix="agent-relay-test-"))
        self.claude = _ScriptedProvider("claude")
        self.codex = _ScriptedProvider("codex")
        self.probe_calls = 0
        self.probe_result: list[str] | None = None
        self.model_calls: list[tuple[str | None, str | None]] = []

        async def _probe() -> list[str] | None:
            self.probe_calls += 1
            return self.probe_result

        async def _resolve(project_id: str) -> str | None:
            return {"p1": "/projects/one"}.get(project_id)

        async def _list_models(api_key: str | None, base_url: str | None) -> list[ModelInfo]:
            self.model_calls.append((api_key, base_url))
            return [ModelInfo(id="gpt-5", name="gpt-5")]

        self.command_cache = CommandCache(self.tmpdir / "commands.json", probe=_probe)
        config = RelayConfig(data_dir=self.tmpdir, cors_origins=["http://localhost:1420"])
        self.server = RelayServer(
            config,
            providers=build_provider_registry(self.claude, self.codex),
            command_cache=self.command_cache,
            availability=AvailabilityCache(locator=lambda tool: "/bin/claude" if tool == "claude" else None),
            project_resolver=_resolve,
            model_lister=_list_models,
        )
        return self.server.app

    async def asyncTearDown(self) -> None:
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    # ── Root and health ──

    async def test_root_lists_endpoints(self) -> None:
        resp = await self.client.get("/")
        assert resp.status == 200
        data = await resp.json()
        assert data["name"] == "agent-relay"
        assert "POST /agent - Run agent (SSE)" in data["endpoints"]

    async def test_health_reports_cli_availability(self) -> None:
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["clis"] == {"claude": True, "codex": False}
        assert "timestamp" in data
        assert data["uptime"] >= 0

    # ── POST /agent ──

    async def test_agent_streams_events(self) -> None:
        resp = await self.client.post("/agent", json={"prompt": "hello"})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert _frames(await resp.text()) == [
            {"type": "session", "sessionId": "claude-1"},
            {"type": "text", "content": "claude: hello"},
            {"type": "done"},
        ]
        call = self.claude.calls[0]
        assert call["is_slash_command"] is False
        assert call["permission_mode"] is None
        assert call["conversation"] == []

    async def test_agent_routes_alias_to_codex(self) -> None:
        resp = await self.client.post("/agent", json={
            "prompt": "fix it",
            "provider": "cli",
            "modelConfig": {"apiKey": "sk-1", "baseUrl": " ", "model": "o3"},
            "projectId": "p1",
        })
        assert _frames(await resp.text())[1] == {"type": "text", "content": "codex: fix it"}
        assert self.claude.calls == []
        config = self.codex.calls[0]["config"]
        assert config.api_key == "sk-1"
        assert config.base_url is None
        assert config.model == "o3"
        assert config.cwd == "/projects/one"

    async def test_agent_forwards_conversation_and_mode(self) -> None:
        await (await self.client.post("/agent", json={
            "prompt": "continue",
            "conversation": [
                {"role": "user", "content": "start"},
                {"role": "assistant", "content": "ok"},
                "junk",
            ],
            "permissionMode": "plan",
            "projectId": "unknown",
        })).text()
        call = self.claude.calls[0]
        assert [(m.role, m.content) for m in call["conversation"]] == [("user", "start"), ("assistant", "ok")]
        assert call["permission_mode"] == "plan"
        assert call["config"].cwd is None

    async def test_agent_detects_slash_commands(self) -> None:
        await (await self.client.post("/agent", json={"prompt": "  /compact keep tests"})).text()
        await (await self.client.post("/agent", json={"prompt": "/ not a command"})).text()
        await (await self.client.post("/agent", json={"prompt": "/review", "isSlashCommand": False})).text()
        assert [c["is_slash_command"] for c in self.claude.calls] == [True, False, False]

    async def test_agent_requires_prompt(self) -> None:
        for body in ({}, {"prompt": ""}, {"prompt": "   "}, {"prompt": 42}):
            resp = await self.client.post("/agent", json=body)
            assert resp.status == 400
            assert await resp.json() == {"error": "prompt is required"}

    async def test_agent_rejects_invalid_json(self) -> None:
        resp = await self.client.post(
            "/agent", data="{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert await resp.json() == {"error": "Invalid JSON body"}

    async def test_agent_rejects_non_object_body(self) -> None:
        resp = await self.client.post("/agent", json=["prompt"])
        assert resp.status == 400

    async def test_agent_rejects_unknown_provider(self) -> None:
        resp = await self.client.post("/agent", json={"prompt": "hi", "provider": "gemini"})
        assert resp.status == 400
        assert "gemini" in (await resp.json())["error"]
        assert self.claude.calls == [] and self.codex.calls == []

    # ── Stop ──

    async def test_stop_unknown_session(self) -> None:
        resp = await self.client.post("/agent/stop/deadbeef00")
        assert resp.status == 404
        assert await resp.json() == {"error": "Session not found"}

    async def test_stop_running_session(self) -> None:
        token = CancelToken()
        self.codex.registry.register("abc123", token)

        resp = await self.client.post("/agent/stop/abc123")
        assert resp.status == 200
        assert await resp.json() == {"status": "stopped"}
        assert token.cancelled

        resp = await self.client.post("/agent/stop/abc123")
        assert resp.status == 404

    # ── Commands ──

    async def test_codex_commands_are_static(self) -> None:
        resp = await self.client.get("/agent/commands/codex")
        assert resp.status == 200
        assert await resp.json() == [c.to_dict() for c in CODEX_COMMANDS]
        assert self.probe_calls == 0

    async def test_claude_commands_fall_back_to_defaults(self) -> None:
        resp = await self.client.get("/agent/commands/claude")
        assert await resp.json() == [c.to_dict() for c in DEFAULT_CLAUDE_COMMANDS]
        assert self.probe_calls == 1

    async def test_claude_commands_merge_discovered(self) -> None:
        self.probe_result = ["/my-custom", "compact"]
        resp = await self.client.get("/agent/commands/claude")
        data = await resp.json()
        assert data[0] == {"name": "my-custom", "description": "", "argumentHint": ""}
        assert data[1] == {
            "name": "compact",
            "description": "Compact conversation context",
            "argumentHint": "[instructions]",
        }
        assert len(data) == len(DEFAULT_CLAUDE_COMMANDS) + 1

        await self.client.get("/agent/commands/claude")
        assert self.probe_calls == 1

    async def test_commands_reject_unknown_provider(self) -> None:
        resp = await self.client.get("/agent/commands/gemini")
        assert resp.status == 400

    # ── Models ──

    async def test_codex_models_use_request_credentials(self) -> None:
        resp = await self.client.post("/agent/models/codex", json={
            "modelConfig": {"apiKey": "sk-2", "baseUrl": "https://proxy.test/v1"},
        })
        assert await resp.json() == [{"id": "gpt-5", "name": "gpt-5", "provider": "OpenAI"}]
        assert self.model_calls == [("sk-2", "https://proxy.test/v1")]

    async def test_codex_models_without_body(self) -> None:
        resp = await self.client.post("/agent/models/codex")
        assert resp.status == 200
        assert self.model_calls == [(None, None)]

    async def test_non_codex_models_are_empty(self) -> None:
        for provider in ("claude", "gemini"):
            resp = await self.client.post(f"/agent/models/{provider}")
            assert resp.status == 200
            assert await resp.json() == []
        assert self.model_calls == []

    # ── CORS ──

    async def test_cors_headers_for_allowed_origin(self) -> None:
        resp = await self.client.get("/health", headers={"Origin": "http://localhost:1420"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:1420"

        resp = await self.client.get("/health", headers={"Origin": "http://evil.test"})
        assert "Access-Control-Allow-Origin" not in resp.headers

    async def test_cors_headers_on_streamed_response(self) -> None:
        resp = await self.client.post(
            "/agent", json={"prompt": "hi"}, headers={"Origin": "http://localhost:1420"},
        )
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:1420"
        await resp.text()

    async def test_cors_preflight(self) -> None:
        resp = await self.client.options("/agent", headers={
            "Origin": "http://localhost:1420",
            "Access-Control-Request-Method": "POST",
        })
        assert resp.status == 204
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:1420"
