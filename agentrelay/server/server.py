"""HTTP + SSE server for agent runs.

Each ``POST /agent`` starts one run and streams its events back on the
same response. Runs are stopped from a separate request by session id.

Usage:
    agent-relay [--host HOST] [--port PORT] [--config FILE]
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from aiohttp import web

from agentrelay import __version__
from agentrelay.engine.binary_locator import AvailabilityCache
from agentrelay.engine.command_cache import CommandCache
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import UnknownProviderError
from agentrelay.engine.providers import (
    AgentConfig,
    ClaudeProvider,
    CodexProvider,
    ConversationMessage,
    ProviderKind,
    ProviderRegistry,
    build_provider_registry,
)
from agentrelay.server.codex_models import ModelInfo, list_codex_models
from agentrelay.server.sse import stream_events
from agentrelay.shared.commands import CODEX_COMMANDS, DEFAULT_CLAUDE_COMMANDS, merge_commands

logger = logging.getLogger(__name__)

_SLASH_COMMAND_RE = re.compile(r"^/\S+")

# Looks up a project's working directory by id; None if unknown.
ProjectResolver = Callable[[str], Awaitable[str | None]]
ModelLister = Callable[[str | None, str | None], Awaitable[list[ModelInfo]]]


def _error(message: str, status: int = 400) -> web.Response:
    return web.json_response({"error": message}, status=status)


class RelayServer:
    """HTTP routing for agent runs, stop requests and backend metadata.

    Thin adapter: run state lives in the providers' session registries
    and the command cache. This class only parses requests and wires
    runs to the SSE transport.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        providers: ProviderRegistry | None = None,
        command_cache: CommandCache | None = None,
        availability: AvailabilityCache | None = None,
        project_resolver: ProjectResolver | None = None,
        model_lister: ModelLister = list_codex_models,
    ) -> None:
        self._config = config or RelayConfig.from_env()
        self._host = self._config.host
        self._port = self._config.port
        self._started_at = time.monotonic()

        if command_cache is None:
            command_cache = CommandCache(
                self._config.command_cache_path,
                ttl_seconds=self._config.command_cache_ttl_seconds,
                probe_timeout=self._config.discovery_timeout_seconds,
            )
        self._command_cache = command_cache

        if providers is None:
            claude = ClaudeProvider(
                command_cache=command_cache,
                default_permission_mode=self._config.default_permission_mode,
                max_turns=self._config.max_turns,
                history_max_chars=self._config.history_max_chars,
                history_min_turns=self._config.history_min_turns,
            )
            providers = build_provider_registry(claude, CodexProvider())
            if command_cache.probe is None:
                command_cache.probe = claude.probe_slash_commands
        self._providers = providers

        self._availability = availability or AvailabilityCache(
            ttl_seconds=self._config.health_cache_ttl_seconds,
        )
        self._project_resolver = project_resolver
        self._model_lister = model_lister

        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._cors_preflight_middleware,
        ])
        self._app.on_response_prepare.append(self._add_cors_headers)
        self._setup_routes()
        logger.info(
            "RelayServer init host=%s port=%s providers=%s cache=%s",
            self._host, self._port, ",".join(self._providers.list_names()),
            self._command_cache.path,
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _cors_preflight_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            return web.Response(status=204, headers={
                "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type",
                "Access-Control-Max-Age": "600",
            })
        return await handler(request)

    async def _add_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        # Runs before headers are sent, so streamed responses get them too.
        origin = request.headers.get("Origin")
        if origin and origin in self._config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_root)
        r.add_get("/health", self._handle_health)
        r.add_post("/agent", self._handle_agent)
        r.add_post("/agent/stop/{session_id}", self._handle_stop)
        r.add_get("/agent/commands/{provider}", self._handle_commands)
        r.add_post("/agent/models/{provider}", self._handle_models)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("agent-relay listening on %s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    # ── HTTP handlers ──

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({
            "name": "agent-relay",
            "version": __version__,
            "endpoints": [
                "POST /agent - Run agent (SSE)",
                "POST /agent/stop/:sessionId - Stop agent",
                "GET /agent/commands/:provider - Slash commands",
                "POST /agent/models/:provider - Available models",
                "GET /health - Health check",
            ],
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        claude, codex = await asyncio.gather(
            asyncio.to_thread(self._availability.is_available, "claude"),
            asyncio.to_thread(self._availability.is_available, "codex"),
        )
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - self._started_at, 3),
            "clis": {"claude": claude, "codex": codex},
        })

    async def _resolve_project_cwd(self, project_id: Any) -> str | None:
        if not project_id or self._project_resolver is None:
            return None
        try:
            return await self._project_resolver(str(project_id))
        except Exception:
            logger.warning("Project lookup failed for %s; using default cwd", project_id, exc_info=True)
            return None

    async def _handle_agent(self, request: web.Request) -> web.StreamResponse:
        try:
            body = await request.json()
        except ValueError:
            return _error("Invalid JSON body")
        if not isinstance(body, dict):
            return _error("Request body must be a JSON object")

        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return _error("prompt is required")

        provider_name = body.get("provider")
        try:
            kind = ProviderKind.parse(str(provider_name) if provider_name is not None else None)
            provider = self._providers.get_or_raise(kind)
        except UnknownProviderError as exc:
            return _error(str(exc))

        model_config = body.get("modelConfig")
        cwd = await self._resolve_project_cwd(body.get("projectId"))
        config = AgentConfig.from_model_config(
            kind, model_config if isinstance(model_config, dict) else None, cwd,
        )

        raw_conversation = body.get("conversation")
        conversation = [
            ConversationMessage.from_dict(m)
            for m in (raw_conversation if isinstance(raw_conversation, list) else [])
            if isinstance(m, dict)
        ]

        is_slash_command = body.get("isSlashCommand")
        if not isinstance(is_slash_command, bool):
            is_slash_command = bool(_SLASH_COMMAND_RE.match(prompt.strip()))

        permission_mode = body.get("permissionMode")
        if not isinstance(permission_mode, str) or not permission_mode:
            permission_mode = None

        logger.info(
            "Agent request req=%s provider=%s prompt_chars=%d conversation=%d slash=%s cwd=%s",
            request.get("req_id", "unknown"), kind.value, len(prompt),
            len(conversation), is_slash_command, cwd or "<default>",
        )
        events = provider.run(
            prompt,
            config,
            conversation=conversation,
            permission_mode=permission_mode,
            is_slash_command=is_slash_command,
        )
        return await stream_events(request, events)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        if not self._providers.stop(session_id):
            return _error("Session not found", status=404)
        return web.json_response({"status": "stopped"})

    async def _handle_commands(self, request: web.Request) -> web.Response:
        try:
            kind = ProviderKind.parse(request.match_info["provider"])
        except UnknownProviderError as exc:
            return _error(str(exc))

        if kind is ProviderKind.CODEX:
            commands = CODEX_COMMANDS
        else:
            discovered = self._command_cache.get() or await self._command_cache.discover()
            if discovered:
                commands = merge_commands(discovered, DEFAULT_CLAUDE_COMMANDS)
            else:
                commands = DEFAULT_CLAUDE_COMMANDS
        return web.json_response([c.to_dict() for c in commands])

    async def _handle_models(self, request: web.Request) -> web.Response:
        try:
            kind = ProviderKind.parse(request.match_info["provider"])
        except UnknownProviderError:
            return web.json_response([])
        if kind is not ProviderKind.CODEX:
            return web.json_response([])

        body: Any = {}
        if request.can_read_body:
            try:
                body = await request.json()
            except ValueError:
                body = {}
        model_config = body.get("modelConfig") if isinstance(body, dict) else None
        if not isinstance(model_config, dict):
            model_config = {}

        models = await self._model_lister(
            model_config.get("apiKey") or None,
            model_config.get("baseUrl") or None,
        )
        return web.json_response([m.to_dict() for m in models])
