from __future__ import annotations

import json
from typing import Any

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from agentrelay.adapters.events import Done, SessionStarted, TextEvent, ToolUse
from agentrelay.server.sse import format_sse, stream_events


def _frames(body: str) -> list[dict[str, Any]]:
    frames = []
    for chunk in body.split("\n\n"):
        if chunk:
            assert chunk.startswith("data: ")
            frames.append(json.loads(chunk[len("data: "):]))
    return frames


def test_format_sse_frame() -> None:
    frame = format_sse(ToolUse(id="t1", name="Bash", input={"command": "ls"}))
    assert frame == (
        b'data: {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}\n\n'
    )


class SSEStreamTests(AioHTTPTestCase):
    async def get_application(self) -> web.Application:
        self.closed: list[str] = []
        app = web.Application()
        app.router.add_get("/ok", self._ok)
        app.router.add_get("/boom", self._boom)
        app.router.add_get("/trailing", self._trailing)
        return app

    async def _ok(self, request: web.Request) -> web.StreamResponse:
        async def events():
            yield SessionStarted(session_id="abc")
            yield TextEvent(content="hello")
            yield Done()

        return await stream_events(request, events())

    async def _boom(self, request: web.Request) -> web.StreamResponse:
        async def events():
            yield SessionStarted(session_id="abc")
            raise RuntimeError("backend exploded")

        return await stream_events(request, events())

    async def _trailing(self, request: web.Request) -> web.StreamResponse:
        async def events():
            try:
                yield Done()
                yield TextEvent(content="after done")
            finally:
                self.closed.append("events")

        return await stream_events(request, events())

    async def test_streams_frames_in_order(self) -> None:
        resp = await self.client.get("/ok")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache, no-transform"
        assert _frames(await resp.text()) == [
            {"type": "session", "sessionId": "abc"},
            {"type": "text", "content": "hello"},
            {"type": "done"},
        ]

    async def test_generator_exception_becomes_error_frame(self) -> None:
        resp = await self.client.get("/boom")
        assert resp.status == 200
        assert _frames(await resp.text()) == [
            {"type": "session", "sessionId": "abc"},
            {"type": "error", "message": "backend exploded"},
        ]

    async def test_stream_ends_at_done_and_closes_generator(self) -> None:
        resp = await self.client.get("/trailing")
        assert _frames(await resp.text()) == [{"type": "done"}]
        assert self.closed == ["events"]
