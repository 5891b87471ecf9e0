"""Server-Sent Events transport for agent runs.

Each AgentEvent becomes one ``data: <json>\\n\\n`` frame, written and
flushed as soon as the run yields it.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import AsyncGenerator

from aiohttp import web

from agentrelay.adapters.events import AgentEvent, ErrorEvent, event_to_dict, is_terminal

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: AgentEvent) -> bytes:
    return f"data: {json.dumps(event_to_dict(event), default=str)}\n\n".encode("utf-8")


async def stream_events(
    request: web.Request,
    events: AsyncGenerator[AgentEvent, None],
) -> web.StreamResponse:
    """Relay *events* to the client as an SSE response.

    An exception from *events* becomes a final ``error`` frame. A client
    disconnect closes *events*, which runs its cleanup.
    """
    response = web.StreamResponse(status=200, headers=SSE_HEADERS)
    await response.prepare(request)

    req_id = request.get("req_id", "unknown")
    sent = 0
    try:
        async with contextlib.aclosing(events):
            async for event in events:
                await response.write(format_sse(event))
                sent += 1
                if is_terminal(event):
                    break
    except ConnectionResetError:
        logger.info("SSE client disconnected req=%s after %d events", req_id, sent)
        return response
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled req=%s after %d events", req_id, sent)
        raise
    except Exception as exc:
        logger.exception("SSE stream failed req=%s after %d events", req_id, sent)
        with contextlib.suppress(ConnectionResetError):
            await response.write(format_sse(ErrorEvent(message=str(exc) or type(exc).__name__)))

    with contextlib.suppress(ConnectionResetError):
        await response.write_eof()
    logger.debug("SSE stream closed req=%s events=%d", req_id, sent)
    return response
