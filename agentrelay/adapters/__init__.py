"""Adapters package - the wire-level event protocol shared by all backends."""
from __future__ import annotations

from agentrelay.adapters.events import (
    AgentEvent,
    Done,
    ErrorEvent,
    InitEvent,
    ResultEvent,
    SessionStarted,
    StatusEvent,
    TextEvent,
    ToolResult,
    ToolUse,
    dict_to_event,
    event_to_dict,
)

__all__ = [
    "AgentEvent",
    "Done",
    "ErrorEvent",
    "InitEvent",
    "ResultEvent",
    "SessionStarted",
    "StatusEvent",
    "TextEvent",
    "ToolResult",
    "ToolUse",
    "dict_to_event",
    "event_to_dict",
]
