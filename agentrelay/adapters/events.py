"""Provider-independent events emitted by every agent run.

Each backend's native stream is normalized into these dataclasses.
A run always yields exactly one SessionStarted first and exactly one
Done last; ``error`` events may appear any number of times in between.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentEvent:
    """Base event. ``event_type`` is the wire discriminator."""
    event_type: str = ""


@dataclass
class SessionStarted(AgentEvent):
    event_type: str = "session"
    session_id: str = ""


@dataclass
class TextEvent(AgentEvent):
    event_type: str = "text"
    content: str = ""


@dataclass
class ToolUse(AgentEvent):
    event_type: str = "tool_use"
    id: str = ""
    name: str = ""
    # Always on the wire, even for tools called without arguments.
    input: Any = field(default_factory=dict)


@dataclass
class ToolResult(AgentEvent):
    event_type: str = "tool_result"
    tool_use_id: str = ""
    output: str = ""
    is_error: bool = False


@dataclass
class StatusEvent(AgentEvent):
    """Backend status line, with a best-effort permission-wait flag."""
    event_type: str = "status"
    permission_mode: str | None = None
    status_text: str = ""
    awaiting_permission: bool = False


@dataclass
class InitEvent(AgentEvent):
    event_type: str = "init"
    permission_mode: str | None = None
    slash_commands: list[str] | None = None


@dataclass
class ResultEvent(AgentEvent):
    event_type: str = "result"
    content: str | None = None
    cost: float | None = None
    duration: float | None = None
    input_tokens: int | None = None
    cached_input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass
class ErrorEvent(AgentEvent):
    event_type: str = "error"
    message: str = ""


@dataclass
class Done(AgentEvent):
    event_type: str = "done"


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "session": SessionStarted,
    "text": TextEvent,
    "tool_use": ToolUse,
    "tool_result": ToolResult,
    "status": StatusEvent,
    "init": InitEvent,
    "result": ResultEvent,
    "error": ErrorEvent,
    "done": Done,
}

# Python field name -> wire key
_WIRE_NAMES: dict[str, str] = {
    "session_id": "sessionId",
    "tool_use_id": "toolUseId",
    "is_error": "isError",
    "permission_mode": "permissionMode",
    "slash_commands": "slashCommands",
    "status_text": "statusText",
    "awaiting_permission": "awaitingPermission",
    "input_tokens": "inputTokens",
    "cached_input_tokens": "cachedInputTokens",
    "output_tokens": "outputTokens",
}
_FIELD_NAMES: dict[str, str] = {v: k for k, v in _WIRE_NAMES.items()}


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event to its JSON wire shape."""
    d: dict[str, Any] = {"type": event.event_type}
    for f in event.__dataclass_fields__:
        if f == "event_type":
            continue
        val = getattr(event, f)
        if val is not None:
            d[_WIRE_NAMES.get(f, f)] = val
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a wire dict back into a typed event."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    valid_fields = set(cls.__dataclass_fields__)
    filtered: dict[str, Any] = {}
    for key, value in data.items():
        name = _FIELD_NAMES.get(key, key)
        if name in valid_fields and name != "event_type":
            filtered[name] = value
    if cls is AgentEvent:
        filtered["event_type"] = event_type
    return cls(**filtered)


def is_terminal(event: AgentEvent) -> bool:
    return event.event_type == "done"
