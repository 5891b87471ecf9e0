"""Claude Agent SDK provider.

Wraps claude_agent_sdk.query() and normalizes its message stream
(assistant/user/system/result messages) into AgentEvents.
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import re
from typing import Any, AsyncIterator, Callable, Mapping

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
)
from agentrelay.engine.binary_locator import extended_path, locate_binary
from agentrelay.engine.command_cache import CommandCache
from agentrelay.engine.errors import API_KEY_ERROR, CLAUDE_NOT_FOUND, is_auth_failure
from agentrelay.engine.sessions import CancelToken, SessionRegistry, new_session_id

from .base import (
    AgentConfig,
    ConversationMessage,
    Provider,
    stream_until_cancelled,
)

logger = logging.getLogger(__name__)

ALLOWED_TOOLS = [
    "Read", "Edit", "Write", "Glob", "Grep", "Bash",
    "WebSearch", "WebFetch", "Task", "TodoWrite",
]

# Text blocks are deduplicated on this many leading characters.
TEXT_DEDUP_PREFIX = 100

_PERMISSION_WORDS_RE = re.compile(r"permission|approval|confirm")
_PENDING_WORDS_RE = re.compile(r"await|wait|required|request|pending")

_SDK_MESSAGE_TYPES = {
    "AssistantMessage": "assistant",
    "UserMessage": "user",
    "SystemMessage": "system",
    "ResultMessage": "result",
}


def format_conversation(
    conversation: list[ConversationMessage] | None,
    max_chars: int = 8000,
    min_turns: int = 3,
) -> str:
    """Render prior turns as a transcript prefix for the next prompt.

    Turns are picked newest-first until *max_chars* would be exceeded,
    but at least *min_turns* are kept when available.
    """
    if not conversation:
        return ""

    selected: list[str] = []
    total_chars = 0
    for message in reversed(conversation):
        role = "User" if message.role == "user" else "Assistant"
        formatted = f"{role}: {message.content}"
        if total_chars + len(formatted) > max_chars and len(selected) >= min_turns:
            break
        selected.insert(0, formatted)
        total_chars += len(formatted)

    return (
        "## Previous Conversation\n"
        + "\n\n".join(selected)
        + "\n\n---\n## Current Request\n"
    )


def status_text(record: Mapping[str, Any]) -> str:
    """First non-blank of status/message/text/detail/subtype."""
    for key in ("status", "message", "text", "detail", "subtype"):
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def is_awaiting_permission(record: Mapping[str, Any]) -> bool:
    """Best-effort guess whether the backend is blocked on user approval."""
    if record.get("awaitingPermission") is True or record.get("requiresPermission") is True:
        return True
    text = status_text(record).lower()
    if not text:
        return False
    return bool(_PERMISSION_WORDS_RE.search(text) and _PENDING_WORDS_RE.search(text))


def build_claude_env(
    config: AgentConfig,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the Claude CLI spawned by the SDK."""
    env = dict(os.environ if base_env is None else base_env)
    env["PATH"] = extended_path(env.get("PATH", ""))
    # The CLI refuses to start when it thinks it is nested in another session.
    env.pop("CLAUDECODE", None)

    if config.api_key:
        env["ANTHROPIC_AUTH_TOKEN"] = config.api_key
        env.pop("ANTHROPIC_API_KEY", None)
        if config.base_url:
            env["ANTHROPIC_BASE_URL"] = config.base_url
        else:
            env.pop("ANTHROPIC_BASE_URL", None)

    if config.model:
        env["ANTHROPIC_MODEL"] = config.model
    return env


def _sdk_env_overlay(env: Mapping[str, str], base_env: Mapping[str, str]) -> dict[str, str]:
    """The SDK layers ``options.env`` over os.environ, so removed keys are blanked."""
    overlay = dict(env)
    for key in base_env:
        if key not in env:
            overlay[key] = ""
    return overlay


def _block_to_dict(block: Any) -> dict[str, Any]:
    if isinstance(block, dict):
        return block
    if dataclasses.is_dataclass(block) and not isinstance(block, type):
        return dataclasses.asdict(block)
    return dict(getattr(block, "__dict__", {}))


def _message_kind(message: Any) -> str | None:
    """Record type for an SDK message, matching base classes too."""
    for cls in type(message).__mro__:
        kind = _SDK_MESSAGE_TYPES.get(cls.__name__)
        if kind is not None:
            return kind
    return None


def message_to_record(message: Any) -> dict[str, Any] | None:
    """Flatten an SDK message object to the CLI's JSON record shape.

    Dicts pass through unchanged. Unknown message classes return None.
    """
    if isinstance(message, dict):
        return message

    kind = _message_kind(message)
    if kind is None:
        return None

    if kind == "system":
        # Subtype classes carry typed fields next to the raw data dict.
        fields = {k: v for k, v in _block_to_dict(message).items() if k != "data"}
        data = getattr(message, "data", None) or {}
        return {
            **fields, **data,
            "type": "system",
            "subtype": getattr(message, "subtype", data.get("subtype")),
        }
    if kind == "result":
        return {**_block_to_dict(message), "type": "result"}

    content = getattr(message, "content", None)
    if isinstance(content, list):
        content = [_block_to_dict(block) for block in content]
    return {"type": kind, "message": {"content": content}}


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class ClaudeEventNormalizer:
    """Translate one run's SDK records into AgentEvents.

    Holds the run-local dedup state: text blocks by content prefix,
    tool calls by id.
    """

    def __init__(self, command_cache: CommandCache | None = None) -> None:
        self._command_cache = command_cache
        self._sent_text_keys: set[str] = set()
        self._sent_tool_ids: set[str] = set()

    def normalize(self, message: Any) -> list[AgentEvent]:
        record = message_to_record(message)
        if record is None:
            logger.debug("Skipping SDK message %s", type(message).__name__)
            return []

        kind = record.get("type")
        if kind == "assistant":
            return self._assistant(record)
        if kind == "user":
            return self._user(record)
        if kind == "system":
            return self._system(record)
        if kind == "result":
            return self._result(record)
        logger.debug("Unrecognized SDK record type: %r", kind)
        return []

    def _text(self, text: str) -> list[AgentEvent]:
        if not text:
            return []
        key = text[:TEXT_DEDUP_PREFIX]
        if key in self._sent_text_keys:
            return []
        self._sent_text_keys.add(key)
        return [TextEvent(content=text)]

    @staticmethod
    def _content_blocks(record: Mapping[str, Any]) -> list[dict[str, Any]]:
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    def _assistant(self, record: Mapping[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for block in self._content_blocks(record):
            if "text" in block:
                events.extend(self._text(str(block.get("text") or "")))
            elif "name" in block and "id" in block:
                tool_id = str(block["id"])
                if tool_id in self._sent_tool_ids:
                    continue
                self._sent_tool_ids.add(tool_id)
                events.append(ToolUse(
                    id=tool_id,
                    name=str(block["name"]),
                    input=block.get("input") or {},
                ))
        return events

    def _user(self, record: Mapping[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for block in self._content_blocks(record):
            if block.get("type") != "tool_result" and "tool_use_id" not in block:
                continue
            tool_use_id = block.get("tool_use_id") or block.get("toolUseId") or ""
            content = block.get("content")
            if content is None:
                output = ""
            elif isinstance(content, str):
                output = content
            else:
                output = json.dumps(content, default=str)
            events.append(ToolResult(
                tool_use_id=str(tool_use_id),
                output=output,
                is_error=bool(block.get("is_error")),
            ))
        return events

    def _system(self, record: Mapping[str, Any]) -> list[AgentEvent]:
        subtype = record.get("subtype")
        permission_mode = record.get("permissionMode") or None

        if subtype == "init":
            commands = record.get("slash_commands")
            if not isinstance(commands, list):
                commands = None
            elif self._command_cache is not None:
                self._command_cache.store(commands)
            return [InitEvent(permission_mode=permission_mode, slash_commands=commands)]

        if subtype == "status":
            return [StatusEvent(
                permission_mode=permission_mode,
                status_text=status_text(record),
                awaiting_permission=is_awaiting_permission(record),
            )]

        for key in ("message", "text", "detail"):
            value = record.get(key)
            if isinstance(value, str) and value.strip():
                return self._text(value.strip())
        logger.debug("Unrecognized system subtype: %r", subtype)
        return []

    def _result(self, record: Mapping[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        result_text = record.get("result")
        if isinstance(result_text, str):
            events.extend(self._text(result_text))

        usage = record.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        events.append(ResultEvent(
            content=record.get("subtype"),
            cost=record.get("total_cost_usd"),
            duration=record.get("duration_ms"),
            input_tokens=_optional_int(usage.get("input_tokens")),
            cached_input_tokens=_optional_int(usage.get("cache_read_input_tokens")),
            output_tokens=_optional_int(usage.get("output_tokens")),
        ))
        return events


def describe_failure(exc: BaseException, stderr_lines: list[str]) -> str:
    """Error message for a failed SDK stream, or the auth sentinel."""
    message = str(exc) or type(exc).__name__
    stderr_tail = "\n".join(line.rstrip() for line in stderr_lines[-10:])
    if is_auth_failure(message) or is_auth_failure(stderr_tail):
        return API_KEY_ERROR
    if stderr_tail:
        return f"{message}\nstderr: {stderr_tail}"
    return message


def _supported_options(options_cls: Any, kwargs: dict[str, Any]) -> dict[str, Any]:
    """Drop keyword arguments the installed SDK's options class lacks."""
    if not dataclasses.is_dataclass(options_cls):
        return kwargs
    known = {f.name for f in dataclasses.fields(options_cls)}
    dropped = sorted(set(kwargs) - known)
    if dropped:
        logger.debug("ClaudeAgentOptions lacks %s; omitting", ", ".join(dropped))
    return {k: v for k, v in kwargs.items() if k in known}


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK.

    Auth: uses whatever the local CLI is logged in with, unless the
    run's AgentConfig carries an API key.
    """

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        locator: Callable[[str], str | None] = locate_binary,
        *,
        command_cache: CommandCache | None = None,
        default_permission_mode: str = "bypassPermissions",
        max_turns: int = 200,
        history_max_chars: int = 8000,
        history_min_turns: int = 3,
    ) -> None:
        super().__init__(registry, locator)
        self._command_cache = command_cache
        self._default_permission_mode = default_permission_mode
        self._max_turns = max_turns
        self._history_max_chars = history_max_chars
        self._history_min_turns = history_min_turns

    @property
    def name(self) -> str:
        return "claude"

    async def run(
        self,
        prompt: str,
        config: AgentConfig,
        *,
        conversation: list[ConversationMessage] | None = None,
        permission_mode: str | None = None,
        is_slash_command: bool = False,
    ) -> AsyncIterator[AgentEvent]:
        """Run a Claude agent session via the SDK."""
        session_id = new_session_id()
        token = CancelToken()
        self.registry.register(session_id, token)
        try:
            yield SessionStarted(session_id=session_id)
            claude_path = await asyncio.to_thread(self.locate)
            if not claude_path:
                logger.warning("Claude session %s: claude CLI not found", session_id)
                yield ErrorEvent(message=CLAUDE_NOT_FOUND)
            else:
                if not is_slash_command:
                    prompt = format_conversation(
                        conversation,
                        max_chars=self._history_max_chars,
                        min_turns=self._history_min_turns,
                    ) + prompt
                stream = self._stream(
                    session_id, token, prompt, config, claude_path,
                    permission_mode or self._default_permission_mode,
                )
                async with contextlib.aclosing(stream) as events:
                    async for event in events:
                        yield event
        finally:
            self.registry.unregister(session_id)
            logger.info(
                "Claude session %s ended cancelled=%s", session_id, token.cancelled,
            )
        yield Done()

    async def _stream(
        self,
        session_id: str,
        token: CancelToken,
        prompt: str,
        config: AgentConfig,
        claude_path: str,
        permission_mode: str,
    ) -> AsyncIterator[AgentEvent]:
        try:
            from claude_agent_sdk import query, ClaudeAgentOptions
        except ImportError:
            yield ErrorEvent(message="claude_agent_sdk not installed")
            return

        stderr_lines: list[str] = []

        def _capture_stderr(line: str) -> None:
            stderr_lines.append(line)
            logger.debug("claude stderr: %s", line.rstrip())

        env = build_claude_env(config)
        options_kwargs = dict(
            tools={"type": "preset", "preset": "claude_code"},
            allowed_tools=list(ALLOWED_TOOLS),
            setting_sources=["user", "project"],
            permission_mode=permission_mode,
            max_turns=self._max_turns,
            cwd=config.cwd,
            model=config.model,
            cli_path=claude_path,
            env=_sdk_env_overlay(env, os.environ),
            stderr=_capture_stderr,
        )
        options = ClaudeAgentOptions(**_supported_options(ClaudeAgentOptions, options_kwargs))
        logger.info(
            "Claude session %s starting mode=%s model=%s cwd=%s cli=%s",
            session_id, permission_mode, config.model or "<default>",
            config.cwd or os.getcwd(), claude_path,
        )

        normalizer = ClaudeEventNormalizer(self._command_cache)
        try:
            messages = stream_until_cancelled(
                lambda: query(prompt=prompt, options=options), token,
            )
            async with contextlib.aclosing(messages):
                async for message in messages:
                    for event in normalizer.normalize(message):
                        yield event
        except Exception as exc:
            logger.warning("Claude session %s failed: %s", session_id, exc)
            yield ErrorEvent(message=describe_failure(exc, stderr_lines))

    async def probe_slash_commands(self) -> list[str] | None:
        """Start a throwaway run just long enough to read its init event."""
        events = self.run(
            "/help", AgentConfig(), permission_mode="plan", is_slash_command=True,
        )
        async with contextlib.aclosing(events):
            async for event in events:
                if isinstance(event, InitEvent):
                    return event.slash_commands
                if isinstance(event, ErrorEvent):
                    logger.info("Slash command probe failed: %s", event.message)
                    return None
        return None
