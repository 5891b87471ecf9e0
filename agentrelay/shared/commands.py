"""Static slash command catalogue and merging with discovered commands."""

from __future__ import annotations

from agentrelay.engine.command_cache import SlashCommandInfo


def _catalogue(entries: list[tuple[str, str, str]]) -> list[SlashCommandInfo]:
    return [
        SlashCommandInfo(name=name, description=description, argument_hint=hint)
        for name, description, hint in entries
    ]


# Discovered commands from init events are merged on top of this list.
DEFAULT_CLAUDE_COMMANDS: list[SlashCommandInfo] = _catalogue([
    ("help", "Show available commands", ""),
    ("compact", "Compact conversation context", "[instructions]"),
    ("clear", "Clear conversation history", ""),
    ("review", "Code review", ""),
    ("usage", "Show token usage information", ""),
    ("cost", "Show cost information", ""),
    ("model", "Show or change the model", "[model-name]"),
    ("permissions", "View and manage permissions", "[mode]"),
    ("init", "Initialize a CLAUDE.md file", ""),
    ("memory", "Edit CLAUDE.md", ""),
    ("config", "Edit config", ""),
    ("login", "Log in to your account", ""),
    ("logout", "Log out", ""),
    ("doctor", "Diagnose issues", ""),
    ("bug", "Report a bug", ""),
    ("status", "Show current session status", ""),
    ("mcp", "Show MCP server status", ""),
    ("allowed-tools", "Manage allowed tools", ""),
    ("terminal", "Open a terminal", ""),
    ("vim", "Toggle vim keybindings", ""),
    ("theme", "Change the theme", "[theme-name]"),
    ("undo", "Undo last file changes", ""),
    ("diff", "Show recent code changes", ""),
    ("pr-comments", "Show PR review comments", ""),
    ("search", "Search the codebase", "<query>"),
    ("add-dir", "Add a directory to context", "<path>"),
])

CODEX_COMMANDS: list[SlashCommandInfo] = _catalogue([
    ("help", "Show available commands", ""),
    ("usage", "Show token usage from latest Codex turn", ""),
    ("model", "Change the model", "<model-name>"),
    ("approval", "Change approval mode", "<mode>"),
    ("undo", "Undo last file changes", ""),
    ("clear", "Clear conversation history", ""),
    ("history", "Show conversation history", ""),
    ("compact", "Compact conversation context", ""),
])

_KNOWN_COMMANDS: dict[str, SlashCommandInfo] = {
    c.name: c for c in DEFAULT_CLAUDE_COMMANDS
}


def merge_commands(
    primary: list[SlashCommandInfo],
    fallback: list[SlashCommandInfo],
) -> list[SlashCommandInfo]:
    """Discovered commands first, then fallback entries not already present.

    A discovered command without a description borrows the catalogue's
    description and argument hint.
    """
    merged: dict[str, SlashCommandInfo] = {}
    for cmd in primary:
        known = _KNOWN_COMMANDS.get(cmd.name)
        if not cmd.description and known is not None:
            cmd = SlashCommandInfo(
                name=cmd.name,
                description=known.description,
                argument_hint=known.argument_hint,
            )
        merged.setdefault(cmd.name, cmd)
    for cmd in fallback:
        merged.setdefault(cmd.name, cmd)
    return list(merged.values())
