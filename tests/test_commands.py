from __future__ import annotations

from agentrelay.engine.command_cache import SlashCommandInfo
from agentrelay.shared.commands import CODEX_COMMANDS, DEFAULT_CLAUDE_COMMANDS, merge_commands


def test_catalogues_have_unique_names() -> None:
    for catalogue in (DEFAULT_CLAUDE_COMMANDS, CODEX_COMMANDS):
        names = [c.name for c in catalogue]
        assert len(names) == len(set(names))
        assert all(not n.startswith("/") for n in names)


def test_merge_puts_discovered_first_and_enriches() -> None:
    merged = merge_commands(
        [SlashCommandInfo("deploy"), SlashCommandInfo("model")],
        DEFAULT_CLAUDE_COMMANDS,
    )
    assert [c.name for c in merged[:3]] == ["deploy", "model", "help"]
    assert merged[0].description == ""
    assert merged[1].description == "Show or change the model"
    assert merged[1].argument_hint == "[model-name]"
    assert [c.name for c in merged].count("model") == 1


def test_merge_keeps_discovered_description() -> None:
    merged = merge_commands(
        [SlashCommandInfo("help", "Custom help text")],
        [SlashCommandInfo("help", "Show available commands"), SlashCommandInfo("clear")],
    )
    assert merged == [
        SlashCommandInfo("help", "Custom help text"),
        SlashCommandInfo("clear"),
    ]


def test_merge_with_nothing_discovered_is_fallback() -> None:
    assert merge_commands([], CODEX_COMMANDS) == CODEX_COMMANDS
