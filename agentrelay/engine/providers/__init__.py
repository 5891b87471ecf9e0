"""Provider abstraction for the SDK-backed and CLI-spawned agents."""
from .base import AgentConfig, ConversationMessage, Provider, ProviderKind
from .registry import ProviderRegistry, build_provider_registry
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider

__all__ = [
    "AgentConfig",
    "ConversationMessage",
    "Provider",
    "ProviderKind",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "CodexProvider",
]
