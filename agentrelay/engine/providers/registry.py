"""Provider registry: maps provider kinds to Provider instances."""
from __future__ import annotations

import logging

from agentrelay.engine.errors import UnknownProviderError

from .base import Provider, ProviderKind

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of the configured backends, in stop-lookup order."""

    def __init__(self) -> None:
        self._providers: dict[ProviderKind, Provider] = {}

    def register(self, kind: ProviderKind, provider: Provider) -> None:
        self._providers[kind] = provider
        logger.info("Provider registered: %s", kind.value)

    def get(self, kind: ProviderKind) -> Provider | None:
        return self._providers.get(kind)

    def get_or_raise(self, kind: ProviderKind) -> Provider:
        provider = self._providers.get(kind)
        if provider is None:
            raise UnknownProviderError(kind.value, self.list_names())
        return provider

    def list_names(self) -> list[str]:
        return [kind.value for kind in self._providers]

    def stop(self, session_id: str) -> bool:
        """Cancel *session_id* on whichever backend owns it."""
        for kind, provider in self._providers.items():
            if provider.stop(session_id):
                logger.info("Stopped %s session %s", kind.value, session_id)
                return True
        return False


def build_provider_registry(
    claude: Provider,
    codex: Provider,
) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(ProviderKind.CLAUDE, claude)
    registry.register(ProviderKind.CODEX, codex)
    return registry
