"""Provider manager registry."""

from __future__ import annotations

from typing import Dict, Optional, Type

from session_relay.models.enums import RunMode
from session_relay.models.protocol import OpenOptions
from session_relay.providers.base import BaseProvider
from session_relay.providers.claude_code import ClaudeCodeProvider
from session_relay.providers.codex import CodexProvider
from session_relay.providers.cursor import CursorAgentProvider
from session_relay.providers.opencode import OpenCodeProvider
from session_relay.providers.shell import ShellProvider


class UnknownProviderError(RuntimeError):
    """Raised when a provider key is not registered."""


class ProviderManager:
    """Factory for provider instances keyed by provider name."""

    _registry: Dict[str, Type[BaseProvider]] = {
        "shell": ShellProvider,
        "codex": CodexProvider,
        "claude": ClaudeCodeProvider,
        "opencode": OpenCodeProvider,
        "cursor": CursorAgentProvider,
    }

    def __init__(self, overrides: Optional[Dict[str, Type[BaseProvider]]] = None) -> None:
        self._registry = {**self._registry, **(overrides or {})}

    def create_provider(
        self,
        provider_key: str,
        options: Optional[OpenOptions] = None,
        variant: Optional[RunMode] = None,
    ) -> BaseProvider:
        if provider_key not in self._registry:
            raise UnknownProviderError(f"Provider '{provider_key}' is not registered.")
        provider_cls = self._registry[provider_key]
        if variant is not None and issubclass(provider_cls, CursorAgentProvider):
            return provider_cls(options=options, mode=variant)
        return provider_cls(options=options)

    def cursor(self, mode: RunMode = RunMode.AGENT) -> CursorAgentProvider:
        return self.create_provider("cursor", variant=mode)  # type: ignore[return-value]
