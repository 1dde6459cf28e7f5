"""Provider base classes."""

from __future__ import annotations

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from session_relay.models.protocol import OpenOptions


class ProviderInitializationError(RuntimeError):
    """Raised when a provider cannot start."""


class BinaryNotFoundError(ProviderInitializationError):
    """Raised when a provider executable cannot be located."""


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


class BaseProvider(ABC):
    """Describes how to launch one interactive CLI inside a session."""

    name: str = ""
    binary: str = ""
    env_override: Optional[str] = None
    install_hint: str = "Install it before launching the provider."

    def __init__(self, options: Optional[OpenOptions] = None) -> None:
        self.options = options or OpenOptions()

    def resolve_binary(self) -> str:
        """Return the absolute path of the provider executable."""
        if self.env_override:
            override = os.environ.get(self.env_override)
            if override and _is_executable(override):
                return override
        found = shutil.which(self.binary)
        if found:
            return found
        for candidate in self.extra_search_paths():
            if _is_executable(str(candidate)):
                return str(candidate)
        raise BinaryNotFoundError(self.missing_binary_message())

    def missing_binary_message(self) -> str:
        return f'Cannot find "{self.binary}". {self.install_hint}'

    def extra_search_paths(self) -> List[Path]:
        return []

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = "xterm-256color"
        env["COLORTERM"] = env.get("COLORTERM") or "truecolor"
        env.setdefault("LANG", "en_US.UTF-8")
        return env

    @abstractmethod
    def build_pty_command(self, cwd: str) -> List[str]:
        """Return the argv used to run the provider inside a pseudo-terminal."""

    def build_exec_command(self, line: str) -> List[str]:
        """Return the argv used to run one line when no pseudo-terminal is available."""
        raise ProviderInitializationError(f"Provider '{self.name}' has no exec mode.")

    def banner(self, cwd: str) -> Optional[str]:
        return None
