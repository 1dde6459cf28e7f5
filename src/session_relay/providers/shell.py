"""Login shell provider used by the restricted and native modes."""

from __future__ import annotations

import os
from typing import List

from session_relay.providers.base import BaseProvider

DEFAULT_SHELL = "/bin/bash"


def login_shell() -> str:
    shell = os.environ.get("SHELL")
    if shell and os.path.isfile(shell) and os.access(shell, os.X_OK):
        return shell
    return DEFAULT_SHELL


class ShellProvider(BaseProvider):
    """Runs the user's login shell."""

    name = "shell"
    binary = "bash"

    def resolve_binary(self) -> str:
        shell = login_shell()
        if os.path.isfile(shell):
            return shell
        return super().resolve_binary()

    def build_pty_command(self, cwd: str) -> List[str]:
        return [self.resolve_binary(), "-l"]

    def build_exec_command(self, line: str) -> List[str]:
        return [self.resolve_binary(), "-lc", line]
