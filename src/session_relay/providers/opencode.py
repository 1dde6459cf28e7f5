"""OpenCode provider integration."""

from __future__ import annotations

from typing import List

from session_relay.providers.base import BaseProvider


class OpenCodeProvider(BaseProvider):
    name = "opencode"
    binary = "opencode"
    env_override = "OPENCODE_BIN"
    install_hint = "Install OpenCode (https://opencode.ai/docs/) or set OPENCODE_BIN=/absolute/path/to/opencode."

    def build_pty_command(self, cwd: str) -> List[str]:
        return [self.resolve_binary(), cwd]
