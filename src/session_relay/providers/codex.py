"""OpenAI Codex provider integration."""

from __future__ import annotations

from typing import List, Optional

from session_relay.providers.base import BaseProvider


class CodexProvider(BaseProvider):
    """Codex CLI: interactive TUI in a pty, ``codex exec`` per line otherwise."""

    name = "codex"
    binary = "codex"
    env_override = "CODEX_BIN"
    install_hint = "Install it or set CODEX_BIN=/absolute/path/to/codex."

    def build_pty_command(self, cwd: str) -> List[str]:
        # The alternate screen breaks snapshotting inside an embedded terminal.
        return [self.resolve_binary(), "--no-alt-screen"]

    def build_exec_command(self, line: str) -> List[str]:
        return [self.resolve_binary(), "exec", "--skip-git-repo-check", line]

    def banner(self, cwd: str) -> Optional[str]:
        return (
            "[codex] ready (non-interactive exec mode)\r\n"
            f"[codex] cwd: {cwd}\r\n"
            "Type your instruction, press Enter.\r\n"
        )
