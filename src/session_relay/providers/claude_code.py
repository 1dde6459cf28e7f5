"""Claude Code provider integration."""

from __future__ import annotations

from typing import List

from session_relay.providers.base import BaseProvider


class ClaudeCodeProvider(BaseProvider):
    name = "claude"
    binary = "claude"
    env_override = "CLAUDE_BIN"
    install_hint = "Install Claude Code (npm install -g @anthropic-ai/claude-code) or set CLAUDE_BIN=/absolute/path/to/claude."

    def build_pty_command(self, cwd: str) -> List[str]:
        command = [self.resolve_binary()]
        if self.options.resume:
            command.extend(["--resume", self.options.resume])
        if self.options.model:
            command.extend(["--model", self.options.model])
        if self.options.prompt:
            command.append(self.options.prompt)
        return command
