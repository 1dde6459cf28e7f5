"""Cursor CLI (``agent``) provider integration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from session_relay.models.enums import RunMode
from session_relay.models.protocol import OpenOptions
from session_relay.providers.base import BaseProvider

STRIPPED_ENV_PREFIXES = ("CURSOR_", "VSCODE_")


def clean_env() -> Dict[str, str]:
    """Copy of the environment without editor-injected variables.

    The CLI changes behaviour when it believes it runs inside the Cursor
    editor, so those variables are removed.
    """
    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith(STRIPPED_ENV_PREFIXES)
    }
    local_bin = str(Path.home() / ".local" / "bin")
    env["PATH"] = os.pathsep.join(filter(None, [local_bin, os.environ.get("PATH", "")]))
    env.setdefault("LANG", "en_US.UTF-8")
    return env


class CursorAgentProvider(BaseProvider):
    """Cursor's ``agent`` CLI in one of its three modes."""

    name = "cursor"
    binary = "agent"
    env_override = "AGENT_BIN"
    install_hint = "Install Cursor CLI: curl https://cursor.com/install -fsS | bash"

    def __init__(self, options: Optional[OpenOptions] = None, mode: RunMode = RunMode.AGENT) -> None:
        super().__init__(options)
        self.mode = RunMode(mode)

    def extra_search_paths(self) -> List[Path]:
        return [Path.home() / ".local" / "bin" / "agent"]

    def build_env(self) -> Dict[str, str]:
        env = clean_env()
        env["TERM"] = "xterm-256color"
        env["COLORTERM"] = env.get("COLORTERM") or "truecolor"
        env["FORCE_COLOR"] = "1"
        return env

    def _mode_args(self) -> List[str]:
        if self.mode is RunMode.PLAN:
            return ["--mode=plan"]
        if self.mode is RunMode.ASK:
            return ["--mode=ask"]
        return []

    def build_pty_command(self, cwd: str) -> List[str]:
        command = [self.resolve_binary(), *self._mode_args()]
        if self.options.resume:
            command.extend(["--resume", self.options.resume])
        if self.options.model:
            command.append(f"--model={self.options.model}")
        if self.options.prompt:
            command.append(self.options.prompt)
        return command

    def build_stream_command(
        self,
        prompt: str,
        model: Optional[str] = None,
        resume: Optional[str] = None,
        force: bool = True,
    ) -> List[str]:
        """Headless print mode emitting one JSON object per line."""
        command = [
            self.resolve_binary(),
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--stream-partial-output",
            f"--model={(model or '').strip() or 'auto'}",
        ]
        if resume and resume.strip():
            command.append(f"--resume={resume.strip()}")
        if force:
            command.append("--force")
        command.extend(self._mode_args())
        return command

    def build_run_env(self) -> Dict[str, str]:
        return clean_env()
