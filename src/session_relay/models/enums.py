"""Shared enums for Session Relay models."""

from __future__ import annotations

from enum import Enum


class SessionMode(str, Enum):
    RESTRICTED = "restricted"
    NATIVE = "native"
    CODEX = "codex"
    CLAUDE = "claude"
    OPENCODE = "opencode"
    CURSOR_AGENT = "cursor-cli-agent"
    CURSOR_PLAN = "cursor-cli-plan"
    CURSOR_ASK = "cursor-cli-ask"
    AGENT = "agent"
    PLAN = "plan"
    ASK = "ask"


class BackendKind(str, Enum):
    RESTRICTED_PTY = "restricted-pty"
    RESTRICTED_EXEC = "restricted-exec"
    NATIVE_EXEC = "native-exec"
    AGENT_PTY = "agent-pty"
    AGENT_EXEC = "agent-exec"

    @property
    def is_pty(self) -> bool:
        return self in (BackendKind.RESTRICTED_PTY, BackendKind.AGENT_PTY)

    @property
    def id_prefix(self) -> str:
        return _ID_PREFIXES[self]


_ID_PREFIXES = {
    BackendKind.RESTRICTED_PTY: "r",
    BackendKind.RESTRICTED_EXEC: "s",
    BackendKind.NATIVE_EXEC: "n",
    BackendKind.AGENT_PTY: "t",
    BackendKind.AGENT_EXEC: "x",
}


class RunMode(str, Enum):
    AGENT = "agent"
    PLAN = "plan"
    ASK = "ask"


class RunStrategy(str, Enum):
    LIVE = "LIVE"
    FILE = "FILE"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"
    TIMED_OUT = "TIMED_OUT"
