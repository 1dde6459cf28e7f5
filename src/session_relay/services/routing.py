"""Mode to backend routing table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from session_relay.models.enums import BackendKind, RunMode, SessionMode


class UnknownModeError(RuntimeError):
    """Raised when an open request names a mode with no route."""


@dataclass(frozen=True)
class Route:
    """Preferred backend for a mode plus the degraded backend used when no pty is available."""

    preferred: BackendKind
    fallback: Optional[BackendKind]
    provider: str
    variant: Optional[RunMode] = None


ROUTES: Dict[SessionMode, Route] = {
    SessionMode.RESTRICTED: Route(BackendKind.RESTRICTED_PTY, BackendKind.RESTRICTED_EXEC, "shell"),
    SessionMode.NATIVE: Route(BackendKind.NATIVE_EXEC, None, "shell"),
    SessionMode.CODEX: Route(BackendKind.AGENT_PTY, BackendKind.AGENT_EXEC, "codex"),
    SessionMode.CLAUDE: Route(BackendKind.AGENT_PTY, None, "claude"),
    SessionMode.OPENCODE: Route(BackendKind.AGENT_PTY, None, "opencode"),
    SessionMode.CURSOR_AGENT: Route(BackendKind.AGENT_PTY, None, "cursor", RunMode.AGENT),
    SessionMode.CURSOR_PLAN: Route(BackendKind.AGENT_PTY, None, "cursor", RunMode.PLAN),
    SessionMode.CURSOR_ASK: Route(BackendKind.AGENT_PTY, None, "cursor", RunMode.ASK),
    SessionMode.AGENT: Route(BackendKind.AGENT_PTY, None, "cursor", RunMode.AGENT),
    SessionMode.PLAN: Route(BackendKind.AGENT_PTY, None, "cursor", RunMode.PLAN),
    SessionMode.ASK: Route(BackendKind.AGENT_PTY, None, "cursor", RunMode.ASK),
}


def resolve_route(mode: str) -> tuple[SessionMode, Route]:
    try:
        session_mode = SessionMode(mode)
    except ValueError as exc:
        raise UnknownModeError(f"Unknown mode: {mode}") from exc
    return session_mode, ROUTES[session_mode]
