"""Identifier helpers."""

from __future__ import annotations

import re
import uuid

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
RUN_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def generate_session_id(prefix: str) -> str:
    """Return a random session id carrying a readable backend prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def generate_run_id() -> str:
    return str(uuid.uuid4())


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(session_id or ""))


def is_valid_run_id(run_id: str) -> bool:
    return bool(RUN_ID_PATTERN.match(run_id or "")) and ".." not in run_id
