"""Filesystem helpers for Session Relay."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List

from session_relay import constants


class PathGuardError(RuntimeError):
    """Raised when a path cannot be used as a working directory."""


def ensure_runtime_directories() -> dict[str, Path]:
    """Create the directory tree required for runtime state."""
    required = {
        "home": constants.HOME_DIR,
        "logs": constants.LOG_DIR,
        "recordings": constants.RECORDING_DIR,
        "run_buffers": constants.RUN_BUFFER_DIR,
        "db": constants.DB_DIR,
    }

    for path in required.values():
        path.mkdir(parents=True, exist_ok=True)

    return required


def normalize_roots(roots: Iterable[str]) -> List[str]:
    """Return existing root directories, most specific first."""
    normalized: List[str] = []
    for root in roots:
        absolute = os.path.abspath(os.path.expanduser(root)).rstrip(os.sep) or os.sep
        if os.path.isdir(absolute):
            normalized.append(os.path.realpath(absolute))
    if not normalized:
        raise PathGuardError("No valid roots")
    normalized.sort(key=len, reverse=True)
    return normalized


def realpath_safe(path: str) -> str:
    """Resolve symlinks, falling back to the parent for paths that do not exist yet."""
    if os.path.exists(path):
        return os.path.realpath(path)
    parent = os.path.dirname(path)
    return os.path.join(os.path.realpath(parent), os.path.basename(path))


def validate_path_in_roots(path: str, roots: List[str]) -> str:
    """Return the real path if it lies under one of ``roots``."""
    if not isinstance(path, str) or not path:
        raise PathGuardError("Missing path")
    real = realpath_safe(os.path.abspath(os.path.expanduser(path)))
    for root in roots:
        if real == root or real.startswith(root.rstrip(os.sep) + os.sep):
            return real
    raise PathGuardError("Path is outside configured roots")


class PathGuard:
    """Validates working directories against the configured roots."""

    def __init__(self, roots: Iterable[str]) -> None:
        self.roots = normalize_roots(roots)

    def validate_cwd(self, path: str) -> str:
        return validate_path_in_roots(path, self.roots)

    def validate_directory(self, path: str) -> str:
        real = self.validate_cwd(path)
        if not os.path.exists(real):
            raise PathGuardError(f"Working directory does not exist: {real}")
        if not os.path.isdir(real):
            raise PathGuardError("Not a directory")
        return real
