"""Session recordings and headless-terminal snapshots."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import BinaryIO, Deque, Dict, List, Optional, Tuple, Union

import pyte

from session_relay import constants
from session_relay.models.recording import RecordingInfo, Snapshot
from session_relay.utils.ids import is_valid_session_id

LOG = logging.getLogger(__name__)


class RecordingNotFoundError(RuntimeError):
    """Raised when no recording exists for a session id."""


class InvalidSessionIdError(ValueError):
    """Raised when a session id contains characters outside ``[A-Za-z0-9_-]``."""


def clamp_tail_bytes(tail_bytes: Optional[int]) -> int:
    if tail_bytes is None:
        tail_bytes = constants.DEFAULT_TAIL_BYTES
    return max(constants.MIN_TAIL_BYTES, min(int(tail_bytes), constants.MAX_TAIL_BYTES))


class Recording:
    """Append-only log of everything a session printed."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: Optional[BinaryIO] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(path, "ab")
        except OSError as exc:
            LOG.debug("Recording disabled for %s: %s", path, exc)

    def write(self, data: bytes) -> None:
        if self._handle is None:
            return
        try:
            self._handle.write(data)
            self._handle.flush()
        except (OSError, ValueError) as exc:
            LOG.debug("Recording write to %s failed: %s", self.path, exc)

    def close(self) -> None:
        if self._handle is None:
            return
        try:
            self._handle.close()
        except OSError:
            pass
        self._handle = None


_Resize = Tuple[int, int]


class TerminalEmulator:
    """Headless terminal mirroring one pty session.

    Writes are queued and applied by a single drain task, so the screen is
    never fed from two chunks at once and :meth:`snapshot` can wait for the
    queue to settle.
    """

    def __init__(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        self.screen = pyte.Screen(cols, rows)
        self.stream = pyte.ByteStream(self.screen)
        self._pending: Deque[Union[bytes, _Resize]] = deque()
        self._idle = asyncio.Event()
        self._idle.set()
        self._drainer: Optional[asyncio.Task] = None
        self._disposed = False

    def write(self, data: bytes) -> None:
        self._enqueue(data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        self._enqueue((cols, rows))

    def _enqueue(self, item: Union[bytes, _Resize]) -> None:
        if self._disposed:
            return
        self._pending.append(item)
        self._idle.clear()
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            item = self._pending.popleft()
            try:
                if isinstance(item, tuple):
                    cols, rows = item
                    self.screen.resize(lines=rows, columns=cols)
                else:
                    self.stream.feed(item)
            except Exception:  # pragma: no cover - emulator faults must not stop the session
                LOG.debug("Terminal emulator rejected input", exc_info=True)
            await asyncio.sleep(0)
        self._idle.set()

    async def snapshot(self) -> Snapshot:
        await self._idle.wait()
        lines = [line.rstrip() for line in self.screen.display]
        return Snapshot(cols=self.cols, rows=self.rows, text="\n".join(lines))

    def dispose(self) -> None:
        self._disposed = True
        self._pending.clear()
        if self._drainer and not self._drainer.done():
            self._drainer.cancel()
        self._idle.set()


class RecordingService:
    """Owns recording files and emulator instances, keyed by session id."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self._base_dir = base_dir
        self._emulators: Dict[str, TerminalEmulator] = {}

    @property
    def base_dir(self) -> Path:
        return self._base_dir or constants.RECORDING_DIR

    def recording_path(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError("invalid session id")
        return self.base_dir / session_id / "stdout"

    def open_recording(self, session_id: str) -> Recording:
        return Recording(self.recording_path(session_id))

    def create_emulator(self, session_id: str, cols: int, rows: int) -> TerminalEmulator:
        self.dispose_emulator(session_id)
        emulator = TerminalEmulator(cols, rows)
        self._emulators[session_id] = emulator
        return emulator

    def get_emulator(self, session_id: str) -> Optional[TerminalEmulator]:
        return self._emulators.get(session_id)

    def dispose_emulator(self, session_id: str) -> None:
        emulator = self._emulators.pop(session_id, None)
        if emulator:
            emulator.dispose()

    async def snapshot(self, session_id: str) -> Optional[Snapshot]:
        """Render the current screen, or ``None`` when the session has no emulator."""
        emulator = self._emulators.get(session_id)
        if emulator is None:
            return None
        return await emulator.snapshot()

    async def tail(self, session_id: str, tail_bytes: Optional[int] = None) -> str:
        """Return the last ``tail_bytes`` of the recording as text."""
        path = self.recording_path(session_id)
        limit = clamp_tail_bytes(tail_bytes)
        data = await asyncio.to_thread(_read_tail, path, limit)
        return data.decode("utf-8", errors="replace")

    def list_recordings(self, limit: int = 50) -> List[RecordingInfo]:
        limit = max(1, min(limit, 200))
        base = self.base_dir
        if not base.exists():
            return []
        rows: List[RecordingInfo] = []
        for entry in base.iterdir():
            if not entry.is_dir() or not is_valid_session_id(entry.name):
                continue
            stdout = entry / "stdout"
            try:
                stat = stdout.stat()
            except FileNotFoundError:
                continue
            rows.append(
                RecordingInfo(
                    session_id=entry.name,
                    updated_at=stat.st_mtime * 1000,
                    size_bytes=stat.st_size,
                )
            )
        rows.sort(key=lambda row: row.updated_at, reverse=True)
        return rows[:limit]

    def dispose_all(self) -> None:
        for session_id in list(self._emulators):
            self.dispose_emulator(session_id)


def _read_tail(path: Path, limit: int) -> bytes:
    try:
        with open(path, "rb") as handle:
            handle.seek(0, 2)
            size = handle.tell()
            handle.seek(max(0, size - limit))
            return handle.read()
    except FileNotFoundError as exc:
        raise RecordingNotFoundError(f"No recording for session '{path.parent.name}'.") from exc
