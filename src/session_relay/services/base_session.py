"""Behaviour shared by every backend session."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from session_relay.models.enums import BackendKind
from session_relay.models.protocol import DataEvent, ExitEvent, dump_event
from session_relay.services.channel import EventChannel
from session_relay.services.recording_service import Recording

LOG = logging.getLogger(__name__)


class SessionState(str, Enum):
    RUNNING = "RUNNING"
    EXITED = "EXITED"


class RelaySession(ABC):
    """One live backend bound to a session id.

    Output and exit notifications are published on :attr:`channel`; the
    connection that owns the session drains it. :meth:`close` always ends
    the channel with a single exit event.
    """

    kind: BackendKind

    def __init__(
        self,
        session_id: str,
        cwd: str,
        cols: int,
        rows: int,
        recording: Optional[Recording] = None,
    ) -> None:
        self.id = session_id
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.recording = recording
        self.channel = EventChannel()
        self.state = SessionState.RUNNING

    @property
    def pty(self) -> bool:
        return self.kind.is_pty

    @property
    def alive(self) -> bool:
        return self.state is SessionState.RUNNING

    def emit_data(self, text: str, record: bool = True) -> None:
        if not text or not self.alive:
            return
        if record and self.recording is not None:
            self.recording.write(text.encode("utf-8"))
        self.channel.publish(dump_event(DataEvent(session_id=self.id, data=text)))

    def emit_exit(self, code: Optional[int], signal: Optional[str] = None) -> None:
        if not self.alive:
            return
        self.channel.publish(dump_event(ExitEvent(session_id=self.id, code=code, signal=signal)))

    def finish(self, code: Optional[int], signal: Optional[str] = None) -> None:
        """Publish the final exit event, release resources and end the channel."""
        if not self.alive:
            return
        self.emit_exit(code, signal)
        self.state = SessionState.EXITED
        self.release()
        self.channel.close()
        LOG.info("Session %s exited (code=%s, signal=%s)", self.id, code, signal)

    def release(self) -> None:
        if self.recording is not None:
            self.recording.close()

    @abstractmethod
    async def start(self) -> None:
        """Spawn whatever the session needs before it accepts input."""

    @abstractmethod
    def write(self, data: str) -> None:
        """Deliver client keystrokes."""

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows

    @abstractmethod
    async def close(self) -> None:
        """Terminate the backend and finish with a synthetic ``exit(0)``."""
