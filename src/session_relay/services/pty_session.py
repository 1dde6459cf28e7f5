"""Sessions backed by a real pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Dict, List, Optional

from session_relay.clients.pty import PtyProcess, describe_returncode
from session_relay.models.enums import BackendKind
from session_relay.services.base_session import RelaySession
from session_relay.services.recording_service import RecordingService, TerminalEmulator

LOG = logging.getLogger(__name__)


class PtySession(RelaySession):
    """Pure byte pipe between the client and a child owning its own line discipline."""

    def __init__(
        self,
        session_id: str,
        kind: BackendKind,
        cwd: str,
        cols: int,
        rows: int,
        argv: List[str],
        env: Optional[Dict[str, str]] = None,
        recordings: Optional[RecordingService] = None,
        idle_timeout: float = 0,
        start_notice: Optional[str] = None,
    ) -> None:
        recording = recordings.open_recording(session_id) if recordings else None
        super().__init__(session_id, cwd, cols, rows, recording)
        self.kind = kind
        self.argv = argv
        self.recordings = recordings
        self.emulator: Optional[TerminalEmulator] = None
        self.idle_timeout = idle_timeout
        self.start_notice = start_notice
        self.timed_out = False
        self.process = PtyProcess(argv, cwd=cwd, env=env, cols=cols, rows=rows)
        self._pump_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        try:
            await self.process.start()
        except BaseException:
            self.release()
            raise
        if self.recordings is not None:
            self.emulator = self.recordings.create_emulator(self.id, self.cols, self.rows)
        if self.start_notice:
            self.emit_data(self.start_notice, record=False)
        self._pump_task = asyncio.create_task(self._pump())

    async def _read(self) -> Optional[bytes]:
        if not self.idle_timeout:
            return await self.process.read()
        while True:
            try:
                return await asyncio.wait_for(self.process.read(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                if not self.timed_out:
                    LOG.info("Session %s idle for %ss; killing", self.id, self.idle_timeout)
                    self.timed_out = True
                    self.process.kill()

    async def _pump(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await self._read()
            if chunk is None:
                break
            if self.emulator is not None:
                self.emulator.write(chunk)
            if self.recording is not None:
                self.recording.write(chunk)
            self.emit_data(decoder.decode(chunk), record=False)
        self.emit_data(decoder.decode(b"", final=True), record=False)
        returncode = await self.process.wait()
        code, signal = describe_returncode(returncode)
        self.finish(code, signal)

    def write(self, data: str) -> None:
        if self.alive:
            self.process.write(data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        super().resize(cols, rows)
        if not self.alive:
            return
        self.process.resize(cols, rows)
        if self.emulator is not None:
            self.emulator.resize(cols, rows)

    def release(self) -> None:
        super().release()
        self.process.dispose()
        if self.emulator is not None and self.recordings is not None:
            self.recordings.dispose_emulator(self.id)
        self.emulator = None

    async def close(self) -> None:
        if not self.alive:
            return
        self.process.kill()
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        self.finish(0, None)
