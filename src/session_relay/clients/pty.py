"""Pseudo-terminal process client."""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Dict, List, Optional, Tuple

LOG = logging.getLogger(__name__)

EXIT_GRACE_SEC = 0.5


class PtyUnavailableError(RuntimeError):
    """Raised when the host cannot allocate a pseudo-terminal."""


def set_winsize(fd: int, rows: int, cols: int) -> None:
    rows = max(1, int(rows))
    cols = max(1, int(cols))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def kill_process_group(pid: Optional[int], sig: int = signal.SIGKILL) -> None:
    """Signal the process group led by ``pid``, falling back to the process itself."""
    if not pid:
        return
    try:
        os.killpg(pid, sig)
        return
    except (ProcessLookupError, PermissionError):
        pass
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass


def describe_returncode(returncode: Optional[int]) -> Tuple[Optional[int], Optional[str]]:
    """Translate an asyncio returncode into ``(code, signal_name)``."""
    if returncode is None:
        return None, None
    if returncode < 0:
        signo = -returncode
        try:
            name = signal.Signals(signo).name
        except ValueError:
            name = str(signo)
        return 128 + signo, name
    return returncode, None


def _acquire_controlling_tty() -> None:
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """A child process attached to the slave side of a fresh pseudo-terminal.

    Output is read from the master side by an event-loop reader and handed
    out through :meth:`read`, which returns ``None`` once the terminal has
    reached EOF. The child leads its own session so :meth:`kill` reaches any
    descendants it spawned.
    """

    def __init__(
        self,
        argv: List[str],
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        cols: int = 120,
        rows: int = 30,
    ) -> None:
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.cols = cols
        self.rows = rows
        self._master_fd: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._chunks: asyncio.Queue = asyncio.Queue()
        self._pending_writes = bytearray()
        self._eof = False
        self._watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    async def start(self) -> None:
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as exc:
            raise PtyUnavailableError(f"openpty failed: {exc}") from exc

        try:
            set_winsize(slave_fd, self.rows, self.cols)
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=self.env,
                preexec_fn=_acquire_controlling_tty,
            )
        except subprocess.SubprocessError as exc:
            # Raised when the child could not take the slave as its controlling tty.
            os.close(master_fd)
            raise PtyUnavailableError(f"controlling tty setup failed: {exc}") from exc
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        self._master_fd = master_fd

        loop = asyncio.get_running_loop()
        loop.add_reader(master_fd, self._on_readable)
        self._watcher = asyncio.create_task(self._watch_exit())
        LOG.debug("Spawned %s in pty (pid=%s)", self.argv[0], self.pid)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 65536)
        except BlockingIOError:
            return
        except OSError as exc:
            # Linux reports EIO on the master once every slave handle is closed.
            if exc.errno != errno.EIO:
                LOG.debug("pty read failed: %s", exc)
            data = b""
        if data:
            self._chunks.put_nowait(data)
        else:
            self._mark_eof()

    def _mark_eof(self) -> None:
        if self._eof:
            return
        self._eof = True
        if self._master_fd is not None:
            loop = asyncio.get_running_loop()
            loop.remove_reader(self._master_fd)
            loop.remove_writer(self._master_fd)
        self._chunks.put_nowait(None)

    async def _watch_exit(self) -> None:
        await self._process.wait()
        # Descendants may still hold the slave open; stop reading after a grace period.
        await asyncio.sleep(EXIT_GRACE_SEC)
        self._mark_eof()

    async def read(self) -> Optional[bytes]:
        """Return the next output chunk, or ``None`` at EOF."""
        if self._eof and self._chunks.empty():
            return None
        return await self._chunks.get()

    async def wait(self) -> int:
        return await self._process.wait()

    def write(self, data: bytes) -> None:
        if self._master_fd is None or self._eof:
            return
        if self._pending_writes:
            self._pending_writes.extend(data)
            return
        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as exc:
            LOG.debug("pty write failed: %s", exc)
            return
        if written < len(data):
            self._pending_writes.extend(data[written:])
            asyncio.get_running_loop().add_writer(self._master_fd, self._flush_writes)

    def _flush_writes(self) -> None:
        try:
            written = os.write(self._master_fd, bytes(self._pending_writes))
        except BlockingIOError:
            return
        except OSError as exc:
            LOG.debug("pty write failed: %s", exc)
            written = len(self._pending_writes)
        del self._pending_writes[:written]
        if not self._pending_writes:
            asyncio.get_running_loop().remove_writer(self._master_fd)

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        if self._master_fd is None or self._eof:
            return
        try:
            set_winsize(self._master_fd, rows, cols)
        except OSError as exc:
            LOG.debug("pty resize failed: %s", exc)

    def kill(self, sig: int = signal.SIGKILL) -> None:
        if self._process and self._process.returncode is None:
            kill_process_group(self._process.pid, sig)

    def dispose(self) -> None:
        """Release the master descriptor and stop background work."""
        self._mark_eof()
        if self._watcher and not self._watcher.done():
            self._watcher.cancel()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
