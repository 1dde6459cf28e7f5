"""Line-buffered sessions that run each submitted line as its own child process."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
from typing import Dict, List, Optional

from session_relay.clients.pty import describe_returncode, kill_process_group
from session_relay.models.config import Limits, RelayConfig
from session_relay.models.enums import BackendKind
from session_relay.providers.base import BaseProvider
from session_relay.services.base_session import RelaySession
from session_relay.services.recording_service import Recording
from session_relay.utils.pathing import PathGuard, PathGuardError

LOG = logging.getLogger(__name__)

METACHAR_RE = re.compile(r"[|&;<>()$`\\\n\r]")
TIMEOUT_EXIT_CODE = 124
NOT_ALLOWED_EXIT_CODE = 127
USAGE_EXIT_CODE = 2


def parse_args(line: str) -> List[str]:
    """Split a command line on blanks, honouring single and double quotes."""
    args: List[str] = []
    current = ""
    quote: Optional[str] = None
    for char in line:
        if quote:
            if char == quote:
                quote = None
            else:
                current += char
            continue
        if char in ("'", '"'):
            quote = char
            continue
        if char in (" ", "\t"):
            if current:
                args.append(current)
                current = ""
            continue
        current += char
    if quote:
        raise ValueError("Unclosed quote")
    if current:
        args.append(current)
    return args


class OutputBudget:
    """Byte allowance for one command's output."""

    def __init__(self, limit: int) -> None:
        self.remaining = limit
        self.truncated = False

    def take(self, chunk: bytes) -> bytes:
        if self.truncated:
            return b""
        if len(chunk) <= self.remaining:
            self.remaining -= len(chunk)
            return chunk
        allowed = chunk[: self.remaining]
        self.remaining = 0
        self.truncated = True
        return allowed


class ExecSession(RelaySession):
    """Implements line editing and a FIFO of commands for backends without a terminal."""

    echo_empty_line = True

    def __init__(
        self,
        session_id: str,
        cwd: str,
        cols: int,
        rows: int,
        limits: Limits,
        guard: PathGuard,
        recording: Optional[Recording] = None,
    ) -> None:
        super().__init__(session_id, cwd, cols, rows, recording)
        self.limits = limits
        self.guard = guard
        self.line_buffer = ""
        self._lines: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.subprocess.Process] = None

    async def start(self) -> None:
        self._pump_task = asyncio.create_task(self._pump())

    def write(self, data: str) -> None:
        if not self.alive:
            return
        normalized = data.replace("\r\n", "\n").replace("\r", "\n")
        for char in normalized:
            if char == "\n":
                self._lines.put_nowait(self.line_buffer)
                self.line_buffer = ""
            elif char in ("\b", "\x7f"):
                self.line_buffer = self.line_buffer[:-1]
            else:
                self.line_buffer += char

    async def _pump(self) -> None:
        while True:
            line = await self._lines.get()
            try:
                await self.run_line(line)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.exception("Command failed in session %s", self.id)
                self.emit_data(f"\r\n[error] {exc}\r\n")
                self.emit_exit(1)

    async def run_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            if self.echo_empty_line:
                self.emit_data("\r\n")
            self.emit_exit(0)
            return
        if await self.run_builtin(line):
            return
        argv = self.build_argv(line)
        if argv:
            await self.run_command(argv)

    async def run_builtin(self, line: str) -> bool:
        """Handle ``pwd`` and ``cd`` in-process. Returns True when the line was consumed."""
        if METACHAR_RE.search(line):
            return False
        try:
            argv = parse_args(line)
        except ValueError:
            return False
        if not argv:
            return False
        if argv[0] == "pwd" and len(argv) == 1:
            self.emit_data(f"{self.cwd}\r\n")
            self.emit_exit(0)
            return True
        if argv[0] == "cd" and len(argv) <= 2:
            await self.change_directory(argv[1] if len(argv) == 2 else "")
            return True
        return False

    async def change_directory(self, target: str) -> None:
        candidate = os.path.join(self.cwd, os.path.expanduser(target)) if target else self.cwd
        try:
            real = self.guard.validate_cwd(os.path.normpath(candidate))
            if not os.path.exists(real):
                raise PathGuardError(f"No such directory: {target}")
            if not os.path.isdir(real):
                raise PathGuardError("Not a directory")
        except PathGuardError as exc:
            self.emit_data(f"\r\n[error] cd: {exc}\r\n")
            self.emit_exit(1)
            return
        self.cwd = real
        self.emit_data(f"\r\n$ cd {real}\r\n")
        self.emit_exit(0)

    def build_argv(self, line: str) -> Optional[List[str]]:
        raise NotImplementedError

    def command_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["FORCE_COLOR"] = "0"
        return env

    async def run_command(self, argv: List[str]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                env=self.command_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            self.emit_data(f"\r\n[error] {exc.strerror or exc}: {argv[0]}\r\n")
            self.emit_exit(1)
            return

        self._current = process
        timed_out = False
        try:
            try:
                returncode = await asyncio.wait_for(
                    self._stream_until_exit(process), timeout=self.limits.timeout_sec
                )
            except asyncio.TimeoutError:
                timed_out = True
                kill_process_group(process.pid)
                self.emit_data(f"\r\n[timeout] command exceeded {self.limits.timeout_sec}s\r\n")
                returncode = await process.wait()
        finally:
            self._current = None

        if timed_out:
            self.emit_exit(TIMEOUT_EXIT_CODE)
            return
        code, signal = describe_returncode(returncode)
        self.emit_exit(code, signal)

    async def _stream_until_exit(self, process: asyncio.subprocess.Process) -> int:
        budget = OutputBudget(self.limits.max_output_bytes)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stdout.read(65536)
            if not chunk:
                break
            if budget.truncated:
                continue
            self.emit_data(decoder.decode(budget.take(chunk)))
            if budget.truncated:
                self.emit_data("\r\n[truncated] output exceeded limit\r\n")
                kill_process_group(process.pid)
        if not budget.truncated:
            self.emit_data(decoder.decode(b"", final=True))
        return await process.wait()

    async def close(self) -> None:
        if not self.alive:
            return
        if self._current is not None:
            kill_process_group(self._current.pid)
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        self.finish(0, None)


class RestrictedExecSession(ExecSession):
    """Direct argv execution guarded by metacharacter, allow and deny checks."""

    kind = BackendKind.RESTRICTED_EXEC

    def __init__(self, *args, config: RelayConfig, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.allowlist = set(config.command_allowlist)
        self.denylist = set(config.dangerous_command_denylist)

    async def run_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if line and METACHAR_RE.search(line):
            self.emit_data("\r\n[blocked] Unsupported shell operator/metacharacters.\r\n")
            self.emit_exit(USAGE_EXIT_CODE)
            return
        await super().run_line(raw_line)

    async def run_builtin(self, line: str) -> bool:
        try:
            argv = parse_args(line)
        except ValueError as exc:
            self.emit_data(f"\r\n[error] {exc}\r\n")
            self.emit_exit(USAGE_EXIT_CODE)
            return True
        if argv and argv[0] == "ls":
            await self.list_directory(argv[1] if len(argv) > 1 else ".")
            return True
        return await super().run_builtin(line)

    async def list_directory(self, target: str) -> None:
        try:
            real = self.guard.validate_cwd(os.path.normpath(os.path.join(self.cwd, target)))
            output = await asyncio.to_thread(_render_listing, real)
        except (PathGuardError, OSError) as exc:
            message = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc)
            self.emit_data(f"\r\n[error] ls: {message}\r\n")
            self.emit_exit(1)
            return
        self.emit_data(output)
        self.emit_exit(0)

    def build_argv(self, line: str) -> Optional[List[str]]:
        argv = parse_args(line)
        command = argv[0]
        if self.allowlist and command not in self.allowlist:
            self.emit_data(f"\r\n[blocked] Command not allowed: {command}\r\n")
            self.emit_exit(NOT_ALLOWED_EXIT_CODE)
            return None
        if command in self.denylist:
            self.emit_data(f"\r\n[blocked] Dangerous command: {command}\r\n")
            self.emit_exit(NOT_ALLOWED_EXIT_CODE)
            return None
        return argv


class ProviderExecSession(ExecSession):
    """Runs each line through the provider's non-interactive command."""

    def __init__(self, *args, provider: BaseProvider, kind: BackendKind, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.provider = provider
        self.kind = kind
        # Agent CLIs print their own spacing; a blank submission only completes.
        self.echo_empty_line = kind is not BackendKind.AGENT_EXEC

    def build_argv(self, line: str) -> Optional[List[str]]:
        return self.provider.build_exec_command(line)


def _render_listing(path: str) -> str:
    os.stat(path)
    if os.path.isdir(path):
        names = sorted(os.listdir(path), key=str.casefold)
        return "\r\n".join(names) + ("\r\n" if names else "")
    return os.path.basename(path) + "\r\n"
