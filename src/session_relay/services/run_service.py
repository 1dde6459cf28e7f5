"""Non-interactive agent runs with reconnectable output."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal as signals
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Set, TextIO, Tuple

from session_relay import constants
from session_relay.clients.database import AgentRun as AgentRunORM, session_scope
from session_relay.clients.pty import kill_process_group
from session_relay.models.config import RelayConfig
from session_relay.models.enums import RunMode, RunStatus, RunStrategy
from session_relay.models.run import ModelOption, RunExit, RunOutput, RunRecord, RunRequest
from session_relay.providers.base import ProviderInitializationError
from session_relay.providers.manager import ProviderManager
from session_relay.services.channel import EventChannel
from session_relay.utils.config import run_buffer_dir
from session_relay.utils.ids import generate_run_id, is_valid_run_id
from session_relay.utils.pathing import PathGuard

LOG = logging.getLogger(__name__)

STREAM_LINE_LIMIT = 16 * 1024 * 1024
MODELS_TIMEOUT_SEC = 10
DEFAULT_MODELS = [ModelOption(id="auto", label="Auto")]
_MODEL_SUFFIX_RE = re.compile(r"\s*\((current|default)\)\s*$", re.IGNORECASE)


class RunRequestError(RuntimeError):
    """Raised when a run cannot be started from the given request."""


class UnknownRunError(RuntimeError):
    """Raised when a run id has no live entry or buffer."""


class InvalidRunIdError(RuntimeError):
    """Raised when a run id is not a UUID."""


class AgentRunProcess:
    """One headless ``agent`` process yielding NDJSON lines.

    stdout lines pass through untouched, stderr lines are wrapped as
    ``{"type": "stderr"}`` objects. When no line arrives for
    ``idle_timeout`` seconds the process group is killed and the result is
    marked ``timedOut``.
    """

    def __init__(self, argv: List[str], cwd: str, env: Dict[str, str], idle_timeout: float) -> None:
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.idle_timeout = idle_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.timed_out = False
        self.stopped = False
        self._lines: asyncio.Queue = asyncio.Queue()
        self._readers: List[asyncio.Task] = []

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def start(self) -> None:
        if not os.path.isdir(self.cwd):
            raise RunRequestError(f"Working directory does not exist: {self.cwd}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=self.cwd,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as exc:
            raise ProviderInitializationError(f"Failed to start agent: {exc.strerror or exc}") from exc
        self._readers = [
            asyncio.create_task(self._read_stream(self.process.stdout, stderr=False)),
            asyncio.create_task(self._read_stream(self.process.stderr, stderr=True)),
        ]

    async def _read_stream(self, stream: asyncio.StreamReader, stderr: bool) -> None:
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    LOG.warning("Dropping oversized line from agent pid %s", self.pid)
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                if stderr:
                    line = json.dumps({"type": "stderr", "message": line})
                self._lines.put_nowait(line)
        finally:
            self._lines.put_nowait(None)

    async def lines(self) -> AsyncIterator[str]:
        """Yield output lines until both pipes reach EOF."""
        open_streams = len(self._readers)
        while open_streams:
            try:
                line = await asyncio.wait_for(self._lines.get(), timeout=self.idle_timeout or None)
            except asyncio.TimeoutError:
                if not self.timed_out:
                    LOG.info("Agent pid %s idle for %ss; killing", self.pid, self.idle_timeout)
                    self.timed_out = True
                    kill_process_group(self.pid)
                continue
            if line is None:
                open_streams -= 1
                continue
            yield line

    async def wait(self) -> RunExit:
        returncode = await self.process.wait()
        if returncode < 0:
            try:
                name: Optional[str] = signals.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return RunExit(exit_code=None, signal=name, timed_out=self.timed_out)
        return RunExit(exit_code=returncode, signal=None, timed_out=self.timed_out)

    def stop(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        self.stopped = True
        kill_process_group(self.pid)


@dataclass
class LiveRun:
    id: str
    process: AgentRunProcess
    buffer: List[str] = field(default_factory=list)
    listeners: List[EventChannel] = field(default_factory=list)
    ended: bool = False


class LiveRunBroadcaster:
    """In-memory fan-out of run output to any number of listeners.

    Every method here is synchronous, so appending a line and attaching a
    listener can never interleave on the event loop.
    """

    def __init__(self, retention_sec: float = 60) -> None:
        self.retention_sec = retention_sec
        self._runs: Dict[str, LiveRun] = {}

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs

    def start(self, run_id: str, process: AgentRunProcess) -> Tuple[LiveRun, EventChannel]:
        run = LiveRun(id=run_id, process=process)
        listener = EventChannel()
        run.listeners.append(listener)
        self._runs[run_id] = run
        return run, listener

    def get(self, run_id: str) -> LiveRun:
        run = self._runs.get(run_id)
        if run is None:
            raise UnknownRunError("Run not found")
        return run

    def append(self, run_id: str, line: str) -> None:
        run = self._runs.get(run_id)
        if run is None or run.ended:
            return
        run.buffer.append(line)
        for listener in run.listeners:
            listener.publish(line)

    def finish(self, run_id: str, result_line: str) -> None:
        run = self._runs.get(run_id)
        if run is None or run.ended:
            return
        self.append(run_id, result_line)
        run.ended = True
        for listener in run.listeners:
            listener.close()
        run.listeners.clear()
        asyncio.get_running_loop().call_later(self.retention_sec, self._runs.pop, run_id, None)

    def attach(self, run_id: str) -> EventChannel:
        """Return a channel that replays the buffer and then follows the run."""
        run = self.get(run_id)
        listener = EventChannel()
        for line in run.buffer:
            listener.publish(line)
        if run.ended:
            listener.close()
        else:
            run.listeners.append(listener)
        return listener

    def detach(self, run_id: str, listener: EventChannel) -> None:
        run = self._runs.get(run_id)
        if run is not None and listener in run.listeners:
            run.listeners.remove(listener)
        listener.close()

    def stop(self, run_id: str) -> None:
        self.get(run_id).process.stop()

    def running(self) -> List[LiveRun]:
        return [run for run in self._runs.values() if not run.ended]


@dataclass
class FileRun:
    id: str
    path: Path
    process: AgentRunProcess
    handle: Optional[TextIO] = None
    ended: bool = False


class FileRunStore:
    """Append-only NDJSON buffers that clients poll by byte offset."""

    def __init__(self, buffer_dir: Path, retention_sec: float = 60) -> None:
        self.buffer_dir = Path(buffer_dir)
        self.retention_sec = retention_sec
        self._runs: Dict[str, FileRun] = {}

    def buffer_path(self, run_id: str) -> Path:
        if not is_valid_run_id(run_id):
            raise InvalidRunIdError("Invalid runId")
        return self.buffer_dir / f"{run_id}.ndjson"

    def start(self, run_id: str, process: AgentRunProcess) -> FileRun:
        path = self.buffer_path(run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        run = FileRun(
            id=run_id,
            path=path,
            process=process,
            handle=path.open("a", encoding="utf-8", newline="\n"),
        )
        self._runs[run_id] = run
        return run

    def append(self, run_id: str, line: str) -> None:
        run = self._runs.get(run_id)
        if run is None or run.handle is None:
            return
        try:
            run.handle.write(line + "\n")
            run.handle.flush()
        except OSError:
            LOG.warning("Failed to append to %s", run.path, exc_info=True)

    def finish(self, run_id: str, result_line: str) -> None:
        run = self._runs.get(run_id)
        if run is None or run.ended:
            return
        self.append(run_id, result_line)
        if run.handle is not None:
            run.handle.close()
            run.handle = None
        run.ended = True
        asyncio.get_running_loop().call_later(self.retention_sec, self._runs.pop, run_id, None)

    async def read(self, run_id: str, offset: int = 0) -> RunOutput:
        path = self.buffer_path(run_id)
        offset = max(0, offset)
        try:
            size, chunk, tail = await asyncio.to_thread(_read_buffer, path, offset)
        except FileNotFoundError as exc:
            raise UnknownRunError("Run not found or no output yet") from exc

        run = self._runs.get(run_id)
        if run is not None:
            # The agent prints its own result line before exiting, so only our flag counts.
            ended = run.ended
        else:
            ended = _ends_with_result(tail) if size > 0 else False
            if not ended and offset >= size:
                ended = True
        return RunOutput(
            output=chunk.decode("utf-8", errors="replace"),
            next_offset=offset + len(chunk),
            ended=ended,
        )

    def stop(self, run_id: str) -> None:
        self.buffer_path(run_id)
        run = self._runs.get(run_id)
        if run is None:
            raise UnknownRunError("Run not found or already finished")
        run.process.stop()

    def running(self) -> List[FileRun]:
        return [run for run in self._runs.values() if not run.ended]


def _read_buffer(path: Path, offset: int) -> Tuple[int, bytes, bytes]:
    """Return ``(size, complete lines from offset, last bytes of the file)``."""
    with path.open("rb") as handle:
        size = os.fstat(handle.fileno()).st_size
        handle.seek(max(0, size - constants.RUN_TAIL_PROBE_BYTES))
        tail = handle.read()
        if offset >= size:
            return size, b"", tail
        handle.seek(offset)
        chunk = handle.read(size - offset)
    cut = chunk.rfind(b"\n")
    return size, chunk[: cut + 1] if cut >= 0 else b"", tail


def _ends_with_result(tail: bytes) -> bool:
    complete = tail[: tail.rfind(b"\n") + 1]
    lines = [line for line in complete.split(b"\n") if line.strip()]
    if not lines:
        return False
    try:
        payload = json.loads(lines[-1])
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("type") == "result"


def parse_model_list(text: str) -> List[ModelOption]:
    """Parse ``agent --list-models`` output of the form ``<id> - <label>``."""
    models: List[ModelOption] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line == "Available models" or line.startswith("Tip:"):
            continue
        model_id, sep, label = line.partition(" - ")
        model_id = model_id.strip()
        if not sep or not model_id:
            continue
        label = _MODEL_SUFFIX_RE.sub("", label.strip())
        models.append(ModelOption(id=model_id, label=label or model_id))
    return models


class RunService:
    """Starts agent runs and records their lifecycle."""

    def __init__(
        self,
        config: RelayConfig,
        guard: Optional[PathGuard] = None,
        providers: Optional[ProviderManager] = None,
        live: Optional[LiveRunBroadcaster] = None,
        files: Optional[FileRunStore] = None,
    ) -> None:
        self.config = config
        self.guard = guard or PathGuard(config.roots)
        self.providers = providers or ProviderManager()
        self.live = live or LiveRunBroadcaster(config.run_retention_sec)
        self.files = files or FileRunStore(run_buffer_dir(config), config.run_retention_sec)
        self._tasks: Set[asyncio.Task] = set()

    async def _spawn(self, request: RunRequest) -> Tuple[str, AgentRunProcess, str]:
        prompt = request.prompt.strip()
        if not prompt:
            raise RunRequestError("Missing prompt")
        cwd = self.guard.validate_directory(request.cwd or self.config.roots[0])
        provider = self.providers.cursor(request.mode)
        argv = provider.build_stream_command(
            prompt, model=request.model, resume=request.resume, force=request.force
        )
        process = AgentRunProcess(
            argv,
            cwd=cwd,
            env=provider.build_run_env(),
            idle_timeout=self.config.limits.agent_idle_timeout_sec,
        )
        await process.start()
        return generate_run_id(), process, cwd

    async def start_live(self, request: RunRequest) -> Tuple[str, EventChannel]:
        run_id, process, cwd = await self._spawn(request)
        _, listener = self.live.start(run_id, process)
        await asyncio.to_thread(self._record_start, run_id, RunStrategy.LIVE, request, cwd)
        self._track(self._drive(run_id, process, self.live))
        return run_id, listener

    async def start_file(self, request: RunRequest) -> str:
        run_id, process, cwd = await self._spawn(request)
        self.files.start(run_id, process)
        await asyncio.to_thread(self._record_start, run_id, RunStrategy.FILE, request, cwd)
        self._track(self._drive(run_id, process, self.files))
        return run_id

    def _track(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, run_id: str, process: AgentRunProcess, sink) -> None:
        try:
            async for line in process.lines():
                sink.append(run_id, line)
        except asyncio.CancelledError:
            process.stop()
            raise
        except Exception:
            LOG.exception("Reading output of run %s failed", run_id)
            process.stop()
        result = await process.wait()
        # Persist the final status before readers can observe the run as ended.
        try:
            await asyncio.to_thread(self._record_exit, run_id, process, result)
        except Exception:
            LOG.exception("Recording exit of run %s failed", run_id)
        finally:
            sink.finish(run_id, result.to_line())
        LOG.info(
            "Run %s finished (exitCode=%s, signal=%s, timedOut=%s)",
            run_id,
            result.exit_code,
            result.signal,
            result.timed_out,
        )

    def attach(self, run_id: str) -> EventChannel:
        return self.live.attach(run_id)

    def detach(self, run_id: str, listener: EventChannel) -> None:
        self.live.detach(run_id, listener)

    def stop_live(self, run_id: str) -> None:
        self.live.stop(run_id)
        LOG.info("Stop requested for run %s", run_id)

    def stop_file(self, run_id: str) -> None:
        self.files.stop(run_id)
        LOG.info("Stop requested for run %s", run_id)

    async def read_output(self, run_id: str, offset: int = 0) -> RunOutput:
        return await self.files.read(run_id, offset)

    def _record_start(self, run_id: str, strategy: RunStrategy, request: RunRequest, cwd: str) -> None:
        with session_scope() as db:
            db.add(
                AgentRunORM(
                    id=run_id,
                    strategy=strategy,
                    mode=request.mode,
                    cwd=cwd,
                    prompt=request.prompt,
                    model=request.model,
                    status=RunStatus.RUNNING,
                )
            )

    def _record_exit(self, run_id: str, process: AgentRunProcess, result: RunExit) -> None:
        if result.timed_out:
            status = RunStatus.TIMED_OUT
        elif process.stopped:
            status = RunStatus.STOPPED
        elif result.exit_code == 0:
            status = RunStatus.COMPLETED
        else:
            status = RunStatus.FAILED
        with session_scope() as db:
            row = db.get(AgentRunORM, run_id)
            if row is None:
                return
            row.status = status
            row.exit_code = result.exit_code
            row.signal = result.signal
            row.ended_at = datetime.now(timezone.utc)

    async def list_runs(self, limit: int = 50) -> List[RunRecord]:
        return await asyncio.to_thread(self._query_runs, limit)

    def _query_runs(self, limit: int) -> List[RunRecord]:
        with session_scope() as db:
            rows = (
                db.query(AgentRunORM)
                .order_by(AgentRunORM.created_at.desc())
                .limit(max(1, min(limit, 500)))
                .all()
            )
            return [RunRecord.model_validate(row) for row in rows]

    async def list_models(self) -> List[ModelOption]:
        provider = self.providers.cursor(RunMode.AGENT)
        try:
            binary = provider.resolve_binary()
            process = await asyncio.create_subprocess_exec(
                binary,
                "--list-models",
                env=provider.build_run_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (ProviderInitializationError, OSError) as exc:
            LOG.debug("Model listing unavailable: %s", exc)
            return list(DEFAULT_MODELS)
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=MODELS_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return list(DEFAULT_MODELS)
        return parse_model_list(stdout.decode("utf-8", errors="replace")) or list(DEFAULT_MODELS)

    async def shutdown(self, grace: float = 5.0) -> None:
        """Kill every running agent and wait for their result lines."""
        for run in [*self.live.running(), *self.files.running()]:
            run.process.stop()
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
