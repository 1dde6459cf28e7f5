import os
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from session_relay.clients.database import AgentRun as AgentRunORM, session_scope
from session_relay.models.enums import BackendKind, RunMode, RunStatus, RunStrategy
from session_relay.models.protocol import OpenOptions
from session_relay.providers.codex import CodexProvider
from session_relay.providers.cursor import CursorAgentProvider, clean_env
from session_relay.providers.manager import ProviderManager
from session_relay.services.cleanup_service import CleanupService
from session_relay.services.session_service import SessionRegistry


def _age(path, hours):
    past = time.time() - hours * 3600
    os.utime(path, (past, past))


def test_cleanup_purges_stale_recordings_but_keeps_live_ones(recording_service, tmp_path):
    registry = SessionRegistry()
    for name in ("s_stale", "s_fresh", "s_live"):
        recording = recording_service.open_recording(name)
        recording.write(b"x")
        recording.close()
    _age(recording_service.recording_path("s_stale"), 48)
    _age(recording_service.recording_path("s_live"), 48)

    registry.add(SimpleNamespace(id="s_live", kind=BackendKind.NATIVE_EXEC), owner="conn")
    cleanup = CleanupService(recording_service, registry, tmp_path / "buffers", recording_retention_hours=24)

    removed = cleanup.purge_stale_recordings()

    assert removed == 1
    remaining = {row.session_id for row in recording_service.list_recordings()}
    assert remaining == {"s_fresh", "s_live"}


def test_cleanup_purges_expired_runs(recording_service, tmp_path):
    buffers = tmp_path / "buffers"
    buffers.mkdir()
    old = datetime.now(timezone.utc) - timedelta(days=30)
    with session_scope() as db:
        for run_id, status in (("old-done", RunStatus.COMPLETED), ("old-running", RunStatus.RUNNING)):
            db.add(
                AgentRunORM(
                    id=run_id,
                    strategy=RunStrategy.FILE,
                    mode=RunMode.AGENT,
                    cwd="/work",
                    prompt="p",
                    status=status,
                    created_at=old,
                )
            )
        db.add(
            AgentRunORM(
                id="recent",
                strategy=RunStrategy.LIVE,
                mode=RunMode.ASK,
                cwd="/work",
                prompt="p",
                status=RunStatus.FAILED,
            )
        )
    (buffers / "old-done.ndjson").write_text("{}\n")

    cleanup = CleanupService(recording_service, SessionRegistry(), buffers, run_retention_days=7)
    removed = cleanup.purge_expired_runs()

    assert removed == 1
    assert not (buffers / "old-done.ndjson").exists()
    with session_scope() as db:
        assert {row.id for row in db.query(AgentRunORM).all()} == {"old-running", "recent"}


def test_cursor_stream_command_shape(monkeypatch, fake_agent):
    provider = CursorAgentProvider(mode=RunMode.PLAN)

    command = provider.build_stream_command("explain", model=" ", resume="chat-1", force=True)

    assert command == [
        str(fake_agent),
        "-p",
        "explain",
        "--output-format",
        "stream-json",
        "--stream-partial-output",
        "--model=auto",
        "--resume=chat-1",
        "--force",
        "--mode=plan",
    ]


def test_cursor_pty_command_uses_options(fake_agent):
    provider = ProviderManager().create_provider(
        "cursor", options=OpenOptions(prompt="hi", model="gpt-5"), variant=RunMode.ASK
    )

    assert provider.build_pty_command("/work") == [str(fake_agent), "--mode=ask", "--model=gpt-5", "hi"]


def test_clean_env_strips_editor_variables(monkeypatch):
    monkeypatch.setenv("CURSOR_TRACE_ID", "abc")
    monkeypatch.setenv("VSCODE_PID", "1")
    monkeypatch.setenv("KEEP_ME", "yes")

    env = clean_env()

    assert "CURSOR_TRACE_ID" not in env
    assert "VSCODE_PID" not in env
    assert env["KEEP_ME"] == "yes"
    assert env["PATH"].split(os.pathsep)[0].endswith(os.path.join(".local", "bin"))


def test_codex_exec_command_uses_override(tmp_path, monkeypatch):
    binary = tmp_path / "codex"
    binary.write_text("#!/bin/sh\n")
    binary.chmod(0o755)
    monkeypatch.setenv("CODEX_BIN", str(binary))

    command = CodexProvider().build_exec_command("add tests")

    assert command == [str(binary), "exec", "--skip-git-repo-check", "add tests"]
