import asyncio
import os
import time

import pytest

from session_relay import constants
from session_relay.models.enums import BackendKind
from session_relay.services.pty_session import PtySession
from session_relay.services.recording_service import (
    InvalidSessionIdError,
    RecordingNotFoundError,
    TerminalEmulator,
    clamp_tail_bytes,
)


def _pty_available() -> bool:
    try:
        master, slave = os.openpty()
    except OSError:
        return False
    os.close(master)
    os.close(slave)
    return True


requires_pty = pytest.mark.skipif(not _pty_available(), reason="host cannot allocate a pty")


async def test_snapshot_after_clear_screen_shows_only_new_text():
    emulator = TerminalEmulator(20, 5)
    emulator.write(b"hello\r\nworld")
    emulator.write(b"\x1b[2J\x1b[HX")

    snapshot = await emulator.snapshot()

    assert snapshot.cols == 20
    assert snapshot.rows == 5
    assert snapshot.text.strip() == "X"
    emulator.dispose()


async def test_snapshot_applies_resize_in_order():
    emulator = TerminalEmulator(20, 5)
    emulator.write(b"abc")
    emulator.resize(40, 10)
    emulator.write(b"def")

    snapshot = await emulator.snapshot()

    assert (snapshot.cols, snapshot.rows) == (40, 10)
    assert len(snapshot.text.split("\n")) == 10
    assert snapshot.text.split("\n")[0] == "abcdef"
    emulator.dispose()


def test_clamp_tail_bytes():
    assert clamp_tail_bytes(None) == constants.DEFAULT_TAIL_BYTES
    assert clamp_tail_bytes(1) == constants.MIN_TAIL_BYTES
    assert clamp_tail_bytes(10**9) == constants.MAX_TAIL_BYTES


async def test_tail_reads_last_bytes(recording_service):
    recording = recording_service.open_recording("s_tail")
    recording.write(b"a" * 3000)
    recording.write(b"END")
    recording.close()

    text = await recording_service.tail("s_tail", tail_bytes=1024)

    assert len(text) == 1024
    assert text.endswith("END")


async def test_tail_missing_recording(recording_service):
    with pytest.raises(RecordingNotFoundError):
        await recording_service.tail("s_absent")


def test_recording_path_rejects_traversal(recording_service):
    with pytest.raises(InvalidSessionIdError):
        recording_service.recording_path("../etc")


async def test_snapshot_without_emulator_is_none(recording_service):
    assert await recording_service.snapshot("s_none") is None


def test_list_recordings_newest_first(recording_service):
    for name in ("s_old", "s_new"):
        recording = recording_service.open_recording(name)
        recording.write(b"data")
        recording.close()
    old = recording_service.recording_path("s_old")
    past = time.time() - 3600
    os.utime(old, (past, past))

    rows = recording_service.list_recordings()

    assert [row.session_id for row in rows] == ["s_new", "s_old"]
    assert rows[0].model_dump(by_alias=True).keys() == {"sessionId", "updatedAt", "sizeBytes"}
    assert rows[0].size_bytes == 4


@requires_pty
async def test_pty_session_output_is_recorded_and_snapshotted(recording_service, project_dir):
    session = PtySession(
        "r_echo",
        BackendKind.RESTRICTED_PTY,
        str(project_dir),
        80,
        24,
        argv=["/bin/sh", "-c", "printf 'hello from pty\\n'; sleep 1"],
        recordings=recording_service,
    )
    await session.start()

    seen = ""
    while "hello from pty" not in seen:
        event = await asyncio.wait_for(session.channel.get(), 10)
        assert event is not None
        if event["type"] == "data":
            seen += event["data"]

    snapshot = await recording_service.snapshot("r_echo")
    assert snapshot is not None
    assert "hello from pty" in snapshot.text

    exit_event = None
    async for event in session.channel:
        if event["type"] == "exit":
            exit_event = event
    assert exit_event == {"type": "exit", "sessionId": "r_echo", "code": 0, "signal": None}

    # The live screen is gone once the session ends; the recording remains.
    assert await recording_service.snapshot("r_echo") is None
    assert "hello from pty" in await recording_service.tail("r_echo")
