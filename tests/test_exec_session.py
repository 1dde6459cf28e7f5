import asyncio
import os

import pytest

from session_relay.models.config import CommandSpec, Limits
from session_relay.models.enums import BackendKind
from session_relay.providers.shell import ShellProvider
from session_relay.services.exec_session import (
    OutputBudget,
    ProviderExecSession,
    RestrictedExecSession,
    parse_args,
)


async def collect_until_exits(session, count=1, timeout=15):
    events = []
    exits = 0
    while exits < count:
        event = await asyncio.wait_for(session.channel.get(), timeout)
        assert event is not None, "channel closed early"
        events.append(event)
        if event["type"] == "exit":
            exits += 1
    return events


def joined_data(events):
    return "".join(event["data"] for event in events if event["type"] == "data")


def native_session(project_dir, relay_config, guard, limits=None):
    return ProviderExecSession(
        "n_test",
        str(project_dir),
        80,
        24,
        limits=limits or relay_config.limits,
        guard=guard,
        provider=ShellProvider(),
        kind=BackendKind.NATIVE_EXEC,
    )


def restricted_session(project_dir, relay_config, guard, limits=None, config=None):
    return RestrictedExecSession(
        "s_test",
        str(project_dir),
        80,
        24,
        limits=limits or relay_config.limits,
        guard=guard,
        config=config or relay_config,
    )


def test_parse_args_honours_quotes():
    assert parse_args("git commit -m 'fix the thing'") == ["git", "commit", "-m", "fix the thing"]
    assert parse_args('echo "a b"  c') == ["echo", "a b", "c"]
    assert parse_args("   ") == []


def test_parse_args_rejects_unclosed_quote():
    with pytest.raises(ValueError, match="Unclosed quote"):
        parse_args("echo 'oops")


def test_output_budget_truncates_once():
    budget = OutputBudget(5)
    assert budget.take(b"abc") == b"abc"
    assert budget.take(b"defg") == b"de"
    assert budget.truncated
    assert budget.take(b"more") == b""


async def test_native_pwd_reports_working_directory(project_dir, relay_config, guard):
    session = native_session(project_dir, relay_config, guard)
    await session.start()
    session.write("pwd\r")

    events = await collect_until_exits(session)

    assert events == [
        {"type": "data", "sessionId": "n_test", "data": f"{project_dir}\r\n"},
        {"type": "exit", "sessionId": "n_test", "code": 0, "signal": None},
    ]
    await session.close()


async def test_line_editing_applies_backspace(project_dir, relay_config, guard):
    session = native_session(project_dir, relay_config, guard)
    await session.start()
    session.write("pwx\x7fd\r")

    events = await collect_until_exits(session)

    assert joined_data(events) == f"{project_dir}\r\n"
    await session.close()


async def test_lines_run_in_submission_order(project_dir, relay_config, guard):
    session = native_session(project_dir, relay_config, guard)
    await session.start()
    session.write("echo one\recho two\r")
    session.write("echo three\r")

    events = await collect_until_exits(session, count=3)

    segments = []
    current = ""
    for event in events:
        if event["type"] == "data":
            current += event["data"]
        else:
            assert event["code"] == 0
            segments.append(current)
            current = ""
    assert "one" in segments[0]
    assert "two" in segments[1]
    assert "three" in segments[2]
    await session.close()


async def test_empty_line_completes_immediately(project_dir, relay_config, guard):
    session = native_session(project_dir, relay_config, guard)
    await session.start()
    session.write("\r")

    events = await collect_until_exits(session)

    assert events[-1]["code"] == 0
    assert joined_data(events) == "\r\n"
    await session.close()


async def test_cd_changes_directory_within_roots(project_dir, relay_config, guard):
    (project_dir / "sub").mkdir()
    session = restricted_session(project_dir, relay_config, guard)
    await session.start()
    session.write("cd sub\rpwd\r")

    events = await collect_until_exits(session, count=2)

    expected = os.path.realpath(project_dir / "sub")
    assert f"$ cd {expected}" in joined_data(events)
    assert session.cwd == expected
    await session.close()


async def test_cd_outside_roots_is_refused(project_dir, relay_config, guard):
    session = restricted_session(project_dir, relay_config, guard)
    await session.start()
    session.write("cd /\r")

    events = await collect_until_exits(session)

    assert "[error] cd: Path is outside configured roots" in joined_data(events)
    assert events[-1]["code"] == 1
    assert session.cwd == str(project_dir)
    await session.close()


async def test_restricted_blocks_shell_operators(project_dir, relay_config, guard):
    session = restricted_session(project_dir, relay_config, guard)
    await session.start()
    session.write("ls | wc -l\r")

    events = await collect_until_exits(session)

    assert "[blocked] Unsupported shell operator/metacharacters." in joined_data(events)
    assert events[-1]["code"] == 2
    await session.close()


async def test_restricted_reports_unclosed_quote(project_dir, relay_config, guard):
    session = restricted_session(project_dir, relay_config, guard)
    await session.start()
    session.write("echo 'oops\r")

    events = await collect_until_exits(session)

    assert "[error] Unclosed quote" in joined_data(events)
    assert events[-1]["code"] == 2
    await session.close()


async def test_restricted_denylist_and_allowlist(project_dir, relay_config, guard):
    config = relay_config.model_copy(
        update={
            "command_allowlist": {"echo": CommandSpec(), "rm": CommandSpec()},
            "dangerous_command_denylist": ["rm"],
        }
    )
    session = restricted_session(project_dir, relay_config, guard, config=config)
    await session.start()
    session.write("cat notes.txt\rrm -rf data\recho fine\r")

    events = await collect_until_exits(session, count=3)

    text = joined_data(events)
    assert "[blocked] Command not allowed: cat" in text
    assert "[blocked] Dangerous command: rm" in text
    assert "fine" in text
    assert [event["code"] for event in events if event["type"] == "exit"] == [127, 127, 0]
    await session.close()


async def test_restricted_ls_builtin_lists_entries(project_dir, relay_config, guard):
    (project_dir / "b.txt").write_text("b")
    (project_dir / "A.txt").write_text("a")
    session = restricted_session(project_dir, relay_config, guard)
    await session.start()
    session.write("ls\r")

    events = await collect_until_exits(session)

    assert joined_data(events) == "A.txt\r\nb.txt\r\n"
    assert events[-1]["code"] == 0
    await session.close()


async def test_output_over_limit_is_truncated_and_killed(project_dir, relay_config, guard):
    session = restricted_session(project_dir, relay_config, guard)
    await session.start()
    session.write("yes\r")

    events = await collect_until_exits(session)

    text = joined_data(events)
    assert text.count("[truncated] output exceeded limit") == 1
    assert events[-1]["signal"] == "SIGKILL"
    await session.close()


async def test_command_exceeding_timeout_exits_124(project_dir, relay_config, guard):
    limits = Limits(timeout_sec=1)
    session = restricted_session(project_dir, relay_config, guard, limits=limits)
    await session.start()
    session.write("sleep 5\r")

    events = await collect_until_exits(session)

    assert "[timeout] command exceeded 1s" in joined_data(events)
    assert events[-1]["code"] == 124
    await session.close()


async def test_close_emits_single_exit_and_ends_channel(project_dir, relay_config, guard):
    session = native_session(project_dir, relay_config, guard)
    await session.start()
    await session.close()
    await session.close()

    events = []
    async for event in session.channel:
        events.append(event)

    assert events == [{"type": "exit", "sessionId": "n_test", "code": 0, "signal": None}]
    assert not session.alive
