import json

from click.testing import CliRunner

from session_relay import constants
from session_relay.cli.main import cli


def test_init_writes_default_config():
    runner = CliRunner()
    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert constants.CONFIG_FILE.exists()
    payload = json.loads(constants.CONFIG_FILE.read_text())
    assert payload["limits"]["maxOutputKB"] == 1024
    assert "commandWhitelist" in payload


def test_run_start_posts_payload(monkeypatch):
    calls = []

    def fake_request(method, path, payload=None, params=None):
        calls.append((method, path, payload, params))
        return {"ok": True, "runId": "11111111-1111-4111-8111-111111111111"}

    monkeypatch.setattr("session_relay.cli.main._request", fake_request)

    result = CliRunner().invoke(cli, ["run", "start", "fix the tests", "--mode", "plan", "--cwd", "/work"])

    assert result.exit_code == 0, result.output
    assert "11111111-1111-4111-8111-111111111111" in result.output
    method, path, payload, _ = calls[0]
    assert (method, path) == ("POST", "/api/agent/start")
    assert payload["prompt"] == "fix the tests"
    assert payload["mode"] == "plan"
    assert payload["cwd"] == "/work"
    assert payload["force"] is True


def test_run_output_follow_polls_until_ended(monkeypatch):
    pages = [
        {"ok": True, "output": '{"type":"system"}\n', "nextOffset": 18, "ended": False},
        {"ok": True, "output": '{"type":"result"}\n', "nextOffset": 36, "ended": True},
    ]
    offsets = []

    def fake_request(method, path, payload=None, params=None):
        offsets.append(params["offset"])
        return pages[len(offsets) - 1]

    monkeypatch.setattr("session_relay.cli.main._request", fake_request)

    result = CliRunner().invoke(cli, ["run", "output", "run-id", "--follow", "--interval", "0"])

    assert result.exit_code == 0, result.output
    assert offsets == [0, 18]
    assert '{"type":"system"}' in result.output
    assert '{"type":"result"}' in result.output


def test_run_stream_prints_lines(monkeypatch):
    def fake_stream(method, path, payload=None):
        assert (method, path) == ("POST", "/api/agent/stream")
        yield '{"type":"assistant"}'
        yield '{"type":"result","exitCode":0}'

    monkeypatch.setattr("session_relay.cli.main._stream_lines", fake_stream)

    result = CliRunner().invoke(cli, ["run", "stream", "hello"])

    assert result.exit_code == 0, result.output
    assert '{"type":"assistant"}' in result.output
    assert '"exitCode":0' in result.output


def test_run_stop_selects_strategy(monkeypatch):
    paths = []

    def fake_request(method, path, payload=None, params=None):
        paths.append(path)
        return {"ok": True}

    monkeypatch.setattr("session_relay.cli.main._request", fake_request)
    runner = CliRunner()

    assert runner.invoke(cli, ["run", "stop", "abc"]).exit_code == 0
    assert runner.invoke(cli, ["run", "stop", "abc", "--live"]).exit_code == 0

    assert paths == ["/api/agent/task/abc/stop", "/api/agent/stream/abc/stop"]


def test_runs_table(monkeypatch):
    def fake_request(method, path, payload=None, params=None):
        assert path == "/api/agent/runs"
        return [
            {
                "id": "run-1",
                "strategy": "FILE",
                "mode": "agent",
                "cwd": "/work",
                "prompt": "refactor\nthe parser",
                "model": None,
                "status": "COMPLETED",
                "exit_code": 0,
                "signal": None,
                "created_at": "2026-01-01T10:00:00",
                "ended_at": "2026-01-01T10:01:00",
            }
        ]

    monkeypatch.setattr("session_relay.cli.main._request", fake_request)

    result = CliRunner().invoke(cli, ["runs"])

    assert result.exit_code == 0, result.output
    assert "RUN" in result.output
    assert "COMPLETED" in result.output
    assert "refactor the parser" in result.output


def test_recordings_and_snapshot(monkeypatch):
    def fake_request(method, path, payload=None, params=None):
        if path == "/api/term/sessions":
            return {"ok": True, "sessions": [{"sessionId": "r_abc", "updatedAt": 0, "sizeBytes": 2048}]}
        if path == "/api/term/snapshot/r_abc":
            return {"ok": True, "cols": 80, "rows": 24, "data": "$ whoami"}
        raise AssertionError(path)

    monkeypatch.setattr("session_relay.cli.main._request", fake_request)
    runner = CliRunner()

    listing = runner.invoke(cli, ["recordings"])
    snapshot = runner.invoke(cli, ["snapshot", "r_abc"])

    assert "r_abc" in listing.output
    assert "2.0KB" in listing.output
    assert "$ whoami" in snapshot.output
