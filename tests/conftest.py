import stat
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from session_relay import constants
from session_relay.api import main as api_main
from session_relay.clients import database
from session_relay.models.config import Limits, RelayConfig
from session_relay.services.recording_service import RecordingService
from session_relay.services.run_service import RunService
from session_relay.services.session_service import SessionRegistry, SessionService
from session_relay.utils.pathing import PathGuard


FAKE_AGENT = """#!/bin/sh
if [ "$1" = "--list-models" ]; then
  echo "Available models"
  echo ""
  echo "auto - Auto (current)"
  echo "gpt-5 - GPT-5"
  echo "Tip: use --model to pick one"
  exit 0
fi
case "$2" in
  slow*)
    for i in 1 2 3 4 5; do
      echo "{\\"type\\":\\"assistant\\",\\"n\\":$i}"
      sleep 0.2
    done
    ;;
  early*)
    echo '{"type":"result","subtype":"success"}'
    sleep 1
    echo '{"type":"assistant","text":"late"}'
    ;;
  hang*)
    echo '{"type":"system","subtype":"init"}'
    sleep 30
    ;;
  fail*)
    echo "auth required" >&2
    exit 3
    ;;
  *)
    echo '{"type":"system","subtype":"init"}'
    echo '{"type":"assistant","text":"done"}'
    ;;
esac
"""


@pytest.fixture(autouse=True)
def temp_runtime_dirs(tmp_path, monkeypatch):
    """Redirect runtime directories and database into a temp location."""
    base = tmp_path / "runtime"
    home = base / "home"
    mapping = {
        "HOME_DIR": home,
        "LOG_DIR": home / "logs",
        "RECORDING_DIR": home / "term",
        "RUN_BUFFER_DIR": home / "agent-buffers",
        "DB_DIR": home / "db",
        "DB_FILE": home / "db" / "relay.db",
        "CONFIG_FILE": home / "config.json",
    }

    for name, path in mapping.items():
        monkeypatch.setattr(constants, name, path)
    monkeypatch.delenv(constants.CONFIG_ENV_VAR, raising=False)

    database.init_db()
    yield


@pytest.fixture
def project_dir(tmp_path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def relay_config(tmp_path) -> RelayConfig:
    return RelayConfig(
        roots=[str(tmp_path)],
        limits=Limits(timeout_sec=10, max_output_kb=4, max_sessions=2, agent_idle_timeout_sec=10),
        run_retention_sec=60,
    )


@pytest.fixture
def guard(relay_config) -> PathGuard:
    return PathGuard(relay_config.roots)


@pytest.fixture
def recording_service() -> RecordingService:
    return RecordingService()


@pytest.fixture
def session_service(relay_config, recording_service, guard) -> SessionService:
    return SessionService(relay_config, SessionRegistry(), recording_service, guard=guard)


@pytest.fixture
def fake_agent(tmp_path, monkeypatch) -> Path:
    """Install a stand-in ``agent`` executable and point AGENT_BIN at it."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "agent"
    script.write_text(FAKE_AGENT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("AGENT_BIN", str(script))
    return script


@pytest.fixture
def run_service(relay_config, guard) -> RunService:
    return RunService(relay_config, guard=guard)


@pytest.fixture
def api_client(session_service, run_service, recording_service):
    app = api_main.app

    overrides = {
        api_main.get_session_service: lambda: session_service,
        api_main.get_run_service: lambda: run_service,
        api_main.get_recording_service: lambda: recording_service,
    }

    state_attrs = {
        "session_service": session_service,
        "run_service": run_service,
        "recording_service": recording_service,
    }

    original_state = {name: getattr(app.state, name, None) for name in state_attrs}
    for name, value in state_attrs.items():
        setattr(app.state, name, value)

    original_overrides = app.dependency_overrides.copy()
    original_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def noop_lifespan(_app):
        yield

    app.router.lifespan_context = noop_lifespan
    app.dependency_overrides.update(overrides)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides = original_overrides
    app.router.lifespan_context = original_lifespan

    for name, value in original_state.items():
        if value is None:
            try:
                delattr(app.state, name)
            except AttributeError:
                pass
        else:
            setattr(app.state, name, value)
