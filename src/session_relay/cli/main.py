from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterator, Optional

import click
import httpx
import uvicorn

from session_relay import constants
from session_relay.cli.formatters import format_recordings, format_runs
from session_relay.clients.database import init_db
from session_relay.utils.config import ConfigError, load_config, write_default_config
from session_relay.utils.logging import setup_logging
from session_relay.utils.pathing import ensure_runtime_directories

API_BASE = f"http://{constants.SERVER_HOST}:{constants.SERVER_PORT}"


def _request(
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    url = f"{API_BASE}{path}"
    with httpx.Client(timeout=60) as client:
        response = client.request(method, url, json=payload, params=params)
    if response.status_code >= 400:
        raise click.ClickException(f"API error {response.status_code}: {response.text}")
    if not response.content:
        return None
    if response.headers.get("content-type", "").startswith("application/json"):
        return response.json()
    return response.text


def _stream_lines(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Iterator[str]:
    """Yield NDJSON lines from a streaming endpoint, run id header first."""
    url = f"{API_BASE}{path}"
    with httpx.Client(timeout=httpx.Timeout(60, read=None)) as client:
        with client.stream(method, url, json=payload) as response:
            if response.status_code >= 400:
                response.read()
                raise click.ClickException(f"API error {response.status_code}: {response.text}")
            click.echo(f"run {response.headers.get('x-run-id', '?')}", err=True)
            for line in response.iter_lines():
                if line:
                    yield line


def _run_payload(
    prompt: str,
    mode: str,
    cwd: Optional[str],
    model: Optional[str],
    resume: Optional[str],
    force: bool,
) -> Dict[str, Any]:
    return {
        "prompt": prompt,
        "mode": mode,
        "cwd": cwd,
        "model": model,
        "resume": resume,
        "force": force,
    }


def run_options(func):
    options = [
        click.option("--mode", type=click.Choice(["agent", "plan", "ask"]), default="agent", show_default=True),
        click.option("--cwd", help="Working directory (defaults to the first configured root)."),
        click.option("--model", help="Model id, see `srelay models`."),
        click.option("--resume", help="Chat id to resume."),
        click.option("--force/--no-force", default=True, show_default=True, help="Allow commands without approval."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(help="Session Relay command-line interface.")
def cli() -> None:
    """Root command for Session Relay."""
    setup_logging()


@cli.command()
@click.option("--force/--no-force", default=False, show_default=True, help="Overwrite an existing config file.")
def init(force: bool) -> None:
    """Initialize local directories, database and config file."""
    ensure_runtime_directories()
    init_db()
    path = write_default_config(force=force)
    click.echo(f"Session Relay environment initialized. Config: {path}")


@cli.command()
@click.option("--host", help="Bind address (defaults to the configured server host).")
@click.option("--port", type=int, help="Bind port (defaults to the configured server port).")
def serve(host: Optional[str], port: Optional[int]) -> None:
    """Run the relay server."""
    try:
        config = load_config()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    uvicorn.run(
        "session_relay.api.main:app",
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@cli.command("recordings")
@click.option("--limit", type=int, default=50, show_default=True)
def recordings(limit: int) -> None:
    """List terminal recordings, newest first."""
    result = _request("GET", "/api/term/sessions", params={"limit": limit})
    click.echo(format_recordings(result["sessions"]))


@cli.command()
@click.argument("session_id")
@click.option("--tail-bytes", type=int, help="Bytes of raw output to use when no live screen exists.")
def snapshot(session_id: str, tail_bytes: Optional[int]) -> None:
    """Print the rendered screen of a session."""
    params = {"tailBytes": tail_bytes} if tail_bytes else None
    result = _request("GET", f"/api/term/snapshot/{session_id}", params=params)
    click.echo(result["data"])


@cli.command()
@click.argument("session_id")
@click.option("--tail-bytes", type=int, help="Bytes of raw output to replay.")
def replay(session_id: str, tail_bytes: Optional[int]) -> None:
    """Print the raw tail of a session recording."""
    params = {"tailBytes": tail_bytes} if tail_bytes else None
    result = _request("GET", f"/api/term/replay/{session_id}", params=params)
    click.echo(result or "", nl=False)


@cli.group()
def run() -> None:
    """Agent run commands."""


@run.command("start")
@click.argument("prompt")
@run_options
def start_run(
    prompt: str, mode: str, cwd: Optional[str], model: Optional[str], resume: Optional[str], force: bool
) -> None:
    """Start a file-buffered run and print its id."""
    result = _request("POST", "/api/agent/start", _run_payload(prompt, mode, cwd, model, resume, force))
    click.echo(result["runId"])


@run.command("output")
@click.argument("run_id")
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--follow/--no-follow", default=False, show_default=True, help="Poll until the run ends.")
@click.option("--interval", type=float, default=1.0, show_default=True)
def run_output(run_id: str, offset: int, follow: bool, interval: float) -> None:
    """Print run output from a byte offset."""
    while True:
        result = _request("GET", f"/api/agent/task/{run_id}/output", params={"offset": offset})
        if result["output"]:
            click.echo(result["output"], nl=False)
        offset = result["nextOffset"]
        if not follow or result["ended"]:
            break
        time.sleep(interval)
    if not follow:
        click.echo(f"next offset {offset}", err=True)


@run.command("stream")
@click.argument("prompt")
@run_options
def stream_run(
    prompt: str, mode: str, cwd: Optional[str], model: Optional[str], resume: Optional[str], force: bool
) -> None:
    """Start a live run and follow its output."""
    payload = _run_payload(prompt, mode, cwd, model, resume, force)
    for line in _stream_lines("POST", "/api/agent/stream", payload):
        click.echo(line)


@run.command("attach")
@click.argument("run_id")
def attach_run(run_id: str) -> None:
    """Replay and follow a live run."""
    for line in _stream_lines("GET", f"/api/agent/stream/{run_id}"):
        click.echo(line)


@run.command("stop")
@click.argument("run_id")
@click.option("--live", "strategy", flag_value="live", help="The run was started with `run stream`.")
@click.option("--file", "strategy", flag_value="file", default=True, help="The run was started with `run start`.")
def stop_run(run_id: str, strategy: str) -> None:
    """Kill a run's process group."""
    path = f"/api/agent/stream/{run_id}/stop" if strategy == "live" else f"/api/agent/task/{run_id}/stop"
    _request("POST", path)
    click.echo("Stop requested.")


@cli.command("runs")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def list_runs(limit: int, as_json: bool) -> None:
    """List recorded agent runs."""
    result = _request("GET", "/api/agent/runs", params={"limit": limit})
    if as_json:
        click.echo(json.dumps(result, indent=2))
    else:
        click.echo(format_runs(result))


@cli.command("models")
def models() -> None:
    """List models offered by the agent CLI."""
    result = _request("GET", "/api/agent/models")
    for model in result["models"]:
        click.echo(f"{model['id']}\t{model['label']}")


if __name__ == "__main__":
    cli()
