from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket
from fastapi.responses import PlainTextResponse, StreamingResponse

from session_relay import constants
from session_relay.clients.database import init_db
from session_relay.models.run import RunRecord, RunRequest
from session_relay.providers.base import ProviderInitializationError
from session_relay.providers.manager import ProviderManager
from session_relay.services.channel import EventChannel
from session_relay.services.cleanup_service import CleanupService
from session_relay.services.connection_service import ConnectionDispatcher
from session_relay.services.recording_service import RecordingNotFoundError, RecordingService
from session_relay.services.run_service import (
    InvalidRunIdError,
    RunRequestError,
    RunService,
    UnknownRunError,
)
from session_relay.services.session_service import SessionRegistry, SessionService
from session_relay.utils.config import load_config, run_buffer_dir
from session_relay.utils.ids import is_valid_run_id, is_valid_session_id
from session_relay.utils.logging import setup_logging
from session_relay.utils.pathing import PathGuard, PathGuardError, ensure_runtime_directories

LOG = logging.getLogger(__name__)

CLEANUP_INTERVAL_SEC = 3600
RUN_START_ERRORS = (RunRequestError, PathGuardError, ProviderInitializationError)

app = FastAPI(title="Session Relay API", version="0.1.0")


def _require_service(name: str):
    service = getattr(app.state, name, None)
    if service is None:
        raise RuntimeError(f"Service '{name}' not initialised.")
    return service


def get_session_service() -> SessionService:
    return _require_service("session_service")


def get_run_service() -> RunService:
    return _require_service("run_service")


def get_recording_service() -> RecordingService:
    return _require_service("recording_service")


@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    ensure_runtime_directories()
    init_db()
    config = load_config()
    guard = PathGuard(config.roots)
    provider_manager = ProviderManager()
    recording_service = RecordingService()
    registry = SessionRegistry()
    session_service = SessionService(config, registry, recording_service, provider_manager, guard)
    run_service = RunService(config, guard=guard, providers=provider_manager)
    cleanup_service = CleanupService(
        recording_service,
        registry,
        run_buffer_dir(config),
        recording_retention_hours=config.recording_retention_hours,
        run_retention_days=config.run_record_retention_days,
    )

    app.state.config = config
    app.state.provider_manager = provider_manager
    app.state.recording_service = recording_service
    app.state.session_service = session_service
    app.state.run_service = run_service
    app.state.cleanup_service = cleanup_service
    app.state.background_tasks = [asyncio.create_task(_cleanup_loop(cleanup_service))]
    LOG.info("Session Relay ready; roots=%s", guard.roots)


async def _cleanup_loop(cleanup_service: CleanupService) -> None:
    while True:
        try:
            await asyncio.to_thread(cleanup_service.purge_stale_recordings)
            await asyncio.to_thread(cleanup_service.purge_expired_runs)
        except Exception:
            LOG.exception("Cleanup pass failed")
        await asyncio.sleep(CLEANUP_INTERVAL_SEC)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    tasks = getattr(app.state, "background_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    sessions = getattr(app.state, "session_service", None)
    if sessions is not None:
        await sessions.shutdown()
    runs = getattr(app.state, "run_service", None)
    if runs is not None:
        await runs.shutdown()


@app.get("/health")
async def health() -> dict[str, str]:
    """Lightweight health probe."""
    return {"status": "ok"}


@app.websocket(constants.WS_PATH)
async def terminal_socket(
    websocket: WebSocket,
    sessions: SessionService = Depends(get_session_service),
) -> None:
    await websocket.accept()
    dispatcher = ConnectionDispatcher(sessions, websocket.send_json)
    LOG.info("Terminal connection %s opened", dispatcher.owner)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is None and message.get("bytes") is not None:
                text = message["bytes"].decode("utf-8", errors="replace")
            if text is not None:
                await dispatcher.handle_text(text)
    finally:
        await dispatcher.shutdown()
        LOG.info("Terminal connection %s closed", dispatcher.owner)


def _check_run_id(run_id: str) -> None:
    if not is_valid_run_id(run_id):
        raise HTTPException(status_code=400, detail="Invalid runId")


def _check_session_id(session_id: str) -> None:
    if not is_valid_session_id(session_id):
        raise HTTPException(status_code=400, detail="invalid session id")


async def _ndjson(runs: RunService, run_id: str, listener: EventChannel) -> AsyncIterator[str]:
    try:
        async for line in listener:
            yield f"{line}\n"
    finally:
        runs.detach(run_id, listener)


@app.post("/api/agent/stream")
async def stream_run(
    payload: RunRequest,
    runs: RunService = Depends(get_run_service),
) -> StreamingResponse:
    try:
        run_id, listener = await runs.start_live(payload)
    except RUN_START_ERRORS as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return StreamingResponse(
        _ndjson(runs, run_id, listener),
        media_type="application/x-ndjson",
        headers={"X-Run-Id": run_id, "Cache-Control": "no-cache"},
    )


@app.get("/api/agent/stream/{run_id}")
async def attach_run(run_id: str, runs: RunService = Depends(get_run_service)) -> StreamingResponse:
    _check_run_id(run_id)
    try:
        listener = runs.attach(run_id)
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return StreamingResponse(
        _ndjson(runs, run_id, listener),
        media_type="application/x-ndjson",
        headers={"X-Run-Id": run_id, "Cache-Control": "no-cache"},
    )


@app.post("/api/agent/stream/{run_id}/stop")
async def stop_live_run(run_id: str, runs: RunService = Depends(get_run_service)) -> Dict[str, Any]:
    _check_run_id(run_id)
    try:
        runs.stop_live(run_id)
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.post("/api/agent/start")
async def start_run(payload: RunRequest, runs: RunService = Depends(get_run_service)) -> Dict[str, Any]:
    try:
        run_id = await runs.start_file(payload)
    except RUN_START_ERRORS as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "runId": run_id}


@app.get("/api/agent/task/{run_id}/output")
async def run_output(
    run_id: str,
    offset: int = 0,
    runs: RunService = Depends(get_run_service),
) -> Dict[str, Any]:
    try:
        result = await runs.read_output(run_id, offset)
    except InvalidRunIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return result.model_dump(by_alias=True)


@app.post("/api/agent/task/{run_id}/stop")
async def stop_file_run(run_id: str, runs: RunService = Depends(get_run_service)) -> Dict[str, Any]:
    try:
        runs.stop_file(run_id)
    except InvalidRunIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.get("/api/agent/runs", response_model=List[RunRecord])
async def list_runs(
    limit: int = Query(50, ge=1, le=500),
    runs: RunService = Depends(get_run_service),
) -> List[RunRecord]:
    return await runs.list_runs(limit)


@app.get("/api/agent/models")
async def list_models(runs: RunService = Depends(get_run_service)) -> Dict[str, Any]:
    models = await runs.list_models()
    return {"ok": True, "models": [model.model_dump() for model in models]}


@app.get("/api/term/snapshot/{session_id}")
async def term_snapshot(
    session_id: str,
    tail_bytes: Optional[int] = Query(None, alias="tailBytes"),
    recordings: RecordingService = Depends(get_recording_service),
) -> Dict[str, Any]:
    _check_session_id(session_id)
    snapshot = await recordings.snapshot(session_id)
    if snapshot is not None:
        return {"ok": True, "cols": snapshot.cols, "rows": snapshot.rows, "data": snapshot.text}
    try:
        data = await recordings.tail(session_id, tail_bytes)
    except RecordingNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True, "data": data}


@app.get("/api/term/replay/{session_id}", response_class=PlainTextResponse)
async def term_replay(
    session_id: str,
    tail_bytes: Optional[int] = Query(None, alias="tailBytes"),
    recordings: RecordingService = Depends(get_recording_service),
) -> str:
    _check_session_id(session_id)
    try:
        return await recordings.tail(session_id, tail_bytes)
    except RecordingNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/term/sessions")
async def term_sessions(
    limit: int = 50,
    recordings: RecordingService = Depends(get_recording_service),
) -> Dict[str, Any]:
    rows = recordings.list_recordings(limit)
    return {"ok": True, "sessions": [row.model_dump(by_alias=True) for row in rows]}
