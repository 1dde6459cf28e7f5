"""Per-connection dispatcher for the terminal control protocol."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Type

from pydantic import BaseModel, ValidationError

from session_relay.clients.pty import PtyUnavailableError
from session_relay.models.protocol import (
    CloseRequest,
    ExitEvent,
    OpenRequest,
    ResizeRequest,
    StdinRequest,
    dump_event,
    response,
)
from session_relay.providers.base import ProviderInitializationError
from session_relay.providers.manager import UnknownProviderError
from session_relay.services.base_session import RelaySession
from session_relay.services.routing import UnknownModeError
from session_relay.services.session_service import (
    SessionQuotaError,
    SessionService,
    UnknownSessionError,
)
from session_relay.utils.pathing import PathGuardError

LOG = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]

REQUEST_ERRORS = (
    PathGuardError,
    ProviderInitializationError,
    PtyUnavailableError,
    SessionQuotaError,
    UnknownModeError,
    UnknownProviderError,
    UnknownSessionError,
)


def _validation_message(exc: ValidationError) -> str:
    fields = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
    if {"cols", "rows"} & set(fields):
        return "Invalid cols/rows"
    if fields:
        return f"Missing or invalid {', '.join(fields)}"
    return "Invalid request"


class ConnectionDispatcher:
    """Routes one client's control frames and forwards its sessions' events.

    Frames are handled one at a time. Each session's events are forwarded by
    a dedicated task draining that session's channel, so per-session order is
    preserved and a slow command never delays a response.
    """

    def __init__(self, sessions: SessionService, send: SendFn) -> None:
        self.sessions = sessions
        self._send_raw = send
        self.owner = uuid.uuid4().hex
        self._send_lock = asyncio.Lock()
        self._forwarders: Dict[str, asyncio.Task] = {}
        self._closed = False

    async def send(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            return
        async with self._send_lock:
            try:
                await self._send_raw(frame)
            except Exception:
                LOG.debug("Connection %s gone; dropping frames", self.owner, exc_info=True)
                self._closed = True

    async def handle_text(self, text: str) -> None:
        try:
            frame = json.loads(text)
        except (TypeError, ValueError):
            return
        if not isinstance(frame, dict):
            return
        await self.handle_frame(frame)

    async def handle_frame(self, frame: Dict[str, Any]) -> None:
        request_type = frame.get("type")
        request_id = frame.get("requestId")
        if not isinstance(request_type, str) or not isinstance(request_id, str):
            return

        handler = self._handlers.get(request_type)
        if handler is None:
            await self.send(response(request_type, request_id, False, error=f"Unknown request type: {request_type}"))
            return

        model, method = handler
        try:
            request = model.model_validate(frame)
        except ValidationError as exc:
            await self.send(response(request_type, request_id, False, error=_validation_message(exc)))
            return

        try:
            await method(self, request)
        except REQUEST_ERRORS as exc:
            await self.send(response(request_type, request_id, False, error=str(exc)))
        except Exception as exc:
            LOG.error("Request %s (%s) failed", request_type, request_id, exc_info=True)
            await self.send(response(request_type, request_id, False, error=str(exc) or exc.__class__.__name__))

    async def _open(self, request: OpenRequest) -> None:
        opened = await self.sessions.open_session(
            self.owner,
            request.mode,
            request.cwd,
            request.cols,
            request.rows,
            options=request.options,
        )
        session = opened.session
        payload: Dict[str, Any] = {
            "sessionId": session.id,
            "cwd": session.cwd,
            "mode": opened.mode.value,
            "backend": session.kind.value,
            "pty": session.pty,
        }
        if opened.fallback_reason:
            payload["fallback"] = {"from": opened.route.preferred.value, "reason": opened.fallback_reason}
        if opened.route.variant is not None:
            payload["threadId"] = request.options.resume or uuid.uuid4().hex[:16]
        await self.send(response(request.type, request.request_id, True, **payload))
        self._forwarders[session.id] = asyncio.create_task(self._forward(session))

    async def _stdin(self, request: StdinRequest) -> None:
        session = self.sessions.require(request.session_id, owner=self.owner)
        session.write(request.data)
        await self.send(response(request.type, request.request_id, True))

    async def _resize(self, request: ResizeRequest) -> None:
        session = self.sessions.require(request.session_id, owner=self.owner)
        session.resize(request.cols, request.rows)
        await self.send(response(request.type, request.request_id, True))

    async def _close(self, request: CloseRequest) -> None:
        await self.send(response(request.type, request.request_id, True))
        closed = await self.sessions.close_session(request.session_id, owner=self.owner)
        if not closed:
            await self.send(dump_event(ExitEvent(session_id=request.session_id, code=0)))

    _handlers: Dict[str, tuple[Type[BaseModel], Callable[..., Awaitable[None]]]] = {
        "open": (OpenRequest, _open),
        "stdin": (StdinRequest, _stdin),
        "resize": (ResizeRequest, _resize),
        "close": (CloseRequest, _close),
    }

    async def _forward(self, session: RelaySession) -> None:
        try:
            async for event in session.channel:
                await self.send(event)
        finally:
            self._forwarders.pop(session.id, None)
            # A pty session that exits on its own leaves the registry here.
            self.sessions.registry.remove(session.id, session)

    async def shutdown(self) -> None:
        """Close every session this connection opened."""
        self._closed = True
        await self.sessions.close_owned(self.owner)
        forwarders = list(self._forwarders.values())
        for task in forwarders:
            task.cancel()
        await asyncio.gather(*forwarders, return_exceptions=True)

