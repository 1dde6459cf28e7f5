"""Session registry and the factory that turns open requests into live sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional

from session_relay.clients.pty import PtyUnavailableError
from session_relay.models.config import RelayConfig
from session_relay.models.enums import BackendKind, SessionMode
from session_relay.models.protocol import OpenOptions
from session_relay.providers.base import BaseProvider
from session_relay.providers.manager import ProviderManager
from session_relay.services.base_session import RelaySession
from session_relay.services.exec_session import ProviderExecSession, RestrictedExecSession
from session_relay.services.pty_session import PtySession
from session_relay.services.recording_service import RecordingService
from session_relay.services.routing import Route, resolve_route
from session_relay.utils.ids import generate_session_id
from session_relay.utils.pathing import PathGuard

LOG = logging.getLogger(__name__)


class SessionQuotaError(RuntimeError):
    """Raised when a connection already holds the maximum number of sessions."""


class UnknownSessionError(RuntimeError):
    """Raised when a session id is not registered."""


@dataclass
class RegistryEntry:
    session: RelaySession
    kind: BackendKind
    owner: Hashable


class SessionRegistry:
    """The single map from session id to live session, across every connection."""

    def __init__(self) -> None:
        self._entries: Dict[str, RegistryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def add(self, session: RelaySession, owner: Hashable) -> RegistryEntry:
        entry = RegistryEntry(session=session, kind=session.kind, owner=owner)
        self._entries[session.id] = entry
        return entry

    def get(self, session_id: str) -> Optional[RegistryEntry]:
        return self._entries.get(session_id)

    def require(self, session_id: str) -> RegistryEntry:
        entry = self._entries.get(session_id)
        if entry is None or not entry.session.alive:
            raise UnknownSessionError("Unknown session")
        return entry

    def remove(self, session_id: str, session: Optional[RelaySession] = None) -> Optional[RegistryEntry]:
        entry = self._entries.get(session_id)
        if entry is None or (session is not None and entry.session is not session):
            return None
        return self._entries.pop(session_id)

    def count(self, owner: Hashable) -> int:
        return sum(1 for entry in self._entries.values() if entry.owner == owner)

    def owned_by(self, owner: Hashable) -> List[RegistryEntry]:
        return [entry for entry in self._entries.values() if entry.owner == owner]

    def live_ids(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> List[RegistryEntry]:
        return list(self._entries.values())


@dataclass
class OpenedSession:
    session: RelaySession
    mode: SessionMode
    route: Route
    fallback_reason: Optional[str] = None


class SessionService:
    """Creates sessions for a mode, applying the route's pty fallback."""

    def __init__(
        self,
        config: RelayConfig,
        registry: Optional[SessionRegistry] = None,
        recordings: Optional[RecordingService] = None,
        providers: Optional[ProviderManager] = None,
        guard: Optional[PathGuard] = None,
    ) -> None:
        self.config = config
        self.registry = registry or SessionRegistry()
        self.recordings = recordings or RecordingService()
        self.providers = providers or ProviderManager()
        self.guard = guard or PathGuard(config.roots)

    def validate_cwd(self, cwd: str) -> str:
        return self.guard.validate_directory(cwd)

    async def open_session(
        self,
        owner: Hashable,
        mode: str,
        cwd: str,
        cols: int,
        rows: int,
        options: Optional[OpenOptions] = None,
    ) -> OpenedSession:
        session_mode, route = resolve_route(mode)
        real_cwd = self.validate_cwd(cwd)
        if self.registry.count(owner) >= self.config.limits.max_sessions:
            raise SessionQuotaError("Too many sessions")

        provider = self.providers.create_provider(route.provider, options=options, variant=route.variant)
        try:
            session = await self._spawn(route.preferred, provider, real_cwd, cols, rows)
            opened = OpenedSession(session=session, mode=session_mode, route=route)
        except PtyUnavailableError as exc:
            if route.fallback is None:
                raise
            LOG.warning("PTY unavailable for %s; falling back to %s: %s", mode, route.fallback.value, exc)
            session = await self._spawn(route.fallback, provider, real_cwd, cols, rows)
            opened = OpenedSession(session=session, mode=session_mode, route=route, fallback_reason=str(exc))

        self.registry.add(opened.session, owner)
        LOG.info(
            "Opened %s session %s (%s) in %s",
            session_mode.value,
            opened.session.id,
            opened.session.kind.value,
            real_cwd,
        )
        self._greet(opened, provider)
        return opened

    async def _spawn(
        self, kind: BackendKind, provider: BaseProvider, cwd: str, cols: int, rows: int
    ) -> RelaySession:
        session_id = generate_session_id(kind.id_prefix)
        limits = self.config.limits
        session: RelaySession
        if kind is BackendKind.RESTRICTED_EXEC:
            session = RestrictedExecSession(
                session_id,
                cwd,
                cols,
                rows,
                limits=limits,
                guard=self.guard,
                recording=self.recordings.open_recording(session_id),
                config=self.config,
            )
        elif kind in (BackendKind.NATIVE_EXEC, BackendKind.AGENT_EXEC):
            # Resolve eagerly so a missing binary fails the open request.
            provider.resolve_binary()
            session = ProviderExecSession(
                session_id,
                cwd,
                cols,
                rows,
                limits=limits,
                guard=self.guard,
                recording=self.recordings.open_recording(session_id),
                provider=provider,
                kind=kind,
            )
        else:
            agent = kind is BackendKind.AGENT_PTY
            session = PtySession(
                session_id,
                kind,
                cwd,
                cols,
                rows,
                argv=provider.build_pty_command(cwd),
                env=provider.build_env(),
                recordings=self.recordings,
                idle_timeout=limits.pty_idle_timeout_sec if agent else 0,
                start_notice=(
                    f"[{provider.name}] PTY started, waiting for {provider.name} output…\r\n"
                    if agent
                    else None
                ),
            )
        await session.start()
        return session

    def _greet(self, opened: OpenedSession, provider: BaseProvider) -> None:
        session = opened.session
        if session.kind in (BackendKind.RESTRICTED_EXEC, BackendKind.NATIVE_EXEC, BackendKind.RESTRICTED_PTY):
            session.emit_data(f"$ cd {session.cwd}\r\n", record=False)
        if session.kind is not BackendKind.AGENT_EXEC:
            return
        banner = provider.banner(session.cwd)
        if banner:
            session.emit_data(banner)
        if opened.fallback_reason:
            session.emit_data(
                f"\r\n[{provider.name}] PTY unavailable, using exec mode: {opened.fallback_reason}\r\n"
            )

    def require(self, session_id: str, owner: Optional[Hashable] = None) -> RelaySession:
        entry = self.registry.require(session_id)
        if owner is not None and entry.owner != owner:
            raise UnknownSessionError("Unknown session")
        return entry.session

    async def close_session(self, session_id: str, owner: Optional[Hashable] = None) -> bool:
        """Close a session if it is live. Returns False for unknown ids."""
        entry = self.registry.get(session_id)
        if entry is None or (owner is not None and entry.owner != owner):
            return False
        self.registry.remove(session_id)
        await entry.session.close()
        LOG.info("Closed session %s", session_id)
        return True

    async def close_owned(self, owner: Hashable) -> None:
        for entry in self.registry.owned_by(owner):
            await self.close_session(entry.session.id)

    async def shutdown(self) -> None:
        for session_id in self.registry.live_ids():
            await self.close_session(session_id)
        self.recordings.dispose_all()
