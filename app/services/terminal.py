"""Interactive terminal sessions bridged between a transport and a shell.

Each session owns at most one shell handle. Output is pumped from the shell
by a dedicated task per session; input is forwarded under a per-session lock
so bytes reach the shell in the order they were received.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Protocol
from uuid import uuid4

from app.errors import ConnectionLost, SessionNotFoundError, WorkspaceError
from app.logging_config import get_logger
from app.models.session import Session, SessionState, TerminalEvent
from app.models.workspace import WORKSPACE_ROOT, utcnow
from app.services.backends import BackendResolver
from app.services.paths import validate_path
from app.services.provisioner import WorkspaceProvisioner

logger = get_logger(__name__)

DEFAULT_ROWS = 24
DEFAULT_COLS = 80


class TerminalTransport(Protocol):
    async def send(self, event: TerminalEvent) -> None:
        ...


class SessionRegistry:
    """Thread-safe map of live sessions keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def add(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        return session

    def snapshot(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


class TerminalSessionManager:
    def __init__(
        self,
        provisioner: WorkspaceProvisioner,
        backends: BackendResolver,
        registry: SessionRegistry | None = None,
        read_chunk: int = 4096,
    ) -> None:
        self._provisioner = provisioner
        self._backends = backends
        self._registry = registry if registry is not None else SessionRegistry()
        self._read_chunk = read_chunk

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def connect(
        self,
        owner_id: str,
        transport: TerminalTransport,
        cwd: str = WORKSPACE_ROOT,
        rows: int = DEFAULT_ROWS,
        cols: int = DEFAULT_COLS,
        transport_ref: str | None = None,
    ) -> Session:
        """Open a session and start streaming shell output to ``transport``.

        The returned session is either ``ACTIVE`` (possibly degraded) or
        ``CLOSED`` when the workspace or the shell could not be reached. In
        the closed case an ``error`` event has already been sent.
        """
        now = utcnow()
        session = Session(
            id=uuid4().hex,
            workspace_id="",
            transport_ref=transport_ref or "",
            working_dir=cwd,
            created_at=now,
            last_active_at=now,
            transport=transport,
        )
        try:
            session.working_dir = validate_path(cwd)
            workspace = await self._provisioner.require_active(owner_id)
        except WorkspaceError as exc:
            await self._fail(session, str(exc))
            return session

        session.workspace_id = workspace.id
        session.state = SessionState.PROVISIONING
        logger.info("terminal_session_provisioning", session_id=session.id, workspace_id=workspace.id)

        try:
            interactive = await self._backends.call(workspace, "supports_interactive_shell")
            shell = None
            if interactive:
                shell = await self._backends.call(
                    workspace, "spawn_shell", session.working_dir, rows, cols
                )
        except (WorkspaceError, OSError, RuntimeError) as exc:
            logger.warning("terminal_spawn_failed", session_id=session.id, error=str(exc))
            await self._fail(session, f"Failed to start shell: {exc}")
            return session

        session.shell = shell
        session.degraded = shell is None
        session.state = SessionState.ACTIVE
        self._registry.add(session)

        connected = await self._emit(
            session,
            TerminalEvent(
                "connected",
                {
                    "session_id": session.id,
                    "workspace_id": workspace.id,
                    "cwd": session.working_dir,
                    "degraded": session.degraded,
                },
            ),
        )
        if not connected:
            await self._close(session, "transport_lost", notify=False)
            return session

        if session.degraded:
            logger.warning("terminal_session_degraded", session_id=session.id, workspace_id=workspace.id)
            await self._emit(
                session,
                TerminalEvent(
                    "error",
                    {
                        "message": "Interactive shell is not available in this workspace; "
                        "file operations and command execution still work",
                        "degraded": True,
                    },
                ),
            )
        else:
            session.reader_task = asyncio.create_task(self._pump_output(session))
        logger.info(
            "terminal_session_active",
            session_id=session.id,
            workspace_id=workspace.id,
            degraded=session.degraded,
        )
        return session

    async def input(self, session_id: str, data: bytes | str) -> None:
        session = self._registry.get(session_id)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        if session.degraded or session.shell is None:
            await self._emit(session, TerminalEvent("error", {"message": "Terminal input is unavailable"}))
            return
        async with session.write_lock:
            if session.state is not SessionState.ACTIVE:
                return
            try:
                await asyncio.to_thread(session.shell.write, payload)
            except (ConnectionLost, OSError) as exc:
                logger.warning("terminal_write_failed", session_id=session.id, error=str(exc))
                await self._close(session, "process_exited")
                return
        session.last_active_at = utcnow()

    async def resize(self, session_id: str, rows: int, cols: int) -> None:
        session = self._registry.get(session_id)
        if session.shell is None:
            return
        try:
            await asyncio.to_thread(session.shell.resize, rows, cols)
        except (WorkspaceError, OSError, RuntimeError) as exc:
            logger.warning("terminal_resize_failed", session_id=session.id, error=str(exc))

    async def disconnect(self, session_id: str) -> None:
        session = self._registry.get(session_id)
        await self._close(session, "client_disconnect")

    async def transport_closed(self, session_id: str) -> None:
        """Release a session whose transport is already gone."""
        try:
            session = self._registry.get(session_id)
        except SessionNotFoundError:
            return
        await self._close(session, "transport_closed", notify=False)

    async def close_workspace_sessions(self, workspace_id: str, reason: str = "workspace_removed") -> int:
        sessions = [s for s in self._registry.snapshot() if s.workspace_id == workspace_id]
        for session in sessions:
            await self._close(session, reason)
        return len(sessions)

    async def shutdown(self) -> None:
        sessions = self._registry.snapshot()
        if sessions:
            logger.info("terminal_sessions_shutdown", count=len(sessions))
        await asyncio.gather(
            *(self._close(session, "shutdown") for session in sessions),
            return_exceptions=True,
        )

    async def _pump_output(self, session: Session) -> None:
        shell = session.shell
        reason = "process_exited"
        try:
            while session.state is SessionState.ACTIVE and shell is not None:
                chunk = await asyncio.to_thread(shell.read, self._read_chunk)
                if not chunk:
                    break
                session.last_active_at = utcnow()
                if not await self._emit(session, TerminalEvent("output", chunk)):
                    reason = "transport_lost"
                    break
        except asyncio.CancelledError:
            raise
        except (WorkspaceError, OSError, RuntimeError) as exc:
            logger.warning("terminal_read_failed", session_id=session.id, error=str(exc))
        await self._close(session, reason, notify=reason != "transport_lost")

    async def _close(self, session: Session, reason: str, notify: bool = True) -> None:
        if session.state is SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED
        self._registry.remove(session.id)

        task = session.reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        shell = session.shell
        if shell is not None:
            try:
                await asyncio.to_thread(shell.close)
            except (WorkspaceError, OSError, RuntimeError) as exc:
                logger.warning("terminal_shell_close_failed", session_id=session.id, error=str(exc))
        if notify:
            await self._emit(session, TerminalEvent("disconnected", {"reason": reason}))
        logger.info("terminal_session_closed", session_id=session.id, reason=reason)

    async def _fail(self, session: Session, message: str) -> None:
        await self._emit(session, TerminalEvent("error", {"message": message}))
        await self._close(session, "error")

    async def _emit(self, session: Session, event: TerminalEvent) -> bool:
        transport = session.transport
        if transport is None:
            return False
        try:
            await transport.send(event)
        except (ConnectionLost, ConnectionError, RuntimeError) as exc:
            logger.info("terminal_transport_lost", session_id=session.id, event_name=event.event, error=str(exc))
            return False
        return True
