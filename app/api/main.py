from __future__ import annotations

import codecs
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from app.config import Settings, load_settings
from app.errors import (
    BackendProvisioningError,
    BackendUnavailableError,
    ConnectionLost,
    EntryExistsError,
    EntryNotFoundError,
    FileTooLargeError,
    ForbiddenCommandError,
    InvalidOwnerError,
    PathValidationError,
    SessionNotFoundError,
    UnsupportedOperationError,
    WorkspaceError,
)
from app.logging_config import configure_logging, get_logger, is_configured
from app.models.session import Session, TerminalEvent
from app.models.workspace import WORKSPACE_ROOT, Workspace
from app.providers.sandbox import build_providers
from app.services import (
    BackendResolver,
    CommandExecutionService,
    FileGateway,
    TerminalSessionManager,
    WorkspaceProvisioner,
    WorkspaceStore,
)
from app.services.terminal import DEFAULT_COLS, DEFAULT_ROWS

logger = get_logger(__name__)

_ERROR_STATUS: tuple[tuple[type[WorkspaceError], int], ...] = (
    (InvalidOwnerError, 400),
    (PathValidationError, 400),
    (UnsupportedOperationError, 400),
    (ForbiddenCommandError, 403),
    (EntryNotFoundError, 404),
    (SessionNotFoundError, 404),
    (EntryExistsError, 409),
    (FileTooLargeError, 413),
    (BackendProvisioningError, 503),
    (BackendUnavailableError, 503),
)


class WriteFileRequest(BaseModel):
    path: str
    content: str


class CreateEntryRequest(BaseModel):
    path: str
    type: str = "file"
    content: str | None = None


class RenameRequest(BaseModel):
    old_path: str
    new_path: str


class TransferRequest(BaseModel):
    source: str
    destination: str


class RunFileRequest(BaseModel):
    path: str
    cwd: str = WORKSPACE_ROOT


class RunCommandRequest(BaseModel):
    command: str
    cwd: str = WORKSPACE_ROOT


class WebSocketTransport:
    """Sends terminal events as JSON frames, decoding shell output as UTF-8."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def send(self, event: TerminalEvent) -> None:
        if isinstance(event.data, bytes):
            event = TerminalEvent(event.event, self._decoder.decode(event.data))
        try:
            await self._websocket.send_json(event.to_dict())
        except WebSocketDisconnect as exc:
            raise ConnectionLost("Terminal connection closed") from exc


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    if not is_configured():
        configure_logging(settings.log_level, settings.log_json)

    backends = BackendResolver(build_providers(settings))
    store = WorkspaceStore(Path(settings.data_dir) / "workspaces.json")
    files = FileGateway(backends, settings.max_file_bytes, settings.tree_max_depth)
    provisioner = WorkspaceProvisioner(store, backends, files, settings)
    execution = CommandExecutionService(backends, settings.exec_timeout_s)
    terminals = TerminalSessionManager(provisioner, backends)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info("service_started", backend=settings.backend, workspaces=len(store.all()))
        yield
        await terminals.shutdown()
        logger.info("service_stopped")

    app = FastAPI(title="cloudide-workspace", lifespan=lifespan)
    app.state.settings = settings
    app.state.provisioner = provisioner
    app.state.files = files
    app.state.execution = execution
    app.state.terminals = terminals

    @app.exception_handler(WorkspaceError)
    async def workspace_error_handler(_: Request, exc: WorkspaceError) -> JSONResponse:
        status = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 500)
        if status >= 500:
            logger.warning("request_failed", error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(status_code=status, content={"error": str(exc)})

    async def active_workspace(owner_id: str) -> Workspace:
        return await provisioner.require_active(owner_id)

    @app.get("/health")
    def health_check() -> dict:
        return {"status": "ok"}

    @app.post("/workspaces", status_code=201)
    async def provision_workspace(x_owner_id: str = Header(...)) -> dict:
        workspace = await provisioner.provision(x_owner_id)
        return workspace.to_dict()

    @app.get("/workspaces/me")
    async def get_workspace(x_owner_id: str = Header(...)) -> Any:
        workspace = provisioner.get(x_owner_id)
        if workspace is None:
            return JSONResponse(status_code=404, content={"error": "No workspace for this owner"})
        return workspace.to_dict()

    @app.delete("/workspaces/me")
    async def remove_workspace(x_owner_id: str = Header(...)) -> Any:
        workspace = provisioner.get(x_owner_id)
        if workspace is None:
            return JSONResponse(status_code=404, content={"error": "No workspace for this owner"})
        await terminals.close_workspace_sessions(workspace.id)
        await provisioner.remove(x_owner_id)
        return {"removed": workspace.id}

    @app.post("/workspaces/me/stop")
    async def stop_workspace(x_owner_id: str = Header(...)) -> Any:
        workspace = provisioner.get(x_owner_id)
        if workspace is None:
            return JSONResponse(status_code=404, content={"error": "No workspace for this owner"})
        await terminals.close_workspace_sessions(workspace.id, "workspace_stopped")
        workspace = await provisioner.stop(x_owner_id)
        if workspace is None:
            return JSONResponse(status_code=404, content={"error": "No workspace for this owner"})
        return workspace.to_dict()

    @app.post("/workspaces/me/start")
    async def start_workspace(x_owner_id: str = Header(...)) -> Any:
        workspace = await provisioner.start(x_owner_id)
        if workspace is None:
            return JSONResponse(status_code=404, content={"error": "No workspace for this owner"})
        return workspace.to_dict()

    @app.get("/files/tree")
    async def get_tree(
        path: str = Query(WORKSPACE_ROOT),
        depth: int | None = Query(None, ge=1),
        x_owner_id: str = Header(...),
    ) -> dict:
        workspace = await active_workspace(x_owner_id)
        nodes = await files.get_tree(workspace, path, depth)
        return {"path": path, "children": [node.to_dict() for node in nodes]}

    @app.get("/files/content")
    async def read_file(path: str = Query(...), x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        content = await files.read_file(workspace, path)
        return {"path": path, "content": content}

    @app.put("/files/content")
    async def write_file(body: WriteFileRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        await files.write_file(workspace, body.path, body.content)
        return {"path": body.path, "size": len(body.content.encode("utf-8"))}

    @app.post("/files/entries", status_code=201)
    async def create_entry(body: CreateEntryRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        await files.create_entry(workspace, body.path, body.type, body.content)
        return {"path": body.path, "type": body.type}

    @app.delete("/files/entries")
    async def delete_entry(path: str = Query(...), x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        await files.delete_entry(workspace, path)
        return {"deleted": path}

    @app.post("/files/rename")
    async def rename_entry(body: RenameRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        await files.rename_entry(workspace, body.old_path, body.new_path)
        return {"path": body.new_path}

    @app.post("/files/move")
    async def move_entry(body: TransferRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        target = await files.move_entry(workspace, body.source, body.destination)
        return {"path": target}

    @app.post("/files/copy")
    async def copy_entry(body: TransferRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        target = await files.copy_entry(workspace, body.source, body.destination)
        return {"path": target}

    @app.post("/execute/file")
    async def execute_file(body: RunFileRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        result = await execution.run_file(workspace, body.path, body.cwd)
        return result.to_dict()

    @app.post("/execute/command")
    async def execute_command(body: RunCommandRequest, x_owner_id: str = Header(...)) -> dict:
        workspace = await active_workspace(x_owner_id)
        result = await execution.run_command(workspace, body.command, body.cwd)
        return result.to_dict()

    @app.websocket("/terminal")
    async def terminal(websocket: WebSocket, owner_id: str = Query(...)) -> None:
        await websocket.accept()
        transport = WebSocketTransport(websocket)
        session: Session | None = None

        async def handle_frame(
            message: dict[str, Any], session: Session | None
        ) -> tuple[Session | None, bool]:
            kind = message.get("event")
            if kind == "connect":
                if session is not None and session.id in terminals.registry:
                    await transport.send(TerminalEvent("error", {"message": "Already connected"}))
                    return session, False
                rows, cols = _dimensions(message)
                session = await terminals.connect(
                    owner_id,
                    transport,
                    cwd=message.get("cwd") or WORKSPACE_ROOT,
                    rows=rows,
                    cols=cols,
                    transport_ref=f"ws:{id(websocket)}",
                )
            elif session is None or session.id not in terminals.registry:
                await transport.send(TerminalEvent("error", {"message": "No active session"}))
            elif kind == "input":
                await terminals.input(session.id, str(message.get("data", "")))
            elif kind == "resize":
                await terminals.resize(session.id, *_dimensions(message))
            elif kind == "disconnect":
                await terminals.disconnect(session.id)
                return session, True
            else:
                await transport.send(TerminalEvent("error", {"message": f"Unknown event: {kind}"}))
            return session, False

        try:
            while True:
                try:
                    message = _parse_frame(await websocket.receive_text())
                    session, done = await handle_frame(message, session)
                except ValueError as exc:
                    await transport.send(TerminalEvent("error", {"message": f"Invalid frame: {exc}"}))
                    continue
                if done:
                    break
        except (WebSocketDisconnect, ConnectionLost):
            pass
        finally:
            if session is not None:
                await terminals.transport_closed(session.id)
        await _close_quietly(websocket)

    return app


def _parse_frame(text: str) -> dict[str, Any]:
    message = json.loads(text)
    if not isinstance(message, dict):
        raise ValueError("expected a JSON object")
    return message


def _dimensions(message: dict[str, Any]) -> tuple[int, int]:
    return (
        _int_field(message, "rows", DEFAULT_ROWS),
        _int_field(message, "cols", DEFAULT_COLS),
    )


def _int_field(message: dict[str, Any], key: str, default: int) -> int:
    value = message.get(key)
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be an integer") from exc
    if number < 1:
        raise ValueError(f"{key} must be positive")
    return number


async def _close_quietly(websocket: WebSocket) -> None:
    if websocket.client_state is WebSocketState.DISCONNECTED:
        return
    try:
        await websocket.close()
    except (RuntimeError, WebSocketDisconnect):
        # Close raced with the client going away.
        pass


app = create_app()
