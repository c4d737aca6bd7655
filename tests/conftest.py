from datetime import datetime, timezone
import os
import time

import pytest

from app.config import Settings
from app.models.sandbox import BackendKind, SandboxResources
from app.models.workspace import Workspace, WorkspaceStatus
from app.providers.sandbox.local import LocalProvider
from app.services.backends import BackendResolver
from app.services.execution import CommandExecutionService
from app.services.files import FileGateway
from app.services.provisioner import WorkspaceProvisioner
from app.services.store import WorkspaceStore
from app.services.terminal import TerminalSessionManager


class RecordingTransport:
    """Collects every terminal event sent to it."""

    def __init__(self) -> None:
        self.events = []
        self.fail = False

    async def send(self, event) -> None:
        if self.fail:
            raise ConnectionError("transport closed")
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.event for event in self.events]

    def output(self) -> bytes:
        return b"".join(event.data for event in self.events if event.event == "output")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        backend="host-sandboxed",
        data_dir=str(tmp_path / "data"),
        sandbox_base_dir=str(tmp_path / "sandboxes"),
        exec_timeout_s=5,
    )


@pytest.fixture
def local_provider(settings) -> LocalProvider:
    return LocalProvider(base_dir=settings.sandbox_base_dir)


@pytest.fixture
def backends(local_provider) -> BackendResolver:
    return BackendResolver({BackendKind.HOST_SANDBOXED: local_provider})


@pytest.fixture
def store(settings) -> WorkspaceStore:
    return WorkspaceStore(f"{settings.data_dir}/workspaces.json")


@pytest.fixture
def files(backends, settings) -> FileGateway:
    return FileGateway(backends, settings.max_file_bytes, settings.tree_max_depth)


@pytest.fixture
def provisioner(store, backends, files, settings) -> WorkspaceProvisioner:
    return WorkspaceProvisioner(store, backends, files, settings)


@pytest.fixture
def execution(backends, settings) -> CommandExecutionService:
    return CommandExecutionService(backends, settings.exec_timeout_s)


@pytest.fixture
def terminals(provisioner, backends) -> TerminalSessionManager:
    return TerminalSessionManager(provisioner, backends)


@pytest.fixture
def bare_workspace(local_provider) -> Workspace:
    """An active workspace backed by an empty sandbox directory."""
    handle = local_provider.create_sandbox("workspace-test", SandboxResources(memory_mb=512, cpu_shares=512))
    return Workspace(
        id="test",
        owner_id="owner-test",
        backend_kind=BackendKind.HOST_SANDBOXED,
        backend_handle=handle,
        created_at=datetime.now(timezone.utc),
        status=WorkspaceStatus.ACTIVE,
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


def _process_gone(pid: int, timeout: float = 5.0) -> bool:
    """True once ``pid`` no longer exists or is an unreaped zombie."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            with open(f"/proc/{pid}/stat") as handle:
                if handle.read().rsplit(")", 1)[1].split()[0] == "Z":
                    return True
        except FileNotFoundError:
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def process_gone():
    return _process_gone
