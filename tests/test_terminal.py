"""Tests for the terminal session manager."""

import asyncio

import pytest

from app.errors import SessionNotFoundError
from app.models.sandbox import BackendKind
from app.models.session import Session, SessionState
from app.models.workspace import utcnow
from app.providers.sandbox.local import LocalProvider
from app.services.backends import BackendResolver
from app.services.files import FileGateway
from app.services.provisioner import WorkspaceProvisioner
from app.services.terminal import SessionRegistry, TerminalSessionManager


async def _wait_for(predicate, timeout_s: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def shell_less_terminals(tmp_path, store, settings):
    provider = LocalProvider(base_dir=str(tmp_path / "noshell"), shell_candidates=("no-such-shell-xyz",))
    backends = BackendResolver({BackendKind.HOST_SANDBOXED: provider})
    provisioner = WorkspaceProvisioner(store, backends, FileGateway(backends), settings)
    return TerminalSessionManager(provisioner, backends)


def test_registry_operations():
    registry = SessionRegistry()
    now = utcnow()
    session = Session(
        id="s1",
        workspace_id="w1",
        transport_ref="ws:1",
        working_dir="/workspace",
        created_at=now,
        last_active_at=now,
    )
    registry.add(session)
    assert "s1" in registry
    assert len(registry) == 1
    assert registry.get("s1") is session
    assert registry.snapshot() == [session]
    assert registry.remove("s1") is session
    assert registry.remove("s1") is None
    with pytest.raises(SessionNotFoundError):
        registry.get("s1")


async def test_echo_round_trip(terminals, transport):
    session = await terminals.connect("alice", transport, "/workspace")

    assert session.state is SessionState.ACTIVE
    assert not session.degraded
    assert transport.names()[0] == "connected"
    assert transport.events[0].data["session_id"] == session.id
    assert session.id in terminals.registry

    await terminals.input(session.id, "echo hi-$((1+1))\n")
    await _wait_for(lambda: b"hi-2" in transport.output())

    await terminals.disconnect(session.id)

    assert session.state is SessionState.CLOSED
    assert session.id not in terminals.registry
    assert transport.names()[-1] == "disconnected"
    assert session.shell.closed


async def test_interrupt_byte_reaches_the_shell(terminals, transport):
    session = await terminals.connect("alice", transport)
    await terminals.input(session.id, "sleep 30\n")
    await asyncio.sleep(0.3)
    await terminals.input(session.id, b"\x03")
    await terminals.input(session.id, "echo after-$((2+3))\n")

    await _wait_for(lambda: b"after-5" in transport.output())
    await terminals.disconnect(session.id)


async def test_shell_starts_in_requested_directory(terminals, transport, provisioner):
    workspace = await provisioner.provision("alice")
    assert workspace.status.value == "active"
    session = await terminals.connect("alice", transport, "/workspace/docs")

    await terminals.input(session.id, "basename \"$(pwd)\"; echo done-$((3*3))\n")
    await _wait_for(lambda: b"done-9" in transport.output())
    assert b"docs" in transport.output()
    await terminals.disconnect(session.id)


async def test_disconnect_is_idempotent(terminals, transport):
    session = await terminals.connect("alice", transport)
    await terminals.disconnect(session.id)
    await terminals.transport_closed(session.id)

    assert transport.names().count("disconnected") == 1
    with pytest.raises(SessionNotFoundError):
        await terminals.disconnect(session.id)


async def test_process_exit_closes_session(terminals, transport):
    session = await terminals.connect("alice", transport)
    await terminals.input(session.id, "exit\n")

    await _wait_for(lambda: session.state is SessionState.CLOSED)
    assert session.id not in terminals.registry
    assert transport.events[-1].event == "disconnected"
    assert transport.events[-1].data == {"reason": "process_exited"}


async def test_transport_loss_releases_session(terminals, transport):
    session = await terminals.connect("alice", transport)
    transport.fail = True
    await terminals.input(session.id, "echo gone\n")

    await _wait_for(lambda: session.state is SessionState.CLOSED)
    assert session.id not in terminals.registry
    assert session.shell.closed


async def test_invalid_working_directory_is_reported(terminals, transport):
    session = await terminals.connect("alice", transport, "/workspace/../etc")

    assert session.state is SessionState.CLOSED
    assert transport.names() == ["error", "disconnected"]
    assert len(terminals.registry) == 0


async def test_missing_owner_is_reported(terminals, transport, store):
    session = await terminals.connect("", transport)

    assert session.state is SessionState.CLOSED
    assert transport.names() == ["error", "disconnected"]
    assert transport.events[0].data["message"] == "owner_id is required"
    assert store.all() == []


async def test_spawn_failure_closes_without_retry(terminals, transport, local_provider, monkeypatch):
    calls = []

    def failing_spawn(*args, **kwargs):
        calls.append(args)
        raise OSError("pty allocation failed")

    monkeypatch.setattr(local_provider, "spawn_shell", failing_spawn)

    session = await terminals.connect("alice", transport)

    assert len(calls) == 1
    assert session.state is SessionState.CLOSED
    assert transport.names() == ["error", "disconnected"]
    assert "pty allocation failed" in transport.events[0].data["message"]
    assert len(terminals.registry) == 0


async def test_degraded_mode_without_shell(shell_less_terminals, transport):
    session = await shell_less_terminals.connect("alice", transport)

    assert session.state is SessionState.ACTIVE
    assert session.degraded
    assert session.shell is None
    assert transport.names() == ["connected", "error"]
    assert transport.events[0].data["degraded"] is True
    assert session.id in shell_less_terminals.registry

    await shell_less_terminals.input(session.id, "ls\n")
    assert transport.names()[-1] == "error"

    await shell_less_terminals.resize(session.id, 40, 120)
    await shell_less_terminals.disconnect(session.id)
    assert transport.names()[-1] == "disconnected"


async def test_resize_is_forwarded(terminals, transport):
    session = await terminals.connect("alice", transport, rows=24, cols=80)
    await terminals.resize(session.id, 50, 132)
    await terminals.input(session.id, "stty size; echo sized-$((6*7))\n")

    await _wait_for(lambda: b"sized-42" in transport.output())
    assert b"50 132" in transport.output()
    await terminals.disconnect(session.id)


async def test_shutdown_closes_every_session(terminals, transport):
    first = await terminals.connect("alice", transport)
    second = await terminals.connect("bob", transport)

    await terminals.shutdown()

    assert len(terminals.registry) == 0
    assert first.state is SessionState.CLOSED
    assert second.state is SessionState.CLOSED
    assert first.shell.closed and second.shell.closed


async def test_close_workspace_sessions(terminals, transport, provisioner):
    session = await terminals.connect("alice", transport)
    workspace = provisioner.get("alice")

    assert await terminals.close_workspace_sessions(workspace.id) == 1
    assert session.state is SessionState.CLOSED
