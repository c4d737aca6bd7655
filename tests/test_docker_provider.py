"""Tests for DockerProvider against a mocked Docker client."""

import io
import tarfile
from unittest.mock import Mock

from docker.errors import DockerException, NotFound
import pytest

from app.errors import (
    BackendProvisioningError,
    BackendUnavailableError,
    EntryNotFoundError,
    UnsupportedOperationError,
)
from app.models.sandbox import SandboxResources
from app.providers.sandbox.docker import (
    LABEL_TYPE,
    LABEL_WORKSPACE,
    WORKSPACE_TYPE,
    DockerProvider,
    DockerShell,
)


@pytest.fixture
def container():
    container = Mock()
    container.id = "c0ffee" * 10
    container.status = "running"
    container.exec_run.return_value = Mock(exit_code=0, output=b"")
    return container


@pytest.fixture
def client(container):
    client = Mock()
    client.containers.run.return_value = container
    client.containers.get.return_value = container
    client.api.exec_create.return_value = {"Id": "exec-1234567890"}
    client.api.exec_start.return_value = iter([b"hello\n"])
    client.api.exec_inspect.return_value = {"ExitCode": 0}
    return client


@pytest.fixture
def provider(client):
    return DockerProvider(client=client, image="node:18-alpine")


def _tar_with(name: str, data: bytes) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def test_create_sandbox_applies_limits_and_labels(provider, client, container):
    sandbox_id = provider.create_sandbox(
        "workspace-abc",
        SandboxResources(memory_mb=512, cpu_shares=512),
        env={"WORKSPACE_ID": "abc"},
        labels={LABEL_WORKSPACE: "abc"},
    )

    assert sandbox_id == container.id
    args, kwargs = client.containers.run.call_args
    assert args == ("node:18-alpine",)
    assert kwargs["mem_limit"] == "512m"
    assert kwargs["cpu_shares"] == 512
    assert kwargs["restart_policy"] == {"Name": "unless-stopped"}
    assert kwargs["working_dir"] == "/workspace"
    assert kwargs["labels"] == {LABEL_TYPE: WORKSPACE_TYPE, LABEL_WORKSPACE: "abc"}
    assert kwargs["environment"]["WORKSPACE_ID"] == "abc"
    container.exec_run.assert_called_once_with(["mkdir", "-p", "/workspace"])


def test_create_sandbox_failure_is_provisioning_error(provider, client):
    client.containers.run.side_effect = DockerException("image pull failed")
    with pytest.raises(BackendProvisioningError):
        provider.create_sandbox("workspace-abc", SandboxResources(512, 512))


def test_is_available_reflects_daemon_ping(provider, client):
    assert provider.is_available()
    client.ping.side_effect = DockerException("connection refused")
    assert not provider.is_available()


def test_sandbox_exists(provider, client):
    assert provider.sandbox_exists("abc")
    client.containers.get.side_effect = NotFound("gone")
    assert not provider.sandbox_exists("abc")


def test_daemon_outage_is_not_reported_as_missing_sandbox(provider, client):
    client.containers.get.side_effect = DockerException("daemon down")
    with pytest.raises(BackendUnavailableError):
        provider.sandbox_exists("abc")


def test_missing_container_raises_key_error(provider, client):
    client.containers.get.side_effect = NotFound("gone")
    with pytest.raises(KeyError):
        provider.exec("abc", ["echo", "hi"])


def test_stopped_container_is_started_on_demand(provider, container):
    container.status = "exited"
    provider.start_sandbox("abc")
    container.start.assert_called_once()


def test_stop_running_container(provider, container):
    provider.stop_sandbox("abc")
    container.stop.assert_called_once_with(timeout=5)
    container.start.assert_not_called()


def test_stop_exited_container_is_a_no_op(provider, container):
    container.status = "exited"
    provider.stop_sandbox("abc")
    container.stop.assert_not_called()
    container.start.assert_not_called()


def test_stop_missing_container_raises_key_error(provider, client):
    client.containers.get.side_effect = NotFound("gone")
    with pytest.raises(KeyError):
        provider.stop_sandbox("abc")


def test_exec_wraps_command_with_timeout(provider, client):
    result = provider.exec("abc", ["python3", "/workspace/app.py"], cwd="/workspace/src", timeout_s=30)

    args, kwargs = client.api.exec_create.call_args
    assert args[1] == ["timeout", "-s", "KILL", "30", "python3", "/workspace/app.py"]
    assert kwargs["workdir"] == "/workspace/src"
    assert result.exit_code == 0
    assert result.output == "hello\n"
    assert not result.timed_out


def test_exec_reports_missing_interpreter(provider, client):
    client.api.exec_start.return_value = iter([b"timeout: can't execute 'ruby': No such file or directory\n"])
    client.api.exec_inspect.return_value = {"ExitCode": 127}
    result = provider.exec("abc", ["ruby", "main.rb"], timeout_s=30)
    assert result.spawn_failed
    assert not result.timed_out


def test_list_files_parses_stat_output(provider, container):
    container.exec_run.return_value = Mock(
        exit_code=0,
        output=(
            b"directory|4096|755|1700000000|/workspace/src\n"
            b"regular file|12|644|1700000100|/workspace/README.md\n"
            b"symbolic link|1|777|1700000200|/workspace/loop\n"
            b"garbage line\n"
        ),
    )
    entries = {entry.name: entry for entry in provider.list_files("abc", "/workspace")}

    assert set(entries) == {"src", "README.md", "loop"}
    assert entries["src"].is_dir
    assert not entries["loop"].is_dir
    assert entries["README.md"].size == 12
    assert entries["README.md"].permissions == "644"
    assert entries["README.md"].mod_time == 1700000100.0


def test_list_missing_directory(provider, container):
    container.exec_run.return_value = Mock(exit_code=1, output=b"find: '/workspace/x': No such file")
    with pytest.raises(EntryNotFoundError):
        provider.list_files("abc", "/workspace/x")


def test_read_file_extracts_archive(provider, container):
    container.get_archive.return_value = (iter([_tar_with("app.py", b"print('hi')\n")]), {})
    assert provider.read_file("abc", "/workspace/app.py") == b"print('hi')\n"


def test_read_missing_file(provider, container):
    container.get_archive.side_effect = NotFound("missing")
    with pytest.raises(EntryNotFoundError):
        provider.read_file("abc", "/workspace/missing.py")


def test_read_directory_is_unsupported(provider, container):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name="src")
        info.type = tarfile.DIRTYPE
        tar.addfile(info)
    container.get_archive.return_value = (iter([buffer.getvalue()]), {})
    with pytest.raises(UnsupportedOperationError):
        provider.read_file("abc", "/workspace/src")


def test_write_file_puts_archive_in_parent(provider, container):
    container.exec_run.side_effect = [
        Mock(exit_code=1, output=b"stat: cannot stat"),
        Mock(exit_code=0, output=b""),
    ]
    provider.write_file("abc", "/workspace/src/app.py", b"data", mode=0o755)

    parent, archive = container.put_archive.call_args[0]
    assert parent == "/workspace/src"
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        member = tar.getmember("app.py")
        assert member.mode == 0o755
        assert tar.extractfile(member).read() == b"data"


def test_remove_missing_path(provider, container):
    container.exec_run.return_value = Mock(exit_code=1, output=b"")
    with pytest.raises(EntryNotFoundError):
        provider.remove_path("abc", "/workspace/nope")


def test_delete_sandbox_tolerates_missing_container(provider, client):
    client.containers.get.side_effect = NotFound("gone")
    provider.delete_sandbox("abc")


def test_docker_shell_close_is_idempotent():
    api = Mock()
    sock = Mock()
    attached = Mock(_sock=sock)
    shell = DockerShell(api, "exec-1234567890", attached)

    shell.write(b"ls\n")
    sock.sendall.assert_called_once_with(b"ls\n")
    shell.resize(30, 100)
    api.exec_resize.assert_called_once_with("exec-1234567890", height=30, width=100)

    shell.close()
    shell.close()
    assert shell.closed
    attached.close.assert_called_once()
    assert shell.read() == b""
