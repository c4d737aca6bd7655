"""Docker sandbox provider.

Each workspace is a long-running container kept alive with ``tail -f
/dev/null``. File content moves through tar archives; structural operations
and listings run as commands inside the container.
"""

from __future__ import annotations

import io
import posixpath
import select
import socket
import tarfile
import threading
import time
from typing import Any, Sequence

import docker
from docker.errors import APIError, DockerException, NotFound

from app.errors import (
    BackendProvisioningError,
    BackendUnavailableError,
    ConnectionLost,
    EntryExistsError,
    EntryNotFoundError,
    UnsupportedOperationError,
)
from app.logging_config import get_logger
from app.models.sandbox import ExecResult, FileEntry, SandboxResources
from app.models.workspace import WORKSPACE_ROOT
from app.providers.sandbox.base import SandboxProvider

logger = get_logger(__name__)

LABEL_WORKSPACE = "cloud-ide.workspace"
LABEL_TYPE = "cloud-ide.type"
WORKSPACE_TYPE = "user-workspace"

_KEEPALIVE_COMMAND = ["tail", "-f", "/dev/null"]
_SHELL_BOOTSTRAP = "if command -v bash >/dev/null 2>&1; then exec bash; else exec sh; fi"
_STAT_FORMAT = "%F|%s|%a|%Y|%n"
_TIMEOUT_EXIT_CODES = (124, 137)
_SPAWN_FAILURE_MARKERS = ("not found", "No such file", "can't execute")


class DockerShell:
    """Attached TTY exec session inside a workspace container."""

    def __init__(self, api: Any, exec_id: str, attached: Any) -> None:
        self._api = api
        self._exec_id = exec_id
        self._attached = attached
        self._sock: socket.socket = getattr(attached, "_sock", attached)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def exec_id(self) -> str:
        return self._exec_id

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, max_bytes: int = 4096) -> bytes:
        while not self._closed:
            try:
                readable, _, _ = select.select([self._sock], [], [], 0.2)
            except (OSError, ValueError):
                return b""
            if not readable:
                continue
            try:
                return self._sock.recv(max_bytes)
            except OSError:
                return b""
        return b""

    def write(self, data: bytes) -> None:
        with self._lock:
            if self._closed:
                raise ConnectionLost("Shell is closed")
            self._sock.sendall(data)

    def resize(self, rows: int, cols: int) -> None:
        if self._closed:
            return
        self._api.exec_resize(self._exec_id, height=max(rows, 1), width=max(cols, 1))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._attached.close()
        except OSError:
            pass
        logger.debug("docker_shell_closed", exec_id=self._exec_id[:12])


class DockerProvider(SandboxProvider):
    def __init__(
        self,
        client: docker.DockerClient | None = None,
        image: str = "node:18-alpine",
    ) -> None:
        self._client = client
        self._image = image

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise BackendUnavailableError(f"Docker daemon not accessible: {exc}") from exc
        return self._client

    def is_available(self) -> bool:
        try:
            return bool(self.client.ping())
        except (BackendUnavailableError, DockerException):
            return False

    def create_sandbox(
        self,
        name: str,
        resources: SandboxResources,
        image: str | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        container_labels = {LABEL_TYPE: WORKSPACE_TYPE}
        container_labels.update(labels or {})
        environment = {"NODE_ENV": "development"}
        environment.update(env or {})
        try:
            container = self.client.containers.run(
                image or self._image,
                command=_KEEPALIVE_COMMAND,
                name=name,
                detach=True,
                working_dir=WORKSPACE_ROOT,
                environment=environment,
                labels=container_labels,
                mem_limit=f"{resources.memory_mb}m",
                cpu_shares=resources.cpu_shares,
                network_mode="bridge",
                restart_policy={"Name": resources.restart_policy},
            )
            container.exec_run(["mkdir", "-p", WORKSPACE_ROOT])
        except (DockerException, BackendUnavailableError) as exc:
            logger.error("sandbox_creation_failed", backend="containerized", name=name, error=str(exc))
            raise BackendProvisioningError(f"Failed to create container: {exc}") from exc
        logger.info(
            "sandbox_created",
            backend="containerized",
            sandbox_id=container.id[:12],
            image=image or self._image,
        )
        return container.id

    def delete_sandbox(self, sandbox_id: str) -> None:
        try:
            container = self.client.containers.get(sandbox_id)
            container.stop(timeout=5)
            container.remove(force=True)
        except NotFound:
            logger.warning("sandbox_already_removed", sandbox_id=sandbox_id[:12])
            return
        except DockerException as exc:
            raise BackendUnavailableError(f"Failed to remove container: {exc}") from exc
        logger.info("sandbox_deleted", backend="containerized", sandbox_id=sandbox_id[:12])

    def start_sandbox(self, sandbox_id: str) -> None:
        self._container(sandbox_id, running=True)

    def stop_sandbox(self, sandbox_id: str) -> None:
        container = self._container(sandbox_id, running=False)
        if container.status == "running":
            try:
                container.stop(timeout=5)
            except APIError as exc:
                raise BackendUnavailableError(f"Failed to stop container: {exc}") from exc
            logger.info("sandbox_stopped", sandbox_id=sandbox_id[:12])

    def sandbox_exists(self, sandbox_id: str) -> bool:
        try:
            self.client.containers.get(sandbox_id)
        except NotFound:
            return False
        except DockerException as exc:
            raise BackendUnavailableError(f"Docker daemon not accessible: {exc}") from exc
        return True

    def exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        container = self._container(sandbox_id, running=True)
        argv = list(command)
        if timeout_s:
            argv = ["timeout", "-s", "KILL", str(timeout_s), *argv]
        api = self.client.api
        start = time.monotonic()
        try:
            exec_id = api.exec_create(
                container.id,
                argv,
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
                workdir=cwd or WORKSPACE_ROOT,
                environment=env,
            )["Id"]
            chunks = [chunk for chunk in api.exec_start(exec_id, stream=True)]
            exit_code = api.exec_inspect(exec_id).get("ExitCode")
        except DockerException as exc:
            raise BackendUnavailableError(f"Failed to execute command: {exc}") from exc
        elapsed = time.monotonic() - start
        output = b"".join(chunks).decode("utf-8", errors="replace")
        timed_out = bool(timeout_s) and exit_code in _TIMEOUT_EXIT_CODES and elapsed >= timeout_s - 0.5
        spawn_failed = exit_code in (126, 127) and any(
            marker in output for marker in _SPAWN_FAILURE_MARKERS
        )
        if timed_out:
            logger.warning("exec_timed_out", sandbox_id=sandbox_id[:12], command=command[0], timeout_s=timeout_s)
        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            output=output,
            duration_ms=int(elapsed * 1000),
            timed_out=timed_out,
            spawn_failed=spawn_failed,
        )

    def supports_interactive_shell(self, sandbox_id: str) -> bool:
        exit_code, _ = self._run(sandbox_id, ["sh", "-c", "command -v bash || command -v sh"])
        return exit_code == 0

    def spawn_shell(
        self,
        sandbox_id: str,
        cwd: str | None = None,
        rows: int = 24,
        cols: int = 80,
    ) -> DockerShell:
        container = self._container(sandbox_id, running=True)
        api = self.client.api
        try:
            exec_id = api.exec_create(
                container.id,
                ["/bin/sh", "-c", _SHELL_BOOTSTRAP],
                stdin=True,
                tty=True,
                workdir=cwd or WORKSPACE_ROOT,
                environment={"TERM": "xterm-256color", "PS1": r"\u@\h:\w\$ "},
            )["Id"]
            attached = api.exec_start(exec_id, socket=True, tty=True)
        except DockerException as exc:
            raise BackendUnavailableError(f"Failed to start terminal: {exc}") from exc
        shell = DockerShell(api, exec_id, attached)
        try:
            shell.resize(rows, cols)
        except APIError as exc:
            logger.debug("docker_shell_resize_failed", exec_id=exec_id[:12], error=str(exc))
        logger.info("docker_shell_spawned", sandbox_id=sandbox_id[:12], exec_id=exec_id[:12])
        return shell

    def read_file(self, sandbox_id: str, path: str) -> bytes:
        container = self._container(sandbox_id, running=True)
        try:
            bits, _ = container.get_archive(path)
        except NotFound as exc:
            raise EntryNotFoundError(f"File not found: {path}") from exc
        buffer = io.BytesIO()
        for chunk in bits:
            buffer.write(chunk)
        buffer.seek(0)
        with tarfile.open(fileobj=buffer, mode="r") as tar:
            members = tar.getmembers()
            if not members:
                return b""
            if members[0].isdir():
                raise UnsupportedOperationError(f"Cannot read a directory: {path}")
            extracted = tar.extractfile(members[0])
            return extracted.read() if extracted else b""

    def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int | None = None,
    ) -> None:
        container = self._container(sandbox_id, running=True)
        existing = self.stat_path(sandbox_id, path)
        if existing is not None and existing.is_dir:
            raise EntryExistsError(f"A directory already exists at {path}")
        parent = posixpath.dirname(path) or "/"
        self.mkdirs(sandbox_id, parent)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=posixpath.basename(path))
            info.size = len(data)
            info.mode = mode if mode is not None else 0o644
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
        try:
            container.put_archive(parent, buffer.getvalue())
        except DockerException as exc:
            raise BackendUnavailableError(f"Failed to write file: {exc}") from exc

    def list_files(self, sandbox_id: str, path: str) -> Sequence[FileEntry]:
        exit_code, output = self._run(
            sandbox_id,
            ["find", path, "-mindepth", "1", "-maxdepth", "1", "-exec", "stat", "-c", _STAT_FORMAT, "{}", "+"],
        )
        if exit_code != 0:
            raise EntryNotFoundError(f"Directory not found: {path}")
        entries: list[FileEntry] = []
        for line in output.splitlines():
            entry = _parse_stat_line(line)
            if entry is not None:
                entries.append(entry)
        return entries

    def stat_path(self, sandbox_id: str, path: str) -> FileEntry | None:
        exit_code, output = self._run(sandbox_id, ["stat", "-c", _STAT_FORMAT, path])
        if exit_code != 0:
            return None
        return _parse_stat_line(output.strip())

    def mkdirs(self, sandbox_id: str, path: str) -> None:
        exit_code, output = self._run(sandbox_id, ["mkdir", "-p", path])
        if exit_code != 0:
            raise EntryExistsError(f"Cannot create directory {path}: {output.strip()}")

    def remove_path(self, sandbox_id: str, path: str) -> None:
        if self.stat_path(sandbox_id, path) is None:
            raise EntryNotFoundError(f"Path not found: {path}")
        self._run_checked(sandbox_id, ["rm", "-rf", "--", path])

    def move_path(self, sandbox_id: str, source: str, destination: str) -> None:
        if self.stat_path(sandbox_id, source) is None:
            raise EntryNotFoundError(f"Path not found: {source}")
        self.mkdirs(sandbox_id, posixpath.dirname(destination) or "/")
        self._run_checked(sandbox_id, ["mv", "--", source, destination])

    def copy_path(self, sandbox_id: str, source: str, destination: str) -> None:
        if self.stat_path(sandbox_id, source) is None:
            raise EntryNotFoundError(f"Path not found: {source}")
        self.mkdirs(sandbox_id, posixpath.dirname(destination) or "/")
        self._run_checked(sandbox_id, ["cp", "-r", "--", source, destination])

    def _container(self, sandbox_id: str, running: bool) -> Any:
        try:
            container = self.client.containers.get(sandbox_id)
            if running and container.status != "running":
                container.start()
                container.reload()
                logger.info("sandbox_started", sandbox_id=sandbox_id[:12])
        except NotFound as exc:
            raise KeyError(f"Unknown sandbox id: {sandbox_id}") from exc
        except DockerException as exc:
            raise BackendUnavailableError(f"Docker daemon not accessible: {exc}") from exc
        return container

    def _run(self, sandbox_id: str, command: Sequence[str]) -> tuple[int, str]:
        container = self._container(sandbox_id, running=True)
        try:
            result = container.exec_run(list(command), workdir=WORKSPACE_ROOT)
        except DockerException as exc:
            raise BackendUnavailableError(f"Failed to execute command: {exc}") from exc
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return result.exit_code, output

    def _run_checked(self, sandbox_id: str, command: Sequence[str]) -> str:
        exit_code, output = self._run(sandbox_id, command)
        if exit_code != 0:
            raise RuntimeError(f"Command failed: {' '.join(command)}\n{output.strip()}")
        return output


def _parse_stat_line(line: str) -> FileEntry | None:
    parts = line.split("|", 4)
    if len(parts) != 5:
        return None
    kind, size, permissions, mtime, full_path = parts
    is_dir = kind == "directory"
    try:
        size_value = int(size)
        mod_time: float | None = float(mtime)
    except ValueError:
        size_value, mod_time = 0, None
    return FileEntry(
        name=posixpath.basename(full_path.rstrip("/")) or full_path,
        is_dir=is_dir,
        size=size_value,
        mod_time=mod_time,
        permissions=permissions.zfill(3)[-3:],
    )
