"""Local sandbox provider implementation.

Each sandbox is a directory under ``base_dir``; the logical ``/workspace``
root maps onto that directory and processes run as local children of the
service.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path, PurePosixPath
import pty
import re
import select
import shutil
import signal
import stat
import struct
import subprocess
import tempfile
import termios
import threading
import time
from typing import Sequence
from uuid import uuid4

from app.errors import (
    BackendProvisioningError,
    ConnectionLost,
    EntryExistsError,
    EntryNotFoundError,
    PathValidationError,
    UnsupportedOperationError,
)
from app.logging_config import get_logger
from app.models.sandbox import ExecResult, FileEntry, SandboxResources
from app.models.workspace import WORKSPACE_ROOT
from app.providers.sandbox.base import SandboxProvider

logger = get_logger(__name__)

_SANDBOX_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_PASSTHROUGH_ENV = ("PATH", "LANG", "LC_ALL", "TZ")
_KILL_GRACE_S = 2.0


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid so job control and ^C reach the shell.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _kill_group(process: subprocess.Popen, sig: int = signal.SIGKILL) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


class LocalShell:
    """PTY-backed shell process owned by one terminal session."""

    def __init__(self, process: subprocess.Popen, master_fd: int) -> None:
        self._process = process
        self._master_fd = master_fd
        self._lock = threading.Lock()
        self._closed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, max_bytes: int = 4096) -> bytes:
        while not self._closed:
            try:
                readable, _, _ = select.select([self._master_fd], [], [], 0.2)
            except (OSError, ValueError):
                return b""
            if not readable:
                continue
            with self._lock:
                if self._closed:
                    return b""
                try:
                    return os.read(self._master_fd, max_bytes)
                except OSError:
                    # EIO once the slave side has no more writers.
                    return b""
        return b""

    def write(self, data: bytes) -> None:
        with self._lock:
            if self._closed:
                raise ConnectionLost("Shell is closed")
            view = memoryview(data)
            while view:
                written = os.write(self._master_fd, view)
                view = view[written:]

    def resize(self, rows: int, cols: int) -> None:
        with self._lock:
            if self._closed:
                return
            _set_winsize(self._master_fd, max(rows, 1), max(cols, 1))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._process.poll() is None:
            # Interactive shells ignore SIGTERM, hang up the terminal instead.
            _kill_group(self._process, signal.SIGHUP)
            try:
                self._process.wait(timeout=_KILL_GRACE_S)
            except subprocess.TimeoutExpired:
                _kill_group(self._process, signal.SIGKILL)
                self._process.wait(timeout=_KILL_GRACE_S)
        with self._lock:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
        logger.debug("local_shell_closed", pid=self._process.pid)


class LocalProvider(SandboxProvider):
    def __init__(
        self,
        base_dir: str | None = None,
        shell_candidates: Sequence[str] = ("bash", "sh"),
    ) -> None:
        self._base_dir = Path(base_dir) if base_dir else Path(
            tempfile.mkdtemp(prefix="cloudide-local-")
        )
        self._shell_candidates = tuple(shell_candidates)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def create_sandbox(
        self,
        name: str,
        resources: SandboxResources,
        image: str | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        sandbox_id = f"{name}-{uuid4().hex[:8]}"
        if not _SANDBOX_ID.match(sandbox_id):
            raise BackendProvisioningError(f"Invalid sandbox name: {name}")
        root = self._base_dir / sandbox_id
        try:
            root.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise BackendProvisioningError(f"Failed to create sandbox directory: {exc}") from exc
        logger.info("sandbox_created", backend="host-sandboxed", sandbox_id=sandbox_id)
        return sandbox_id

    def delete_sandbox(self, sandbox_id: str) -> None:
        root = self._sandbox_root(sandbox_id)
        shutil.rmtree(root, ignore_errors=True)
        logger.info("sandbox_deleted", backend="host-sandboxed", sandbox_id=sandbox_id)

    def start_sandbox(self, sandbox_id: str) -> None:
        self._get_root(sandbox_id)

    def stop_sandbox(self, sandbox_id: str) -> None:
        self._get_root(sandbox_id)

    def sandbox_exists(self, sandbox_id: str) -> bool:
        try:
            return self._sandbox_root(sandbox_id).is_dir()
        except KeyError:
            return False

    def exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        root = self._get_root(sandbox_id)
        workdir = self._resolve_path(sandbox_id, cwd) if cwd else root
        if not workdir.is_dir():
            raise EntryNotFoundError(f"Working directory not found: {cwd}")
        argv = [self._host_argument(sandbox_id, arg) for arg in command]
        start = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=workdir,
                env=self._sandbox_env(root, env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.warning("exec_spawn_failed", sandbox_id=sandbox_id, command=argv[0], error=str(exc))
            return ExecResult(
                exit_code=127,
                output=f"{argv[0]}: {exc.strerror or 'command not found'}",
                duration_ms=int((time.monotonic() - start) * 1000),
                spawn_failed=True,
            )

        timed_out = False
        try:
            stdout, _ = process.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            timed_out = True
            _kill_group(process)
            stdout, _ = process.communicate()
            logger.warning("exec_timed_out", sandbox_id=sandbox_id, command=argv[0], timeout_s=timeout_s)
        duration_ms = int((time.monotonic() - start) * 1000)
        return ExecResult(
            exit_code=process.returncode,
            output=(stdout or b"").decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
            timed_out=timed_out,
        )

    def supports_interactive_shell(self, sandbox_id: str) -> bool:
        self._get_root(sandbox_id)
        return self._find_shell() is not None

    def spawn_shell(
        self,
        sandbox_id: str,
        cwd: str | None = None,
        rows: int = 24,
        cols: int = 80,
    ) -> LocalShell:
        root = self._get_root(sandbox_id)
        shell = self._find_shell()
        if shell is None:
            raise UnsupportedOperationError("No interactive shell is available in this sandbox")
        workdir = self._resolve_path(sandbox_id, cwd) if cwd else root
        if not workdir.is_dir():
            raise EntryNotFoundError(f"Working directory not found: {cwd}")

        env = self._sandbox_env(root, None)
        env.update({"TERM": "xterm-256color", "PS1": r"\u@workspace:\w\$ "})
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, max(rows, 1), max(cols, 1))
            process = subprocess.Popen(
                [shell],
                cwd=workdir,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                close_fds=True,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        logger.info("local_shell_spawned", sandbox_id=sandbox_id, shell=shell, pid=process.pid)
        return LocalShell(process, master_fd)

    def read_file(self, sandbox_id: str, path: str) -> bytes:
        target = self._resolve_path(sandbox_id, path)
        if target.is_dir():
            raise UnsupportedOperationError(f"Cannot read a directory: {path}")
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise EntryNotFoundError(f"File not found: {path}") from exc

    def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int | None = None,
    ) -> None:
        target = self._resolve_path(sandbox_id, path)
        if target.is_dir():
            raise EntryExistsError(f"A directory already exists at {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        if mode is not None:
            os.chmod(target, mode)

    def list_files(self, sandbox_id: str, path: str) -> Sequence[FileEntry]:
        target = self._resolve_path(sandbox_id, path)
        if not target.exists():
            raise EntryNotFoundError(f"Directory not found: {path}")
        if not target.is_dir():
            raise UnsupportedOperationError(f"Not a directory: {path}")
        entries: list[FileEntry] = []
        for entry in target.iterdir():
            entries.append(self._entry_for(entry))
        return entries

    def stat_path(self, sandbox_id: str, path: str) -> FileEntry | None:
        target = self._resolve_path(sandbox_id, path)
        if not target.exists():
            return None
        return self._entry_for(target)

    def mkdirs(self, sandbox_id: str, path: str) -> None:
        target = self._resolve_path(sandbox_id, path)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except FileExistsError as exc:
            raise EntryExistsError(f"A file already exists at {path}") from exc

    def remove_path(self, sandbox_id: str, path: str) -> None:
        target = self._resolve_path(sandbox_id, path)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        else:
            raise EntryNotFoundError(f"Path not found: {path}")

    def move_path(self, sandbox_id: str, source: str, destination: str) -> None:
        src = self._resolve_path(sandbox_id, source)
        dst = self._resolve_path(sandbox_id, destination)
        if not src.exists():
            raise EntryNotFoundError(f"Path not found: {source}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))

    def copy_path(self, sandbox_id: str, source: str, destination: str) -> None:
        src = self._resolve_path(sandbox_id, source)
        dst = self._resolve_path(sandbox_id, destination)
        if not src.exists():
            raise EntryNotFoundError(f"Path not found: {source}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dst, symlinks=True)
        else:
            shutil.copy2(src, dst)

    def _find_shell(self) -> str | None:
        for candidate in self._shell_candidates:
            found = shutil.which(candidate)
            if found:
                return found
        return None

    def _sandbox_root(self, sandbox_id: str) -> Path:
        if not _SANDBOX_ID.match(sandbox_id):
            raise KeyError(f"Unknown sandbox id: {sandbox_id}")
        return self._base_dir / sandbox_id

    def _get_root(self, sandbox_id: str) -> Path:
        root = self._sandbox_root(sandbox_id)
        if not root.is_dir():
            raise KeyError(f"Unknown sandbox id: {sandbox_id}")
        return root

    def _resolve_path(self, sandbox_id: str, path: str) -> Path:
        root = self._get_root(sandbox_id).resolve()
        logical = PurePosixPath(path)
        if logical.is_absolute():
            try:
                logical = logical.relative_to(WORKSPACE_ROOT)
            except ValueError as exc:
                raise PathValidationError(f"Path is outside the workspace: {path}") from exc
        resolved = (root / logical).resolve()
        if root != resolved and root not in resolved.parents:
            raise PathValidationError(f"Path escapes sandbox: {path}")
        return resolved

    def _host_argument(self, sandbox_id: str, arg: str) -> str:
        if arg == WORKSPACE_ROOT or arg.startswith(WORKSPACE_ROOT + "/"):
            return str(self._resolve_path(sandbox_id, arg))
        return arg

    def _sandbox_env(self, root: Path, env: dict[str, str] | None) -> dict[str, str]:
        merged = {key: os.environ[key] for key in _PASSTHROUGH_ENV if key in os.environ}
        merged.setdefault("PATH", os.defpath)
        merged["HOME"] = str(root)
        merged["WORKSPACE_ROOT"] = str(root)
        if env:
            merged.update(env)
        return merged

    @staticmethod
    def _entry_for(entry: Path) -> FileEntry:
        # Symlinks are listed as plain entries and never descended.
        stat_info = entry.lstat()
        is_dir = stat.S_ISDIR(stat_info.st_mode)
        return FileEntry(
            name=entry.name,
            is_dir=is_dir,
            size=stat_info.st_size,
            mod_time=stat_info.st_mtime,
            permissions=format(stat.S_IMODE(stat_info.st_mode), "03o"),
        )
