"""Sandbox provider interface."""

from __future__ import annotations

from typing import Protocol, Sequence

from app.models.sandbox import ExecResult, FileEntry, SandboxResources


class InteractiveShell(Protocol):
    """Duplex byte channel to a shell running behind a pseudo-terminal.

    ``read`` blocks until output is available and returns ``b""`` once the
    process has exited or the handle was closed. ``close`` may be called any
    number of times.
    """

    @property
    def closed(self) -> bool:
        ...

    def read(self, max_bytes: int = 4096) -> bytes:
        ...

    def write(self, data: bytes) -> None:
        ...

    def resize(self, rows: int, cols: int) -> None:
        ...

    def close(self) -> None:
        ...


class SandboxProvider(Protocol):
    def create_sandbox(
        self,
        name: str,
        resources: SandboxResources,
        image: str | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        ...

    def delete_sandbox(self, sandbox_id: str) -> None:
        ...

    def start_sandbox(self, sandbox_id: str) -> None:
        ...

    def stop_sandbox(self, sandbox_id: str) -> None:
        ...

    def sandbox_exists(self, sandbox_id: str) -> bool:
        ...

    def exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        ...

    def supports_interactive_shell(self, sandbox_id: str) -> bool:
        ...

    def spawn_shell(
        self,
        sandbox_id: str,
        cwd: str | None = None,
        rows: int = 24,
        cols: int = 80,
    ) -> InteractiveShell:
        ...

    def read_file(self, sandbox_id: str, path: str) -> bytes:
        ...

    def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int | None = None,
    ) -> None:
        ...

    def list_files(self, sandbox_id: str, path: str) -> Sequence[FileEntry]:
        ...

    def stat_path(self, sandbox_id: str, path: str) -> FileEntry | None:
        ...

    def mkdirs(self, sandbox_id: str, path: str) -> None:
        ...

    def remove_path(self, sandbox_id: str, path: str) -> None:
        ...

    def move_path(self, sandbox_id: str, source: str, destination: str) -> None:
        ...

    def copy_path(self, sandbox_id: str, source: str, destination: str) -> None:
        ...
