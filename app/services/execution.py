"""One-shot command and file execution with a hard timeout."""

from __future__ import annotations

import posixpath
import re
import shlex
from typing import Callable

from app.errors import ForbiddenCommandError, UnsupportedOperationError
from app.logging_config import get_logger
from app.models.session import ExecutionResult
from app.models.workspace import WORKSPACE_ROOT, Workspace
from app.services.backends import BackendResolver
from app.services.paths import validate_path

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 30

DANGEROUS_COMMANDS = (
    "rm -rf /",
    "dd if=",
    "mkfs",
    "fdisk",
    "format",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
)

_JAVA_BUILD_AND_RUN = 'cd "$1" && javac "$2" && java -cp "$1" "$3"'

_RUNNERS: dict[str, Callable[[str], list[str]]] = {
    ".py": lambda path: ["python3", path],
    ".js": lambda path: ["node", path],
    ".sh": lambda path: ["sh", path],
    ".bat": lambda path: ["sh", path],
    ".java": lambda path: [
        "sh",
        "-c",
        _JAVA_BUILD_AND_RUN,
        "sh",
        posixpath.dirname(path),
        path,
        posixpath.splitext(posixpath.basename(path))[0],
    ],
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def is_runnable(name: str) -> bool:
    return posixpath.splitext(name)[1].lower() in _RUNNERS


def build_command(path: str) -> list[str]:
    extension = posixpath.splitext(path)[1].lower()
    runner = _RUNNERS.get(extension)
    if runner is None:
        raise UnsupportedOperationError(
            f"Unsupported file type: {extension or posixpath.basename(path)}"
        )
    return runner(path)


def describe_command(path: str) -> str:
    name = posixpath.basename(path)
    if name.lower().endswith(".java"):
        return f"javac {name} && java {posixpath.splitext(name)[0]}"
    return shlex.join(build_command(name))


def check_command(command: str) -> None:
    lowered = command.lower()
    for dangerous in DANGEROUS_COMMANDS:
        if dangerous in lowered:
            raise ForbiddenCommandError("Command contains forbidden operations")


def clean_output(output: str) -> str:
    return _CONTROL_CHARS.sub("", output).strip()


class CommandExecutionService:
    def __init__(self, backends: BackendResolver, timeout_s: int = DEFAULT_TIMEOUT_S) -> None:
        self._backends = backends
        self._timeout_s = timeout_s

    @property
    def timeout_s(self) -> int:
        return self._timeout_s

    async def run_file(
        self, workspace: Workspace, path: str, cwd: str = WORKSPACE_ROOT
    ) -> ExecutionResult:
        # Unsupported file types are rejected before the path itself is checked.
        build_command(path)
        file_path = validate_path(path)
        workdir = validate_path(cwd)
        argv = build_command(file_path)
        return await self._execute(workspace, argv, workdir, describe_command(file_path))

    async def run_command(
        self, workspace: Workspace, command: str, cwd: str = WORKSPACE_ROOT
    ) -> ExecutionResult:
        if not command or not command.strip():
            raise UnsupportedOperationError("Command is required")
        workdir = validate_path(cwd)
        check_command(command)
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            raise UnsupportedOperationError(f"Cannot parse command: {exc}") from exc
        return await self._execute(workspace, argv, workdir, command.strip())

    async def _execute(
        self, workspace: Workspace, argv: list[str], cwd: str, display: str
    ) -> ExecutionResult:
        logger.info("execution_started", workspace_id=workspace.id, command=display, cwd=cwd)
        result = await self._backends.call(workspace, "exec", argv, cwd, None, self._timeout_s)
        output = clean_output(result.output)
        error = None
        if result.spawn_failed:
            error = f"{argv[0]} is not installed in this environment"
            output = output or error
        elif result.timed_out:
            error = f"Command timed out after {self._timeout_s} seconds"
        elif not output:
            output = f"Process exited with code {result.exit_code}"
        logger.info(
            "execution_finished",
            workspace_id=workspace.id,
            command=display,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_ms=result.duration_ms,
        )
        return ExecutionResult(
            command=display,
            output=output,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            error=error,
        )
