"""File operations and tree construction over a workspace backend."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import posixpath
from typing import Sequence

from app.errors import (
    BackendUnavailableError,
    EntryExistsError,
    EntryNotFoundError,
    FileTooLargeError,
    PathValidationError,
    UnsupportedOperationError,
    WorkspaceError,
)
from app.logging_config import get_logger
from app.models.sandbox import FileEntry
from app.models.workspace import WORKSPACE_ROOT, FileNode, Workspace
from app.services.backends import BackendResolver
from app.services.execution import is_runnable
from app.services.paths import basename_of, is_root, join_logical, validate_path

logger = get_logger(__name__)

DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_TREE_DEPTH = 4
ENTRY_KINDS = ("file", "directory")

FILE_TYPES = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".html": "html",
    ".css": "css",
    ".json": "json",
    ".md": "markdown",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".xml": "xml",
    ".txt": "text",
    ".log": "text",
    ".sh": "shell",
    ".bat": "batch",
    ".dockerfile": "dockerfile",
    ".sql": "sql",
    ".php": "php",
    ".rb": "ruby",
    ".go": "go",
    ".rs": "rust",
    ".cpp": "cpp",
    ".c": "c",
    ".h": "c",
}


def file_type_for(name: str) -> str:
    return FILE_TYPES.get(posixpath.splitext(name)[1].lower(), "text")


def sort_entries(entries: Sequence[FileEntry]) -> list[FileEntry]:
    """Directories first, then case-sensitive by name."""
    return sorted(entries, key=lambda entry: (not entry.is_dir, entry.name))


class FileGateway:
    def __init__(
        self,
        backends: BackendResolver,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        tree_max_depth: int = DEFAULT_TREE_DEPTH,
    ) -> None:
        self._backends = backends
        self._max_file_bytes = max_file_bytes
        self._tree_max_depth = tree_max_depth

    @property
    def max_file_bytes(self) -> int:
        return self._max_file_bytes

    async def get_tree(
        self,
        workspace: Workspace,
        path: str = WORKSPACE_ROOT,
        max_depth: int | None = None,
    ) -> list[FileNode]:
        root = validate_path(path)
        depth = self._tree_max_depth
        if max_depth is not None:
            depth = min(max_depth, depth)
        if depth < 1:
            raise UnsupportedOperationError("max_depth must be at least 1")
        self._backends.provider_for(workspace)
        return await self._build_tree(workspace, root, depth)

    async def read_file(self, workspace: Workspace, path: str) -> str:
        target = validate_path(path)
        data = await self._backends.call(workspace, "read_file", target)
        return data.decode("utf-8", errors="replace")

    async def write_file(
        self,
        workspace: Workspace,
        path: str,
        content: str,
        mode: int | None = None,
    ) -> None:
        target = validate_path(path)
        self._reject_root(target, "write")
        data = content.encode("utf-8")
        if len(data) > self._max_file_bytes:
            raise FileTooLargeError(len(data), self._max_file_bytes)
        await self._backends.call(workspace, "write_file", target, data, mode)
        logger.debug("file_written", workspace_id=workspace.id, path=target, size=len(data))

    async def create_entry(
        self,
        workspace: Workspace,
        path: str,
        kind: str = "file",
        content: str | None = None,
    ) -> None:
        target = validate_path(path)
        if kind not in ENTRY_KINDS:
            raise UnsupportedOperationError(f"Unknown entry kind: {kind}")
        if kind == "directory":
            await self._backends.call(workspace, "mkdirs", target)
        else:
            await self.write_file(workspace, target, content or "")
        logger.info("entry_created", workspace_id=workspace.id, path=target, kind=kind)

    async def delete_entry(self, workspace: Workspace, path: str) -> None:
        target = validate_path(path)
        self._reject_root(target, "delete")
        await self._backends.call(workspace, "remove_path", target)
        logger.info("entry_deleted", workspace_id=workspace.id, path=target)

    async def rename_entry(self, workspace: Workspace, old_path: str, new_path: str) -> None:
        source = validate_path(old_path)
        target = validate_path(new_path)
        self._reject_root(source, "rename")
        self._reject_root(target, "rename")
        if source == target:
            return
        self._reject_nested(source, target)
        if await self._backends.call(workspace, "stat_path", target) is not None:
            raise EntryExistsError(f"Destination already exists: {target}")
        await self._backends.call(workspace, "move_path", source, target)
        logger.info("entry_renamed", workspace_id=workspace.id, source=source, target=target)

    async def move_entry(self, workspace: Workspace, source_path: str, destination_path: str) -> str:
        source = validate_path(source_path)
        destination = validate_path(destination_path)
        self._reject_root(source, "move")
        target = await self._final_target(workspace, source, destination)
        await self._backends.call(workspace, "move_path", source, target)
        logger.info("entry_moved", workspace_id=workspace.id, source=source, target=target)
        return target

    async def copy_entry(self, workspace: Workspace, source_path: str, destination_path: str) -> str:
        source = validate_path(source_path)
        destination = validate_path(destination_path)
        self._reject_root(source, "copy")
        target = await self._final_target(workspace, source, destination)
        await self._backends.call(workspace, "copy_path", source, target)
        logger.info("entry_copied", workspace_id=workspace.id, source=source, target=target)
        return target

    async def _final_target(self, workspace: Workspace, source: str, destination: str) -> str:
        if await self._backends.call(workspace, "stat_path", source) is None:
            raise EntryNotFoundError(f"Path not found: {source}")
        info = await self._backends.call(workspace, "stat_path", destination)
        target = destination
        if info is not None and info.is_dir:
            target = join_logical(destination, basename_of(source))
            info = await self._backends.call(workspace, "stat_path", target)
        if target == source:
            raise EntryExistsError(f"Source and destination are the same: {source}")
        self._reject_nested(source, target)
        if info is not None:
            raise EntryExistsError(f"Destination already exists: {target}")
        return target

    async def _build_tree(self, workspace: Workspace, path: str, depth: int) -> list[FileNode]:
        try:
            entries = await self._backends.call(workspace, "list_files", path)
        except BackendUnavailableError:
            raise
        except (WorkspaceError, OSError, RuntimeError) as exc:
            logger.warning("tree_listing_failed", workspace_id=workspace.id, path=path, error=str(exc))
            return []

        nodes: list[FileNode] = []
        for entry in sort_entries(entries):
            try:
                child_path = join_logical(path, entry.name)
            except PathValidationError:
                logger.debug("tree_entry_skipped", path=path, name=entry.name)
                continue
            nodes.append(self._node_for(child_path, entry))

        if depth > 1:
            directories = [node for node in nodes if node.is_dir]
            subtrees = await asyncio.gather(
                *(self._build_tree(workspace, node.path, depth - 1) for node in directories)
            )
            for node, children in zip(directories, subtrees):
                node.children = children
        return nodes

    @staticmethod
    def _node_for(path: str, entry: FileEntry) -> FileNode:
        modified = None
        if entry.mod_time is not None:
            modified = datetime.fromtimestamp(entry.mod_time, tz=timezone.utc).isoformat()
        return FileNode(
            path=path,
            name=entry.name,
            type="directory" if entry.is_dir else "file",
            size=None if entry.is_dir else entry.size,
            permissions=entry.permissions,
            modified=modified,
            file_type="folder" if entry.is_dir else file_type_for(entry.name),
            executable=not entry.is_dir and is_runnable(entry.name),
        )

    @staticmethod
    def _reject_root(path: str, operation: str) -> None:
        if is_root(path):
            raise PathValidationError(f"Cannot {operation} the workspace root")

    @staticmethod
    def _reject_nested(source: str, target: str) -> None:
        if target.startswith(source + "/"):
            raise PathValidationError(f"Cannot place {source} inside itself")
