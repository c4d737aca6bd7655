"""Logical path validation for workspace file operations.

Every path that reaches a provider has passed through :func:`validate_path`:
it is absolute, rooted at ``/workspace``, free of ``..`` and ``~`` segments,
and not one of the protected system locations.
"""

from __future__ import annotations

import posixpath

from app.errors import PathValidationError
from app.models.workspace import WORKSPACE_ROOT

FORBIDDEN_PATHS = ("/etc/passwd", "/etc/shadow", "/root", "/proc", "/sys")


def validate_path(path: str | None, root: str = WORKSPACE_ROOT) -> str:
    if path is None or not isinstance(path, str) or not path.strip():
        raise PathValidationError("Path is required")
    if "\x00" in path:
        raise PathValidationError("Invalid path: contains a NUL byte")
    if ".." in path or "~" in path:
        raise PathValidationError("Invalid path: directory traversal not allowed")
    if not path.startswith("/"):
        raise PathValidationError("Path must be absolute (start with /)")

    normalized = posixpath.normpath(path)
    # normpath keeps a leading "//" as-is.
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if _is_under(normalized, FORBIDDEN_PATHS):
        raise PathValidationError("Access to this path is forbidden")
    if normalized != root and not normalized.startswith(root + "/"):
        raise PathValidationError(f"Path must be inside {root}")
    return normalized


def is_root(path: str, root: str = WORKSPACE_ROOT) -> bool:
    return path == root


def join_logical(parent: str, name: str) -> str:
    if not name or "/" in name or name in (".", ".."):
        raise PathValidationError(f"Invalid entry name: {name!r}")
    return posixpath.join(parent, name)


def basename_of(path: str) -> str:
    return posixpath.basename(path)


def _is_under(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes)
