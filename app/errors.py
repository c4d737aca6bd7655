"""Error taxonomy shared by providers, services and the API layer."""

from __future__ import annotations


class WorkspaceError(Exception):
    """Base class for every error raised by the workspace layer."""


class PathValidationError(WorkspaceError, ValueError):
    pass


class InvalidOwnerError(WorkspaceError, ValueError):
    pass


class BackendProvisioningError(WorkspaceError, RuntimeError):
    pass


class BackendUnavailableError(WorkspaceError, RuntimeError):
    pass


class UnsupportedOperationError(WorkspaceError):
    pass


class ForbiddenCommandError(WorkspaceError):
    pass


class FileTooLargeError(WorkspaceError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"File content too large ({size} bytes, max {limit})")
        self.size = size
        self.limit = limit


class EntryNotFoundError(WorkspaceError, FileNotFoundError):
    pass


class EntryExistsError(WorkspaceError, FileExistsError):
    pass


class SessionNotFoundError(WorkspaceError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown session"


class ConnectionLost(WorkspaceError, ConnectionError):
    """The terminal transport went away while a session was live."""
