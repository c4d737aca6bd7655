"""Workspace services layered over the sandbox providers."""

from app.services.backends import BackendResolver
from app.services.execution import CommandExecutionService
from app.services.files import FileGateway
from app.services.provisioner import WorkspaceProvisioner
from app.services.store import WorkspaceStore
from app.services.terminal import SessionRegistry, TerminalSessionManager, TerminalTransport

__all__ = [
    "BackendResolver",
    "CommandExecutionService",
    "FileGateway",
    "SessionRegistry",
    "TerminalSessionManager",
    "TerminalTransport",
    "WorkspaceProvisioner",
    "WorkspaceStore",
]
