"""Shared data models for the workspace service."""

from app.models.sandbox import BackendKind, ExecResult, FileEntry, SandboxResources
from app.models.session import ExecutionResult, Session, SessionState, TerminalEvent
from app.models.workspace import (
    WORKSPACE_ROOT,
    FileNode,
    Workspace,
    WorkspaceStatus,
)

__all__ = [
    "BackendKind",
    "ExecResult",
    "ExecutionResult",
    "FileEntry",
    "FileNode",
    "SandboxResources",
    "Session",
    "SessionState",
    "TerminalEvent",
    "WORKSPACE_ROOT",
    "Workspace",
    "WorkspaceStatus",
]
