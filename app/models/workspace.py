"""Workspace records and file tree nodes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from app.models.sandbox import BackendKind

WORKSPACE_ROOT = "/workspace"


class WorkspaceStatus(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    STOPPED = "stopped"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Workspace:
    id: str
    owner_id: str
    backend_kind: BackendKind
    backend_handle: Optional[str]
    created_at: datetime
    status: WorkspaceStatus
    root_path: str = WORKSPACE_ROOT

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "backend_kind": self.backend_kind.value,
            "backend_handle": self.backend_handle,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "root_path": self.root_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workspace":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            backend_kind=BackendKind(data["backend_kind"]),
            backend_handle=data.get("backend_handle"),
            created_at=datetime.fromisoformat(data["created_at"]),
            status=WorkspaceStatus(data["status"]),
            root_path=data.get("root_path", WORKSPACE_ROOT),
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FileNode:
    path: str
    name: str
    type: str
    size: Optional[int]
    permissions: str
    modified: Optional[str] = None
    file_type: str = "text"
    executable: bool = False
    children: list["FileNode"] = field(default_factory=list)

    @property
    def is_dir(self) -> bool:
        return self.type == "directory"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
