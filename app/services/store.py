"""Durable workspace record store backed by a JSON file."""

from __future__ import annotations

import json
import os
from pathlib import Path
import tempfile
import threading

from app.logging_config import get_logger
from app.models.workspace import Workspace

logger = get_logger(__name__)


class WorkspaceStore:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, Workspace] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, owner_id: str) -> Workspace | None:
        with self._lock:
            return self._records.get(owner_id)

    def get_by_id(self, workspace_id: str) -> Workspace | None:
        with self._lock:
            for record in self._records.values():
                if record.id == workspace_id:
                    return record
        return None

    def all(self) -> list[Workspace]:
        with self._lock:
            return list(self._records.values())

    def save(self, workspace: Workspace) -> Workspace:
        with self._lock:
            self._records[workspace.owner_id] = workspace
            self._flush()
        return workspace

    def delete(self, owner_id: str) -> Workspace | None:
        with self._lock:
            removed = self._records.pop(owner_id, None)
            if removed is not None:
                self._flush()
        return removed

    def _load(self) -> dict[str, Workspace]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        records = {}
        for item in raw.get("workspaces", []):
            workspace = Workspace.from_dict(item)
            records[workspace.owner_id] = workspace
        logger.info("workspace_records_loaded", path=str(self._path), count=len(records))
        return records

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"workspaces": [record.to_dict() for record in self._records.values()]}
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".workspaces-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
