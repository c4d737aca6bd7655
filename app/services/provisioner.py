"""Workspace provisioning with lazy recovery of missing backends."""

from __future__ import annotations

import asyncio
from dataclasses import replace
import json
from uuid import uuid4

from app.config import Settings
from app.errors import (
    BackendProvisioningError,
    BackendUnavailableError,
    InvalidOwnerError,
    WorkspaceError,
)
from app.logging_config import get_logger
from app.models.sandbox import SandboxResources
from app.models.workspace import WORKSPACE_ROOT, Workspace, WorkspaceStatus, utcnow
from app.providers.sandbox import select_backend
from app.providers.sandbox.docker import LABEL_WORKSPACE
from app.services.backends import BackendResolver
from app.services.files import FileGateway
from app.services.store import WorkspaceStore

logger = get_logger(__name__)

SKELETON_DIRECTORIES = ("src", "public", "docs", "tests", "config", "scripts")

WORKSPACE_MANIFEST = {
    "name": "cloud-ide-workspace",
    "version": "1.0.0",
    "description": "Cloud IDE User Workspace",
    "main": "src/index.js",
    "scripts": {
        "start": "node src/index.js",
        "dev": "node --watch src/index.js",
        "test": 'echo "Error: no test specified" && exit 1',
        "build": "./scripts/build.sh",
    },
    "keywords": ["cloud-ide", "workspace"],
    "license": "MIT",
}

SKELETON_FILES = {
    "README.md": "# Welcome to your Cloud IDE Workspace\n",
    "src/index.js": "console.log('Hello, World!');\n",
    "public/index.html": (
        "<!DOCTYPE html><html><head><title>My Project</title></head>"
        "<body><h1>Hello World</h1></body></html>\n"
    ),
    "docs/README.md": "# Project Documentation\n",
    "scripts/build.sh": '#!/bin/sh\necho "Build script"\n',
    "package.json": json.dumps(WORKSPACE_MANIFEST, indent=2) + "\n",
}

EXECUTABLE_FILES = {"scripts/build.sh"}


class WorkspaceProvisioner:
    def __init__(
        self,
        store: WorkspaceStore,
        backends: BackendResolver,
        files: FileGateway,
        settings: Settings,
    ) -> None:
        self._store = store
        self._backends = backends
        self._files = files
        self._settings = settings
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, owner_id: str) -> Workspace | None:
        return self._store.get(owner_id)

    async def provision(self, owner_id: str) -> Workspace:
        if not owner_id or not owner_id.strip():
            raise InvalidOwnerError("owner_id is required")
        async with self._owner_lock(owner_id):
            existing = self._store.get(owner_id)
            if existing is not None:
                return existing
            kind = await asyncio.to_thread(select_backend, self._settings, self._backends.providers)
            workspace = Workspace(
                id=uuid4().hex[:12],
                owner_id=owner_id,
                backend_kind=kind,
                backend_handle=None,
                created_at=utcnow(),
                status=WorkspaceStatus.PROVISIONING,
            )
            self._store.save(workspace)
            logger.info("workspace_provisioning", workspace_id=workspace.id, backend=kind.value)
            return await self._allocate(workspace)

    async def require_active(self, owner_id: str) -> Workspace:
        """Return a workspace with a live backend.

        A stopped workspace is started again; one whose backend disappeared is
        recreated from scratch.
        """
        workspace = await self.provision(owner_id)
        if workspace.status is WorkspaceStatus.ACTIVE and await self._backend_alive(workspace):
            return workspace

        async with self._owner_lock(owner_id):
            current = self._store.get(owner_id) or workspace
            if (
                current.status is WorkspaceStatus.ACTIVE
                and current.backend_handle != workspace.backend_handle
            ):
                return current
            if current.backend_handle and await self._backend_alive(current):
                if current.status is WorkspaceStatus.STOPPED:
                    return await self._start(current)
                return self._store.save(replace(current, status=WorkspaceStatus.ACTIVE))
            logger.warning("workspace_backend_recovering", workspace_id=current.id)
            healed = await self._allocate(
                replace(current, status=WorkspaceStatus.PROVISIONING, backend_handle=None)
            )
        if healed.status is not WorkspaceStatus.ACTIVE:
            raise BackendUnavailableError("Workspace backend is unavailable, try again later")
        return healed

    async def start(self, owner_id: str) -> Workspace | None:
        if self._store.get(owner_id) is None:
            return None
        return await self.require_active(owner_id)

    async def stop(self, owner_id: str) -> Workspace | None:
        """Stop the backend but keep the record; the next use starts it again."""
        async with self._owner_lock(owner_id):
            workspace = self._store.get(owner_id)
            if workspace is None or workspace.status is WorkspaceStatus.STOPPED:
                return workspace
            if not workspace.backend_handle:
                raise BackendUnavailableError(f"Workspace {workspace.id} has no backend to stop")
            provider = self._backends.provider(workspace.backend_kind)
            try:
                await asyncio.to_thread(provider.stop_sandbox, workspace.backend_handle)
            except KeyError as exc:
                raise BackendUnavailableError(
                    f"Backend for workspace {workspace.id} no longer exists"
                ) from exc
            workspace = self._store.save(replace(workspace, status=WorkspaceStatus.STOPPED))
        logger.info("workspace_stopped", workspace_id=workspace.id)
        return workspace

    async def remove(self, owner_id: str) -> Workspace | None:
        async with self._owner_lock(owner_id):
            workspace = self._store.get(owner_id)
            if workspace is None:
                return None
            if workspace.backend_handle:
                provider = self._backends.provider(workspace.backend_kind)
                await asyncio.to_thread(provider.delete_sandbox, workspace.backend_handle)
            self._store.delete(owner_id)
        self._locks.pop(owner_id, None)
        logger.info("workspace_removed", workspace_id=workspace.id)
        return workspace

    async def _allocate(self, workspace: Workspace) -> Workspace:
        provider = self._backends.provider(workspace.backend_kind)
        resources = SandboxResources(
            memory_mb=self._settings.container_memory_mb,
            cpu_shares=self._settings.container_cpu_shares,
        )
        try:
            handle = await asyncio.to_thread(
                provider.create_sandbox,
                f"workspace-{workspace.id}",
                resources,
                None,
                {"WORKSPACE_ID": workspace.id},
                {LABEL_WORKSPACE: workspace.id},
            )
        except (BackendProvisioningError, BackendUnavailableError) as exc:
            logger.warning("workspace_backend_unavailable", workspace_id=workspace.id, error=str(exc))
            return self._store.save(
                replace(workspace, status=WorkspaceStatus.UNAVAILABLE, backend_handle=None)
            )

        workspace = self._store.save(replace(workspace, backend_handle=handle))
        await self._seed(workspace)
        workspace = self._store.save(replace(workspace, status=WorkspaceStatus.ACTIVE))
        logger.info("workspace_active", workspace_id=workspace.id, backend=workspace.backend_kind.value)
        return workspace

    async def _start(self, workspace: Workspace) -> Workspace:
        provider = self._backends.provider(workspace.backend_kind)
        try:
            await asyncio.to_thread(provider.start_sandbox, workspace.backend_handle)
        except KeyError as exc:
            raise BackendUnavailableError(
                f"Backend for workspace {workspace.id} no longer exists"
            ) from exc
        workspace = self._store.save(replace(workspace, status=WorkspaceStatus.ACTIVE))
        logger.info("workspace_started", workspace_id=workspace.id)
        return workspace

    async def _seed(self, workspace: Workspace) -> None:
        try:
            for directory in SKELETON_DIRECTORIES:
                await self._files.create_entry(workspace, f"{WORKSPACE_ROOT}/{directory}", "directory")
            for relative, content in SKELETON_FILES.items():
                mode = 0o755 if relative in EXECUTABLE_FILES else None
                await self._files.write_file(workspace, f"{WORKSPACE_ROOT}/{relative}", content, mode)
        except (WorkspaceError, OSError, RuntimeError) as exc:
            logger.warning("workspace_seed_failed", workspace_id=workspace.id, error=str(exc))

    async def _backend_alive(self, workspace: Workspace) -> bool:
        if not workspace.backend_handle:
            return False
        provider = self._backends.provider(workspace.backend_kind)
        return await asyncio.to_thread(provider.sandbox_exists, workspace.backend_handle)

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        return self._locks.setdefault(owner_id, asyncio.Lock())
