"""Routes workspace operations to the provider chosen at provisioning time."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from app.errors import BackendUnavailableError
from app.models.sandbox import BackendKind
from app.models.workspace import Workspace, WorkspaceStatus
from app.providers.sandbox.base import SandboxProvider


class BackendResolver:
    def __init__(self, providers: Mapping[BackendKind, SandboxProvider]) -> None:
        self._providers = dict(providers)

    @property
    def providers(self) -> dict[BackendKind, SandboxProvider]:
        return self._providers

    def provider(self, kind: BackendKind) -> SandboxProvider:
        try:
            return self._providers[kind]
        except KeyError as exc:
            raise BackendUnavailableError(f"No provider configured for {kind.value}") from exc

    def provider_for(self, workspace: Workspace) -> SandboxProvider:
        if workspace.backend_handle is None or workspace.status is WorkspaceStatus.UNAVAILABLE:
            raise BackendUnavailableError(f"Workspace {workspace.id} has no live backend")
        if workspace.status is WorkspaceStatus.STOPPED:
            raise BackendUnavailableError(f"Workspace {workspace.id} is stopped")
        return self.provider(workspace.backend_kind)

    async def call(self, workspace: Workspace, operation: str, *args: Any) -> Any:
        """Run a blocking provider method in a worker thread."""
        provider = self.provider_for(workspace)
        method = getattr(provider, operation)
        try:
            return await asyncio.to_thread(method, workspace.backend_handle, *args)
        except KeyError as exc:
            raise BackendUnavailableError(
                f"Backend for workspace {workspace.id} no longer exists"
            ) from exc
