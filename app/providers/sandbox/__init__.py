"""Sandbox provider implementations and interfaces."""

from __future__ import annotations

from app.config import Settings
from app.logging_config import get_logger
from app.models.sandbox import BackendKind
from app.providers.sandbox.base import InteractiveShell, SandboxProvider
from app.providers.sandbox.docker import DockerProvider
from app.providers.sandbox.local import LocalProvider

logger = get_logger(__name__)


def build_providers(settings: Settings) -> dict[BackendKind, SandboxProvider]:
    return {
        BackendKind.CONTAINERIZED: DockerProvider(image=settings.container_image),
        BackendKind.HOST_SANDBOXED: LocalProvider(base_dir=settings.sandbox_base_dir),
    }


def select_backend(
    settings: Settings, providers: dict[BackendKind, SandboxProvider]
) -> BackendKind:
    if settings.backend != "auto":
        return BackendKind(settings.backend)
    docker_provider = providers.get(BackendKind.CONTAINERIZED)
    if isinstance(docker_provider, DockerProvider) and docker_provider.is_available():
        return BackendKind.CONTAINERIZED
    logger.info("docker_unavailable_using_host_sandbox")
    return BackendKind.HOST_SANDBOXED


__all__ = [
    "DockerProvider",
    "InteractiveShell",
    "LocalProvider",
    "SandboxProvider",
    "build_providers",
    "select_backend",
]
