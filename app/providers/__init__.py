"""Provider package for workspace execution backends."""

from app.providers.sandbox import DockerProvider, LocalProvider, SandboxProvider

__all__ = [
    "DockerProvider",
    "LocalProvider",
    "SandboxProvider",
]
