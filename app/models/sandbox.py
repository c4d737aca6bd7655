"""Data models for sandbox interactions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class BackendKind(str, Enum):
    CONTAINERIZED = "containerized"
    HOST_SANDBOXED = "host-sandboxed"


@dataclass(frozen=True)
class SandboxResources:
    memory_mb: int
    cpu_shares: int
    restart_policy: str = "unless-stopped"


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str
    duration_ms: int
    timed_out: bool = False
    spawn_failed: bool = False


@dataclass(frozen=True)
class FileEntry:
    name: str
    is_dir: bool
    size: int
    mod_time: Optional[float]
    permissions: str = ""
