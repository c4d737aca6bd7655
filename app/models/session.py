"""Terminal session and one-shot execution models."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from app.providers.sandbox.base import InteractiveShell


class SessionState(str, Enum):
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class TerminalEvent:
    event: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"event": self.event}
        if isinstance(self.data, dict):
            payload.update(self.data)
        elif self.data is not None:
            payload["data"] = self.data
        return payload


@dataclass
class Session:
    id: str
    workspace_id: str
    transport_ref: str
    working_dir: str
    created_at: datetime
    last_active_at: datetime
    state: SessionState = SessionState.REQUESTED
    shell: Optional["InteractiveShell"] = None
    degraded: bool = False
    transport: Any = field(default=None, repr=False)
    reader_task: Optional[asyncio.Task] = field(default=None, repr=False)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass(frozen=True)
class ExecutionResult:
    command: str
    output: str
    exit_code: Optional[int]
    timed_out: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "output": self.output,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "error": self.error,
        }
