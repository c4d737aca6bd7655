"""Service configuration loaded from YAML with environment overrides."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import os
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "CLOUDIDE_"
DEFAULT_CONFIG_PATH = "config/workspace.yaml"
BACKEND_CHOICES = ("auto", "containerized", "host-sandboxed")


@dataclass(frozen=True)
class Settings:
    backend: str = "auto"
    data_dir: str = ".cloudide"
    sandbox_base_dir: str = ".cloudide/workspaces"
    container_image: str = "node:18-alpine"
    container_memory_mb: int = 512
    container_cpu_shares: int = 512
    exec_timeout_s: int = 30
    max_file_bytes: int = 10 * 1024 * 1024
    tree_max_depth: int = 4
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(
                f"Unknown backend {self.backend!r}; expected one of {', '.join(BACKEND_CHOICES)}"
            )
        if self.exec_timeout_s <= 0:
            raise ValueError("exec_timeout_s must be positive")
        if self.tree_max_depth < 1:
            raise ValueError("tree_max_depth must be at least 1")


def load_settings(config_path: str | None = None) -> Settings:
    path = Path(config_path or os.getenv(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))
    settings = Settings(**_load_yaml(path))
    overrides = _env_overrides()
    if overrides:
        settings = replace(settings, **overrides)
    return settings


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    known = {field.name for field in fields(Settings)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    return data


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Settings):
        raw = os.getenv(f"{ENV_PREFIX}{field.name.upper()}")
        if raw is None:
            continue
        overrides[field.name] = _coerce(raw, field.default)
    return overrides


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    return raw
