"""Runtime configuration for the specboard dashboard server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from .parser import DEFAULT_BASE_DIR

PROJECTS_ENV = "SPECBOARD_PROJECTS"
BASE_DIR_ENV = "SPECBOARD_BASE_DIR"
HOST_ENV = "SPECBOARD_HOST"
PORT_ENV = "SPECBOARD_PORT"
DEBOUNCE_ENV = "SPECBOARD_DEBOUNCE_MS"
QUEUE_SIZE_ENV = "SPECBOARD_QUEUE_SIZE"
LOG_LEVEL_ENV = "SPECBOARD_LOG_LEVEL"
LOG_FILE_ENV = "SPECBOARD_LOG_FILE"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3456
DEFAULT_DEBOUNCE_MS = 150
DEFAULT_QUEUE_SIZE = 256


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(slots=True)
class DashboardConfig:
    """Settings for one dashboard server process."""

    projects: List[Path] = field(default_factory=list)
    base_dir: str = DEFAULT_BASE_DIR
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "DashboardConfig":
        """Build configuration from ``SPECBOARD_*`` environment variables."""
        env = os.environ if env is None else env

        raw_projects = env.get(PROJECTS_ENV, "")
        entries = [entry for entry in raw_projects.split(os.pathsep) if entry.strip()]
        if not entries:
            entries = [str(Path.cwd())]

        log_level = env.get(LOG_LEVEL_ENV, "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"{LOG_LEVEL_ENV} must be a logging level name, got '{log_level}'")

        log_file = env.get(LOG_FILE_ENV)

        config = cls(
            projects=[Path(entry.strip()) for entry in entries],
            base_dir=env.get(BASE_DIR_ENV) or DEFAULT_BASE_DIR,
            host=env.get(HOST_ENV) or DEFAULT_HOST,
            port=_int_setting(env, PORT_ENV, DEFAULT_PORT, 0),
            debounce_ms=_int_setting(env, DEBOUNCE_ENV, DEFAULT_DEBOUNCE_MS, 0),
            queue_size=_int_setting(env, QUEUE_SIZE_ENV, DEFAULT_QUEUE_SIZE, 1),
            log_level=log_level,
            log_file=Path(log_file) if log_file else None,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Resolve project roots and reject ones that do not exist."""
        resolved: List[Path] = []
        for project in self.projects:
            path = Path(str(project).replace("\\", "/")).expanduser().resolve()
            if not path.is_dir():
                raise ValueError(f"Project root '{project}' does not exist or is not a directory.")
            if path not in resolved:
                resolved.append(path)
        if not resolved:
            raise ValueError("At least one project root is required.")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Port must be between 0 and 65535, got {self.port}")
        self.projects = resolved
