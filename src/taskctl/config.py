"""Workspace configuration for taskctl.

Workspaces may pin the status store backend in ``.taskctl.toml`` at the
repository root::

    [store]
    backend = "file"     # or "sqlite" (default)

``TASKCTL_BACKEND`` in the environment overrides the file, and the
``--backend`` option overrides both.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskctl.errors import ConfigError

log = logging.getLogger(__name__)

CONFIG_FILE = ".taskctl.toml"
VALID_BACKENDS = ("sqlite", "file")
DEFAULT_BACKEND = "sqlite"


@dataclass(frozen=True)
class Config:
    backend: str = DEFAULT_BACKEND


def load_config_file(workspace_root: Path | None) -> dict[str, Any] | None:
    """Load ``.taskctl.toml`` from the workspace root.

    Returns the parsed TOML dict, or None if the file doesn't exist or
    fails to parse.
    """
    if workspace_root is None:
        return None
    path = workspace_root / CONFIG_FILE
    if not path.exists():
        return None
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return None


def normalize_backend(value: object) -> str:
    name = str(value or "").strip().lower()
    if name not in VALID_BACKENDS:
        raise ConfigError(
            f"Unknown status backend '{value}'. Must be one of: {', '.join(VALID_BACKENDS)}"
        )
    return name


def load_config(workspace_root: Path | None, *, backend: str | None = None) -> Config:
    """Resolve effective configuration: option > environment > file > default."""
    if backend:
        return Config(backend=normalize_backend(backend))

    env_backend = os.environ.get("TASKCTL_BACKEND")
    if env_backend:
        return Config(backend=normalize_backend(env_backend))

    data = load_config_file(workspace_root) or {}
    store_section = data.get("store", {})
    if not isinstance(store_section, dict):
        log.warning("%s: [store] must be a table; using defaults", CONFIG_FILE)
        return Config()
    file_backend = store_section.get("backend")
    if file_backend is None:
        return Config()
    return Config(backend=normalize_backend(file_backend))
