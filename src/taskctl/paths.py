"""Planning directory layout and slug derivation."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from taskctl.errors import ConfigError
from taskctl.git_ops import current_branch, workspace_root

PLANNING_DIR_NAME = os.environ.get("TASKCTL_PLANNING_DIR") or "planning"

TASKS_FILE = "tasks.yaml"
GRAPH_FILE = "task.graph.json"
STATUS_FILE = "task.status.json"
SPEC_FILE = "SPEC.md"
DB_FILE = "task.db"

CONVENTIONAL_BRANCH_TYPES = (
    "feat",
    "fix",
    "chore",
    "docs",
    "style",
    "refactor",
    "perf",
    "test",
    "build",
    "ci",
    "revert",
)

_DATE_PREFIX_RE = re.compile(r"^\d{2}-\d{2}-\d{4}-")


@dataclass(frozen=True)
class PlanPaths:
    workspace_root: Path
    slug: str
    planning_dir: Path

    @property
    def tasks_path(self) -> Path:
        return self.planning_dir / TASKS_FILE

    @property
    def graph_path(self) -> Path:
        return self.planning_dir / GRAPH_FILE

    @property
    def status_path(self) -> Path:
        return self.planning_dir / STATUS_FILE

    @property
    def spec_path(self) -> Path:
        return self.planning_dir / SPEC_FILE

    @property
    def db_path(self) -> Path:
        return self.planning_dir / DB_FILE


def to_planning_slug(raw: str) -> str:
    """Turn a branch name or free-form title into a planning slug.

    ``feat/user-login`` and ``feat-user-login`` both become ``user-login``.
    """
    normalized = (raw or "").strip().lower()
    if not normalized:
        raise ConfigError("Planning slug is required")

    parts = [part for part in normalized.split("/") if part]
    candidate = normalized
    if len(parts) > 1 and parts[0] in CONVENTIONAL_BRANCH_TYPES:
        candidate = "-".join(parts[1:])
    elif len(parts) > 1:
        candidate = "-".join(parts)

    for branch_type in CONVENTIONAL_BRANCH_TYPES:
        if candidate.startswith(f"{branch_type}-"):
            candidate = candidate[len(branch_type) + 1 :]
            break

    slug = re.sub(r"[^a-z0-9]+", "-", candidate).strip("-")
    if not slug:
        raise ConfigError(f'Unable to derive a valid planning slug from "{raw}"')
    return slug


def has_date_prefix(slug: str) -> bool:
    return bool(_DATE_PREFIX_RE.match(slug))


def dated_slug(slug: str, today: date | None = None) -> str:
    if has_date_prefix(slug):
        return slug
    today = today or date.today()
    return f"{today:%d-%m-%Y}-{slug}"


def resolve_slug(cwd: Path, slug_arg: str | None) -> str:
    source = slug_arg or current_branch(cwd)
    if not source:
        raise ConfigError("Unable to infer planning slug from git branch. Pass --slug explicitly.")
    return to_planning_slug(source)


def resolve_plan_paths(cwd: Path, slug_arg: str | None = None) -> PlanPaths:
    """Locate ``planning/<slug>/`` for the task-tracking commands."""
    root = workspace_root(cwd)
    slug = resolve_slug(cwd, slug_arg)
    return PlanPaths(workspace_root=root, slug=slug, planning_dir=root / PLANNING_DIR_NAME / slug)


def resolve_dated_plan_paths(
    cwd: Path, slug_arg: str | None = None, today: date | None = None
) -> PlanPaths:
    """Locate the plan for graph generation, preferring ``DD-MM-YYYY-<slug>``.

    An undated directory is used only when it exists and the dated one does not.
    """
    root = workspace_root(cwd)
    slug = resolve_slug(cwd, slug_arg)
    base = root / PLANNING_DIR_NAME
    dated = dated_slug(slug, today)
    if (base / dated).exists():
        return PlanPaths(workspace_root=root, slug=dated, planning_dir=base / dated)
    if not has_date_prefix(slug) and (base / slug).exists():
        return PlanPaths(workspace_root=root, slug=slug, planning_dir=base / slug)
    return PlanPaths(workspace_root=root, slug=dated, planning_dir=base / dated)
