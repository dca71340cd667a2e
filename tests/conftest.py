"""Shared test fixtures: throwaway plan directories and both status backends."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest
import yaml

from taskctl.config import Config
from taskctl.graph import TaskGraph, validate
from taskctl.paths import PlanPaths
from taskctl.store import StatusStore, open_store

SLUG = "demo"


def make_task(task_id: str, blocked_by: list[str] | None = None, **overrides: Any) -> dict:
    task = {
        "id": task_id,
        "phase": "build",
        "priority": "medium",
        "title": f"Task {task_id}",
        "blocked_by": list(blocked_by or []),
        "acceptance": [f"{task_id} works"],
        "deliverables": [f"src/{task_id.lower()}.py"],
        "owner_type": "backend",
        "estimate": "1h",
    }
    task.update(overrides)
    return task


# T1 -> T2, T1 -> T3, {T2, T3} -> T4
SAMPLE_DOCUMENT: dict[str, Any] = {
    "version": 3,
    "project": "demo-project",
    "tasks": [
        make_task("T1"),
        make_task("T2", ["T1"]),
        make_task("T3", ["T1"]),
        make_task("T4", ["T2", "T3"]),
    ],
    "critical_paths": [{"id": "main", "tasks": ["T1", "T2", "T4"]}],
    "parallel_windows": [{"id": "w1", "tasks": ["T2", "T3"]}],
}


def sample_document() -> dict[str, Any]:
    return copy.deepcopy(SAMPLE_DOCUMENT)


def write_plan(
    root: Path,
    document: dict[str, Any] | None = None,
    *,
    slug: str = SLUG,
    spec: str | None = "# Spec\n\nShort spec.\n",
) -> PlanPaths:
    """Create ``planning/<slug>/`` under *root* with tasks.yaml and optional SPEC.md."""
    planning_dir = root / "planning" / slug
    planning_dir.mkdir(parents=True, exist_ok=True)
    doc = sample_document() if document is None else document
    (planning_dir / "tasks.yaml").write_text(yaml.safe_dump(doc, sort_keys=False))
    if spec is not None:
        (planning_dir / "SPEC.md").write_text(spec)
    return PlanPaths(workspace_root=root, slug=slug, planning_dir=planning_dir)


@pytest.fixture()
def plan_paths(tmp_path: Path) -> PlanPaths:
    return write_plan(tmp_path)


@pytest.fixture()
def graph() -> TaskGraph:
    return validate(sample_document())


@pytest.fixture(params=["file", "sqlite"])
def backend(request) -> str:
    return request.param


@pytest.fixture()
def store(plan_paths: PlanPaths, backend: str) -> StatusStore:
    """The same plan behind each status backend in turn."""
    return open_store(plan_paths, Config(backend=backend))
