"""Load the task graph and spec document for a resolved plan directory."""

from __future__ import annotations

import logging

from taskctl.errors import PlanNotFound, ValidationError
from taskctl.graph import TaskGraph, parse_task_document, read_graph_artifact
from taskctl.paths import PlanPaths

log = logging.getLogger(__name__)


def _read_text(path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError([f"{path.name} is not valid UTF-8: {exc}"]) from None


def load_plan(paths: PlanPaths) -> tuple[TaskGraph, list[str]]:
    """Return the plan graph plus load warnings.

    ``task.graph.json`` is preferred when present; otherwise ``tasks.yaml``
    is validated directly.
    """
    warnings: list[str] = []
    if paths.graph_path.exists():
        log.debug("Loading plan from %s", paths.graph_path)
        graph = read_graph_artifact(_read_text(paths.graph_path))
    elif paths.tasks_path.exists():
        warnings.append("task.graph.json not found; using tasks.yaml dependency order.")
        log.debug("Loading plan from %s", paths.tasks_path)
        graph = parse_task_document(_read_text(paths.tasks_path))
    else:
        raise PlanNotFound(
            f"No plan found for slug '{paths.slug}': expected {paths.tasks_path} "
            f"or {paths.graph_path}"
        )

    if not paths.spec_path.exists():
        warnings.append(f"Missing spec file: {paths.spec_path}")
    return graph, warnings


def load_task_definitions(paths: PlanPaths) -> TaskGraph:
    """Validate ``tasks.yaml`` itself, ignoring any generated artifact."""
    if not paths.tasks_path.exists():
        raise PlanNotFound(f"Missing {paths.tasks_path}")
    return parse_task_document(_read_text(paths.tasks_path))


def read_spec_text(paths: PlanPaths) -> str | None:
    if not paths.spec_path.exists():
        return None
    return paths.spec_path.read_text(encoding="utf-8")
