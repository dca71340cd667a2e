"""Task-definition parsing, graph validation and the task.graph.json artifact.

Validation is exhaustive: every check runs and all problems are raised
together in a single ``ValidationError``. Schema checks run first; the
integrity pass (dangling references, self-dependencies, cycles) only runs
on a document whose shape is already valid.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import cached_property
from typing import Any

import yaml

from taskctl.errors import ValidationError

log = logging.getLogger(__name__)

SUPPORTED_INPUT_VERSIONS = {3}
GRAPH_SCHEMA_VERSION = 3
PRIORITIES = ("low", "medium", "high", "critical")
OWNER_TYPES = ("frontend", "backend", "infra", "docs", "qa", "fullstack")

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    blocked_by: tuple[str, ...]
    acceptance: tuple[str, ...]
    deliverables: tuple[str, ...]
    phase: str = ""
    priority: str = ""
    owner_type: str = ""
    estimate: str = ""
    context: tuple[str, ...] = ()
    notes: str = ""


@dataclass(frozen=True)
class TaskGroup:
    """A named, ordered list of task IDs (critical path or parallel window)."""

    id: str
    tasks: tuple[str, ...]


@dataclass(frozen=True)
class TaskGraph:
    project: str
    tasks: tuple[Task, ...]
    critical_paths: tuple[TaskGroup, ...] = ()
    parallel_windows: tuple[TaskGroup, ...] = ()
    version: int = 3
    source: str = "tasks.yaml"

    @cached_property
    def _by_id(self) -> dict[str, Task]:
        return {task.id: task for task in self.tasks}

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def get(self, task_id: str) -> Task | None:
        return self._by_id.get(task_id)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._by_id

    @property
    def edges(self) -> list[dict[str, str]]:
        """Dependency edges ``{from, to, type}``, deduplicated and sorted."""
        seen: set[tuple[str, str]] = set()
        for task in self.tasks:
            for dependency in task.blocked_by:
                seen.add((dependency, task.id))
        return [{"from": src, "to": dst, "type": "blocks"} for src, dst in sorted(seen)]


# -- field parsing --


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _required_string(value: Any, label: str, errors: list[str]) -> str:
    text = _text(value)
    if not text:
        errors.append(f"{label} is required")
    return text


def _string_items(value: list, label: str, errors: list[str], noun: str) -> list[str]:
    items: list[str] = []
    for i, raw in enumerate(value):
        item = _text(raw)
        if not item:
            errors.append(f"{label}[{i}] must be a non-empty {noun}")
            continue
        items.append(item)
    return items


def _optional_string_list(value: Any, label: str, errors: list[str]) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        errors.append(f"{label} must be an array of strings")
        return []
    return _string_items(value, label, errors, "string")


def _required_string_list(value: Any, label: str, errors: list[str], min_items: int = 1) -> list[str]:
    if value is None:
        errors.append(f"{label} is required")
        return []
    if not isinstance(value, list):
        errors.append(f"{label} must be an array of non-empty strings")
        return []
    items = _string_items(value, label, errors, "string")
    if len(items) < min_items:
        errors.append(f"{label} must contain at least {min_items} item(s)")
    return items


def _identifier_list(value: Any, label: str, errors: list[str], *, required: bool = True) -> list[str]:
    """Parse a list of task IDs, collapsing duplicates in first-seen order."""
    if value is None:
        if required:
            errors.append(f"{label} is required")
        return []
    if not isinstance(value, list):
        errors.append(f"{label} must be an array of task IDs")
        return []
    return list(dict.fromkeys(_string_items(value, label, errors, "task ID")))


def _parse_version(value: Any) -> int | None:
    # bool is an int subclass; quoted or fractional versions are schema errors
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _check_unique(ids: Sequence[str], label: str, errors: list[str]) -> None:
    seen: set[str] = set()
    duplicates: set[str] = set()
    for item_id in ids:
        if not item_id:
            continue
        if item_id in seen:
            duplicates.add(item_id)
        seen.add(item_id)
    if duplicates:
        errors.append(f"{label} contains duplicate IDs: {', '.join(sorted(duplicates))}")


def _parse_task(raw: Any, index: int, errors: list[str]) -> Task | None:
    if not isinstance(raw, Mapping):
        errors.append(f"tasks[{index}] must be an object")
        return None

    label = f"tasks[{index}]"
    field_errors: list[str] = []
    task_id = _required_string(raw.get("id"), f"{label}.id", field_errors)
    phase = _required_string(raw.get("phase"), f"{label}.phase", field_errors)
    priority = _required_string(raw.get("priority"), f"{label}.priority", field_errors)
    if priority and priority not in PRIORITIES:
        field_errors.append(f"{label}.priority must be one of: {', '.join(PRIORITIES)}")
    title = _required_string(raw.get("title"), f"{label}.title", field_errors)
    blocked_by = _identifier_list(raw.get("blocked_by"), f"{label}.blocked_by", field_errors)
    acceptance = _required_string_list(raw.get("acceptance"), f"{label}.acceptance", field_errors)
    deliverables = _required_string_list(
        raw.get("deliverables"), f"{label}.deliverables", field_errors
    )
    owner_type = _required_string(raw.get("owner_type"), f"{label}.owner_type", field_errors)
    if owner_type and owner_type not in OWNER_TYPES:
        field_errors.append(f"{label}.owner_type must be one of: {', '.join(OWNER_TYPES)}")
    estimate = _required_string(raw.get("estimate"), f"{label}.estimate", field_errors)
    context = _optional_string_list(raw.get("context"), f"{label}.context", field_errors)

    if field_errors:
        errors.append(f"[{task_id or label}] {'; '.join(field_errors)}")

    return Task(
        id=task_id,
        title=title,
        blocked_by=tuple(blocked_by),
        acceptance=tuple(acceptance),
        deliverables=tuple(deliverables),
        phase=phase,
        priority=priority,
        owner_type=owner_type,
        estimate=estimate,
        context=tuple(context),
        notes=_text(raw.get("notes")),
    )


def _parse_groups(document: Mapping[str, Any], key: str, errors: list[str]) -> list[TaskGroup]:
    raw = document.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        errors.append(f"{key} must be an array when provided")
        return []

    groups: list[TaskGroup] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            errors.append(f"{key}[{index}] must be an object")
            continue
        field_errors: list[str] = []
        group_id = _required_string(entry.get("id"), f"{key}[{index}].id", field_errors)
        task_ids = _identifier_list(entry.get("tasks"), f"{key}[{index}].tasks", field_errors)
        if field_errors:
            errors.append(f"[{group_id or f'{key}[{index}]'}] {'; '.join(field_errors)}")
        groups.append(TaskGroup(id=group_id, tasks=tuple(task_ids)))
    return groups


# -- integrity --


def detect_cycles(tasks: Sequence[Task]) -> list[str]:
    """Report every dependency cycle reachable from any task.

    Iterative three-colour DFS over ``blocked_by`` edges. ``path`` is the
    explicit stack of gray nodes; a dependency that is still gray closes
    a cycle running from that node back to itself.
    """
    deps = {task.id: task.blocked_by for task in tasks}
    color: dict[str, int] = {}
    errors: list[str] = []

    for root in deps:
        if color.get(root, _WHITE) != _WHITE:
            continue
        color[root] = _GRAY
        path = [root]
        pending = [iter(deps.get(root, ()))]
        while pending:
            dependency = next(pending[-1], None)
            if dependency is None:
                color[path.pop()] = _BLACK
                pending.pop()
                continue
            state = color.get(dependency, _WHITE)
            if state == _GRAY:
                cycle = path[path.index(dependency) :] + [dependency]
                errors.append(f"Dependency cycle detected: {' -> '.join(cycle)}")
            elif state == _WHITE:
                color[dependency] = _GRAY
                path.append(dependency)
                pending.append(iter(deps.get(dependency, ())))
    return errors


def integrity_errors(graph: TaskGraph) -> list[str]:
    """Dangling references, self-dependencies and cycles, all at once."""
    known = set(graph.task_ids)
    errors: list[str] = []

    for task in graph.tasks:
        task_errors = []
        for dependency in task.blocked_by:
            if dependency == task.id:
                task_errors.append("cannot depend on itself")
            elif dependency not in known:
                task_errors.append(f"references missing dependency {dependency}")
        if task_errors:
            errors.append(f"[{task.id}] {'; '.join(task_errors)}")

    for key, groups in (
        ("critical_paths", graph.critical_paths),
        ("parallel_windows", graph.parallel_windows),
    ):
        for group in groups:
            for task_id in group.tasks:
                if task_id not in known:
                    errors.append(f"[{key}.{group.id}] references missing task {task_id}")

    errors.extend(detect_cycles(graph.tasks))
    return errors


# -- entry points --


def validate(document: Any) -> TaskGraph:
    """Validate a loaded task-definition mapping and return the normalized graph."""
    if not isinstance(document, Mapping):
        raise ValidationError(["tasks.yaml must define an object root"])

    errors: list[str] = []
    version = _parse_version(document.get("version"))
    if version not in SUPPORTED_INPUT_VERSIONS:
        errors.append(f"version must be {' or '.join(str(v) for v in sorted(SUPPORTED_INPUT_VERSIONS))}")

    project = _required_string(document.get("project"), "project", errors)

    raw_tasks = document.get("tasks")
    tasks: list[Task] = []
    if not isinstance(raw_tasks, list):
        errors.append("tasks is required and must be an array")
    elif not raw_tasks:
        errors.append("tasks must contain at least one task")
    else:
        for index, raw in enumerate(raw_tasks):
            task = _parse_task(raw, index, errors)
            if task is not None:
                tasks.append(task)

    critical_paths = _parse_groups(document, "critical_paths", errors)
    parallel_windows = _parse_groups(document, "parallel_windows", errors)

    _check_unique([t.id for t in tasks], "tasks", errors)
    _check_unique([g.id for g in critical_paths], "critical_paths", errors)
    _check_unique([g.id for g in parallel_windows], "parallel_windows", errors)

    if errors:
        raise ValidationError(errors)

    graph = TaskGraph(
        project=project,
        tasks=tuple(tasks),
        critical_paths=tuple(critical_paths),
        parallel_windows=tuple(parallel_windows),
        version=version or GRAPH_SCHEMA_VERSION,
    )
    problems = integrity_errors(graph)
    if problems:
        raise ValidationError(problems, header="Invalid tasks.yaml - graph parity failed")
    log.debug("Validated %d tasks for project %s", len(graph.tasks), project)
    return graph


def parse_task_document(text: str) -> TaskGraph:
    """Parse ``tasks.yaml`` text into a validated graph."""
    try:
        document = yaml.safe_load(text.lstrip("\ufeff"))
    except yaml.YAMLError as exc:
        raise ValidationError([f"Failed to parse tasks.yaml: {exc}"]) from None
    return validate(document)


def _artifact_task(raw: Any, index: int, errors: list[str]) -> Task | None:
    if not isinstance(raw, Mapping):
        errors.append(f"nodes[{index}] must be an object")
        return None
    field_errors: list[str] = []
    label = f"nodes[{index}]"
    task_id = _required_string(raw.get("id"), f"{label}.id", field_errors)
    task = Task(
        id=task_id,
        title=_required_string(raw.get("title"), f"{label}.title", field_errors),
        blocked_by=tuple(
            _identifier_list(raw.get("blocked_by"), f"{label}.blocked_by", field_errors, required=False)
        ),
        acceptance=tuple(
            _required_string_list(raw.get("acceptance"), f"{label}.acceptance", field_errors)
        ),
        deliverables=tuple(
            _required_string_list(raw.get("deliverables"), f"{label}.deliverables", field_errors)
        ),
        phase=_text(raw.get("phase")),
        priority=_text(raw.get("priority")),
        owner_type=_text(raw.get("owner_type")),
        estimate=_text(raw.get("estimate")),
        context=tuple(_optional_string_list(raw.get("context"), f"{label}.context", field_errors)),
        notes=_text(raw.get("notes")),
    )
    if field_errors:
        errors.append(f"[{task_id or label}] {'; '.join(field_errors)}")
    return task


def read_graph_artifact(text: str) -> TaskGraph:
    """Load a precomputed ``task.graph.json`` and re-check its integrity."""
    header = "Invalid task.graph.json"
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError([f"Failed to parse task.graph.json: {exc}"], header=header) from None
    if not isinstance(document, Mapping):
        raise ValidationError(["task.graph.json must define an object root"], header=header)

    errors: list[str] = []
    project = _required_string(document.get("project"), "project", errors)
    nodes = document.get("nodes")
    tasks: list[Task] = []
    if not isinstance(nodes, list) or not nodes:
        errors.append("task.graph.json must contain a non-empty nodes array")
    else:
        for index, raw in enumerate(nodes):
            task = _artifact_task(raw, index, errors)
            if task is not None:
                tasks.append(task)

    critical_paths = _parse_groups(document, "critical_paths", errors)
    parallel_windows = _parse_groups(document, "parallel_windows", errors)
    _check_unique([t.id for t in tasks], "nodes", errors)
    if errors:
        raise ValidationError(errors, header=header)

    graph = TaskGraph(
        project=project,
        tasks=tuple(tasks),
        critical_paths=tuple(critical_paths),
        parallel_windows=tuple(parallel_windows),
        version=_parse_version(document.get("version")) or GRAPH_SCHEMA_VERSION,
        source="task.graph.json",
    )
    problems = integrity_errors(graph)
    if problems:
        raise ValidationError(problems, header=header)
    return graph


def _group_dict(group: TaskGroup) -> dict[str, Any]:
    return {"id": group.id, "tasks": list(group.tasks)}


def build_graph_artifact(graph: TaskGraph, generated_at: str | None = None) -> dict[str, Any]:
    """Render the ``task.graph.json`` document for a validated graph."""
    nodes = []
    for task in graph.tasks:
        node: dict[str, Any] = {
            "id": task.id,
            "phase": task.phase,
            "priority": task.priority,
            "title": task.title,
            "blocked_by": list(task.blocked_by),
            "acceptance": list(task.acceptance),
            "deliverables": list(task.deliverables),
            "owner_type": task.owner_type,
            "estimate": task.estimate,
        }
        if task.context:
            node["context"] = list(task.context)
        if task.notes:
            node["notes"] = task.notes
        nodes.append(node)

    return {
        "schema_version": GRAPH_SCHEMA_VERSION,
        "version": graph.version,
        "project": graph.project,
        "generated_from": "tasks.yaml",
        "generated_at": generated_at or datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "nodes": nodes,
        "edges": graph.edges,
        "critical_paths": [_group_dict(g) for g in graph.critical_paths],
        "parallel_windows": [_group_dict(g) for g in graph.parallel_windows],
    }
