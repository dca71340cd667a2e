"""Task status records, snapshots and the lifecycle transitions.

Records are only mutated through ``start_task`` / ``complete_task`` and the
load-time policies in ``build_snapshot``. Stored data enters through
``parse_status_record``, the one place where raw JSON or SQLite values are
checked and normalized.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from taskctl.errors import CorruptStore, InvalidTransition, NotDispatchable, UnknownTask
from taskctl.graph import TaskGraph
from taskctl.readiness import unresolved_dependencies

log = logging.getLogger(__name__)

STATUS_SCHEMA_VERSION = 2
VALID_STATES = ("todo", "in_progress", "done", "blocked")
VALID_RESULTS = ("done", "blocked", "failed")
LIST_FIELDS = ("blockers", "files_changed", "tests_run", "next_unblocked_tasks")


def utcnow() -> str:
    """ISO 8601 UTC timestamp, second precision."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class TaskStatusRecord:
    state: str = "todo"
    owner: str = ""
    attempts: int = 0
    started_at: str | None = None
    finished_at: str | None = None
    blockers: list[str] = field(default_factory=list)
    files_changed: list[str] = field(default_factory=list)
    tests_run: list[str] = field(default_factory=list)
    result_summary: str = ""
    next_unblocked_tasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StatusSnapshot:
    project: str
    tasks: dict[str, TaskStatusRecord]
    updated_at: str
    schema_version: int = STATUS_SCHEMA_VERSION

    @property
    def summary(self) -> dict[str, int]:
        """Per-state counts, always derived from the current records."""
        return summarize(self.tasks.values())

    def state_of(self, task_id: str) -> str | None:
        record = self.tasks.get(task_id)
        return record.state if record else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "schema_version": self.schema_version,
            "updated_at": self.updated_at,
            "summary": self.summary,
            "tasks": {task_id: record.to_dict() for task_id, record in self.tasks.items()},
        }


def summarize(records: Iterable[TaskStatusRecord]) -> dict[str, int]:
    summary = dict.fromkeys(VALID_STATES, 0)
    for record in records:
        summary[record.state] += 1
    return summary


# -- parse boundary --


def _optional_text(task_id: str, key: str, value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise CorruptStore(f"Task {task_id}: {key} must be a string, got {type(value).__name__}")
    return value.strip()


def _text_list(task_id: str, key: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise CorruptStore(f"Task {task_id}: {key} must be a list, got {type(value).__name__}")
    items = []
    for item in value:
        if not isinstance(item, str):
            raise CorruptStore(f"Task {task_id}: {key} entries must be strings")
        if item.strip():
            items.append(item.strip())
    return items


def parse_status_record(task_id: str, value: Any) -> TaskStatusRecord:
    """Validate one stored record.

    Missing keys take their defaults (older snapshots omit some fields);
    keys that are present with the wrong shape raise ``CorruptStore``.
    """
    if not isinstance(value, Mapping):
        raise CorruptStore(f"Task {task_id}: status record must be an object")

    state = value.get("state", "todo")
    if state not in VALID_STATES:
        raise CorruptStore(
            f"Task {task_id}: invalid state {state!r}. Must be one of: {', '.join(VALID_STATES)}"
        )

    attempts = value.get("attempts", 0)
    if attempts is None:
        attempts = 0
    if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 0:
        raise CorruptStore(f"Task {task_id}: attempts must be a non-negative integer")

    return TaskStatusRecord(
        state=state,
        owner=_optional_text(task_id, "owner", value.get("owner")),
        attempts=attempts,
        started_at=_optional_text(task_id, "started_at", value.get("started_at")) or None,
        finished_at=_optional_text(task_id, "finished_at", value.get("finished_at")) or None,
        blockers=_text_list(task_id, "blockers", value.get("blockers")),
        files_changed=_text_list(task_id, "files_changed", value.get("files_changed")),
        tests_run=_text_list(task_id, "tests_run", value.get("tests_run")),
        result_summary=_optional_text(task_id, "result_summary", value.get("result_summary")),
        next_unblocked_tasks=_text_list(
            task_id, "next_unblocked_tasks", value.get("next_unblocked_tasks")
        ),
    )


# -- load policy --


def _can_unblock(record: TaskStatusRecord, tasks: Mapping[str, TaskStatusRecord]) -> bool:
    if not record.blockers:
        return False
    return all(
        blocker in tasks and tasks[blocker].state == "done" for blocker in record.blockers
    )


def build_snapshot(
    graph: TaskGraph,
    stored: Mapping[str, TaskStatusRecord],
    *,
    reset_in_progress: bool = False,
    reevaluate_blocked: bool = False,
    now: str | None = None,
) -> StatusSnapshot:
    """Combine stored records with the graph and apply the load-time policies.

    Tasks absent from storage start as ``todo``. Records for tasks no
    longer in the graph are dropped.
    """
    tasks: dict[str, TaskStatusRecord] = {}
    for task_id in graph.task_ids:
        record = stored.get(task_id) or TaskStatusRecord()
        if reset_in_progress and record.state == "in_progress":
            log.info("Resetting stale in_progress task %s (owner=%s)", task_id, record.owner)
            record.state = "todo"
            record.owner = ""
        tasks[task_id] = record

    if reevaluate_blocked:
        for task_id, record in tasks.items():
            if record.state == "blocked" and _can_unblock(record, tasks):
                log.info("Unblocking %s: blockers %s are done", task_id, record.blockers)
                record.state = "todo"
                record.blockers = []

    return StatusSnapshot(project=graph.project, tasks=tasks, updated_at=now or utcnow())


# -- transitions --


def _record(snapshot: StatusSnapshot, graph: TaskGraph, task_id: str) -> TaskStatusRecord:
    if task_id not in graph or task_id not in snapshot.tasks:
        raise UnknownTask(task_id)
    return snapshot.tasks[task_id]


def start_task(
    graph: TaskGraph,
    snapshot: StatusSnapshot,
    task_id: str,
    owner: str,
    *,
    now: str | None = None,
) -> TaskStatusRecord:
    """Move a ready task to ``in_progress``."""
    record = _record(snapshot, graph, task_id)
    unresolved = unresolved_dependencies(graph, snapshot, task_id)
    if unresolved:
        raise NotDispatchable(
            f"Task {task_id} is blocked by: {', '.join(unresolved)}", unresolved=unresolved
        )
    if record.state != "todo":
        raise NotDispatchable(
            f"Task {task_id} must be in todo state to start (current: {record.state})"
        )

    now = now or utcnow()
    record.state = "in_progress"
    record.owner = owner
    record.attempts += 1
    record.started_at = now
    record.finished_at = None
    record.blockers = []
    record.files_changed = []
    record.tests_run = []
    record.result_summary = ""
    record.next_unblocked_tasks = []
    snapshot.updated_at = now
    return record


def complete_task(
    graph: TaskGraph,
    snapshot: StatusSnapshot,
    task_id: str,
    *,
    result: str,
    summary: str,
    files: Sequence[str] = (),
    tests: Sequence[str] = (),
    blockers: Sequence[str] = (),
    next_unblocked: Sequence[str] = (),
    owner: str | None = None,
    now: str | None = None,
) -> TaskStatusRecord:
    """Record a worker's result for a ``todo`` or ``in_progress`` task.

    ``blocked`` and ``failed`` both land in the ``blocked`` state; without
    explicit blockers a synthetic ``task reported <result>`` entry is used.
    """
    result = (result or "").strip().lower()
    if result not in VALID_RESULTS:
        raise InvalidTransition(f"--result must be one of: {', '.join(VALID_RESULTS)}")

    record = _record(snapshot, graph, task_id)
    if record.state not in ("todo", "in_progress"):
        raise InvalidTransition(f"Task {task_id} cannot be completed from state {record.state}")

    now = now or utcnow()
    if not record.started_at:
        record.started_at = now
    if owner:
        record.owner = owner
    record.result_summary = summary
    record.files_changed = list(files)
    record.tests_run = list(tests)
    record.next_unblocked_tasks = list(next_unblocked)
    record.finished_at = now

    if result == "done":
        record.state = "done"
        record.blockers = []
    else:
        record.state = "blocked"
        record.blockers = list(blockers) or [f"task reported {result}"]
    snapshot.updated_at = now
    return record
