"""Which tasks can be dispatched right now.

Pure functions of the graph and a status snapshot; nothing here is persisted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskctl.graph import TaskGraph

if TYPE_CHECKING:
    from taskctl.status import StatusSnapshot


def unresolved_dependencies(graph: TaskGraph, snapshot: StatusSnapshot, task_id: str) -> list[str]:
    """Dependencies of *task_id* that are not ``done``, in ``blocked_by`` order."""
    task = graph.get(task_id)
    if task is None:
        return []
    return [dep for dep in task.blocked_by if snapshot.state_of(dep) != "done"]


def is_ready(graph: TaskGraph, snapshot: StatusSnapshot, task_id: str) -> bool:
    if snapshot.state_of(task_id) != "todo":
        return False
    return not unresolved_dependencies(graph, snapshot, task_id)


def ready_task_ids(graph: TaskGraph, snapshot: StatusSnapshot) -> list[str]:
    """Ready tasks in declaration order."""
    return [task_id for task_id in graph.task_ids if is_ready(graph, snapshot, task_id)]
