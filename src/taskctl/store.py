"""Status store interface shared by the file and SQLite backends.

A command opens one ``StatusSession`` per invocation::

    with open_store(paths, config).open_session(graph, reevaluate_blocked=True) as session:
        session.start("T1", owner="worker-1")
        session.save()

The session owns the backend transaction for its whole lifetime. Leaving
the block without ``save()``, or with an exception, rolls back; nothing is
persisted in that case.
"""

from __future__ import annotations

import abc
import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from taskctl.config import Config
from taskctl.errors import CorruptStore, StoreError
from taskctl.graph import TaskGraph
from taskctl.paths import PlanPaths
from taskctl.readiness import ready_task_ids
from taskctl.status import (
    StatusSnapshot,
    TaskStatusRecord,
    build_snapshot,
    complete_task,
    parse_status_record,
    start_task,
)

log = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON via a temp file in the same directory, then ``os.replace``.

    Readers see either the previous file or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def read_snapshot_document(path: Path) -> tuple[str, dict[str, Any]]:
    """Read ``task.status.json`` and return ``(project, raw task mapping)``."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CorruptStore(f"Failed to parse {path.name}: {exc}") from None
    except OSError as exc:
        raise StoreError(f"Failed to read {path}: {exc}") from None
    if not isinstance(document, dict):
        raise CorruptStore(f"{path.name} must define an object root")
    tasks = document.get("tasks")
    if tasks is None:
        tasks = {}
    if not isinstance(tasks, dict):
        raise CorruptStore(f"{path.name}: tasks must be an object keyed by task ID")
    project = document.get("project")
    return (project.strip() if isinstance(project, str) else ""), tasks


def parse_snapshot_tasks(
    graph: TaskGraph, raw_tasks: dict[str, Any]
) -> dict[str, TaskStatusRecord]:
    """Strictly parse stored records for tasks that are still in the graph."""
    return {
        task_id: parse_status_record(task_id, raw_tasks[task_id])
        for task_id in graph.task_ids
        if task_id in raw_tasks
    }


def project_mismatch_warning(kind: str, stored: str, current: str) -> str | None:
    if stored and stored != current:
        return f'{kind} project "{stored}" does not match plan project "{current}". Using plan project.'
    return None


class StoreTransaction(abc.ABC):
    """One backend transaction: read, then optionally write and commit."""

    @abc.abstractmethod
    def read(self, graph: TaskGraph) -> tuple[dict[str, TaskStatusRecord], list[str]]:
        """Return stored records keyed by task ID, plus warnings."""

    @abc.abstractmethod
    def write(self, graph: TaskGraph, snapshot: StatusSnapshot) -> None:
        """Persist every record and commit."""

    @abc.abstractmethod
    def rollback(self) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...


class StatusSession:
    """A loaded snapshot paired with the transaction that produced it."""

    def __init__(
        self,
        transaction: StoreTransaction,
        graph: TaskGraph,
        snapshot: StatusSnapshot,
        warnings: list[str],
    ) -> None:
        self._transaction = transaction
        self.graph = graph
        self.snapshot = snapshot
        self.warnings = warnings
        self.saved = False

    @property
    def summary(self) -> dict[str, int]:
        return self.snapshot.summary

    def ready(self) -> list[str]:
        return ready_task_ids(self.graph, self.snapshot)

    def _check_open(self) -> None:
        if self.saved:
            raise StoreError("Status session already saved; open a new session to make changes")

    def start(self, task_id: str, owner: str) -> TaskStatusRecord:
        self._check_open()
        return start_task(self.graph, self.snapshot, task_id, owner)

    def complete(
        self,
        task_id: str,
        *,
        result: str,
        summary: str,
        files: Sequence[str] = (),
        tests: Sequence[str] = (),
        blockers: Sequence[str] = (),
        next_unblocked: Sequence[str] = (),
        owner: str | None = None,
    ) -> TaskStatusRecord:
        self._check_open()
        return complete_task(
            self.graph,
            self.snapshot,
            task_id,
            result=result,
            summary=summary,
            files=files,
            tests=tests,
            blockers=blockers,
            next_unblocked=next_unblocked,
            owner=owner,
        )

    def save(self) -> None:
        self._check_open()
        self._transaction.write(self.graph, self.snapshot)
        self.saved = True


class StatusStore(abc.ABC):
    backend = ""

    def __init__(self, paths: PlanPaths) -> None:
        self.paths = paths

    @abc.abstractmethod
    def begin(self) -> StoreTransaction:
        """Acquire exclusive write access and return the open transaction."""

    def describe(self) -> dict[str, str]:
        return {"backend": self.backend, "status_path": str(self.paths.status_path)}

    @contextlib.contextmanager
    def open_session(
        self,
        graph: TaskGraph,
        *,
        reset_in_progress: bool = False,
        reevaluate_blocked: bool = False,
    ) -> Iterator[StatusSession]:
        transaction = self.begin()
        try:
            stored, warnings = transaction.read(graph)
            snapshot = build_snapshot(
                graph,
                stored,
                reset_in_progress=reset_in_progress,
                reevaluate_blocked=reevaluate_blocked,
            )
            session = StatusSession(transaction, graph, snapshot, warnings)
            yield session
            if not session.saved:
                transaction.rollback()
        except BaseException:
            log.debug("Rolling back %s status transaction", self.backend)
            transaction.rollback()
            raise
        finally:
            transaction.close()

    def load(
        self,
        graph: TaskGraph,
        *,
        reset_in_progress: bool = False,
        reevaluate_blocked: bool = False,
    ) -> StatusSnapshot:
        """Read-only load: the snapshot a session would see, without persisting."""
        with self.open_session(
            graph,
            reset_in_progress=reset_in_progress,
            reevaluate_blocked=reevaluate_blocked,
        ) as session:
            return session.snapshot


def open_store(paths: PlanPaths, config: Config) -> StatusStore:
    if config.backend == "file":
        from taskctl.file_store import FileStatusStore

        return FileStatusStore(paths)
    from taskctl.db import SqliteStatusStore

    return SqliteStatusStore(paths)
