"""Status store backed by ``task.status.json`` alone.

Writers are serialized by a non-blocking exclusive ``flock`` on
``task.status.json.lock``. The kernel drops the lock when its holder exits,
so the lock file is left in place and never deleted; a live holder fails
the command with ``StoreBusy``.
"""

from __future__ import annotations

import fcntl
import logging
from pathlib import Path
from typing import IO

from taskctl.errors import StoreBusy, StoreError
from taskctl.graph import TaskGraph
from taskctl.status import StatusSnapshot, TaskStatusRecord
from taskctl.store import (
    StatusStore,
    StoreTransaction,
    parse_snapshot_tasks,
    project_mismatch_warning,
    read_snapshot_document,
    write_json_atomic,
)

log = logging.getLogger(__name__)


def acquire_lock(lock_path: Path) -> IO[str]:
    """Open *lock_path* and take an exclusive lock on it without waiting."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = open(lock_path, "a")
    except OSError as exc:
        raise StoreError(f"Failed to open lock {lock_path}: {exc}") from None
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        fd.close()
        raise StoreBusy(
            f"Status file is locked by another taskctl process ({lock_path}). Retry shortly."
        ) from None
    except OSError as exc:
        fd.close()
        raise StoreError(f"Failed to lock {lock_path}: {exc}") from None
    log.debug("Acquired %s", lock_path)
    return fd


def release_lock(fd: IO[str]) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        fd.close()


class FileTransaction(StoreTransaction):
    def __init__(self, status_path: Path) -> None:
        self.status_path = status_path
        self.lock_path = status_path.with_name(status_path.name + ".lock")
        self._lock = acquire_lock(self.lock_path)

    def read(self, graph: TaskGraph) -> tuple[dict[str, TaskStatusRecord], list[str]]:
        if not self.status_path.exists():
            return {}, []
        project, raw_tasks = read_snapshot_document(self.status_path)
        warnings = []
        warning = project_mismatch_warning("Status", project, graph.project)
        if warning:
            warnings.append(warning)
        return parse_snapshot_tasks(graph, raw_tasks), warnings

    def write(self, graph: TaskGraph, snapshot: StatusSnapshot) -> None:
        try:
            write_json_atomic(self.status_path, snapshot.to_dict())
        except OSError as exc:
            raise StoreError(f"Failed to write {self.status_path}: {exc}") from None
        log.debug("Wrote %s", self.status_path)

    def rollback(self) -> None:
        # The snapshot file is only ever replaced whole, so there is nothing to undo.
        pass

    def close(self) -> None:
        release_lock(self._lock)
        log.debug("Released %s", self.lock_path)


class FileStatusStore(StatusStore):
    backend = "file"

    def begin(self) -> FileTransaction:
        return FileTransaction(self.paths.status_path)
