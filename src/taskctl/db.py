"""SQLite status store (``task.db``) with an exported ``task.status.json``.

Each session runs inside one ``BEGIN IMMEDIATE`` transaction, so concurrent
taskctl processes serialize on the database write lock. The JSON snapshot
is exported on every save and is also the import source when a plan moves
from the file backend to this one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from pathlib import Path
from typing import TypedDict

from taskctl.errors import StoreBusy, StoreError
from taskctl.graph import TaskGraph
from taskctl.status import LIST_FIELDS, StatusSnapshot, TaskStatusRecord, parse_status_record
from taskctl.store import (
    StatusStore,
    StoreTransaction,
    parse_snapshot_tasks,
    project_mismatch_warning,
    read_snapshot_document,
    write_json_atomic,
)

log = logging.getLogger(__name__)

# Bump when adding migrations.
SCHEMA_VERSION = 1
# Contention surfaces as StoreBusy immediately instead of waiting on another process.
BUSY_TIMEOUT_MS = 0

SCHEMA = """\
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    state TEXT NOT NULL CHECK(state IN ('todo','in_progress','done','blocked')),
    owner TEXT NOT NULL DEFAULT '',
    attempts INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    finished_at TEXT,
    result_summary TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS task_arrays (
    task_id TEXT NOT NULL,
    kind TEXT NOT NULL
        CHECK(kind IN ('blockers','files_changed','tests_run','next_unblocked_tasks')),
    idx INTEGER NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY(task_id, kind, idx),
    FOREIGN KEY(task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS plan_tasks (
    task_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    blocked_by_json TEXT NOT NULL,
    acceptance_json TEXT NOT NULL,
    deliverables_json TEXT NOT NULL,
    context_json TEXT NOT NULL
);
"""


class TaskRow(TypedDict):
    task_id: str
    state: str
    owner: str
    attempts: int
    started_at: str | None
    finished_at: str | None
    result_summary: str


def get_connection(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_MS / 1000)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def get_meta(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO meta(key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )


def count_tasks(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) AS cnt FROM tasks").fetchone()["cnt"]


def read_task_arrays(conn: sqlite3.Connection, task_id: str) -> dict[str, list[str]]:
    arrays: dict[str, list[str]] = {kind: [] for kind in LIST_FIELDS}
    rows = conn.execute(
        "SELECT kind, value FROM task_arrays WHERE task_id = ? ORDER BY kind, idx",
        (task_id,),
    ).fetchall()
    for row in rows:
        arrays[row["kind"]].append(row["value"])
    return arrays


def get_task_record(conn: sqlite3.Connection, task_id: str) -> TaskStatusRecord | None:
    row = conn.execute(
        "SELECT task_id, state, owner, attempts, started_at, finished_at, result_summary "
        "FROM tasks WHERE task_id = ?",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    task_row = TaskRow(**dict(row))
    return parse_status_record(task_id, {**task_row, **read_task_arrays(conn, task_id)})


def upsert_task_record(conn: sqlite3.Connection, task_id: str, record: TaskStatusRecord) -> None:
    conn.execute(
        "INSERT INTO tasks "
        "(task_id, state, owner, attempts, started_at, finished_at, result_summary) "
        "VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(task_id) DO UPDATE SET "
        "state = excluded.state, owner = excluded.owner, attempts = excluded.attempts, "
        "started_at = excluded.started_at, finished_at = excluded.finished_at, "
        "result_summary = excluded.result_summary",
        (
            task_id,
            record.state,
            record.owner,
            record.attempts,
            record.started_at,
            record.finished_at,
            record.result_summary,
        ),
    )
    conn.execute("DELETE FROM task_arrays WHERE task_id = ?", (task_id,))
    conn.executemany(
        "INSERT INTO task_arrays (task_id, kind, idx, value) VALUES (?, ?, ?, ?)",
        [
            (task_id, kind, idx, value)
            for kind in LIST_FIELDS
            for idx, value in enumerate(getattr(record, kind))
        ],
    )


def delete_tasks_not_in(conn: sqlite3.Connection, task_ids: Sequence[str]) -> None:
    """Drop records for tasks that left the plan; their array rows cascade."""
    placeholders = ", ".join("?" * len(task_ids))
    conn.execute(f"DELETE FROM tasks WHERE task_id NOT IN ({placeholders})", list(task_ids))


def insert_default_tasks(conn: sqlite3.Connection, task_ids: Sequence[str]) -> None:
    conn.executemany(
        "INSERT INTO tasks (task_id, state) VALUES (?, 'todo') ON CONFLICT(task_id) DO NOTHING",
        [(task_id,) for task_id in task_ids],
    )


def replace_plan_tasks(conn: sqlite3.Connection, graph: TaskGraph) -> None:
    """Mirror the current plan definition so the database is inspectable on its own."""
    conn.execute("DELETE FROM plan_tasks")
    conn.executemany(
        "INSERT INTO plan_tasks "
        "(task_id, title, blocked_by_json, acceptance_json, deliverables_json, context_json) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        [
            (
                task.id,
                task.title,
                json.dumps(list(task.blocked_by)),
                json.dumps(list(task.acceptance)),
                json.dumps(list(task.deliverables)),
                json.dumps(list(task.context)),
            )
            for task in graph.tasks
        ],
    )


class SqliteTransaction(StoreTransaction):
    def __init__(self, db_path: Path, status_path: Path) -> None:
        self.db_path = db_path
        self.status_path = status_path
        try:
            self.conn = get_connection(db_path)
        except sqlite3.OperationalError as exc:
            if _is_busy(exc):
                raise StoreBusy(f"Status database {db_path} is busy: {exc}") from None
            raise StoreError(f"Failed to open {db_path}: {exc}") from None
        except sqlite3.DatabaseError as exc:
            raise StoreError(f"Failed to open {db_path}: {exc}") from None
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            self.conn.close()
            if _is_busy(exc):
                raise StoreBusy(
                    f"Status database {db_path} is locked by another taskctl process."
                ) from None
            raise StoreError(f"Failed to begin transaction on {db_path}: {exc}") from None
        log.debug("BEGIN IMMEDIATE on %s", db_path)

    def _bootstrap(self, graph: TaskGraph, warnings: list[str]) -> None:
        conn = self.conn
        warning = project_mismatch_warning("Status", get_meta(conn, "project") or "", graph.project)
        if warning:
            warnings.append(warning)
        set_meta(conn, "project", graph.project)
        set_meta(conn, "schema_version", str(SCHEMA_VERSION))

        if count_tasks(conn) == 0 and self.status_path.exists():
            project, raw_tasks = read_snapshot_document(self.status_path)
            warning = project_mismatch_warning("Imported status", project, graph.project)
            if warning:
                warnings.append(warning)
            imported = parse_snapshot_tasks(graph, raw_tasks)
            for task_id, record in imported.items():
                upsert_task_record(conn, task_id, record)
            log.info("Imported %d task records from %s", len(imported), self.status_path)

        insert_default_tasks(conn, graph.task_ids)
        replace_plan_tasks(conn, graph)

    def read(self, graph: TaskGraph) -> tuple[dict[str, TaskStatusRecord], list[str]]:
        warnings: list[str] = []
        try:
            self._bootstrap(graph, warnings)
            records = {}
            for task_id in graph.task_ids:
                record = get_task_record(self.conn, task_id)
                if record is not None:
                    records[task_id] = record
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read {self.db_path}: {exc}") from None
        return records, warnings

    def write(self, graph: TaskGraph, snapshot: StatusSnapshot) -> None:
        """Upsert every record, commit, then export the JSON snapshot.

        The database is the source of truth; a failed export leaves the
        previous snapshot file in place until the next successful save.
        """
        try:
            delete_tasks_not_in(self.conn, graph.task_ids)
            for task_id in graph.task_ids:
                upsert_task_record(self.conn, task_id, snapshot.tasks[task_id])
            set_meta(self.conn, "project", snapshot.project)
            set_meta(self.conn, "updated_at", snapshot.updated_at)
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to write {self.db_path}: {exc}") from None
        log.debug("COMMIT on %s", self.db_path)
        try:
            write_json_atomic(self.status_path, snapshot.to_dict())
        except OSError as exc:
            raise StoreError(f"Failed to export {self.status_path}: {exc}") from None

    def rollback(self) -> None:
        if self.conn.in_transaction:
            self.conn.rollback()
            log.debug("ROLLBACK on %s", self.db_path)

    def close(self) -> None:
        self.conn.close()


class SqliteStatusStore(StatusStore):
    backend = "sqlite"

    def begin(self) -> SqliteTransaction:
        self.paths.planning_dir.mkdir(parents=True, exist_ok=True)
        return SqliteTransaction(self.paths.db_path, self.paths.status_path)

    def describe(self) -> dict[str, str]:
        return {**super().describe(), "db_path": str(self.paths.db_path)}
