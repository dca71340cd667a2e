"""Tests for the status store backends.

Most tests run once per backend through the parametrised ``store`` fixture.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import sqlite3

import pytest

import taskctl.db as db
from taskctl.config import Config
from taskctl.errors import CorruptStore, NotDispatchable, StoreBusy, StoreError
from taskctl.file_store import FileStatusStore, acquire_lock, release_lock
from taskctl.graph import validate
from taskctl.store import open_store, write_json_atomic
from conftest import make_task, sample_document, write_plan


def _write_status(paths, tasks, project="demo-project") -> None:
    paths.status_path.write_text(
        json.dumps({"project": project, "schema_version": 2, "tasks": tasks})
    )


# ---------------------------------------------------------------------------
# shared behaviour
# ---------------------------------------------------------------------------


def test_first_session_starts_all_todo(store, graph) -> None:
    with store.open_session(graph) as session:
        assert session.summary == {"todo": 4, "in_progress": 0, "done": 0, "blocked": 0}
        assert session.ready() == ["T1"]
        assert session.warnings == []


def test_save_persists_across_sessions(store, graph, plan_paths) -> None:
    with store.open_session(graph) as session:
        session.start("T1", "worker-1")
        session.save()

    snapshot = store.load(graph)
    assert snapshot.tasks["T1"].state == "in_progress"
    assert snapshot.tasks["T1"].owner == "worker-1"
    assert snapshot.tasks["T1"].attempts == 1

    exported = json.loads(plan_paths.status_path.read_text())
    assert exported["tasks"]["T1"]["state"] == "in_progress"
    assert exported["summary"]["in_progress"] == 1
    assert list(exported["tasks"]) == ["T1", "T2", "T3", "T4"]


def test_unsaved_session_persists_nothing(store, graph, plan_paths) -> None:
    with store.open_session(graph) as session:
        session.start("T1", "worker-1")

    assert store.load(graph).tasks["T1"].state == "todo"


def test_failure_inside_session_rolls_back(store, graph) -> None:
    with store.open_session(graph) as session:
        session.start("T1", "worker-1")
        session.save()

    with pytest.raises(NotDispatchable):
        with store.open_session(graph) as session:
            session.complete("T1", result="done", summary="finished")
            session.start("T4", "worker-2")
            session.save()

    snapshot = store.load(graph)
    assert snapshot.tasks["T1"].state == "in_progress"
    assert snapshot.tasks["T1"].result_summary == ""


def test_changes_after_save_are_rejected(store, graph) -> None:
    with store.open_session(graph) as session:
        session.save()
        with pytest.raises(StoreError, match="already saved"):
            session.start("T1", "w")


def test_full_lifecycle(store, graph) -> None:
    for task_id in ("T1", "T2", "T3"):
        with store.open_session(graph, reevaluate_blocked=True) as session:
            session.start(task_id, "w")
            session.complete(task_id, result="done", summary=f"{task_id} ok", files=["a.py"])
            session.save()

    with store.open_session(graph, reevaluate_blocked=True) as session:
        assert session.ready() == ["T4"]
        assert session.snapshot.tasks["T2"].files_changed == ["a.py"]


def test_resume_resets_in_progress(store, graph) -> None:
    with store.open_session(graph) as session:
        session.start("T1", "dead-worker")
        session.save()

    with store.open_session(graph, reset_in_progress=True, reevaluate_blocked=True) as session:
        session.save()

    record = store.load(graph).tasks["T1"]
    assert record.state == "todo"
    assert record.owner == ""
    assert record.attempts == 1


def test_blocked_task_returns_to_todo_when_blockers_finish(store, graph) -> None:
    with store.open_session(graph) as session:
        session.complete("T2", result="blocked", summary="needs T1", blockers=["T1"])
        session.save()

    with store.open_session(graph) as session:
        session.start("T1", "w")
        session.complete("T1", result="done", summary="ok")
        session.save()

    with store.open_session(graph, reevaluate_blocked=True) as session:
        assert session.snapshot.tasks["T2"].state == "todo"
        assert session.snapshot.tasks["T2"].blockers == []
        session.save()

    with store.open_session(graph, reevaluate_blocked=True) as session:
        assert session.snapshot.tasks["T2"].state == "todo"
        assert session.ready() == ["T2", "T3"]


def test_records_for_new_tasks_default_to_todo(store, plan_paths) -> None:
    graph = validate(sample_document())
    with store.open_session(graph) as session:
        session.complete("T1", result="done", summary="ok")
        session.save()

    doc = sample_document()
    doc["tasks"].append(make_task("T5", ["T1"]))
    bigger = validate(doc)
    with store.open_session(bigger) as session:
        assert session.snapshot.tasks["T5"].state == "todo"
        assert session.snapshot.tasks["T1"].state == "done"
        assert session.ready() == ["T2", "T3", "T5"]


def test_removed_then_readded_task_starts_over(store) -> None:
    doc = sample_document()
    del doc["critical_paths"], doc["parallel_windows"]
    doc["tasks"] = [make_task("T1"), make_task("T2")]
    both = validate(doc)
    with store.open_session(both) as session:
        session.complete("T2", result="done", summary="early", files=["t2.py"])
        session.save()

    doc["tasks"] = [make_task("T1")]
    only_t1 = validate(doc)
    with store.open_session(only_t1) as session:
        assert list(session.snapshot.tasks) == ["T1"]
        session.save()

    record = store.load(both).tasks["T2"]
    assert record.state == "todo"
    assert record.result_summary == ""
    assert record.files_changed == []


def test_export_reimports_into_fresh_sqlite_store(store, graph, plan_paths, tmp_path) -> None:
    with store.open_session(graph) as session:
        session.start("T1", "worker-1")
        session.complete(
            "T1",
            result="done",
            summary="scaffolded",
            files=["b.py", "a.py"],
            tests=["pytest -q"],
            next_unblocked=["T2", "T3"],
        )
        session.start("T2", "worker-2")
        session.complete("T2", result="failed", summary="broke", blockers=["needs creds"])
        session.start("T3", "worker-3")
        session.save()
    original = store.load(graph).tasks

    fresh = write_plan(tmp_path / "fresh")
    shutil.copyfile(plan_paths.status_path, fresh.status_path)
    imported = open_store(fresh, Config(backend="sqlite")).load(graph).tasks

    assert imported == original
    assert imported["T1"].started_at is not None
    assert imported["T1"].finished_at is not None
    assert imported["T2"].blockers == ["needs creds"]
    assert imported["T3"].state == "in_progress"


def test_corrupt_status_record(store, graph, plan_paths) -> None:
    _write_status(plan_paths, {"T1": {"state": "exploded"}})
    with pytest.raises(CorruptStore, match="T1"):
        with store.open_session(graph):
            pass


def test_unparseable_status_file(store, graph, plan_paths) -> None:
    plan_paths.status_path.write_text("{not json")
    with pytest.raises(CorruptStore, match="Failed to parse task.status.json"):
        store.load(graph)


def test_project_mismatch_is_a_warning(store, graph, plan_paths) -> None:
    _write_status(plan_paths, {"T1": {"state": "done"}}, project="other-project")
    with store.open_session(graph) as session:
        assert session.snapshot.tasks["T1"].state == "done"
        assert session.snapshot.project == "demo-project"
        assert any('"other-project" does not match plan project' in w for w in session.warnings)


# ---------------------------------------------------------------------------
# file backend
# ---------------------------------------------------------------------------


class TestFileBackend:
    def test_concurrent_session_is_busy(self, plan_paths, graph) -> None:
        store = FileStatusStore(plan_paths)
        with store.open_session(graph) as first:
            for _ in range(2):
                with pytest.raises(StoreBusy, match="locked by another taskctl process"):
                    with store.open_session(graph):
                        pass
            first.start("T1", "worker-1")
            first.save()
        assert store.load(graph).tasks["T1"].state == "in_progress"

    def test_lock_file_outlives_session(self, plan_paths, graph) -> None:
        store = FileStatusStore(plan_paths)
        lock_path = plan_paths.planning_dir / "task.status.json.lock"
        with store.open_session(graph):
            inode = lock_path.stat().st_ino
        assert lock_path.stat().st_ino == inode
        with store.open_session(graph) as session:
            session.save()
        assert lock_path.stat().st_ino == inode

    def test_lock_released_after_error(self, plan_paths, graph) -> None:
        store = FileStatusStore(plan_paths)
        with pytest.raises(RuntimeError):
            with store.open_session(graph):
                raise RuntimeError("boom")
        with store.open_session(graph) as session:
            session.save()

    def test_leftover_lock_file_does_not_block(self, plan_paths, graph) -> None:
        lock_path = plan_paths.planning_dir / "task.status.json.lock"
        lock_path.write_text("999999999\n")
        with FileStatusStore(plan_paths).open_session(graph) as session:
            session.save()
        assert lock_path.exists()

    def test_lock_held_elsewhere_is_never_broken(self, tmp_path) -> None:
        lock_path = tmp_path / "x.lock"
        holder = acquire_lock(lock_path)
        try:
            for _ in range(2):
                with pytest.raises(StoreBusy):
                    acquire_lock(lock_path)
            assert lock_path.exists()
        finally:
            release_lock(holder)
        release_lock(acquire_lock(lock_path))

    def test_failed_write_leaves_previous_snapshot(self, plan_paths, graph, monkeypatch) -> None:
        store = FileStatusStore(plan_paths)
        with store.open_session(graph) as session:
            session.complete("T1", result="done", summary="ok")
            session.save()
        before = plan_paths.status_path.read_text()

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(StoreError, match="disk full"):
            with store.open_session(graph) as session:
                session.start("T2", "w")
                session.save()

        assert plan_paths.status_path.read_text() == before
        leftovers = [p.name for p in plan_paths.planning_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_no_database_is_created(self, plan_paths, graph) -> None:
        with FileStatusStore(plan_paths).open_session(graph) as session:
            session.save()
        assert not plan_paths.db_path.exists()


# ---------------------------------------------------------------------------
# sqlite backend
# ---------------------------------------------------------------------------


class TestSqliteBackend:
    def _store(self, plan_paths):
        return open_store(plan_paths, Config(backend="sqlite"))

    def test_tables_and_meta(self, plan_paths, graph) -> None:
        with self._store(plan_paths).open_session(graph) as session:
            session.save()
        with contextlib.closing(db.get_connection(plan_paths.db_path)) as conn:
            assert db.get_meta(conn, "project") == "demo-project"
            assert db.get_meta(conn, "schema_version") == str(db.SCHEMA_VERSION)
            assert db.count_tasks(conn) == 4
            plan_rows = conn.execute("SELECT task_id FROM plan_tasks ORDER BY task_id").fetchall()
            assert [row["task_id"] for row in plan_rows] == ["T1", "T2", "T3", "T4"]

    def test_list_columns_round_trip(self, plan_paths, graph) -> None:
        store = self._store(plan_paths)
        with store.open_session(graph) as session:
            session.complete(
                "T1",
                result="blocked",
                summary="partial",
                files=["b.py", "a.py"],
                tests=["pytest -k x"],
                blockers=["needs creds", "T3"],
            )
            session.save()
        record = store.load(graph).tasks["T1"]
        assert record.files_changed == ["b.py", "a.py"]
        assert record.blockers == ["needs creds", "T3"]
        assert record.tests_run == ["pytest -k x"]

    def test_imports_existing_status_file(self, plan_paths, graph) -> None:
        _write_status(
            plan_paths,
            {
                "T1": {"state": "done", "result_summary": "from file", "files_changed": ["x.py"]},
                "GONE": {"state": "done"},
            },
        )
        with self._store(plan_paths).open_session(graph) as session:
            assert session.snapshot.tasks["T1"].state == "done"
            assert session.snapshot.tasks["T1"].files_changed == ["x.py"]
            assert "GONE" not in session.snapshot.tasks
            session.save()

    def test_import_happens_only_once(self, plan_paths, graph) -> None:
        store = self._store(plan_paths)
        with store.open_session(graph) as session:
            session.save()
        _write_status(plan_paths, {"T1": {"state": "done"}})
        assert store.load(graph).tasks["T1"].state == "todo"

    def test_import_project_mismatch_warns(self, plan_paths, graph) -> None:
        _write_status(plan_paths, {"T1": {"state": "done"}}, project="legacy")
        with self._store(plan_paths).open_session(graph) as session:
            assert any(w.startswith('Imported status project "legacy"') for w in session.warnings)

    def test_database_wins_over_stale_export(self, plan_paths, graph) -> None:
        store = self._store(plan_paths)
        with store.open_session(graph) as session:
            session.complete("T1", result="done", summary="ok")
            session.save()
        _write_status(plan_paths, {"T1": {"state": "todo"}})
        assert store.load(graph).tasks["T1"].state == "done"

    def test_concurrent_session_is_busy(self, plan_paths, graph) -> None:
        store = self._store(plan_paths)
        with store.open_session(graph):
            with pytest.raises(StoreBusy):
                with store.open_session(graph):
                    pass

    def test_rollback_on_error_keeps_database(self, plan_paths, graph) -> None:
        store = self._store(plan_paths)
        with store.open_session(graph) as session:
            session.save()
        with pytest.raises(RuntimeError):
            with store.open_session(graph) as session:
                session.start("T1", "w")
                db.upsert_task_record(session._transaction.conn, "T1", session.snapshot.tasks["T1"])
                raise RuntimeError("crash before save")
        assert store.load(graph).tasks["T1"].state == "todo"

    def test_failed_export_still_commits(self, plan_paths, graph, monkeypatch) -> None:
        store = self._store(plan_paths)

        def fail_export(path, data):
            raise OSError("read-only")

        monkeypatch.setattr(db, "write_json_atomic", fail_export)
        with pytest.raises(StoreError, match="Failed to export"):
            with store.open_session(graph) as session:
                session.complete("T1", result="done", summary="ok")
                session.save()

        monkeypatch.setattr(db, "write_json_atomic", write_json_atomic)
        assert store.load(graph).tasks["T1"].state == "done"

    def test_corrupt_database_file(self, plan_paths, graph) -> None:
        plan_paths.db_path.write_bytes(b"this is not a sqlite database" * 100)
        with pytest.raises(StoreError):
            self._store(plan_paths).load(graph)

    def test_invalid_state_in_database(self, plan_paths, graph) -> None:
        store = self._store(plan_paths)
        with store.open_session(graph) as session:
            session.save()
        conn = sqlite3.connect(plan_paths.db_path)
        conn.execute("PRAGMA ignore_check_constraints = ON")
        conn.execute("UPDATE tasks SET state = 'exploded' WHERE task_id = 'T2'")
        conn.commit()
        conn.close()
        with pytest.raises(CorruptStore, match="T2"):
            store.load(graph)
