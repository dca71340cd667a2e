"""Tests for slug derivation and plan directory resolution."""

from __future__ import annotations

import shutil
import subprocess
from datetime import date
from pathlib import Path

import pytest

import taskctl.paths as paths_mod
from taskctl.errors import ConfigError
from taskctl.git_ops import current_branch, workspace_root
from taskctl.paths import (
    dated_slug,
    has_date_prefix,
    resolve_dated_plan_paths,
    resolve_plan_paths,
    to_planning_slug,
)


@pytest.mark.parametrize(
    ("raw", "slug"),
    [
        ("feat/user-login", "user-login"),
        ("feat-user-login", "user-login"),
        ("Fix/Checkout Bug!", "checkout-bug"),
        ("alice/experiments/new-ui", "alice-experiments-new-ui"),
        ("main", "main"),
        ("release_2.0", "release-2-0"),
        ("chore/deps/bump", "deps-bump"),
        ("--weird--", "weird"),
    ],
)
def test_to_planning_slug(raw, slug) -> None:
    assert to_planning_slug(raw) == slug


@pytest.mark.parametrize("raw", ["", "   ", "!!!", "///"])
def test_to_planning_slug_rejects_empty(raw) -> None:
    with pytest.raises(ConfigError):
        to_planning_slug(raw)


def test_dated_slug() -> None:
    assert dated_slug("login", date(2026, 3, 7)) == "07-03-2026-login"
    assert dated_slug("07-03-2026-login", date(2030, 1, 1)) == "07-03-2026-login"
    assert has_date_prefix("07-03-2026-login")
    assert not has_date_prefix("login")


def test_resolve_plan_paths_with_explicit_slug(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(paths_mod, "workspace_root", lambda cwd: tmp_path)
    resolved = resolve_plan_paths(tmp_path, "feat/Login")
    assert resolved.slug == "login"
    assert resolved.planning_dir == tmp_path / "planning" / "login"
    assert resolved.tasks_path.name == "tasks.yaml"
    assert resolved.status_path.name == "task.status.json"
    assert resolved.db_path.name == "task.db"


def test_resolve_slug_from_branch(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(paths_mod, "workspace_root", lambda cwd: tmp_path)
    monkeypatch.setattr(paths_mod, "current_branch", lambda cwd: "feat/payments")
    assert resolve_plan_paths(tmp_path).slug == "payments"


def test_detached_head_requires_slug(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(paths_mod, "workspace_root", lambda cwd: tmp_path)
    monkeypatch.setattr(paths_mod, "current_branch", lambda cwd: None)
    with pytest.raises(ConfigError, match="Pass --slug explicitly"):
        resolve_plan_paths(tmp_path)


class TestDatedResolution:
    @pytest.fixture(autouse=True)
    def _workspace(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(paths_mod, "workspace_root", lambda cwd: tmp_path)

    def test_prefers_dated_directory(self, tmp_path: Path) -> None:
        (tmp_path / "planning" / "login").mkdir(parents=True)
        (tmp_path / "planning" / "07-03-2026-login").mkdir(parents=True)
        resolved = resolve_dated_plan_paths(tmp_path, "login", date(2026, 3, 7))
        assert resolved.slug == "07-03-2026-login"

    def test_falls_back_to_legacy_directory(self, tmp_path: Path) -> None:
        (tmp_path / "planning" / "login").mkdir(parents=True)
        resolved = resolve_dated_plan_paths(tmp_path, "login", date(2026, 3, 7))
        assert resolved.slug == "login"

    def test_new_plan_gets_dated_directory(self, tmp_path: Path) -> None:
        resolved = resolve_dated_plan_paths(tmp_path, "login", date(2026, 3, 7))
        assert resolved.planning_dir == tmp_path / "planning" / "07-03-2026-login"


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
class TestGitLookups:
    def test_outside_repository(self, tmp_path: Path) -> None:
        assert workspace_root(tmp_path) == tmp_path
        assert current_branch(tmp_path) is None

    def test_inside_repository(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("GIT_AUTHOR_NAME", "taskctl-tests")
        monkeypatch.setenv("GIT_AUTHOR_EMAIL", "taskctl-tests@example.com")
        monkeypatch.setenv("GIT_COMMITTER_NAME", "taskctl-tests")
        monkeypatch.setenv("GIT_COMMITTER_EMAIL", "taskctl-tests@example.com")
        repo = tmp_path / "repo"
        repo.mkdir()
        subprocess.run(["git", "init", "-q", "-b", "feat/checkout"], cwd=repo, check=True)
        subprocess.run(
            ["git", "commit", "-q", "--allow-empty", "-m", "init"], cwd=repo, check=True
        )
        nested = repo / "src"
        nested.mkdir()
        assert workspace_root(nested).resolve() == repo.resolve()
        assert current_branch(nested) == "feat/checkout"
