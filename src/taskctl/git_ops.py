"""Git lookups used to locate the workspace and infer the planning slug.

Functions return ``None`` when git is unavailable or the directory is not
a repository; callers decide whether that is fatal.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)


def _git(cwd: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            check=True,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        stderr = getattr(exc, "stderr", None) or str(exc)
        log.debug("git %s failed in %s: %s", " ".join(args), cwd, stderr.strip())
        return None
    return result.stdout.strip() or None


def workspace_root(cwd: Path) -> Path:
    """Return the repository top level, or *cwd* outside a repository."""
    top_level = _git(cwd, "rev-parse", "--show-toplevel")
    return Path(top_level) if top_level else cwd


def current_branch(cwd: Path) -> str | None:
    """Return the checked-out branch name, or None when detached or not in git."""
    branch = _git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
    if not branch or branch == "HEAD":
        return None
    return branch
