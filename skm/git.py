"""
Git status retrieval for SKM.

Read-only: branch, working-tree cleanliness and last commit time, obtained
by running the `git` CLI. Projects that are not repositories (or machines
without git) get None rather than an error.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class GitStatus:
    """Version-control facts about one project."""
    branch: str | None
    is_dirty: bool
    last_commit: datetime | None

    def to_dict(self) -> dict[str, object]:
        return {
            "branch": self.branch,
            "is_dirty": self.is_dirty,
            "last_commit": self.last_commit.isoformat() if self.last_commit else None,
        }


GitProvider = Callable[[Path], Optional[GitStatus]]


def _git(args: list[str], cwd: Path) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return None
    return result.stdout.strip()


def get_git_status(project_path: Path) -> GitStatus | None:
    """
    Get git status for a project, or None if it is not inside a repository.

    Dirtiness and the last commit are limited to the project directory, so
    projects sharing one repository do not see each other's changes.
    """
    inside = _git(["rev-parse", "--is-inside-work-tree"], project_path)
    if inside != "true":
        return None

    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], project_path)
    if branch == "HEAD":
        branch = None  # detached

    porcelain = _git(["status", "--porcelain", "--untracked-files=normal", "--", "."], project_path)
    is_dirty = bool(porcelain)

    last_commit = None
    timestamp = _git(["log", "-1", "--format=%ct", "--", "."], project_path)
    if timestamp:
        try:
            last_commit = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
        except ValueError:
            logger.debug("Unexpected commit timestamp %r in %s", timestamp, project_path)

    return GitStatus(branch=branch or None, is_dirty=is_dirty, last_commit=last_commit)


def no_git(project_path: Path) -> GitStatus | None:
    """Provider that never consults git."""
    return None
