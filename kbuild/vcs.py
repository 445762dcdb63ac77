"""Git helpers: source revision lookup and template checkout."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

UNTRACKED = "untracked"


class VcsError(Exception):
    """Raised when a git command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "vcs_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


def short_revision(repo_dir: Path) -> str:
    """Return the short hash of HEAD, or "untracked".

    Args:
        repo_dir: Directory inside the source checkout.

    Returns:
        Abbreviated commit hash, or UNTRACKED when git or revision
        metadata is unavailable.
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=repo_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        logger.debug("git unavailable: %s", e)
        return UNTRACKED

    revision = result.stdout.strip()
    if result.returncode != 0 or not revision:
        return UNTRACKED
    return revision


def clone_branch(url: str, branch: str, dest: Path) -> Path:
    """Clone a single branch of a repository into dest.

    Args:
        url: Repository URL.
        branch: Branch to check out.
        dest: Destination directory (must not exist).

    Returns:
        The destination directory.

    Raises:
        VcsError: If git cannot be run or exits non-zero.
    """
    cmd = ["git", "clone", "-q", url, "--single-branch", "-b", branch, str(dest)]
    logger.info("Cloning %s (branch %s) into %s", url, branch, dest)

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise VcsError(f"Failed to run git: {e}", code="execution_error") from e

    if result.returncode != 0:
        raise VcsError(
            f"git clone of {url} ({branch}) failed: {result.stderr.strip()}",
            exit_code=result.returncode,
            code="clone_failed",
        )
    return dest


__all__ = ["UNTRACKED", "VcsError", "clone_branch", "short_revision"]
