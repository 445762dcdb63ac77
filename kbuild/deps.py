"""Host dependency installation (Debian/Ubuntu build hosts)."""

from __future__ import annotations

import logging
import shlex
import subprocess

logger = logging.getLogger(__name__)

DEPENDENCIES = [
    "aptitude",
    "bc",
    "bison",
    "ccache",
    "cpio",
    "curl",
    "flex",
    "git",
    "lz4",
    "perl",
    "python-is-python3",
    "tar",
    "wget",
]


class DependencySetupError(Exception):
    """Raised when a package manager command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "deps_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


def setup_commands(packages: list[str] | None = None) -> list[list[str]]:
    """Return the package manager commands to run, in order."""
    if packages is None:
        packages = DEPENDENCIES
    return [
        ["sudo", "apt", "update", "-y"],
        ["sudo", "apt", "install", *packages, "-y"],
        ["sudo", "aptitude", "install", "libssl-dev", "-y"],
    ]


def setup_deps(packages: list[str] | None = None) -> None:
    """Install build dependencies with apt.

    Raises:
        DependencySetupError: If a command cannot be run or fails.
    """
    for cmd in setup_commands(packages):
        cmd_str = shlex.join(cmd)
        logger.info("Executing: %s", cmd_str)
        try:
            result = subprocess.run(cmd, check=False)
        except OSError as e:
            raise DependencySetupError(
                f"Failed to run {cmd_str}: {e}",
                code="execution_error",
            ) from e
        if result.returncode != 0:
            raise DependencySetupError(
                f"{cmd_str} failed with exit code {result.returncode}",
                exit_code=result.returncode,
                code="command_failed",
            )


__all__ = ["DEPENDENCIES", "DependencySetupError", "setup_commands", "setup_deps"]
