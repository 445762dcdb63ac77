"""Build runner for executing kernel make commands.

This module handles:
- Composing `make` commands (O=, ARCH=, -j) for the kernel build system
- Preparing the build environment (toolchain, KBUILD_* identity, LLVM)
- Executing make with subprocess, output captured to a build log
- Checking each step's exit status and the expected kernel image
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from kbuild.config import IMAGE_NAME
from kbuild.toolchain import toolchain_env
from kbuild.types import BuildArtifact

if TYPE_CHECKING:
    from kbuild.config import BuildConfig

logger = logging.getLogger(__name__)


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


@dataclass
class MakeResult:
    """Result of a single make invocation.

    Attributes:
        success: Whether make exited with status 0.
        exit_code: Process exit code.
        command: The command that was executed.
        log_path: Path to the build log file.
        started_at: Start time.
        finished_at: Finish time.
    """

    success: bool
    exit_code: int
    command: str
    log_path: Path
    started_at: datetime
    finished_at: datetime

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def build_environment(config: BuildConfig) -> dict[str, str]:
    """Environment overrides for kernel make invocations.

    Args:
        config: Resolved build configuration.

    Returns:
        Mapping of variables to set on top of os.environ.
    """
    env = {
        "KBUILD_BUILD_USER": config.build_user,
        "KBUILD_BUILD_HOST": config.build_host,
        "KCFLAGS": config.kcflags,
        "LLVM": "1",
        "LLVM_IAS": "1",
    }
    env.update(toolchain_env(config))
    return env


def compose_make_command(config: BuildConfig, *targets: str) -> list[str]:
    """Compose a kernel `make` command.

    Args:
        config: Resolved build configuration.
        targets: Make targets (defconfig name, image name, ...).

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [
        "make",
        f"O={config.out_dir}",
        f"ARCH={config.arch}",
        f"-j{config.jobs}",
        *targets,
    ]


def run_make(
    config: BuildConfig,
    targets: list[str],
    log_path: Path | None = None,
    timeout: int | None = None,
) -> MakeResult:
    """Run one make invocation in the kernel source tree.

    Output is appended to the build log.

    Args:
        config: Resolved build configuration.
        targets: Make targets.
        log_path: Build log path (defaults to config.log_path).
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        MakeResult with execution details.

    Raises:
        BuildExecutionError: If make cannot be started or times out.
    """
    if log_path is None:
        log_path = config.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = compose_make_command(config, *targets)
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)

    env = dict(os.environ)
    env.update(build_environment(config))

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {config.source_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=config.source_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

    except subprocess.TimeoutExpired as e:
        message = f"make timed out after {timeout} seconds"
        logger.error("%s. See log: %s", message, log_path)
        raise BuildExecutionError(
            message,
            exit_code=-1,
            code="build_timeout",
            log_path=log_path,
        ) from e

    except OSError as e:
        message = f"Failed to execute make: {e}"
        logger.error(message)
        raise BuildExecutionError(
            message,
            code="execution_error",
            log_path=log_path,
        ) from e

    finished_at = datetime.now(timezone.utc)
    exit_code = result.returncode

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    if exit_code != 0:
        logger.error("make exited with code %d. See log: %s", exit_code, log_path)

    return MakeResult(
        success=exit_code == 0,
        exit_code=exit_code,
        command=cmd_str,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
    )


def _check(result: MakeResult, message: str, code: str) -> None:
    if not result.success:
        raise BuildExecutionError(
            message,
            exit_code=result.exit_code,
            code=code,
            log_path=result.log_path,
        )


def run_defconfig(config: BuildConfig, timeout: int | None = None) -> MakeResult:
    """Materialize .config from the target's defconfig.

    Raises:
        BuildExecutionError: If make fails.
    """
    config.out_dir.mkdir(parents=True, exist_ok=True)
    result = run_make(config, [config.defconfig], timeout=timeout)
    _check(
        result,
        f"Failed to generate config from {config.defconfig}",
        "defconfig_failed",
    )
    return result


def run_build(config: BuildConfig, timeout: int | None = None) -> BuildArtifact:
    """Configure and compile the kernel image.

    A stale image from an earlier run is removed first so that only an
    image produced by this run counts as success.

    Args:
        config: Resolved build configuration.
        timeout: Per-step timeout in seconds (None = no timeout).

    Returns:
        BuildArtifact for the compiled image.

    Raises:
        BuildExecutionError: If a make step fails or no image is produced.
    """
    config.out_dir.mkdir(parents=True, exist_ok=True)
    config.image_path.unlink(missing_ok=True)

    logger.info("Starting compilation for %s...", config.target)
    run_defconfig(config, timeout=timeout)

    result = run_make(config, [IMAGE_NAME], timeout=timeout)
    _check(result, "Compilation failed!", "compile_failed")

    if not config.image_path.is_file():
        raise BuildExecutionError(
            "Compilation failed!",
            exit_code=result.exit_code,
            code="compile_failed",
            log_path=result.log_path,
        )

    artifact = BuildArtifact(
        path=config.image_path,
        size_bytes=config.image_path.stat().st_size,
    )
    logger.info("Kernel compiled successfully (%d bytes)", artifact.size_bytes)
    return artifact


def regen_defconfig(config: BuildConfig, timeout: int | None = None) -> Path:
    """Regenerate a minimal defconfig snapshot without compiling.

    Runs the defconfig step followed by `savedefconfig`.

    Args:
        config: Resolved build configuration.
        timeout: Per-step timeout in seconds.

    Returns:
        Path to the generated <out>/defconfig.

    Raises:
        BuildExecutionError: If a make step fails or no snapshot is written.
    """
    logger.info("Generating minimal defconfig for %s...", config.target)
    run_defconfig(config, timeout=timeout)

    result = run_make(config, ["savedefconfig"], timeout=timeout)
    _check(result, "savedefconfig failed", "savedefconfig_failed")

    snapshot = config.out_dir / "defconfig"
    if not snapshot.is_file():
        raise BuildExecutionError(
            f"savedefconfig did not produce {snapshot}",
            exit_code=result.exit_code,
            code="savedefconfig_failed",
            log_path=result.log_path,
        )
    return snapshot


def clean(config: BuildConfig) -> None:
    """Remove build outputs and the packaging checkout, then run mrproper.

    make runs without O=/ARCH= here and cleans the source tree itself.

    Raises:
        BuildExecutionError: If make cannot be run or fails.
    """
    logger.info("Cleaning...")
    for path in (config.out_dir, config.anykernel_dir):
        if path.exists():
            shutil.rmtree(path)

    cmd = ["make", "clean", "mrproper"]
    try:
        result = subprocess.run(
            cmd,
            cwd=config.source_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to execute make: {e}",
            code="execution_error",
        ) from e

    if result.returncode != 0:
        raise BuildExecutionError(
            f"make clean mrproper failed: {result.stderr.strip()}",
            exit_code=result.returncode,
            code="clean_failed",
        )


__all__ = [
    "BuildExecutionError",
    "MakeResult",
    "build_environment",
    "clean",
    "compose_make_command",
    "regen_defconfig",
    "run_build",
    "run_defconfig",
    "run_make",
]
