"""Build pipeline orchestration.

This module provides the high-level build API:
- run_pipeline(): patch defconfig, compile, package, notify, clean up

Stages run strictly in order and the first error aborts the run. Packaging
only runs with a compiled image; notification only runs with a packaged zip.
A failed upload is reported but does not fail the build.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from kbuild.defconfig import apply_thermal_workaround
from kbuild.notify import NotificationError, notify_build
from kbuild.packaging import cleanup, package_artifact
from kbuild.runner import run_build
from kbuild.types import BuildArtifact, NotifyStatus, PackageResult, PipelineState
from kbuild.vcs import short_revision

if TYPE_CHECKING:
    import httpx

    from kbuild.config import BuildConfig, Settings

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when a pipeline precondition is not met."""

    def __init__(self, message: str, code: str = "pipeline_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class PipelineReport:
    """Outcome of a full pipeline run.

    Attributes:
        state: Final pipeline state.
        artifact: Compiled kernel image.
        package: Packaged zip and checksum.
        notify_status: Outcome of the Telegram upload.
        elapsed_seconds: Total wall-clock duration.
        notify_error: Upload error message, if the upload failed.
    """

    state: PipelineState
    artifact: BuildArtifact
    package: PackageResult
    notify_status: NotifyStatus
    elapsed_seconds: float
    notify_error: str | None = None

    @property
    def elapsed_minutes(self) -> int:
        return int(self.elapsed_seconds // 60)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def run_pipeline(
    config: BuildConfig,
    settings: Settings,
    client: httpx.Client,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = _utcnow,
    on_state: Callable[[PipelineState], None] | None = None,
) -> PipelineReport:
    """Run a full build: compile, package and deliver.

    Args:
        config: Resolved build configuration.
        settings: Application settings (opt-in flags, credentials).
        client: HTTPX client used for the upload.
        clock: Monotonic clock for elapsed time.
        now: Wall clock for the zip timestamp.
        on_state: Optional callback invoked on each state change.

    Returns:
        PipelineReport for the run.

    Raises:
        PipelineError: If the toolchain is missing.
        ConfigPatchError: If the thermal workaround cannot be applied.
        BuildExecutionError: If compilation fails.
        PackagingError: If the zip cannot be produced.
        VcsError: If the template checkout fails.
    """
    started = clock()
    state = PipelineState.CONFIGURING

    def enter(new_state: PipelineState) -> None:
        nonlocal state
        state = new_state
        logger.debug("Pipeline state: %s", state.value)
        if on_state is not None:
            on_state(state)

    enter(PipelineState.CONFIGURING)
    try:
        if not config.tc_dir.is_dir():
            raise PipelineError(
                f"Toolchain not found at {config.tc_dir}; run --fetch-toolchains",
                code="toolchain_missing",
            )

        if settings.apply_workaround:
            apply_thermal_workaround(config)

        revision = short_revision(config.source_dir)
        timestamp = now()

        enter(PipelineState.BUILDING)
        artifact = run_build(config)

        enter(PipelineState.PACKAGING)
        logger.info("Kernel compiled successfully! Packaging...")
        package = package_artifact(config, artifact, revision, timestamp=timestamp)
        package.elapsed_seconds = clock() - started
    except Exception:
        enter(PipelineState.FAILED)
        raise

    enter(PipelineState.NOTIFYING)
    notify_error: str | None = None
    try:
        notify_status = notify_build(settings, config, package, client)
    except NotificationError as e:
        logger.warning("Upload failed (%s): %s", e.code, e)
        notify_status = NotifyStatus.FAILED
        notify_error = str(e)

    if settings.do_clean:
        cleanup(config)

    enter(PipelineState.DONE)
    return PipelineReport(
        state=state,
        artifact=artifact,
        package=package,
        notify_status=notify_status,
        elapsed_seconds=clock() - started,
        notify_error=notify_error,
    )


__all__ = ["PipelineError", "PipelineReport", "run_pipeline"]
