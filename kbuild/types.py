"""Shared type definitions for kbuild.

This module contains dataclasses and enums shared across modules to avoid
circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class PipelineState(str, Enum):
    """Stage of a pipeline run."""

    CONFIGURING = "configuring"
    BUILDING = "building"
    PACKAGING = "packaging"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED = "failed"


class ToolchainStatus(str, Enum):
    """Outcome of toolchain provisioning."""

    PRESENT = "present"
    INSTALLED = "installed"


class NotifyStatus(str, Enum):
    """Outcome of the notification step."""

    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class BuildArtifact:
    """The compiled kernel image."""

    path: Path
    size_bytes: int


@dataclass
class PackageResult:
    """Result of packaging a build artifact.

    Attributes:
        zip_path: Path to the flashable zip.
        md5: MD5 hex digest of the zip.
        revision: Source revision short hash (or "untracked").
        elapsed_seconds: Wall-clock seconds since the pipeline started.
    """

    zip_path: Path
    md5: str
    revision: str
    elapsed_seconds: float = 0.0

    @property
    def zip_name(self) -> str:
        return self.zip_path.name

    @property
    def elapsed_minutes(self) -> int:
        return int(self.elapsed_seconds // 60)


__all__ = [
    "BuildArtifact",
    "NotifyStatus",
    "PackageResult",
    "PipelineState",
    "ToolchainStatus",
]
