"""AnyKernel3 packaging.

This module handles:
- Checking out the AnyKernel3 template branch for the target
- Copying the kernel image into the checkout
- Compressing the checkout into a flashable zip
- Computing the zip checksum
- Optional post-build cleanup

Zip names have minute resolution: two runs in the same minute for the same
target and revision produce the same name and the later one overwrites the
earlier zip.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import zipfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from kbuild.types import BuildArtifact, PackageResult
from kbuild.vcs import clone_branch

if TYPE_CHECKING:
    from kbuild.config import BuildConfig

logger = logging.getLogger(__name__)

ANYKERNEL_URL = "https://github.com/rsuntk/AnyKernel3"
ZIP_PREFIX = "rsuntk"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class PackagingError(Exception):
    """Raised when packaging fails."""

    def __init__(self, message: str, code: str = "packaging_error") -> None:
        super().__init__(message)
        self.code = code


def make_zip_name(target: str, timestamp: datetime, revision: str) -> str:
    """Build the flashable zip filename.

    Args:
        target: Device codename.
        timestamp: Build time; converted to UTC when timezone-aware.
        revision: Source revision short hash or "untracked".

    Returns:
        Name like rsuntk_X01BD-20240101-1200-abc1234.zip.
    """
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    stamp = timestamp.strftime(TIMESTAMP_FORMAT)
    return f"{ZIP_PREFIX}_{target}-{stamp}-{revision}.zip"


def is_excluded(relative_path: str) -> bool:
    """Whether a checkout path is left out of the zip.

    Excludes top-level dotfiles, git metadata (.git, .gitignore, ...), the
    top-level README.md and placeholder files.
    """
    parts = PurePosixPath(relative_path).parts
    if parts[0].startswith("."):
        return True
    if any(part.startswith(".git") for part in parts):
        return True
    if parts == ("README.md",):
        return True
    return parts[-1].endswith("placeholder")


def create_archive(src_dir: Path, zip_path: Path) -> list[str]:
    """Zip the contents of src_dir at maximum compression.

    Args:
        src_dir: Directory to compress; entries are stored relative to it.
        zip_path: Output zip path (overwritten if present).

    Returns:
        Sorted list of archived entry names.

    Raises:
        PackagingError: If the zip cannot be written.
    """
    entries: list[str] = []
    try:
        with zipfile.ZipFile(
            zip_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9
        ) as zf:
            for path in sorted(src_dir.rglob("*")):
                relative = path.relative_to(src_dir).as_posix()
                if is_excluded(relative) or not path.is_file():
                    continue
                zf.write(path, relative)
                entries.append(relative)
    except OSError as e:
        zip_path.unlink(missing_ok=True)
        raise PackagingError(
            f"Failed to write {zip_path}: {e}",
            code="archive_error",
        ) from e

    logger.info("Archived %d file(s) into %s", len(entries), zip_path.name)
    return entries


def compute_md5(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute the MD5 hex digest of a file."""
    md5 = hashlib.md5()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            md5.update(chunk)
    return md5.hexdigest()


def package_artifact(
    config: BuildConfig,
    artifact: BuildArtifact,
    revision: str,
    timestamp: datetime | None = None,
    template_url: str = ANYKERNEL_URL,
    output_dir: Path | None = None,
) -> PackageResult:
    """Package a compiled kernel image into a flashable zip.

    Args:
        config: Resolved build configuration.
        artifact: The compiled kernel image.
        revision: Source revision short hash.
        timestamp: Build time (defaults to now, UTC).
        template_url: AnyKernel3 repository URL.
        output_dir: Where to write the zip (defaults to the source dir).

    Returns:
        PackageResult with zip path and checksum.

    Raises:
        PackagingError: If the artifact is missing or the zip cannot be written.
        VcsError: If the template checkout fails.
    """
    if not artifact.path.is_file():
        raise PackagingError(
            f"Kernel image not found: {artifact.path}",
            code="artifact_missing",
        )

    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    if output_dir is None:
        output_dir = config.source_dir

    checkout = config.anykernel_dir
    if checkout.exists():
        shutil.rmtree(checkout)
    clone_branch(template_url, config.target, checkout)

    try:
        shutil.copy2(artifact.path, checkout / artifact.path.name)
    except OSError as e:
        raise PackagingError(
            f"Failed to copy {artifact.path} into {checkout}: {e}",
            code="copy_error",
        ) from e

    zip_path = output_dir / make_zip_name(config.target, timestamp, revision)
    create_archive(checkout, zip_path)
    md5 = compute_md5(zip_path)

    return PackageResult(zip_path=zip_path, md5=md5, revision=revision)


def cleanup(config: BuildConfig) -> None:
    """Remove the AnyKernel3 checkout and the boot output directory."""
    boot_dir = config.image_path.parent
    for path in (config.anykernel_dir, boot_dir):
        if path.exists():
            logger.info("Removing %s", path)
            shutil.rmtree(path)


__all__ = [
    "ANYKERNEL_URL",
    "PackagingError",
    "cleanup",
    "compute_md5",
    "create_archive",
    "is_excluded",
    "make_zip_name",
    "package_artifact",
]
