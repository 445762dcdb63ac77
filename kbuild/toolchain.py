"""Toolchain provisioning.

This module handles:
- Downloading the prebuilt AOSP clang archive
- Safe extraction into the toolchain directory
- Forced refresh (toolchain and compiler cache reset)
- Environment overrides pointing the build at the toolchain

Extraction goes to a staging directory that is renamed into place only
after it succeeds, so an interrupted run never leaves a half-populated
toolchain directory behind.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from kbuild.types import ToolchainStatus

if TYPE_CHECKING:
    from kbuild.config import BuildConfig

logger = logging.getLogger(__name__)

TOOLCHAIN_NAME = "AOSP-LLVM 22.0.1"
TOOLCHAIN_URL = (
    "https://android.googlesource.com/platform/prebuilts/clang/host/linux-x86/"
    "+archive/105aba85d97a53d364585ca755752dae054b49e8/clang-r584948b.tar.gz"
)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class DownloadError(Exception):
    """Raised when the toolchain download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message)
        self.code = code


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        super().__init__(message)
        self.code = code


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Stream a URL to a file.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes written.

    Raises:
        DownloadError: If download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream(
            "GET", url, timeout=timeout, follow_redirects=True
        ) as response:
            response.raise_for_status()

            dest_path.parent.mkdir(parents=True, exist_ok=True)
            total_bytes = 0
            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return total_bytes


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a gzipped tarball into a directory.

    Args:
        archive_path: Path to the .tar.gz archive.
        dest_dir: Destination directory (created if missing).

    Returns:
        The destination directory.

    Raises:
        ExtractionError: If the archive is empty, unsafe or unreadable.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            if not members:
                raise ExtractionError(
                    f"Archive {archive_path} is empty",
                    code="empty_archive",
                )

            for member in members:
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )

            tar.extractall(dest_dir, filter="data")

    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    return dest_dir


def reset_toolchain(config: BuildConfig) -> None:
    """Delete the toolchain and reset the compiler cache.

    The ccache directory is recreated empty only if it existed.
    """
    logger.info("Cleaning up old toolchains cache..")
    if config.tc_dir.exists():
        shutil.rmtree(config.tc_dir)
    if config.ccache_dir.is_dir():
        shutil.rmtree(config.ccache_dir)
        config.ccache_dir.mkdir(parents=True)


def install_toolchain(
    client: httpx.Client,
    tc_dir: Path,
    url: str = TOOLCHAIN_URL,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Download and extract the toolchain into tc_dir.

    Args:
        client: HTTPX client instance.
        tc_dir: Final toolchain directory (must not exist).
        url: Archive URL.
        timeout: Download timeout in seconds.

    Returns:
        The toolchain directory.

    Raises:
        DownloadError: If download fails.
        ExtractionError: If extraction fails.
    """
    logger.info("Downloading %s...", TOOLCHAIN_NAME)
    tc_dir.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(suffix=".tar.gz", delete=False) as tmp_file:
        archive_path = Path(tmp_file.name)
    staging_dir = Path(tempfile.mkdtemp(prefix=f".{tc_dir.name}-", dir=tc_dir.parent))

    try:
        download_file(client, url, archive_path, timeout=timeout)
        extract_archive(archive_path, staging_dir)
        staging_dir.chmod(0o755)
        staging_dir.rename(tc_dir)
    except Exception:
        shutil.rmtree(staging_dir, ignore_errors=True)
        raise
    finally:
        archive_path.unlink(missing_ok=True)

    logger.info("Toolchain extracted to %s", tc_dir)
    return tc_dir


def ensure_toolchain(
    config: BuildConfig,
    client: httpx.Client,
    force: bool = False,
    url: str = TOOLCHAIN_URL,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> ToolchainStatus:
    """Make sure a toolchain is available in config.tc_dir.

    Args:
        config: Resolved build configuration.
        client: HTTPX client instance.
        force: Delete the existing toolchain and compiler cache first.
        url: Archive URL.
        timeout: Download timeout in seconds.

    Returns:
        PRESENT if nothing was downloaded, INSTALLED otherwise.
    """
    if force:
        reset_toolchain(config)

    if config.tc_dir.is_dir():
        logger.info("Toolchain already exist")
        return ToolchainStatus.PRESENT

    install_toolchain(client, config.tc_dir, url=url, timeout=timeout)
    return ToolchainStatus.INSTALLED


def toolchain_env(config: BuildConfig) -> dict[str, str]:
    """Environment overrides that put the toolchain first on PATH."""
    path = os.environ.get("PATH", "")
    bin_dir = str(config.tc_dir / "bin")
    return {
        "PATH": f"{bin_dir}{os.pathsep}{path}" if path else bin_dir,
        "LD_LIBRARY_PATH": str(config.tc_dir / "lib"),
    }


__all__ = [
    "DOWNLOAD_TIMEOUT",
    "TOOLCHAIN_URL",
    "DownloadError",
    "ExtractionError",
    "download_file",
    "ensure_toolchain",
    "extract_archive",
    "install_toolchain",
    "reset_toolchain",
    "toolchain_env",
]
