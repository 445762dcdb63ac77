"""Tests for toolchain provisioning.

These tests use mocked HTTP responses to test downloading, extraction
and the refresh logic.
"""

import io
import tarfile

import httpx
import pytest
import respx

from kbuild.toolchain import (
    TOOLCHAIN_URL,
    DownloadError,
    ExtractionError,
    download_file,
    ensure_toolchain,
    extract_archive,
    toolchain_env,
)
from kbuild.types import ToolchainStatus


def make_tarball(members: dict[str, bytes]) -> bytes:
    """Build a .tar.gz archive in memory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


TOOLCHAIN_TARBALL = make_tarball(
    {
        "bin/clang": b"#!/bin/sh\necho clang\n",
        "lib/libclang.so": b"\x7fELF",
    }
)


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should stream the body to disk."""
        content = b"toolchain bytes"
        respx.get("https://example.com/clang.tar.gz").mock(
            return_value=httpx.Response(200, content=content)
        )

        dest = tmp_path / "sub" / "clang.tar.gz"
        with httpx.Client() as client:
            size = download_file(client, "https://example.com/clang.tar.gz", dest)

        assert size == len(content)
        assert dest.read_bytes() == content

    @respx.mock
    def test_http_error(self, tmp_path):
        """Should raise DownloadError on HTTP error."""
        respx.get("https://example.com/missing.tar.gz").mock(
            return_value=httpx.Response(404)
        )

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(
                client, "https://example.com/missing.tar.gz", tmp_path / "x.tar.gz"
            )

        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_timeout_error(self, tmp_path):
        """Should raise DownloadError on timeout."""
        respx.get("https://example.com/slow.tar.gz").mock(
            side_effect=httpx.TimeoutException("Connection timed out")
        )

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, "https://example.com/slow.tar.gz", tmp_path / "x")

        assert exc_info.value.code == "timeout"


class TestExtractArchive:
    """Tests for extract_archive function."""

    def test_extracts_members(self, tmp_path):
        """Should extract all members into the destination."""
        archive = tmp_path / "clang.tar.gz"
        archive.write_bytes(TOOLCHAIN_TARBALL)

        dest = extract_archive(archive, tmp_path / "out")

        assert (dest / "bin" / "clang").is_file()
        assert (dest / "lib" / "libclang.so").is_file()

    def test_rejects_path_traversal(self, tmp_path):
        """Should refuse members escaping the destination."""
        archive = tmp_path / "evil.tar.gz"
        archive.write_bytes(make_tarball({"../evil.txt": b"boom"}))

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "evil.txt").exists()

    def test_empty_archive(self, tmp_path):
        """Should reject an empty archive."""
        archive = tmp_path / "empty.tar.gz"
        archive.write_bytes(make_tarball({}))

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "empty_archive"

    def test_corrupt_archive(self, tmp_path):
        """Should wrap tarfile errors."""
        archive = tmp_path / "bad.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "tar_error"


class TestEnsureToolchain:
    """Tests for ensure_toolchain function."""

    def test_existing_toolchain_skips_network(self, build_config):
        """Should not touch the network when the toolchain exists."""
        build_config.tc_dir.mkdir()

        with respx.mock(assert_all_called=False) as mock:
            route = mock.get(TOOLCHAIN_URL)
            with httpx.Client() as client:
                status = ensure_toolchain(build_config, client)

        assert status is ToolchainStatus.PRESENT
        assert not route.called

    def test_installs_missing_toolchain(self, build_config):
        """Should download and extract when the toolchain is absent."""
        with respx.mock:
            respx.get(TOOLCHAIN_URL).mock(
                return_value=httpx.Response(200, content=TOOLCHAIN_TARBALL)
            )
            with httpx.Client() as client:
                status = ensure_toolchain(build_config, client)

        assert status is ToolchainStatus.INSTALLED
        assert (build_config.tc_dir / "bin" / "clang").is_file()
        leftovers = [
            p for p in build_config.tc_dir.parent.iterdir() if p.name.startswith(".")
        ]
        assert leftovers == []

    def test_failed_download_leaves_no_toolchain(self, build_config):
        """A failed provisioning must not satisfy the next existence check."""
        with respx.mock:
            respx.get(TOOLCHAIN_URL).mock(return_value=httpx.Response(500))
            with httpx.Client() as client, pytest.raises(DownloadError):
                ensure_toolchain(build_config, client)

        assert not build_config.tc_dir.exists()
        staging = [
            p for p in build_config.tc_dir.parent.iterdir() if p.name.startswith(".")
        ]
        assert staging == []

    def test_failed_extraction_leaves_no_toolchain(self, build_config):
        """A corrupt archive must not leave a half-populated directory."""
        with respx.mock:
            respx.get(TOOLCHAIN_URL).mock(
                return_value=httpx.Response(200, content=b"garbage")
            )
            with httpx.Client() as client, pytest.raises(ExtractionError):
                ensure_toolchain(build_config, client)

        assert not build_config.tc_dir.exists()

    def test_force_refresh(self, build_config):
        """Should delete toolchain and reset ccache before re-downloading."""
        build_config.tc_dir.mkdir()
        (build_config.tc_dir / "stale-marker").write_text("old")
        build_config.ccache_dir.mkdir()
        (build_config.ccache_dir / "cache-entry").write_text("cached")

        with respx.mock:
            respx.get(TOOLCHAIN_URL).mock(
                return_value=httpx.Response(200, content=TOOLCHAIN_TARBALL)
            )
            with httpx.Client() as client:
                status = ensure_toolchain(build_config, client, force=True)

        assert status is ToolchainStatus.INSTALLED
        assert not (build_config.tc_dir / "stale-marker").exists()
        assert (build_config.tc_dir / "bin" / "clang").is_file()
        assert build_config.ccache_dir.is_dir()
        assert list(build_config.ccache_dir.iterdir()) == []

    def test_force_without_ccache(self, build_config):
        """Should not create a ccache dir that did not exist."""
        with respx.mock:
            respx.get(TOOLCHAIN_URL).mock(
                return_value=httpx.Response(200, content=TOOLCHAIN_TARBALL)
            )
            with httpx.Client() as client:
                ensure_toolchain(build_config, client, force=True)

        assert not build_config.ccache_dir.exists()


class TestToolchainEnv:
    """Tests for toolchain_env function."""

    def test_path_prefixed(self, build_config, monkeypatch):
        """Toolchain bin should come first on PATH."""
        monkeypatch.setenv("PATH", "/usr/bin")
        env = toolchain_env(build_config)

        assert env["PATH"].split(":")[0] == str(build_config.tc_dir / "bin")
        assert env["PATH"].endswith("/usr/bin")
        assert env["LD_LIBRARY_PATH"] == str(build_config.tc_dir / "lib")
