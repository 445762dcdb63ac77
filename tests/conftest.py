"""Shared fixtures for kbuild tests."""

from pathlib import Path

import pytest

from kbuild.config import BuildConfig

ENV_VARS = [
    "DEVICE_TARGET",
    "UPDATE_TOOLCHAINS",
    "APPLY_WORKAROUND",
    "DO_CLEAN",
    "TG_TOKEN",
    "TG_CHAT_ID",
    "KBUILD_SOURCE_DIR",
    "KBUILD_TC_DIR",
    "KBUILD_OUT_DIR",
    "KBUILD_CCACHE_DIR",
    "KBUILD_BUILD_USER",
    "KBUILD_BUILD_HOST",
    "KBUILD_JOBS",
    "KBUILD_LOG_LEVEL",
    "KBUILD_HTTP_TIMEOUT",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Run every test without build variables and outside any .env file."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def build_config(tmp_path: Path) -> BuildConfig:
    """A resolved config rooted in a temporary kernel tree."""
    source_dir = tmp_path / "kernel"
    source_dir.mkdir()
    return BuildConfig(
        target="DEVICEX",
        source_dir=source_dir,
        tc_dir=tmp_path / "clang",
        out_dir=source_dir / "out",
        ccache_dir=tmp_path / "ccache",
        jobs=4,
    )
