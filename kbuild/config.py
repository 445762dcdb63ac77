"""Configuration settings for kbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Variable names follow the historical build script
(DEVICE_TARGET, TG_TOKEN, ...); tool-specific knobs use the KBUILD_ prefix.

Settings are resolved once into an immutable BuildConfig which is passed
explicitly between pipeline stages.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TARGET = "X01BD"
DEFAULT_BUILD_USER = "rsuntk"
DEFAULT_BUILD_HOST = "kernel-worker"

ARCH = "arm64"
KCFLAGS = "-w"
IMAGE_NAME = "Image.gz-dtb"
ANYKERNEL_DIRNAME = "AnyKernel3"


class ConfigError(Exception):
    """Raised when the build configuration cannot be resolved."""

    def __init__(self, message: str, code: str = "config_error") -> None:
        super().__init__(message)
        self.code = code


def _default_tc_dir() -> Path:
    """Return the default toolchain directory."""
    return Path.home() / "clang-22"


def _default_ccache_dir() -> Path:
    """Return the default compiler cache directory."""
    return Path.home() / ".ccache"


def _default_jobs() -> int:
    """Return the number of available processors."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables (and an optional .env
    file). CLI flags select the pipeline mode, not these values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Target
    device_target: str = Field(
        default=DEFAULT_TARGET,
        validation_alias="DEVICE_TARGET",
        description="Device codename; selects defconfig and AnyKernel3 branch",
    )

    # Opt-in behaviours
    update_toolchains: bool = Field(
        default=False,
        validation_alias="UPDATE_TOOLCHAINS",
        description="Delete and re-download the toolchain (and reset ccache)",
    )
    apply_workaround: bool = Field(
        default=False,
        validation_alias="APPLY_WORKAROUND",
        description="Disable thermal options in the device defconfig",
    )
    do_clean: bool = Field(
        default=False,
        validation_alias="DO_CLEAN",
        description="Remove the AnyKernel3 checkout and boot outputs after packaging",
    )

    # Notification credentials
    tg_token: SecretStr | None = Field(
        default=None,
        validation_alias="TG_TOKEN",
        description="Telegram bot token",
    )
    tg_chat_id: str | None = Field(
        default=None,
        validation_alias="TG_CHAT_ID",
        description="Telegram chat identifier",
    )

    # Paths
    source_dir: Path = Field(
        default_factory=Path.cwd,
        validation_alias="KBUILD_SOURCE_DIR",
        description="Kernel source tree (defaults to the working directory)",
    )
    tc_dir: Path = Field(
        default_factory=_default_tc_dir,
        validation_alias="KBUILD_TC_DIR",
        description="Toolchain installation directory",
    )
    out_dir: Path | None = Field(
        default=None,
        validation_alias="KBUILD_OUT_DIR",
        description="Kernel output directory (defaults to <source_dir>/out)",
    )
    ccache_dir: Path = Field(
        default_factory=_default_ccache_dir,
        validation_alias="KBUILD_CCACHE_DIR",
        description="Compiler cache directory reset on toolchain refresh",
    )

    # Build identity
    build_user: str = Field(
        default=DEFAULT_BUILD_USER,
        validation_alias="KBUILD_BUILD_USER",
        description="Value exported as KBUILD_BUILD_USER",
    )
    build_host: str = Field(
        default=DEFAULT_BUILD_HOST,
        validation_alias="KBUILD_BUILD_HOST",
        description="Value exported as KBUILD_BUILD_HOST",
    )

    # Operational
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        validation_alias="KBUILD_JOBS",
        description="Parallel make jobs",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        validation_alias="KBUILD_LOG_LEVEL",
        description="Logging level",
    )
    http_timeout: int = Field(
        default=3600,
        ge=1,
        validation_alias="KBUILD_HTTP_TIMEOUT",
        description="Timeout in seconds for toolchain download and upload",
    )

    @field_validator("update_toolchains", "apply_workaround", "do_clean", mode="before")
    @classmethod
    def _parse_switch(cls, value: object) -> object:
        """Opt-in switches are enabled only by the string "true"."""
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return value

    @property
    def has_telegram_credentials(self) -> bool:
        """Whether both Telegram token and chat id are set."""
        token = self.tg_token.get_secret_value() if self.tg_token else ""
        return bool(token and self.tg_chat_id)


@dataclass(frozen=True)
class BuildConfig:
    """Resolved, immutable build configuration.

    Attributes:
        target: Device codename.
        source_dir: Kernel source tree.
        tc_dir: Toolchain directory.
        out_dir: Kernel output directory (make O=).
        ccache_dir: Compiler cache directory.
        build_user: KBUILD_BUILD_USER value.
        build_host: KBUILD_BUILD_HOST value.
        jobs: Parallel make jobs.
        arch: Kernel architecture.
        kcflags: Extra compiler flags.
    """

    target: str
    source_dir: Path
    tc_dir: Path
    out_dir: Path
    ccache_dir: Path
    build_user: str = DEFAULT_BUILD_USER
    build_host: str = DEFAULT_BUILD_HOST
    jobs: int = 1
    arch: str = ARCH
    kcflags: str = KCFLAGS

    @property
    def defconfig(self) -> str:
        """Defconfig name relative to arch/<arch>/configs."""
        return f"vendor/asus/{self.target}_defconfig"

    @property
    def defconfig_path(self) -> Path:
        return self.source_dir / "arch" / self.arch / "configs" / self.defconfig

    @property
    def image_path(self) -> Path:
        """Expected location of the compiled kernel image."""
        return self.out_dir / "arch" / self.arch / "boot" / IMAGE_NAME

    @property
    def anykernel_dir(self) -> Path:
        return self.source_dir / ANYKERNEL_DIRNAME

    @property
    def log_path(self) -> Path:
        return self.out_dir / "build.log"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def resolve_build_config(
    settings: Settings | None = None,
    require_target: bool = True,
) -> BuildConfig:
    """Resolve settings into a BuildConfig.

    Args:
        settings: Optional settings instance; uses default if not provided.
        require_target: Reject an empty device target. Maintenance modes
            (toolchain fetch, clean) do not need one.

    Returns:
        Fully populated BuildConfig.

    Raises:
        ConfigError: If the device target is empty.
    """
    if settings is None:
        settings = get_settings()

    target = settings.device_target.strip()
    if require_target and not target:
        raise ConfigError("DEVICE_TARGET cannot be empty!", code="missing_target")

    source_dir = settings.source_dir.expanduser().resolve()
    out_dir = settings.out_dir or source_dir / "out"

    return BuildConfig(
        target=target,
        source_dir=source_dir,
        tc_dir=settings.tc_dir.expanduser().resolve(),
        out_dir=out_dir.expanduser().resolve(),
        ccache_dir=settings.ccache_dir.expanduser().resolve(),
        build_user=settings.build_user,
        build_host=settings.build_host,
        jobs=settings.jobs,
    )


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Credentials are masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "ANYKERNEL_DIRNAME",
    "ARCH",
    "BuildConfig",
    "ConfigError",
    "DEFAULT_TARGET",
    "IMAGE_NAME",
    "KCFLAGS",
    "Settings",
    "get_settings",
    "print_settings_json",
    "resolve_build_config",
]
