"""Defconfig patching.

Forces selected kernel options to "not set" in a defconfig by rewriting
``CONFIG_X=y`` / ``CONFIG_X=m`` lines to ``# CONFIG_X is not set``. The
rewrite is idempotent: a patched file is left untouched on re-runs.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kbuild.config import BuildConfig

logger = logging.getLogger(__name__)

# Thermal drivers that break boot on some vendor trees
THERMAL_CONFIGS = [
    "CONFIG_QCOM_SPMI_TEMP_ALARM",
    "CONFIG_QTI_ADC_TM",
    "CONFIG_QTI_VIRTUAL_SENSOR",
]


class ConfigPatchError(Exception):
    """Raised when a defconfig cannot be patched."""

    def __init__(self, message: str, code: str = "config_patch_error") -> None:
        super().__init__(message)
        self.code = code


def _setting_pattern(setting: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(setting)}=[ym][ \t]*$", re.MULTILINE)


def patch_text(text: str, settings: Iterable[str]) -> tuple[str, int]:
    """Disable settings in defconfig text.

    Args:
        text: Defconfig content.
        settings: Option names (e.g. CONFIG_FOO) to force off.

    Returns:
        Tuple of (patched text, number of replaced lines).
    """
    total = 0
    for setting in settings:
        text, count = _setting_pattern(setting).subn(f"# {setting} is not set", text)
        total += count
    return text, total


def disable_configs(defconfig_path: Path, settings: Iterable[str]) -> int:
    """Disable settings in a defconfig file in place.

    No backup is kept. The file is only rewritten when something changed.

    Args:
        defconfig_path: Path to the defconfig.
        settings: Option names to force off.

    Returns:
        Number of replaced lines.

    Raises:
        ConfigPatchError: If the defconfig does not exist or cannot be written.
    """
    if not defconfig_path.is_file():
        raise ConfigPatchError(
            f"Defconfig not found: {defconfig_path}",
            code="defconfig_missing",
        )

    settings = list(settings)
    try:
        original = defconfig_path.read_text(encoding="utf-8")
        patched, count = patch_text(original, settings)
        if patched != original:
            defconfig_path.write_text(patched, encoding="utf-8")
    except OSError as e:
        raise ConfigPatchError(
            f"Failed to patch {defconfig_path}: {e}",
            code="os_error",
        ) from e

    if count == 0:
        logger.warning(
            "No enabled options among %s in %s", ", ".join(settings), defconfig_path
        )
    else:
        logger.info("Disabled %d option(s) in %s", count, defconfig_path.name)
    return count


def apply_thermal_workaround(config: BuildConfig) -> int:
    """Disable thermal options in the target's defconfig.

    Args:
        config: Resolved build configuration.

    Returns:
        Number of replaced lines.
    """
    logger.info("Applying thermal config patches to %s...", config.defconfig)
    return disable_configs(config.defconfig_path, THERMAL_CONFIGS)


__all__ = [
    "THERMAL_CONFIGS",
    "ConfigPatchError",
    "apply_thermal_workaround",
    "disable_configs",
    "patch_text",
]
