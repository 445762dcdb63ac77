"""Kernel Build Kit - Opinionated tooling for building Android kernels.

This package provides orchestration around the kernel's own make-based build
system: toolchain provisioning, defconfig patching, AnyKernel3 packaging and
Telegram delivery of the resulting flashable zip.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
