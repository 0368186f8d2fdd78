"""Orange Pi Image Generator - staged image builds for the Orange Pi 5 Plus.

This package orchestrates rootfs staging, kernel and bootloader builds,
device-tree generation and disk image assembly for RK3588 boards.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
