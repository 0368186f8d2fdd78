"""Shared type definitions for opi_imagegen.

This module contains the closed enums shared across subpackages to avoid
circular imports. Behaviour that varies per member lives in lookup tables
next to the code that uses it, keyed by these enums.
"""

from __future__ import annotations

from enum import Enum


class BuildStatus(str, Enum):
    """State of a pipeline run.

    Members are declared in forward order; a run may only advance through
    them or drop into FAILED.
    """

    NOT_STARTED = "not-started"
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    CONFIGURING = "configuring"
    BUILDING = "building"
    INSTALLING = "installing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed."""
        return self in (BuildStatus.COMPLETED, BuildStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the forward order (FAILED sorts last)."""
        return list(BuildStatus).index(self)


class RunStatus(str, Enum):
    """Status of a persisted build run record."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepPolicy(str, Enum):
    """How a failed pipeline step or stage is treated."""

    FATAL = "fatal"
    BEST_EFFORT = "best-effort"


class BuildType(str, Enum):
    """Image flavour, selecting device-tree tuning and package sets."""

    GAMING = "gaming"
    MEDIA_CENTER = "media-center"
    OPEN_SOURCE_GAMING = "open-source-gaming"
    DESKTOP = "desktop"

    @classmethod
    def from_alias(cls, alias: str) -> BuildType:
        """Resolve a build type from a value or legacy menu alias.

        Unknown aliases resolve to DESKTOP.

        Args:
            alias: Enum value or one of 'gamescope-pi', 'openscope-pi', 'kodi'.

        Returns:
            Matching BuildType.
        """
        aliases = {
            "gamescope-pi": cls.GAMING,
            "openscope-pi": cls.OPEN_SOURCE_GAMING,
            "kodi": cls.MEDIA_CENTER,
        }
        if alias in aliases:
            return aliases[alias]
        try:
            return cls(alias)
        except ValueError:
            return cls.DESKTOP


class GpuFamily(str, Enum):
    """GPU driver family."""

    PROPRIETARY = "proprietary"
    OPEN_SOURCE = "open-source"


class GpuDriver(str, Enum):
    """GPU driver identifier."""

    G13P0 = "g13p0"
    G6P0 = "g6p0"
    PANFROST = "panfrost"
    MESA_PANFROST = "mesa-panfrost"

    @property
    def family(self) -> GpuFamily:
        """Driver family used for device-tree and package decisions."""
        return _GPU_FAMILIES[self]

    @property
    def is_proprietary(self) -> bool:
        """Whether this is a Mali blob driver."""
        return self.family is GpuFamily.PROPRIETARY


_GPU_FAMILIES = {
    GpuDriver.G13P0: GpuFamily.PROPRIETARY,
    GpuDriver.G6P0: GpuFamily.PROPRIETARY,
    GpuDriver.PANFROST: GpuFamily.OPEN_SOURCE,
    GpuDriver.MESA_PANFROST: GpuFamily.OPEN_SOURCE,
}


class BootloaderType(str, Enum):
    """Known bootloaders for RK3588 boards."""

    U_BOOT = "u-boot"
    EDK2_UEFI = "edk2-uefi"
    TOW_BOOT = "tow-boot"
    PETITBOOT = "petitboot"
    BAREBOX = "barebox"
    LINUXBOOT = "linuxboot"
    ROCKCHIP_MINILOADER = "rockchip-miniloader"
    COREBOOT = "coreboot"


BUILDABLE_BOOTLOADERS = frozenset({BootloaderType.U_BOOT})


class Distro(str, Enum):
    """Target distribution."""

    DEBIAN = "debian"
    UBUNTU = "ubuntu"


class DesktopEnvironment(str, Enum):
    """Desktop environment or server profile installed into the rootfs."""

    LXQT = "lxqt"
    GNOME = "gnome"
    KDE = "kde"
    XFCE = "xfce"
    SERVER_MINIMAL = "server-minimal"
    SERVER = "server"
    SERVER_FULL = "server-full"


class ArtifactCategory(str, Enum):
    """Workspace category; the value is the subdirectory name."""

    KERNEL = "kernel"
    BOOTLOADER = "uboot"
    FIRMWARE = "firmware"
    GPU = "gpu"
    DESKTOP = "desktop"
    TOOLS = "tools"
    RETROARCH = "retroarch"
    BUILD_SYSTEM = "build-system"
    GAMESCOPE = "gamescope"


class FetchMethod(str, Enum):
    """How an artifact is fetched when absent."""

    GIT = "git"
    HTTP = "http"
    APT = "apt"


class PartitionRole(str, Enum):
    """Role of a partition in the image layout."""

    BOOT = "boot"
    ROOT = "root"


class Filesystem(str, Enum):
    """Filesystem of a partition; the value is the parted fs-type."""

    FAT32 = "fat32"
    EXT4 = "ext4"


__all__ = [
    "BUILDABLE_BOOTLOADERS",
    "ArtifactCategory",
    "BootloaderType",
    "BuildStatus",
    "BuildType",
    "DesktopEnvironment",
    "Distro",
    "FetchMethod",
    "Filesystem",
    "GpuDriver",
    "GpuFamily",
    "PartitionRole",
    "RunStatus",
    "StepPolicy",
]
