"""Artifact source table.

Each external input the build can need is described by one ArtifactSource:
where it lives upstream, how it is fetched, and which files prove it is
already present in the workspace. The cache never decides anything per
category in code; it looks the source up here.
"""

from __future__ import annotations

from dataclasses import dataclass

from opi_imagegen.errors import ConfigValidationError
from opi_imagegen.types import ArtifactCategory, FetchMethod, GpuDriver


@dataclass(frozen=True)
class ArtifactSource:
    """Description of one fetchable artifact.

    Attributes:
        category: Workspace category.
        identifier: Name of the artifact within its category.
        method: Fetch method used when the artifact is absent.
        url: Git remote or download URL (HTTP sources may give only filename).
        branch: Branch or tag to clone.
        shallow: Clone with --depth 1.
        packages: Package names for APT sources.
        markers: Glob patterns that must each match inside the artifact path.
        filename: Download file name for HTTP sources.
    """

    category: ArtifactCategory
    identifier: str
    method: FetchMethod
    url: str | None = None
    branch: str | None = None
    shallow: bool = True
    packages: tuple[str, ...] = ()
    markers: tuple[str, ...] = ()
    filename: str | None = None

    @property
    def directory_name(self) -> str | None:
        """Subdirectory of the category for git clones; None for shared dirs."""
        if self.method is not FetchMethod.GIT:
            return None
        return self.identifier.replace("/", "-")


_KERNEL_MARKERS = ("Makefile", "Kconfig")
_CLONE_MARKERS = (".git",)

SOURCES: tuple[ArtifactSource, ...] = (
    # Kernel trees
    ArtifactSource(
        ArtifactCategory.KERNEL,
        "rockchip/5.10",
        FetchMethod.GIT,
        url="https://github.com/rockchip-linux/kernel.git",
        branch="develop-5.10-rt53",
        markers=_KERNEL_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.KERNEL,
        "rockchip/6.1",
        FetchMethod.GIT,
        url="https://github.com/rockchip-linux/kernel.git",
        branch="develop-6.1",
        markers=_KERNEL_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.KERNEL,
        "armbian/6.1",
        FetchMethod.GIT,
        url="https://github.com/armbian/linux-rockchip.git",
        branch="rk-6.1-rkr5.1",
        markers=_KERNEL_MARKERS,
    ),
    # Bootloaders
    ArtifactSource(
        ArtifactCategory.BOOTLOADER,
        "u-boot",
        FetchMethod.GIT,
        url="https://github.com/u-boot/u-boot.git",
        branch="v2024.01",
        markers=("Makefile", "configs"),
    ),
    ArtifactSource(
        ArtifactCategory.BOOTLOADER,
        "rockchip",
        FetchMethod.GIT,
        url="https://github.com/rockchip-linux/u-boot.git",
        branch="next-dev",
        markers=("Makefile", "configs"),
    ),
    # Firmware blobs (BL31, DDR init)
    ArtifactSource(
        ArtifactCategory.FIRMWARE,
        "rkbin",
        FetchMethod.GIT,
        url="https://github.com/rockchip-linux/rkbin.git",
        markers=("bin", "tools"),
    ),
    # Proprietary Mali userspace
    ArtifactSource(
        ArtifactCategory.GPU,
        GpuDriver.G13P0.value,
        FetchMethod.HTTP,
        filename="libmali-valhall-g610-g13p0-x11-wayland-gbm_1.9-1_arm64.deb",
        markers=("*mali*g13p0*.deb",),
    ),
    ArtifactSource(
        ArtifactCategory.GPU,
        GpuDriver.G6P0.value,
        FetchMethod.HTTP,
        filename="libmali-valhall-g610-g6p0-x11-wayland-gbm_1.9-1_arm64.deb",
        markers=("*mali*g6p0*.deb",),
    ),
    # Desktop packages
    ArtifactSource(
        ArtifactCategory.DESKTOP,
        "lxqt",
        FetchMethod.APT,
        packages=("lxqt-core", "lxqt-config", "lxqt-panel", "pcmanfm-qt"),
        markers=(
            "lxqt-core_*.deb",
            "lxqt-config_*.deb",
            "lxqt-panel_*.deb",
            "pcmanfm-qt_*.deb",
        ),
    ),
    ArtifactSource(
        ArtifactCategory.GAMESCOPE,
        "gamescope",
        FetchMethod.APT,
        packages=("gamescope",),
        markers=("gamescope_*.deb",),
    ),
    # Host tools and build systems
    ArtifactSource(
        ArtifactCategory.TOOLS,
        "rkdeveloptool",
        FetchMethod.GIT,
        url="https://github.com/rockchip-linux/rkdeveloptool.git",
        markers=_CLONE_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.BUILD_SYSTEM,
        "orangepi-build",
        FetchMethod.GIT,
        url="https://github.com/orangepi-xunlong/orangepi-build.git",
        branch="next",
        markers=("build.sh",),
    ),
    # Emulation frontend and cores
    ArtifactSource(
        ArtifactCategory.RETROARCH,
        "retroarch",
        FetchMethod.GIT,
        url="https://github.com/libretro/RetroArch.git",
        markers=_CLONE_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.RETROARCH,
        "genesis_plus_gx",
        FetchMethod.GIT,
        url="https://github.com/libretro/Genesis-Plus-GX.git",
        markers=_CLONE_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.RETROARCH,
        "snes9x",
        FetchMethod.GIT,
        url="https://github.com/libretro/snes9x.git",
        markers=_CLONE_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.RETROARCH,
        "nestopia",
        FetchMethod.GIT,
        url="https://github.com/libretro/nestopia.git",
        markers=_CLONE_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.RETROARCH,
        "pcsx_rearmed",
        FetchMethod.GIT,
        url="https://github.com/libretro/pcsx_rearmed.git",
        markers=_CLONE_MARKERS,
    ),
    ArtifactSource(
        ArtifactCategory.RETROARCH,
        "mupen64plus",
        FetchMethod.GIT,
        url="https://github.com/libretro/mupen64plus-libretro-nx.git",
        markers=_CLONE_MARKERS,
    ),
)

_SOURCE_INDEX = {(s.category, s.identifier): s for s in SOURCES}


def find_source(category: ArtifactCategory, identifier: str) -> ArtifactSource:
    """Look up the source for a category/identifier pair.

    Raises:
        ConfigValidationError: If the pair is unknown.
    """
    try:
        return _SOURCE_INDEX[(category, identifier)]
    except KeyError:
        known = ", ".join(identifiers_for(category)) or "none"
        raise ConfigValidationError(
            f"Unknown {category.value} artifact '{identifier}' (known: {known})"
        ) from None


def identifiers_for(category: ArtifactCategory) -> list[str]:
    """Return the identifiers defined for a category."""
    return [s.identifier for s in SOURCES if s.category is category]


def kernel_choices() -> list[str]:
    """Return the selectable kernel identifiers."""
    return identifiers_for(ArtifactCategory.KERNEL)


__all__ = [
    "SOURCES",
    "ArtifactSource",
    "find_source",
    "identifiers_for",
    "kernel_choices",
]
