"""Kernel defconfig preparation.

Two strategies, chosen per kernel source:
- BSP trees (rockchip 5.10) keep their vendor defconfig and get the
  tuning options set, rewriting values left by an earlier build
- Newer trees get a complete board defconfig written from scratch

The CMA reservation follows the build type so the kernel and the device
tree agree on it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from opi_imagegen.devicetree.models import BUILD_TYPE_PROFILES
from opi_imagegen.errors import ArtifactNotFoundError, BuildIOError
from opi_imagegen.types import BuildType

DEFCONFIG_DIR = Path("arch/arm64/configs")
BSP_DEFCONFIG = "rockchip_linux_defconfig"
BOARD_DEFCONFIG = "orangepi5plus_gaming_defconfig"

_UNSET_RE = re.compile(r"^# (CONFIG_\w+) is not set$")


class DefconfigStrategy(str, Enum):
    """How the defconfig of a kernel tree is prepared."""

    APPEND_BSP = "append-bsp"
    WRITE_BOARD = "write-board"


KERNEL_STRATEGIES: dict[str, DefconfigStrategy] = {
    "rockchip/5.10": DefconfigStrategy.APPEND_BSP,
    "rockchip/6.1": DefconfigStrategy.WRITE_BOARD,
    "armbian/6.1": DefconfigStrategy.WRITE_BOARD,
}

_BSP_OPTIONS = (
    "CONFIG_MALI_DEVFREQ=y",
    "CONFIG_MALI_2MB_ALLOC=y",
    "CONFIG_MALI_DMA_BUF_MAP_ON_DEMAND=y",
    "CONFIG_MALI_EXPERT=y",
    'CONFIG_MALI_PLATFORM_NAME="rk"',
    "CONFIG_MALI_MEMORY_GROUP_MANAGER=y",
    "CONFIG_TRANSPARENT_HUGEPAGE=y",
    "CONFIG_TRANSPARENT_HUGEPAGE_ALWAYS=y",
    "CONFIG_CMA=y",
    "CONFIG_CMA_SIZE_MBYTES={cma_mib}",
    "CONFIG_DMA_CMA=y",
    "CONFIG_PM_DEVFREQ=y",
    "CONFIG_DEVFREQ_GOV_PERFORMANCE=y",
    "CONFIG_ARM_ROCKCHIP_DMC_DEVFREQ=y",
    "CONFIG_PREEMPT=y",
    "CONFIG_HIGH_RES_TIMERS=y",
    "CONFIG_SCHEDUTIL_DEFAULT=y",
    "CONFIG_CPU_FREQ_GOV_SCHEDUTIL=y",
    "CONFIG_CPU_FREQ_GOV_PERFORMANCE=y",
)

_BOARD_SECTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Platform", ("CONFIG_ARCH_ROCKCHIP=y", "CONFIG_ARM64=y", "CONFIG_64BIT=y")),
    (
        "CPU and Performance",
        (
            "CONFIG_PREEMPT=y",
            "CONFIG_HIGH_RES_TIMERS=y",
            "CONFIG_CPU_FREQ=y",
            "CONFIG_CPU_FREQ_GOV_SCHEDUTIL=y",
            "CONFIG_CPU_FREQ_GOV_PERFORMANCE=y",
            "CONFIG_CPU_FREQ_GOV_ONDEMAND=y",
            "CONFIG_SCHEDUTIL_DEFAULT=y",
        ),
    ),
    (
        "Memory Management",
        (
            "CONFIG_TRANSPARENT_HUGEPAGE=y",
            "CONFIG_TRANSPARENT_HUGEPAGE_ALWAYS=y",
            "CONFIG_CMA=y",
            "CONFIG_CMA_SIZE_MBYTES={cma_mib}",
            "CONFIG_DMA_CMA=y",
        ),
    ),
    (
        "GPU Support (Panfrost for mainline)",
        ("CONFIG_DRM=y", "CONFIG_DRM_PANFROST=y", "CONFIG_DRM_PANEL_SIMPLE=y"),
    ),
    ("Scheduler latency", ("CONFIG_HZ_1000=y", "CONFIG_PREEMPT_RCU=y")),
    (
        "RK3588 specific",
        (
            "CONFIG_ROCKCHIP_PM_DOMAINS=y",
            "CONFIG_ROCKCHIP_IODOMAIN=y",
            "CONFIG_ROCKCHIP_THERMAL=y",
        ),
    ),
    (
        "Essential drivers",
        (
            "CONFIG_MMC=y",
            "CONFIG_MMC_DW=y",
            "CONFIG_MMC_DW_ROCKCHIP=y",
            "CONFIG_USB=y",
            "CONFIG_USB_XHCI_HCD=y",
            "CONFIG_USB_DWC3=y",
        ),
    ),
    ("Network", ("CONFIG_ETHERNET=y", "CONFIG_STMMAC_ETH=y", "CONFIG_DWMAC_ROCKCHIP=y")),
    ("Audio", ("CONFIG_SND=y", "CONFIG_SND_SOC=y", "CONFIG_SND_SOC_ROCKCHIP=y")),
    ("GPIO and pinctrl", ("CONFIG_PINCTRL_ROCKCHIP=y", "CONFIG_GPIO_ROCKCHIP=y")),
)


@dataclass
class DefconfigResult:
    """Outcome of defconfig preparation.

    Attributes:
        target: make target to configure the tree with.
        path: The defconfig file that was written or extended.
        added: Options written, appended or rewritten.
    """

    target: str
    path: Path
    added: list[str]


def bsp_options(build_type: BuildType) -> list[str]:
    """Return the options appended to a BSP defconfig."""
    cma_mib = BUILD_TYPE_PROFILES[build_type].cma_mib
    return [opt.format(cma_mib=cma_mib) for opt in _BSP_OPTIONS]


def render_board_defconfig(build_type: BuildType) -> str:
    """Render the complete board defconfig."""
    cma_mib = BUILD_TYPE_PROFILES[build_type].cma_mib
    parts = ["# Orange Pi 5 Plus Configuration\n"]
    for title, options in _BOARD_SECTIONS:
        parts.append(f"\n# {title}\n")
        parts.extend(f"{opt.format(cma_mib=cma_mib)}\n" for opt in options)
    return "".join(parts)


def _option_name(line: str) -> str | None:
    """Return the option a defconfig line sets, or None for other lines."""
    line = line.strip()
    unset = _UNSET_RE.match(line)
    if unset:
        return unset.group(1)
    if line.startswith("CONFIG_"):
        return line.split("=", 1)[0].strip()
    return None


def append_bsp_options(defconfig: Path, options: list[str]) -> list[str]:
    """Set options in a defconfig.

    Options already set to a different value (or marked not set) are
    rewritten in place, options not mentioned at all are appended. The
    kernel tree is reused across builds, so a value left by an earlier
    build type is replaced rather than kept.

    Returns:
        The options that were rewritten or appended.

    Raises:
        ArtifactNotFoundError: If the defconfig does not exist.
        BuildIOError: If the file cannot be read or written.
    """
    if not defconfig.is_file():
        raise ArtifactNotFoundError(defconfig, f"Defconfig not found: {defconfig}")
    wanted = {_option_name(opt): opt for opt in options}
    try:
        lines = defconfig.read_text(encoding="utf-8").splitlines()
        written: list[str] = []
        seen: set[str] = set()
        for index, line in enumerate(lines):
            name = _option_name(line)
            if name is None or name not in wanted:
                continue
            seen.add(name)
            if line.strip() != wanted[name]:
                lines[index] = wanted[name]
                if wanted[name] not in written:
                    written.append(wanted[name])
        missing = [opt for name, opt in wanted.items() if name not in seen]
        if written or missing:
            defconfig.write_text(
                "".join(f"{line}\n" for line in [*lines, *missing]), encoding="utf-8"
            )
    except OSError as e:
        raise BuildIOError(f"Failed to update {defconfig}: {e}") from e
    return written + missing


def prepare_defconfig(
    kernel_dir: Path,
    kernel: str,
    build_type: BuildType,
    logger: logging.Logger | None = None,
) -> DefconfigResult:
    """Prepare the defconfig of a kernel tree for a build.

    Args:
        kernel_dir: Root of the kernel source tree.
        kernel: Kernel source identifier, e.g. 'rockchip/5.10'.
        build_type: Build type selecting the CMA size.
        logger: Logger for progress messages; defaults to the module logger.

    Returns:
        DefconfigResult with the make target to use.
    """
    log = logger if logger is not None else logging.getLogger(__name__)
    strategy = KERNEL_STRATEGIES.get(kernel, DefconfigStrategy.WRITE_BOARD)
    configs_dir = kernel_dir / DEFCONFIG_DIR

    if strategy is DefconfigStrategy.APPEND_BSP:
        path = configs_dir / BSP_DEFCONFIG
        added = append_bsp_options(path, bsp_options(build_type))
        log.info("Set %d options in %s", len(added), path)
        return DefconfigResult(target=BSP_DEFCONFIG, path=path, added=added)

    path = configs_dir / BOARD_DEFCONFIG
    content = render_board_defconfig(build_type)
    try:
        configs_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise BuildIOError(f"Failed to write {path}: {e}") from e
    log.info("Wrote board defconfig %s", path)
    added = [line for line in content.splitlines() if line.startswith("CONFIG_")]
    return DefconfigResult(target=BOARD_DEFCONFIG, path=path, added=added)


__all__ = [
    "BOARD_DEFCONFIG",
    "BSP_DEFCONFIG",
    "KERNEL_STRATEGIES",
    "DefconfigResult",
    "DefconfigStrategy",
    "append_bsp_options",
    "bsp_options",
    "prepare_defconfig",
    "render_board_defconfig",
]
