"""Device-tree source generation and compilation.

This module handles:
- Rendering a DeviceTreeConfig to DTS text (pure, byte-stable)
- Naming generated files deterministically from the config
- Compiling DTS to DTB with the device tree compiler
- Materializing every supported variant for offline inspection
"""

from __future__ import annotations

import logging
import subprocess
from itertools import product
from pathlib import Path

from opi_imagegen.config import DEFAULT_BOARD
from opi_imagegen.devicetree.models import (
    BUILD_TYPE_PROFILES,
    PERIPHERAL_BLOCK,
    DeviceTreeConfig,
)
from opi_imagegen.errors import BuildIOError
from opi_imagegen.process import CommandResult, CommandRunner, ensure_success
from opi_imagegen.types import BuildType, GpuDriver, GpuFamily

logger = logging.getLogger(__name__)

VARIANT_KERNELS = ("5.10.160", "6.1", "6.6", "6.8")
VARIANT_DISTROS = (
    ("debian", "11"),
    ("debian", "12"),
    ("debian", "13"),
    ("ubuntu", "22.04"),
    ("ubuntu", "24.04"),
)
VARIANT_DRIVERS: dict[BuildType, tuple[GpuDriver, ...]] = {
    BuildType.GAMING: (GpuDriver.G13P0, GpuDriver.G6P0),
    BuildType.MEDIA_CENTER: (GpuDriver.G13P0, GpuDriver.G6P0),
    BuildType.OPEN_SOURCE_GAMING: (GpuDriver.PANFROST, GpuDriver.MESA_PANFROST),
    BuildType.DESKTOP: (GpuDriver.G13P0, GpuDriver.G6P0, GpuDriver.PANFROST),
}

_HEADER = (
    "/dts-v1/;\n"
    "#include <dt-bindings/gpio/gpio.h>\n"
    "#include <dt-bindings/pinctrl/rockchip.h>\n"
    '#include "rk3588s.dtsi"\n'
    '#include "rk3588s-orangepi-5.dtsi"\n\n'
)

_AV1_BLOCK = (
    "/* AV1 Hardware Decoder Configuration */\n"
    "/* Required by RKMPP AV1 hardware decoding in Chromium, FFmpeg and Gstreamer */\n"
    "&av1d {\n"
    '    status = "okay";\n'
    "};\n\n"
)


def dts_filename(config: DeviceTreeConfig, board: str = DEFAULT_BOARD) -> str:
    """Return the deterministic source file name for a config.

    Example: ``rk3588s-orangepi-5-plus-debian-12-6-1-gamescope.dts``.
    """
    suffix = BUILD_TYPE_PROFILES[config.build_type].suffix
    kernel = config.kernel_version.replace(".", "-")
    return (
        f"{board}-{config.distro_name}-{config.distro_version}-{kernel}-{suffix}.dts"
    )


def _render_root_node(config: DeviceTreeConfig) -> str:
    profile = BUILD_TYPE_PROFILES[config.build_type]
    lines = [
        "/ {",
        f'    model = "Orange Pi 5 Plus - {config.distro_name} '
        f"{config.distro_version} - Kernel {config.kernel_version} - "
        f'{profile.description}";',
        '    compatible = "xunlong,orangepi-5-plus", "rockchip,rk3588s";',
        "",
        "    memory@0 {",
        '        device_type = "memory";',
        "        reg = <0x0 0x00000000 0x0 0x80000000>,",
        "              <0x0 0x100000000 0x1 0x80000000>;",
        "    };",
        "",
        "    reserved-memory {",
        "        #address-cells = <2>;",
        "        #size-cells = <2>;",
        "        ranges;",
        "",
        f"        /* Reserve {profile.cma_mib}MB for CMA ({profile.description}) */",
        "        linux,cma {",
        '            compatible = "shared-dma-pool";',
        "            reusable;",
        f"            size = <0x0 0x{profile.cma_size:08x}>;",
        "            linux,cma-default;",
        "        };",
        "    };",
        "",
        "};",
    ]
    return "\n".join(lines) + "\n\n"


def _render_gpu_node(config: DeviceTreeConfig) -> str:
    profile = BUILD_TYPE_PROFILES[config.build_type]
    lines = ["&gpu {", '    status = "okay";', "    mali-supply = <&vdd_gpu_s0>;"]

    if config.overclock or profile.use_custom_opp:
        lines.append("    operating-points-v2 = <&gpu_opp_table_custom>;")
    else:
        lines.append("    operating-points-v2 = <&gpu_opp_table>;")

    if config.gpu_driver.family is GpuFamily.PROPRIETARY:
        lines.append("    /* Mali proprietary driver configuration */")
        lines.append('    mali,power-policy = "coarse_demand";')
        lines.append(
            f"    mali,js-scheduling-period = <{profile.js_scheduling_period}>;"
        )
        lines.extend(f"    {prop}" for prop in profile.mali_extra)
        lines.append("    mali,shader-present = <0xff>;")
        lines.append("    mali,tiler-present = <0x1>;")
        lines.append("    mali,l2-present = <0xf>;")
    else:
        lines.append("    /* Panfrost open source driver configuration */")
        lines.append('    interrupt-names = "job", "mmu", "gpu";')
        lines.append("    clocks = <&cru CLK_GPU>, <&cru CLK_GPU_COREGROUP>,")
        lines.append("             <&cru CLK_GPU_STACKS>;")
        lines.append('    clock-names = "gpu", "bus", "core";')

    lines.append("};")
    return "\n".join(lines) + "\n\n"


def opp_points_for(config: DeviceTreeConfig) -> list[tuple[int, int]]:
    """Return the operating points emitted for a config.

    Points above the target frequency are dropped; the lowest point is
    always kept.
    """
    points = BUILD_TYPE_PROFILES[config.build_type].opp_points
    capped = [p for p in points if p[0] <= config.target_freq_mhz]
    return capped or [points[0]]


def _render_opp_table(config: DeviceTreeConfig) -> str:
    parts = [
        "gpu_opp_table_custom: opp-table-gpu {\n",
        '    compatible = "operating-points-v2";\n',
        "    opp-shared;\n\n",
    ]
    for freq_mhz, voltage_mv in opp_points_for(config):
        hz = freq_mhz * 1_000_000
        parts.append(f"    opp-{hz:09d} {{\n")
        parts.append(f"        opp-hz = /bits/ 64 <{hz}>;\n")
        parts.append(f"        opp-microvolt = <{voltage_mv * 1000}>;\n")
        parts.append("    };\n\n")
    parts.append("};\n\n")
    return "".join(parts)


def render_dts(config: DeviceTreeConfig) -> str:
    """Render the device-tree source for a config.

    The output depends only on the config, so equal configs always render
    byte-identical text.

    Args:
        config: Device-tree inputs.

    Returns:
        DTS source text.
    """
    profile = BUILD_TYPE_PROFILES[config.build_type]
    parts = [_HEADER, _render_root_node(config), _render_gpu_node(config)]
    if config.overclock or profile.use_custom_opp or profile.always_custom_opp:
        parts.append(_render_opp_table(config))
    if config.enable_av1 or profile.always_av1:
        parts.append(_AV1_BLOCK)
    parts.append(profile.output_block)
    parts.append(PERIPHERAL_BLOCK)
    return "".join(parts)


class DeviceTreeGenerator:
    """Writes and compiles device-tree sources into an output directory."""

    def __init__(
        self,
        output_dir: Path,
        runner: CommandRunner,
        board: str = DEFAULT_BOARD,
        dtc_binary: str = "dtc",
        include_dirs: tuple[Path, ...] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self.output_dir = output_dir
        self.runner = runner
        self.board = board
        self.dtc_binary = dtc_binary
        self.include_dirs = include_dirs
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def source_path(self, config: DeviceTreeConfig) -> Path:
        """Return where the source for a config is written."""
        return self.output_dir / dts_filename(config, self.board)

    def write(self, config: DeviceTreeConfig) -> Path:
        """Render a config and write it to the output directory.

        Raises:
            BuildIOError: If the file cannot be written.
        """
        path = self.source_path(config)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(render_dts(config), encoding="utf-8")
        except OSError as e:
            raise BuildIOError(f"Failed to write DTS file {path}: {e}") from e
        self.logger.info("Generated DTS file: %s", path)
        return path

    def compile(self, source_path: Path) -> Path:
        """Compile a DTS file to a DTB next to it.

        Args:
            source_path: Path to the .dts file.

        Returns:
            Path to the compiled .dtb file.

        Raises:
            SystemCommandError: If dtc exits non-zero.
        """
        blob_path = source_path.with_suffix(".dtb")
        argv = [self.dtc_binary, "-@", "-I", "dts", "-O", "dtb", "-o", str(blob_path)]
        for include_dir in self.include_dirs:
            argv.extend(["-i", str(include_dir)])
        argv.append(str(source_path))

        self.logger.info("Compiling device tree: %s -> %s", source_path, blob_path)
        result = self.runner.run(argv, log_name="dtc")
        ensure_success(result, "DTC compilation")
        self.logger.info("Device tree compiled: %s", blob_path)
        return blob_path

    def generate_for_build(
        self,
        kernel_version: str,
        distro_name: str,
        distro_version: str,
        gpu_driver: GpuDriver,
        build_type: str,
    ) -> Path:
        """Write the stock device tree for a build described by menu values.

        Args:
            kernel_version: Kernel version, e.g. '6.1'.
            distro_name: Distribution name.
            distro_version: Distribution version.
            gpu_driver: GPU driver id.
            build_type: Build type value or alias ('gamescope-pi', 'kodi', ...).

        Returns:
            Path to the written source.
        """
        config = DeviceTreeConfig.for_build(
            kernel_version,
            distro_name,
            distro_version,
            gpu_driver,
            BuildType.from_alias(build_type),
        )
        return self.write(config)

    def generate_all_variants(self) -> list[Path]:
        """Write every supported kernel x distro x build type x driver variant.

        A failing variant is logged and skipped; the batch continues.

        Returns:
            Paths of the sources that were written.
        """
        generated: list[Path] = []
        for kernel, (distro_name, distro_version), build_type in product(
            VARIANT_KERNELS, VARIANT_DISTROS, VARIANT_DRIVERS
        ):
            for gpu_driver in VARIANT_DRIVERS[build_type]:
                config = DeviceTreeConfig.for_build(
                    kernel, distro_name, distro_version, gpu_driver, build_type
                )
                try:
                    generated.append(self.write(config))
                except BuildIOError as e:
                    self.logger.warning(
                        "Failed to generate DTS for %s %s %s with %s kernel and %s GPU: %s",
                        build_type.value,
                        distro_name,
                        distro_version,
                        kernel,
                        gpu_driver.value,
                        e,
                    )

        self.logger.info("Generated %d device tree files", len(generated))
        return generated

    def install_dtc(self) -> CommandResult:
        """Install the device tree compiler with apt.

        Raises:
            SystemCommandError: If the installation fails.
        """
        result = self.runner.run(
            ["apt-get", "install", "-y", "device-tree-compiler"], log_name="install-dtc"
        )
        return ensure_success(result, "Installing device-tree-compiler")


def check_dtc_available(dtc_binary: str = "dtc") -> bool:
    """Check whether the device tree compiler can be executed."""
    try:
        result = subprocess.run(
            [dtc_binary, "--version"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return False
    return result.returncode == 0


__all__ = [
    "VARIANT_DISTROS",
    "VARIANT_DRIVERS",
    "VARIANT_KERNELS",
    "DeviceTreeGenerator",
    "check_dtc_available",
    "dts_filename",
    "opp_points_for",
    "render_dts",
]
