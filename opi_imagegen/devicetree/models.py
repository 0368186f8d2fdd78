"""Device-tree value types and per-build-type tables.

DeviceTreeConfig is a pure value: one instance renders exactly one source
file. Everything that varies by build type (CMA size, operating points,
display/codec nodes) is looked up in BUILD_TYPE_PROFILES instead of being
re-matched at each rendering step.
"""

from __future__ import annotations

from dataclasses import dataclass

from opi_imagegen.types import BuildType, GpuDriver

DEFAULT_TARGET_FREQ_MHZ = 1000


@dataclass(frozen=True)
class DeviceTreeConfig:
    """Inputs for one generated device-tree source.

    Attributes:
        build_type: Image flavour.
        kernel_version: Kernel version string, e.g. '6.1'.
        distro_name: Distribution name, e.g. 'debian'.
        distro_version: Distribution version, e.g. '12'.
        gpu_driver: GPU driver id.
        enable_av1: Enable the AV1 hardware decoder node.
        overclock: Use the custom GPU operating-point table.
        target_freq_mhz: Highest GPU operating point to emit.
    """

    build_type: BuildType = BuildType.DESKTOP
    kernel_version: str = "6.6"
    distro_name: str = "debian"
    distro_version: str = "12"
    gpu_driver: GpuDriver = GpuDriver.G13P0
    enable_av1: bool = True
    overclock: bool = True
    target_freq_mhz: int = DEFAULT_TARGET_FREQ_MHZ

    @classmethod
    def for_build(
        cls,
        kernel_version: str,
        distro_name: str,
        distro_version: str,
        gpu_driver: GpuDriver,
        build_type: BuildType,
        enable_av1: bool = True,
    ) -> DeviceTreeConfig:
        """Create a config with the stock tuning for a build.

        Overclocking is enabled for proprietary drivers only and the target
        frequency follows default_target_freq().
        """
        return cls(
            build_type=build_type,
            kernel_version=kernel_version,
            distro_name=distro_name,
            distro_version=distro_version,
            gpu_driver=gpu_driver,
            enable_av1=enable_av1,
            overclock=gpu_driver.is_proprietary,
            target_freq_mhz=default_target_freq(build_type, gpu_driver),
        )


@dataclass(frozen=True)
class BuildTypeProfile:
    """Device-tree tuning for one build type.

    Attributes:
        suffix: File name suffix.
        description: Human-readable name used in the model string and comments.
        cma_size: CMA reservation in bytes.
        opp_points: GPU operating points as (MHz, mV), ascending.
        use_custom_opp: Point the GPU at the custom OPP table even without overclock.
        always_custom_opp: Emit the custom OPP table even without overclock.
        js_scheduling_period: Mali job scheduler period.
        mali_extra: Extra Mali properties for this build type.
        always_av1: Enable AV1 regardless of the config flag.
        output_block: Build-type specific node overrides.
    """

    suffix: str
    description: str
    cma_size: int
    opp_points: tuple[tuple[int, int], ...]
    use_custom_opp: bool
    always_custom_opp: bool
    js_scheduling_period: int
    mali_extra: tuple[str, ...]
    always_av1: bool
    output_block: str

    @property
    def cma_mib(self) -> int:
        """CMA reservation in MiB."""
        return self.cma_size // (1024 * 1024)


def _okay(label: str, *props: str) -> str:
    lines = [f"&{label} {{", '    status = "okay";']
    lines.extend(f"    {p}" for p in props)
    lines.append("};")
    return "\n".join(lines) + "\n\n"


_HDMI0_PINS = (
    'pinctrl-names = "default";',
    "pinctrl-0 = <&hdmim0_tx0_cec &hdmim0_tx0_hpd &hdmim0_tx0_scl &hdmim0_tx0_sda>;",
)

_HDMI0_OUTPUT = (
    _okay("hdmi0", *_HDMI0_PINS) + _okay("hdmi0_in_vp0") + _okay("route_hdmi0")
)

_DP0_OUTPUT = _okay(
    "dp0", 'pinctrl-names = "default";', "pinctrl-0 = <&dp0m2_pins>;"
) + _okay("dp0_in_vp2")

_GAMING_BLOCK = (
    "/* GameScope-Pi Gaming Configuration */\n"
    "/* Dual output: HDMI0 and DisplayPort */\n" + _HDMI0_OUTPUT + _DP0_OUTPUT
)

_MEDIA_BLOCK = (
    "/* Kodi Media Center Configuration */\n"
    "/* HDMI CEC, hardware codecs and I2S audio */\n"
    + _okay("hdmi0", *_HDMI0_PINS)
    + _okay("hdmi0_cec", 'pinctrl-names = "default";', "pinctrl-0 = <&hdmim0_tx0_cec>;")
    + _okay("hdmi0_in_vp0")
    + _okay("route_hdmi0")
    + _okay("mpp_srv")
    + _okay("rga3_core0")
    + _okay("rga3_core1")
    + _okay("rga2")
    + _okay("vdpu121")
    + _okay("vdpu_vp9")
    + _okay("vepu121_0")
    + _okay("vepu121_1")
    + _okay(
        "i2s0_8ch",
        "rockchip,clk-trcm = <1>;",
        'pinctrl-names = "default";',
        "pinctrl-0 = <&i2s0_lrck &i2s0_sclk &i2s0_sdi0 &i2s0_sdo0>;",
    )
)

_OPEN_SOURCE_BLOCK = (
    "/* OpenScope-Pi Open Source Gaming Configuration */\n"
    "/* HDMI0 and the open VPU for Mesa/Panfrost */\n" + _HDMI0_OUTPUT + _okay("vpu")
)

_DESKTOP_BLOCK = "/* Desktop/Server Configuration */\n" + _HDMI0_OUTPUT + _DP0_OUTPUT

PERIPHERAL_BLOCK = (
    "/* USB Configuration */\n"
    + _okay("usb_host0_ehci")
    + _okay("usb_host0_ohci")
    + _okay("usb_host1_ehci")
    + _okay("usb_host1_ohci")
    + "/* Ethernet Configuration */\n"
    + _okay(
        "gmac1",
        'phy-mode = "rgmii";',
        'clock_in_out = "output";',
        "tx_delay = <0x43>;",
        "rx_delay = <0x43>;",
    )
    + "/* I2C Configuration */\n"
    + _okay("i2c0")
    + _okay("i2c2")
    + "/* SPI Configuration */\n"
    + _okay("spi2", "max-freq = <50000000>;")
)

_FOUR_POINTS = ((300, 675), (400, 700), (600, 750), (800, 850))

BUILD_TYPE_PROFILES: dict[BuildType, BuildTypeProfile] = {
    BuildType.GAMING: BuildTypeProfile(
        suffix="gamescope",
        description="GameScope-Pi Gaming",
        cma_size=0x20000000,
        opp_points=(*_FOUR_POINTS, (1000, 950)),
        use_custom_opp=True,
        always_custom_opp=True,
        js_scheduling_period=50,
        mali_extra=('mali,power-policy = "always_on";',),
        always_av1=False,
        output_block=_GAMING_BLOCK,
    ),
    BuildType.MEDIA_CENTER: BuildTypeProfile(
        suffix="kodi",
        description="Kodi Media Center",
        cma_size=0x30000000,
        opp_points=_FOUR_POINTS,
        use_custom_opp=False,
        always_custom_opp=True,
        js_scheduling_period=100,
        mali_extra=("mali,dvfs-period = <200>;",),
        always_av1=True,
        output_block=_MEDIA_BLOCK,
    ),
    BuildType.OPEN_SOURCE_GAMING: BuildTypeProfile(
        suffix="openscope",
        description="OpenScope-Pi Open Source Gaming",
        cma_size=0x20000000,
        opp_points=_FOUR_POINTS,
        use_custom_opp=False,
        always_custom_opp=False,
        js_scheduling_period=100,
        mali_extra=(),
        always_av1=False,
        output_block=_OPEN_SOURCE_BLOCK,
    ),
    BuildType.DESKTOP: BuildTypeProfile(
        suffix="desktop",
        description="Desktop/Server",
        cma_size=0x10000000,
        opp_points=((300, 675), (600, 750), (800, 850)),
        use_custom_opp=False,
        always_custom_opp=False,
        js_scheduling_period=100,
        mali_extra=(),
        always_av1=False,
        output_block=_DESKTOP_BLOCK,
    ),
}


def default_target_freq(build_type: BuildType, gpu_driver: GpuDriver) -> int:
    """Return the stock GPU target frequency in MHz for a build."""
    if build_type is BuildType.GAMING:
        return 1000
    if build_type is BuildType.MEDIA_CENTER:
        return 800
    return 800 if gpu_driver.is_proprietary else 600


__all__ = [
    "BUILD_TYPE_PROFILES",
    "DEFAULT_TARGET_FREQ_MHZ",
    "PERIPHERAL_BLOCK",
    "BuildTypeProfile",
    "DeviceTreeConfig",
    "default_target_freq",
]
