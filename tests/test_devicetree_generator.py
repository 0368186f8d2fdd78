"""Tests for device-tree rendering, naming and compilation."""

from dataclasses import replace

import pytest

from opi_imagegen.devicetree.generator import (
    VARIANT_DISTROS,
    VARIANT_KERNELS,
    DeviceTreeGenerator,
    dts_filename,
    opp_points_for,
    render_dts,
)
from opi_imagegen.devicetree.models import DeviceTreeConfig, default_target_freq
from opi_imagegen.errors import SystemCommandError
from opi_imagegen.types import BuildType, GpuDriver


def gaming_config(**overrides):
    """Return the stock gaming config for Debian 12 and kernel 6.1."""
    config = DeviceTreeConfig.for_build(
        "6.1", "debian", "12", GpuDriver.G13P0, BuildType.GAMING
    )
    if overrides:
        config = replace(config, **overrides)
    return config


class TestNaming:
    """Tests for dts_filename."""

    def test_gaming_filename(self):
        """The name should encode board, distro, kernel and build type."""
        assert (
            dts_filename(gaming_config())
            == "rk3588s-orangepi-5-plus-debian-12-6-1-gamescope.dts"
        )

    def test_custom_board(self):
        """The board prefix should be configurable."""
        config = DeviceTreeConfig.for_build(
            "6.6", "ubuntu", "24.04", GpuDriver.PANFROST, BuildType.OPEN_SOURCE_GAMING
        )
        assert dts_filename(config, "rk3588-custom") == (
            "rk3588-custom-ubuntu-24.04-6-6-openscope.dts"
        )


class TestRendering:
    """Tests for render_dts."""

    def test_render_is_deterministic(self):
        """Equal configs should render identical text."""
        assert render_dts(gaming_config()) == render_dts(gaming_config())

    def test_gaming_profile(self):
        """Gaming builds reserve 512 MiB CMA and run the GPU up to 1 GHz."""
        dts = render_dts(gaming_config())

        assert "size = <0x0 0x20000000>;" in dts
        assert "gpu_opp_table_custom: opp-table-gpu" in dts
        assert "operating-points-v2 = <&gpu_opp_table_custom>;" in dts
        assert "opp-hz = /bits/ 64 <1000000000>;" in dts
        assert "opp-microvolt = <950000>;" in dts
        assert 'mali,power-policy = "always_on";' in dts
        assert "&dp0 {" in dts

    def test_opp_points_capped_by_target(self):
        """Points above the target frequency should be dropped."""
        assert opp_points_for(gaming_config()) == [
            (300, 675),
            (400, 700),
            (600, 750),
            (800, 850),
            (1000, 950),
        ]
        capped = gaming_config(target_freq_mhz=600)
        assert opp_points_for(capped)[-1] == (600, 750)
        assert "opp-hz = /bits/ 64 <800000000>;" not in render_dts(capped)

    def test_av1_node_toggle(self):
        """The AV1 decoder node follows the config flag."""
        assert "&av1d {" in render_dts(gaming_config())
        assert "&av1d {" not in render_dts(gaming_config(enable_av1=False))

    def test_media_center_always_enables_av1(self):
        """Media builds enable AV1 and the codec nodes regardless of the flag."""
        config = DeviceTreeConfig.for_build(
            "6.1", "debian", "12", GpuDriver.G13P0, BuildType.MEDIA_CENTER, enable_av1=False
        )
        dts = render_dts(config)
        assert "&av1d {" in dts
        assert "&hdmi0_cec {" in dts
        assert "size = <0x0 0x30000000>;" in dts

    def test_panfrost_gpu_node(self):
        """Open source drivers get the Panfrost clock description."""
        config = DeviceTreeConfig.for_build(
            "6.1", "debian", "12", GpuDriver.PANFROST, BuildType.OPEN_SOURCE_GAMING
        )
        dts = render_dts(config)
        assert 'clock-names = "gpu", "bus", "core";' in dts
        assert "mali,shader-present" not in dts
        assert "gpu_opp_table_custom" not in dts

    def test_default_target_freq(self):
        """Stock frequencies depend on build type and driver."""
        assert default_target_freq(BuildType.GAMING, GpuDriver.G6P0) == 1000
        assert default_target_freq(BuildType.DESKTOP, GpuDriver.G13P0) == 800
        assert default_target_freq(BuildType.DESKTOP, GpuDriver.PANFROST) == 600


class TestDeviceTreeGenerator:
    """Tests for DeviceTreeGenerator."""

    def test_generate_for_build_accepts_aliases(self, tmp_path, fake_runner):
        """Menu aliases should select the build type."""
        generator = DeviceTreeGenerator(tmp_path, fake_runner)
        path = generator.generate_for_build("6.1", "debian", "12", GpuDriver.G13P0, "gamescope-pi")

        assert path.name == "rk3588s-orangepi-5-plus-debian-12-6-1-gamescope.dts"
        assert path.read_text() == render_dts(gaming_config())

    def test_compile_invokes_dtc(self, tmp_path, fake_runner):
        """Compilation should call dtc with overlays enabled and include dirs."""
        generator = DeviceTreeGenerator(
            tmp_path, fake_runner, include_dirs=(tmp_path / "inc",)
        )
        source = generator.write(gaming_config())
        blob = generator.compile(source)

        assert blob == source.with_suffix(".dtb")
        assert blob.exists()
        assert fake_runner.calls[0].argv == [
            "dtc", "-@", "-I", "dts", "-O", "dtb", "-o", str(blob),
            "-i", str(tmp_path / "inc"), str(source),
        ]

    def test_compile_failure(self, tmp_path, fake_runner):
        """A dtc failure should raise SystemCommandError."""
        fake_runner.fail("dtc")
        generator = DeviceTreeGenerator(tmp_path, fake_runner)
        source = generator.write(gaming_config())
        with pytest.raises(SystemCommandError, match="DTC compilation failed"):
            generator.compile(source)

    def test_generate_all_variants(self, tmp_path, fake_runner):
        """Every kernel, distro, build type and driver combination is written."""
        generator = DeviceTreeGenerator(tmp_path, fake_runner)
        paths = generator.generate_all_variants()

        assert len(paths) == len(VARIANT_KERNELS) * len(VARIANT_DISTROS) * 9
        assert len(list(tmp_path.glob("*.dts"))) == len(VARIANT_KERNELS) * len(VARIANT_DISTROS) * 4
        assert fake_runner.calls == []

    def test_install_dtc(self, tmp_path, fake_runner):
        """install_dtc should apt-get install the compiler."""
        DeviceTreeGenerator(tmp_path, fake_runner).install_dtc()
        assert fake_runner.calls[0].argv == [
            "apt-get", "install", "-y", "device-tree-compiler"
        ]
