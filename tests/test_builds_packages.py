"""Tests for package selection and staged system file renderers."""

from opi_imagegen.buildconfig.schema import BuildConfig
from opi_imagegen.builds.packages import (
    BASE_PACKAGES,
    GAMING_GROUP,
    OPTIONAL_GROUPS,
    core_packages,
    optional_groups,
)
from opi_imagegen.builds.sysconfig import (
    render_boot_cmd,
    render_hosts,
    render_locale_gen,
    render_sources_list,
)
from opi_imagegen.types import BuildType, DesktopEnvironment


class TestPackages:
    """Tests for package selections."""

    def test_core_packages_order_and_dedup(self):
        """Base packages come first and duplicates are dropped."""
        packages = core_packages(
            DesktopEnvironment.LXQT, BuildType.GAMING, ("firefox", "retroarch")
        )
        assert packages[: len(BASE_PACKAGES)] == list(BASE_PACKAGES)
        assert packages.count("firefox") == 1
        assert "gamescope" in packages
        assert packages[-1] == "retroarch"

    def test_server_minimal_has_no_desktop(self):
        """A minimal server adds nothing on top of the base set."""
        packages = core_packages(DesktopEnvironment.SERVER_MINIMAL, BuildType.DESKTOP)
        assert packages == list(BASE_PACKAGES)

    def test_gaming_group_only_for_gaming(self):
        """The gaming group is added for gaming builds only."""
        assert optional_groups(BuildType.GAMING)["gaming"] == GAMING_GROUP
        assert "gaming" not in optional_groups(BuildType.MEDIA_CENTER)
        assert "gaming" not in OPTIONAL_GROUPS


class TestSysconfig:
    """Tests for staged file renderers."""

    def test_hosts(self):
        """The hostname maps to 127.0.1.1."""
        assert render_hosts("opi") == "127.0.0.1\tlocalhost\n127.0.1.1\topi\n"

    def test_locale_gen(self):
        """The charset is taken from the locale name."""
        assert render_locale_gen("en_US.UTF-8") == "en_US.UTF-8 UTF-8\n"
        assert render_locale_gen("C") == "C UTF-8\n"

    def test_sources_list(self, build_config_data):
        """sources.list names the mirror, suite and components."""
        config = BuildConfig.model_validate(build_config_data)
        line = render_sources_list(config)
        assert line.startswith("deb http://deb.debian.org/debian bookworm main")

    def test_sources_list_bullseye(self, build_config_data):
        """Debian 11 has no non-free-firmware component."""
        config = BuildConfig.model_validate({**build_config_data, "distro_version": "11"})
        line = render_sources_list(config)
        assert line == "deb http://deb.debian.org/debian bullseye main contrib non-free\n"

    def test_boot_cmd(self):
        """The boot script loads the kernel and named DTB from the boot partition."""
        script = render_boot_cmd("/dev/mmcblk0p2", "board.dtb")
        assert "root=/dev/mmcblk0p2 rootwait rw" in script
        assert "/dtbs/rockchip/board.dtb" in script
        assert "${fdt_addr_r}" in script
        assert script.endswith("booti ${kernel_addr_r} - ${fdt_addr_r}\n")
