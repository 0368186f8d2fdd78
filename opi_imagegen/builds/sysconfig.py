"""Renderers for files written into the staged system.

Everything here is a pure function of the build configuration, so the
stages only decide where the text goes and which commands follow it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from opi_imagegen.buildconfig.schema import BuildConfig

USER_GROUPS = ("sudo", "audio", "video", "input", "render")

WIRED_NETWORK = "[Match]\nName=eth*\n\n[Network]\nDHCP=yes\n"

NETWORK_SERVICES = ("systemd-networkd", "systemd-resolved")

BOOT_CONSOLE = "ttyS2,1500000"


def render_hosts(hostname: str) -> str:
    return f"127.0.0.1\tlocalhost\n127.0.1.1\t{hostname}\n"


def render_locale_gen(locale: str) -> str:
    """Render /etc/locale.gen enabling one locale."""
    charset = locale.split(".", 1)[1] if "." in locale else "UTF-8"
    return f"{locale} {charset}\n"


def render_default_locale(locale: str) -> str:
    return f"LANG={locale}\n"


def render_sources_list(config: BuildConfig) -> str:
    """Render /etc/apt/sources.list for the target suite."""
    components = " ".join(config.components)
    return f"deb {config.mirror} {config.suite} {components}\n"


def render_boot_cmd(root_device: str, dtb_name: str) -> str:
    """Render the U-Boot boot script.

    Paths are relative to the boot partition, which holds the boot tree
    at its root.

    Args:
        root_device: Root partition node passed to the kernel.
        dtb_name: File name of the compiled device tree.
    """
    return (
        f"setenv bootargs console={BOOT_CONSOLE} root={root_device} rootwait rw\n"
        "load mmc 0:1 ${kernel_addr_r} /Image\n"
        f"load mmc 0:1 ${{fdt_addr_r}} /dtbs/rockchip/{dtb_name}\n"
        "booti ${kernel_addr_r} - ${fdt_addr_r}\n"
    )


__all__ = [
    "BOOT_CONSOLE",
    "NETWORK_SERVICES",
    "USER_GROUPS",
    "WIRED_NETWORK",
    "render_boot_cmd",
    "render_default_locale",
    "render_hosts",
    "render_locale_gen",
    "render_sources_list",
]
