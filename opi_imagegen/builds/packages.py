"""Package selections for the staged root filesystem.

Core packages (base set, desktop profile, build-type extras and the
user's own list) are installed in one fatal apt transaction. The groups
in OPTIONAL_GROUPS are installed one transaction per group and a failing
group only logs a warning.
"""

from __future__ import annotations

from opi_imagegen.types import BuildType, DesktopEnvironment

DEBOOTSTRAP_INCLUDE = (
    "systemd",
    "systemd-sysv",
    "udev",
    "dbus",
    "ca-certificates",
    "locales",
    "tzdata",
    "apt-transport-https",
    "sudo",
    "nano",
)

BASE_PACKAGES = (
    "linux-firmware",
    "network-manager",
    "ssh",
    "curl",
    "wget",
    "vim",
    "htop",
    "build-essential",
)

DESKTOP_PACKAGES: dict[DesktopEnvironment, tuple[str, ...]] = {
    DesktopEnvironment.LXQT: ("lxqt", "sddm", "firefox", "xorg"),
    DesktopEnvironment.GNOME: ("gnome-shell", "gdm3", "gnome-terminal", "firefox"),
    DesktopEnvironment.KDE: ("kde-plasma-desktop", "sddm", "firefox", "konsole"),
    DesktopEnvironment.XFCE: ("xfce4", "lightdm", "firefox", "xfce4-terminal"),
    DesktopEnvironment.SERVER_MINIMAL: (),
    DesktopEnvironment.SERVER: ("python3", "perl", "git"),
    DesktopEnvironment.SERVER_FULL: ("python3", "perl", "git", "gcc", "g++", "make"),
}

BUILD_TYPE_PACKAGES: dict[BuildType, tuple[str, ...]] = {
    BuildType.GAMING: ("gamescope",),
    BuildType.MEDIA_CENTER: ("kodi",),
    BuildType.OPEN_SOURCE_GAMING: (),
    BuildType.DESKTOP: (),
}

OPTIONAL_GROUPS: dict[str, tuple[str, ...]] = {
    "essential": (
        "keyboard-configuration",
        "console-setup",
        "network-manager-gnome",
        "openssh-server",
        "openssh-client",
        "iotop",
        "file",
        "less",
        "firmware-linux",
        "firmware-linux-nonfree",
        "firmware-misc-nonfree",
        "bluez",
        "bluetooth",
    ),
    "wayland": (
        "wayland-protocols",
        "libwayland-client0",
        "libwayland-server0",
        "libwayland-egl1",
        "libwayland-cursor0",
        "weston",
        "sway",
    ),
    "graphics": (
        "mesa-utils",
        "mesa-vulkan-drivers",
        "vulkan-tools",
        "libdrm2",
        "libgbm1",
        "libegl1-mesa",
        "libgl1-mesa-dri",
        "libgles2-mesa",
        "libvulkan1",
        "mesa-va-drivers",
        "mesa-vdpau-drivers",
    ),
    "performance": ("cpufrequtils", "powertop", "stress-ng", "memtester"),
    "audio": ("alsa-utils", "alsa-tools"),
    "development": (
        "cmake",
        "pkg-config",
        "git",
        "python3",
        "python3-pip",
        "autoconf",
        "automake",
        "libtool",
    ),
    "filesystems": ("ntfs-3g", "exfat-fuse", "dosfstools", "e2fsprogs", "btrfs-progs"),
    "input": ("libinput-tools", "usb-modeswitch"),
    "fonts": ("fonts-liberation", "fonts-dejavu-core", "fonts-noto"),
    "sound-server": (
        "pulseaudio",
        "pulseaudio-utils",
        "pavucontrol",
        "pulseaudio-module-bluetooth",
        "pipewire",
        "pipewire-pulse",
        "pipewire-alsa",
    ),
    "multimedia": (
        "ffmpeg",
        "gstreamer1.0-plugins-base",
        "gstreamer1.0-plugins-good",
        "gstreamer1.0-plugins-bad",
        "gstreamer1.0-plugins-ugly",
        "gstreamer1.0-libav",
        "libavcodec-extra",
        "vlc",
        "mpv",
        "gstreamer1.0-tools",
        "gstreamer1.0-vaapi",
    ),
}

# Gaming-only group
GAMING_GROUP = (
    "gamemode",
    "mangohud",
    "steam-devices",
    "joystick",
    "jstest-gtk",
    "evtest",
)


def core_packages(
    desktop: DesktopEnvironment, build_type: BuildType, extra: tuple[str, ...] = ()
) -> list[str]:
    """Return the fatal package set, de-duplicated in first-seen order."""
    seen: dict[str, None] = {}
    for pkg in (
        *BASE_PACKAGES,
        *DESKTOP_PACKAGES[desktop],
        *BUILD_TYPE_PACKAGES[build_type],
        *extra,
    ):
        seen.setdefault(pkg, None)
    return list(seen)


def optional_groups(build_type: BuildType) -> dict[str, tuple[str, ...]]:
    """Return the best-effort groups for a build type."""
    groups = dict(OPTIONAL_GROUPS)
    if build_type is BuildType.GAMING:
        groups["gaming"] = GAMING_GROUP
    return groups


__all__ = [
    "BASE_PACKAGES",
    "BUILD_TYPE_PACKAGES",
    "DEBOOTSTRAP_INCLUDE",
    "DESKTOP_PACKAGES",
    "GAMING_GROUP",
    "OPTIONAL_GROUPS",
    "core_packages",
    "optional_groups",
]
