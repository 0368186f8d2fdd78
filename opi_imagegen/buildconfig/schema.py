"""Pydantic model for build configurations.

This module defines BuildConfig, the immutable input record consumed by
every pipeline stage, plus the distribution tables the schema validates
against.
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from opi_imagegen.artifacts.sources import ArtifactSource, find_source, kernel_choices
from opi_imagegen.devicetree.models import DeviceTreeConfig, default_target_freq
from opi_imagegen.types import (
    ArtifactCategory,
    BootloaderType,
    BuildType,
    DesktopEnvironment,
    Distro,
    GpuDriver,
)

DISTRO_SUITES: dict[Distro, dict[str, str]] = {
    Distro.DEBIAN: {"11": "bullseye", "12": "bookworm", "13": "trixie"},
    Distro.UBUNTU: {"22.04": "jammy", "24.04": "noble", "25.04": "plucky"},
}

DISTRO_MIRRORS: dict[Distro, str] = {
    Distro.DEBIAN: "http://deb.debian.org/debian",
    Distro.UBUNTU: "http://ports.ubuntu.com/ubuntu-ports",
}

DISTRO_COMPONENTS: dict[Distro, tuple[str, ...]] = {
    Distro.DEBIAN: ("main", "contrib", "non-free", "non-free-firmware"),
    Distro.UBUNTU: ("main", "restricted", "universe", "multiverse"),
}

# Suites older than bookworm have no non-free-firmware component
SUITE_COMPONENTS: dict[str, tuple[str, ...]] = {
    "bullseye": ("main", "contrib", "non-free"),
}

# Validation patterns
HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
PACKAGE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9+.-]+$")
LOCALE_PATTERN = re.compile(r"^[A-Za-z]{2,3}(_[A-Z]{2})?(\.[A-Za-z0-9-]+)?(@\w+)?$")
TIMEZONE_PATTERN = re.compile(r"^(UTC|[A-Za-z_]+(/[A-Za-z0-9_+-]+)+)$")


class BuildConfig(BaseModel):
    """Declarative description of one image build.

    Instances are frozen: the pipeline owns one for the duration of a run
    and no stage can change it.

    Attributes:
        distro: Target distribution.
        distro_version: Distribution version ('12', '24.04', ...).
        kernel: Kernel source choice, e.g. 'rockchip/6.1'.
        build_type: Image flavour.
        desktop: Desktop environment or server profile.
        gpu_driver: GPU driver id.
        bootloader: Bootloader to build.
        hostname: System hostname.
        username: Regular user account name.
        password: Password for the regular user.
        root_password: Password for root.
        locale: System locale.
        timezone: System timezone.
        packages: Extra packages to install.
        output: Image file path or /dev/... block device.
        image_size_gb: Image size in GiB (file mode).
        enable_av1: Enable the AV1 decoder in the device tree.
        overclock: Custom GPU OPP table; None picks it for proprietary drivers.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    distro: Distro = Field(description="Target distribution")
    distro_version: str = Field(description="Distribution version")
    kernel: str = Field(description="Kernel source choice, e.g. 'rockchip/6.1'")
    build_type: BuildType = Field(description="Image flavour")
    desktop: DesktopEnvironment = Field(default=DesktopEnvironment.LXQT)
    gpu_driver: GpuDriver = Field(description="GPU driver id")
    bootloader: BootloaderType = Field(default=BootloaderType.U_BOOT)
    hostname: str = Field(default="orangepi5plus")
    username: str = Field(default="orangepi")
    password: SecretStr = Field(description="Password for the regular user")
    root_password: SecretStr = Field(description="Password for root")
    locale: str = Field(default="en_US.UTF-8")
    timezone: str = Field(default="UTC")
    packages: tuple[str, ...] = Field(default=())
    output: str = Field(description="Image file path or /dev/... block device")
    image_size_gb: int = Field(default=8, ge=1, description="Image size in GiB")
    enable_av1: bool = Field(default=True)
    overclock: bool | None = Field(default=None)

    @field_validator("kernel")
    @classmethod
    def validate_kernel(cls, v: str) -> str:
        """Validate the kernel is a known source."""
        choices = kernel_choices()
        if v not in choices:
            raise ValueError(f"kernel must be one of {choices}, got '{v}'")
        return v

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Validate hostname is a single RFC 1123 label."""
        if not HOSTNAME_PATTERN.match(v):
            raise ValueError(f"invalid hostname '{v}'")
        return v

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        """Validate username is a portable user name."""
        if not USERNAME_PATTERN.match(v):
            raise ValueError(f"invalid username '{v}'")
        if v == "root":
            raise ValueError("username must not be 'root'")
        return v

    @field_validator("password", "root_password")
    @classmethod
    def validate_password(cls, v: SecretStr) -> SecretStr:
        """Validate passwords are non-empty and single-line."""
        secret = v.get_secret_value()
        if not secret:
            raise ValueError("password must not be empty")
        if "\n" in secret or ":" in secret:
            raise ValueError("password must not contain newlines or ':'")
        return v

    @field_validator("locale")
    @classmethod
    def validate_locale(cls, v: str) -> str:
        """Validate locale looks like ll_CC.charset."""
        if not LOCALE_PATTERN.match(v):
            raise ValueError(f"invalid locale '{v}'")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone is UTC or an Area/City name."""
        if not TIMEZONE_PATTERN.match(v):
            raise ValueError(f"invalid timezone '{v}'")
        return v

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate extra package names."""
        for pkg in v:
            if not PACKAGE_PATTERN.match(pkg):
                raise ValueError(f"invalid package name '{pkg}'")
        return v

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        """Validate output is non-empty."""
        if not v.strip():
            raise ValueError("output must not be empty")
        return v

    @model_validator(mode="after")
    def validate_distro_version(self) -> "BuildConfig":
        """Validate the distro version has a known suite."""
        suites = DISTRO_SUITES[self.distro]
        if self.distro_version not in suites:
            raise ValueError(
                f"{self.distro.value} version must be one of {sorted(suites)}, "
                f"got '{self.distro_version}'"
            )
        return self

    @property
    def output_is_device(self) -> bool:
        """Whether the output is a block device rather than an image file."""
        return self.output.startswith("/dev/")

    @property
    def output_path(self) -> Path:
        """Output as a path."""
        return Path(self.output)

    @property
    def suite(self) -> str:
        """Distribution suite codename."""
        return DISTRO_SUITES[self.distro][self.distro_version]

    @property
    def mirror(self) -> str:
        """Package mirror URL."""
        return DISTRO_MIRRORS[self.distro]

    @property
    def components(self) -> tuple[str, ...]:
        """Archive components enabled in the rootfs."""
        return SUITE_COMPONENTS.get(self.suite, DISTRO_COMPONENTS[self.distro])

    @property
    def kernel_version(self) -> str:
        """Kernel version component of the kernel choice ('rockchip/6.1' -> '6.1')."""
        return self.kernel.rsplit("/", 1)[-1]

    @property
    def kernel_source(self) -> ArtifactSource:
        """Source table entry for the selected kernel."""
        return find_source(ArtifactCategory.KERNEL, self.kernel)

    @property
    def effective_overclock(self) -> bool:
        """Whether the custom GPU OPP table is used."""
        if self.overclock is not None:
            return self.overclock
        return self.gpu_driver.is_proprietary

    def device_tree_config(self) -> DeviceTreeConfig:
        """Derive the device-tree inputs for this build."""
        return DeviceTreeConfig(
            build_type=self.build_type,
            kernel_version=self.kernel_version,
            distro_name=self.distro.value,
            distro_version=self.distro_version,
            gpu_driver=self.gpu_driver,
            enable_av1=self.enable_av1,
            overclock=self.effective_overclock,
            target_freq_mhz=default_target_freq(self.build_type, self.gpu_driver),
        )

    def snapshot(self) -> dict[str, object]:
        """Return a JSON-safe dump with secrets masked."""
        return self.model_dump(mode="json")


__all__ = [
    "DISTRO_COMPONENTS",
    "DISTRO_MIRRORS",
    "DISTRO_SUITES",
    "SUITE_COMPONENTS",
    "BuildConfig",
]
