"""Pipeline stages.

This module defines:
- BuildPaths: where a run stages its rootfs, boot tree and device trees
- BuildOptions: toolchain and behaviour knobs taken from Settings
- StageContext: collaborators plus run_step()/chroot_step(), which take
  an explicit StepPolicy for every external step
- The stage functions and STAGES, the canonical ordered stage list

Stages run strictly in STAGES order on the pipeline worker. A stage
raises ImageGenError to abort the run; best-effort steps only log.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from opi_imagegen.artifacts.cache import ArtifactCache, required_artifacts
from opi_imagegen.artifacts.sources import find_source
from opi_imagegen.builds import packages, sysconfig
from opi_imagegen.builds.kernel_config import prepare_defconfig
from opi_imagegen.chroot.executor import ChrootExecutor
from opi_imagegen.devicetree.generator import DeviceTreeGenerator, dts_filename
from opi_imagegen.errors import (
    ArtifactNotFoundError,
    BuildFailedError,
    BuildIOError,
    ConfigValidationError,
    SystemCommandError,
)
from opi_imagegen.image.assembler import ImageAssembler
from opi_imagegen.image.device import get_mounts_under, partition_path
from opi_imagegen.process import CancelToken, CommandResult, CommandRunner, ensure_success
from opi_imagegen.types import (
    BUILDABLE_BOOTLOADERS,
    ArtifactCategory,
    BuildStatus,
    BuildType,
    StepPolicy,
)

if TYPE_CHECKING:
    from opi_imagegen.buildconfig.schema import BuildConfig
    from opi_imagegen.builds.progress import BuildProgress

ARCH = "arm64"
UBOOT_DEFCONFIG = "orangepi-5-plus-rk3588_defconfig"
UBOOT_IMAGE = "u-boot-rockchip.bin"
UBOOT_SPI_IMAGE = "u-boot-rockchip-spi.bin"
RKBIN_BL31_GLOB = "bin/rk35/rk3588_bl31_*.elf"
RKBIN_TPL_GLOB = "bin/rk35/rk3588_ddr_*.bin"
MULTIARCH = ("arm64", "armhf")


@dataclass(frozen=True)
class BuildPaths:
    """Filesystem locations of one run.

    Attributes:
        workspace: Artifact workspace root.
        build_dir: Staging directory for this run's outputs.
        log_dir: Command log directory.
        mount_root: Directory under which partitions are mounted.
    """

    workspace: Path
    build_dir: Path
    log_dir: Path
    mount_root: Path

    @property
    def rootfs(self) -> Path:
        return self.build_dir / "rootfs"

    @property
    def boot(self) -> Path:
        return self.build_dir / "boot"

    @property
    def devicetree(self) -> Path:
        return self.build_dir / "devicetree"

    @property
    def bootloader(self) -> Path:
        return self.build_dir / "uboot"

    def ensure(self) -> None:
        """Create the staging directories (the rootfs is created by its stage).

        Raises:
            BuildIOError: If a directory cannot be created.
        """
        for path in (self.build_dir, self.boot, self.devicetree, self.bootloader, self.log_dir):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise BuildIOError(f"Failed to create {path}: {e}") from e


@dataclass(frozen=True)
class BuildOptions:
    """Toolchain and behaviour settings of a run."""

    board: str
    cross_compile: str = "aarch64-linux-gnu-"
    make_jobs: int = 1
    dtc_binary: str = "dtc"
    fstab_device_prefix: str = "/dev/mmcblk0p"
    update_sources: bool = False
    keep_rootfs_on_failure: bool = False
    mounts_file: str = "/proc/mounts"


@dataclass
class StageContext:
    """Everything a stage needs, plus state handed between stages."""

    config: BuildConfig
    paths: BuildPaths
    options: BuildOptions
    runner: CommandRunner
    cache: ArtifactCache
    chroot: ChrootExecutor
    assembler: ImageAssembler
    cancel_token: CancelToken
    progress: BuildProgress
    logger: logging.Logger
    artifacts: dict[tuple[ArtifactCategory, str], Path] = field(default_factory=dict)
    kernel_defconfig: str | None = None
    bootloader_image: Path | None = None
    dtb_path: Path | None = None
    output: str | None = None

    def artifact(self, category: ArtifactCategory, identifier: str) -> Path:
        """Return the path of an ensured artifact."""
        key = (category, identifier)
        if key not in self.artifacts:
            self.artifacts[key] = self.cache.ensure(category, identifier)
        return self.artifacts[key]

    def run_step(
        self,
        argv: Sequence[str],
        *,
        description: str,
        policy: StepPolicy,
        log_name: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        error_cls: type[SystemCommandError] = SystemCommandError,
    ) -> CommandResult:
        """Run a host command under an explicit failure policy.

        Raises:
            SystemCommandError: (or error_cls) if a FATAL step fails.
            BuildCancelledError: If the build was cancelled.
        """
        self.cancel_token.raise_if_cancelled(description)
        result = self.runner.run(argv, log_name=log_name, cwd=cwd, env=env)
        return self._apply_policy(result, description, policy, error_cls)

    def chroot_step(
        self,
        argv: Sequence[str],
        *,
        description: str,
        policy: StepPolicy,
        log_name: str | None = None,
    ) -> CommandResult:
        """Run a command inside the rootfs under an explicit failure policy.

        Raises:
            SystemCommandError: If a FATAL step fails.
            BuildCancelledError: If the build was cancelled.
        """
        self.cancel_token.raise_if_cancelled(description)
        result = self.chroot.run_in_root(self.paths.rootfs, argv, log_name=log_name)
        return self._apply_policy(result, description, policy, SystemCommandError)

    def password_step(self, user: str, password: str) -> CommandResult:
        """Set a password inside the rootfs; failure is always fatal.

        Raises:
            SystemCommandError: If chpasswd fails.
        """
        self.cancel_token.raise_if_cancelled(f"setting password for {user}")
        result = self.chroot.set_password(self.paths.rootfs, user, password)
        return self._apply_policy(
            result, f"Setting password for {user}", StepPolicy.FATAL, SystemCommandError
        )

    def write_file(self, path: Path, content: str) -> Path:
        """Write a text file, creating parent directories.

        Raises:
            BuildIOError: If the file cannot be written.
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise BuildIOError(f"Failed to write {path}: {e}") from e
        return path

    def _apply_policy(
        self,
        result: CommandResult,
        description: str,
        policy: StepPolicy,
        error_cls: type[SystemCommandError],
    ) -> CommandResult:
        if result.success:
            return result
        if policy is StepPolicy.FATAL:
            return ensure_success(result, description, error_cls)
        self.logger.warning(
            "%s failed with exit code %d; continuing (log: %s)\nstdout:\n%s\nstderr:\n%s",
            description,
            result.exit_code,
            result.log_path,
            result.stdout,
            result.stderr,
        )
        return result


StageFunc = Callable[[StageContext], None]


@dataclass(frozen=True)
class Stage:
    """One named pipeline stage."""

    name: str
    status: BuildStatus
    run: StageFunc
    policy: StepPolicy = StepPolicy.FATAL


def remove_rootfs(rootfs: Path, mounts_file: str = "/proc/mounts") -> None:
    """Delete a staged rootfs unless something is still mounted inside it.

    A leftover bind mount of /dev or /sys would make the removal reach
    into the host.

    Raises:
        BuildIOError: If a mount is active under the rootfs or removal fails.
    """
    active = get_mounts_under(rootfs, mounts_file)
    if active:
        raise BuildIOError(
            f"Refusing to remove {rootfs}, still mounted: {', '.join(active)}"
        )
    try:
        shutil.rmtree(rootfs)
    except OSError as e:
        raise BuildIOError(f"Failed to remove {rootfs}: {e}") from e


def ensure_workspace(ctx: StageContext) -> None:
    """Validate the bootloader and create workspace and staging directories."""
    if ctx.config.bootloader not in BUILDABLE_BOOTLOADERS:
        buildable = ", ".join(sorted(b.value for b in BUILDABLE_BOOTLOADERS))
        raise ConfigValidationError(
            f"Bootloader '{ctx.config.bootloader.value}' cannot be built "
            f"(buildable: {buildable})"
        )
    ctx.cache.ensure_workspace()
    ctx.paths.ensure()


def ensure_artifacts(ctx: StageContext) -> None:
    """Ensure every required artifact is present, fetching only what is missing."""
    for category, identifier in required_artifacts(ctx.config):
        ctx.cancel_token.raise_if_cancelled(f"ensuring {category.value}/{identifier}")
        ctx.artifacts[(category, identifier)] = ctx.cache.ensure(category, identifier)
        if ctx.options.update_sources:
            ctx.cache.update(category, identifier)


def prepare_kernel_config(ctx: StageContext) -> None:
    """Prepare the kernel defconfig for the build type."""
    kernel_dir = ctx.artifact(ArtifactCategory.KERNEL, ctx.config.kernel)
    result = prepare_defconfig(
        kernel_dir, ctx.config.kernel, ctx.config.build_type, logger=ctx.logger
    )
    ctx.kernel_defconfig = result.target
    ctx.progress.add_message(
        f"Kernel config {result.target}: {len(result.added)} options written"
    )


def create_base_system(ctx: StageContext) -> None:
    """Create a fresh rootfs with debootstrap."""
    rootfs = ctx.paths.rootfs
    try:
        if rootfs.exists():
            ctx.logger.info("Removing existing rootfs %s", rootfs)
            remove_rootfs(rootfs, ctx.options.mounts_file)
        rootfs.mkdir(parents=True)
    except OSError as e:
        raise BuildIOError(f"Failed to prepare rootfs {rootfs}: {e}") from e

    config = ctx.config
    ctx.run_step(
        [
            "debootstrap",
            f"--arch={ARCH}",
            "--variant=minbase",
            f"--include={','.join(packages.DEBOOTSTRAP_INCLUDE)}",
            f"--components={','.join(config.components)}",
            config.suite,
            str(rootfs),
            config.mirror,
        ],
        description="debootstrap",
        policy=StepPolicy.FATAL,
        env={"DEBOOTSTRAP_DIR": "/usr/share/debootstrap"},
    )

    if config.build_type is BuildType.GAMING:
        ctx.write_file(rootfs / "var/lib/dpkg/arch", "".join(f"{a}\n" for a in MULTIARCH))


def install_packages(ctx: StageContext) -> None:
    """Install packages and configure the system inside the rootfs."""
    config = ctx.config
    rootfs = ctx.paths.rootfs
    with ctx.chroot.mounted_filesystems(rootfs):
        ctx.write_file(rootfs / "etc/apt/sources.list", sysconfig.render_sources_list(config))
        ctx.chroot_step(
            ["apt-get", "update"],
            description="apt-get update",
            policy=StepPolicy.BEST_EFFORT,
        )

        core = packages.core_packages(config.desktop, config.build_type, config.packages)
        ctx.chroot_step(
            ["apt-get", "install", "-y", *core],
            description="Installing core packages",
            policy=StepPolicy.FATAL,
            log_name="apt-install-core",
        )

        for group, names in packages.optional_groups(config.build_type).items():
            ctx.chroot_step(
                ["apt-get", "install", "-y", *names],
                description=f"Installing {group} packages",
                policy=StepPolicy.BEST_EFFORT,
                log_name=f"apt-install-{group}",
            )

        if config.gpu_driver.is_proprietary:
            _install_gpu_blob(ctx)

        configure_system(ctx)


def _install_gpu_blob(ctx: StageContext) -> None:
    driver = ctx.config.gpu_driver.value
    source = find_source(ArtifactCategory.GPU, driver)
    gpu_dir = ctx.artifact(ArtifactCategory.GPU, driver)
    staging = ctx.paths.rootfs / "tmp" / "gpu"
    debs = sorted(p for marker in source.markers for p in gpu_dir.glob(marker))
    try:
        staging.mkdir(parents=True, exist_ok=True)
        for deb in debs:
            shutil.copy2(deb, staging / deb.name)
    except OSError as e:
        raise BuildIOError(f"Failed to stage GPU packages: {e}") from e

    try:
        for deb in debs:
            ctx.chroot_step(
                ["dpkg", "-i", f"/tmp/gpu/{deb.name}"],
                description=f"Installing {deb.name}",
                policy=StepPolicy.BEST_EFFORT,
                log_name=f"dpkg-{driver}",
            )
    finally:
        shutil.rmtree(staging, ignore_errors=True)


def configure_system(ctx: StageContext) -> None:
    """Write host identity, locale, timezone and network config; create users."""
    config = ctx.config
    etc = ctx.paths.rootfs / "etc"

    ctx.write_file(etc / "hostname", f"{config.hostname}\n")
    ctx.write_file(etc / "hosts", sysconfig.render_hosts(config.hostname))

    ctx.write_file(etc / "locale.gen", sysconfig.render_locale_gen(config.locale))
    ctx.chroot_step(["locale-gen"], description="locale-gen", policy=StepPolicy.BEST_EFFORT)
    ctx.write_file(etc / "default/locale", sysconfig.render_default_locale(config.locale))

    ctx.write_file(etc / "timezone", f"{config.timezone}\n")
    ctx.chroot_step(
        ["ln", "-sf", f"/usr/share/zoneinfo/{config.timezone}", "/etc/localtime"],
        description="Linking /etc/localtime",
        policy=StepPolicy.BEST_EFFORT,
        log_name="localtime",
    )

    ctx.write_file(etc / "systemd/network/20-wired.network", sysconfig.WIRED_NETWORK)
    ctx.chroot_step(
        ["systemctl", "enable", *sysconfig.NETWORK_SERVICES],
        description="Enabling network services",
        policy=StepPolicy.BEST_EFFORT,
    )

    ctx.password_step("root", config.root_password.get_secret_value())
    ctx.chroot_step(
        [
            "useradd",
            "-m",
            "-s",
            "/bin/bash",
            "-G",
            ",".join(sysconfig.USER_GROUPS),
            config.username,
        ],
        description=f"Creating user {config.username}",
        policy=StepPolicy.BEST_EFFORT,
    )
    ctx.password_step(config.username, config.password.get_secret_value())


def _make_base(ctx: StageContext) -> list[str]:
    return ["make", f"ARCH={ARCH}", f"CROSS_COMPILE={ctx.options.cross_compile}"]


def build_kernel(ctx: StageContext) -> None:
    """Configure, compile and install the kernel and its modules."""
    kernel_dir = ctx.artifact(ArtifactCategory.KERNEL, ctx.config.kernel)
    defconfig = ctx.kernel_defconfig
    if defconfig is None:
        defconfig = prepare_defconfig(
            kernel_dir, ctx.config.kernel, ctx.config.build_type, logger=ctx.logger
        ).target
    make = _make_base(ctx)

    ctx.run_step(
        [*make, defconfig],
        description="Kernel configuration",
        policy=StepPolicy.FATAL,
        log_name="kernel-defconfig",
        cwd=kernel_dir,
        error_cls=BuildFailedError,
    )
    ctx.run_step(
        [*make, f"-j{ctx.options.make_jobs}", "Image", "dtbs", "modules"],
        description="Kernel build",
        policy=StepPolicy.FATAL,
        log_name="kernel-build",
        cwd=kernel_dir,
        error_cls=BuildFailedError,
    )
    ctx.run_step(
        [*make, "modules_install", f"INSTALL_MOD_PATH={ctx.paths.rootfs}"],
        description="Kernel modules install",
        policy=StepPolicy.FATAL,
        log_name="kernel-modules-install",
        cwd=kernel_dir,
        error_cls=BuildFailedError,
    )

    image = kernel_dir / "arch" / ARCH / "boot" / "Image"
    if not image.is_file():
        raise ArtifactNotFoundError(image, f"Kernel image not found: {image}")
    try:
        shutil.copy2(image, ctx.paths.boot / "Image")
    except OSError as e:
        raise BuildIOError(f"Failed to copy kernel image: {e}") from e


def root_device_node(ctx: StageContext) -> str:
    """Root partition node as seen by the booted system."""
    if ctx.config.output_is_device:
        return partition_path(ctx.config.output, ctx.assembler.layout.root.number)
    return f"{ctx.options.fstab_device_prefix}{ctx.assembler.layout.root.number}"


def build_bootloader(ctx: StageContext) -> None:
    """Build U-Boot with rkbin blobs and write the boot script."""
    uboot_dir = ctx.artifact(ArtifactCategory.BOOTLOADER, ctx.config.bootloader.value)
    rkbin_dir = ctx.artifact(ArtifactCategory.FIRMWARE, "rkbin")
    make = ["make", f"CROSS_COMPILE={ctx.options.cross_compile}"]

    ctx.run_step(
        [*make, UBOOT_DEFCONFIG],
        description="U-Boot configuration",
        policy=StepPolicy.FATAL,
        log_name="uboot-defconfig",
        cwd=uboot_dir,
        error_cls=BuildFailedError,
    )

    blobs = []
    for variable, pattern in (("BL31", RKBIN_BL31_GLOB), ("ROCKCHIP_TPL", RKBIN_TPL_GLOB)):
        matches = sorted(rkbin_dir.glob(pattern))
        if matches:
            blobs.append(f"{variable}={matches[-1]}")
        else:
            ctx.logger.warning("No %s found in %s (%s)", variable, rkbin_dir, pattern)
    ctx.run_step(
        [*make, f"-j{ctx.options.make_jobs}", *blobs],
        description="U-Boot build",
        policy=StepPolicy.FATAL,
        log_name="uboot-build",
        cwd=uboot_dir,
        error_cls=BuildFailedError,
    )

    built = uboot_dir / UBOOT_IMAGE
    if not built.is_file():
        raise ArtifactNotFoundError(built, f"U-Boot image not found: {built}")
    try:
        ctx.paths.bootloader.mkdir(parents=True, exist_ok=True)
        ctx.bootloader_image = ctx.paths.bootloader / UBOOT_IMAGE
        shutil.copy2(built, ctx.bootloader_image)
        spi = uboot_dir / UBOOT_SPI_IMAGE
        if spi.is_file():
            shutil.copy2(spi, ctx.paths.bootloader / UBOOT_SPI_IMAGE)
        else:
            ctx.logger.info("No SPI image produced (%s)", spi)
    except OSError as e:
        raise BuildIOError(f"Failed to copy U-Boot images: {e}") from e

    dtb_name = Path(dts_filename(ctx.config.device_tree_config(), ctx.options.board))
    boot_cmd = ctx.write_file(
        ctx.paths.boot / "boot.cmd",
        sysconfig.render_boot_cmd(root_device_node(ctx), dtb_name.with_suffix(".dtb").name),
    )
    ctx.run_step(
        [
            "mkimage",
            "-C",
            "none",
            "-A",
            ARCH,
            "-T",
            "script",
            "-d",
            str(boot_cmd),
            str(ctx.paths.boot / "boot.scr"),
        ],
        description="Compiling boot script",
        policy=StepPolicy.BEST_EFFORT,
    )


def generate_device_tree(ctx: StageContext) -> None:
    """Render, compile and install the device tree for the build."""
    kernel_dir = ctx.artifact(ArtifactCategory.KERNEL, ctx.config.kernel)
    generator = DeviceTreeGenerator(
        ctx.paths.devicetree,
        ctx.runner,
        board=ctx.options.board,
        dtc_binary=ctx.options.dtc_binary,
        include_dirs=(
            kernel_dir / "arch" / ARCH / "boot" / "dts" / "rockchip",
            kernel_dir / "include",
        ),
        logger=ctx.logger,
    )
    ctx.cancel_token.raise_if_cancelled("device tree generation")
    source = generator.write(ctx.config.device_tree_config())
    blob = generator.compile(source)

    target = ctx.paths.boot / "dtbs" / "rockchip" / blob.name
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(blob, target)
    except OSError as e:
        raise BuildIOError(f"Failed to install device tree {blob}: {e}") from e
    ctx.dtb_path = target


def assemble_output(ctx: StageContext) -> None:
    """Write the image file or the target device."""
    config = ctx.config
    if config.output_is_device:
        ctx.output = ctx.assembler.write_device(
            config.output, ctx.paths.rootfs, ctx.paths.boot, ctx.bootloader_image
        )
    else:
        ctx.output = str(
            ctx.assembler.create_image(
                config.output_path,
                config.image_size_gb,
                ctx.paths.rootfs,
                ctx.paths.boot,
                ctx.bootloader_image,
            )
        )


STAGES: tuple[Stage, ...] = (
    Stage("ensure-workspace", BuildStatus.PREPARING, ensure_workspace),
    Stage("ensure-artifacts", BuildStatus.DOWNLOADING, ensure_artifacts),
    Stage("prepare-kernel-config", BuildStatus.CONFIGURING, prepare_kernel_config),
    Stage("create-base-system", BuildStatus.BUILDING, create_base_system),
    Stage("install-packages", BuildStatus.BUILDING, install_packages),
    Stage("build-kernel", BuildStatus.BUILDING, build_kernel),
    Stage("build-bootloader", BuildStatus.BUILDING, build_bootloader),
    Stage("generate-device-tree", BuildStatus.BUILDING, generate_device_tree),
    Stage("assemble-output", BuildStatus.INSTALLING, assemble_output),
)


__all__ = [
    "STAGES",
    "BuildOptions",
    "BuildPaths",
    "Stage",
    "StageContext",
    "assemble_output",
    "build_bootloader",
    "build_kernel",
    "configure_system",
    "create_base_system",
    "ensure_artifacts",
    "ensure_workspace",
    "generate_device_tree",
    "install_packages",
    "prepare_kernel_config",
    "remove_rootfs",
    "root_device_node",
]
