"""Disk image assembly and direct device writes.

This module handles:
- Allocating a sparse image file and partitioning it with parted
- Writing the bootloader raw into the gap before the first partition
- Formatting, mounting and populating the boot and root partitions
- Writing the same layout straight to a validated NVMe/eMMC device

Loop devices and mounts are held by context managers, so they are
released on every exit path: command failure, I/O error or cancellation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from opi_imagegen.errors import ArtifactNotFoundError, BuildIOError
from opi_imagegen.image.device import (
    partition_path,
    partition_prefix,
    validate_target_device,
)
from opi_imagegen.image.layout import BOOTLOADER_SECTOR, GIB, PartitionLayout
from opi_imagegen.process import CommandRunner, ensure_success
from opi_imagegen.types import Filesystem

DEFAULT_FSTAB_PREFIX = "/dev/mmcblk0p"

_MKFS: dict[Filesystem, tuple[str, ...]] = {
    Filesystem.FAT32: ("mkfs.vfat", "-F", "32", "-n"),
    Filesystem.EXT4: ("mkfs.ext4", "-F", "-L"),
}

_FSTAB_ENTRIES: dict[Filesystem, tuple[str, str, str]] = {
    # filesystem -> (type, options, fsck pass)
    Filesystem.EXT4: ("ext4", "defaults,noatime", "1"),
    Filesystem.FAT32: ("vfat", "defaults", "2"),
}


def render_fstab(layout: PartitionLayout, node_prefix: str) -> str:
    """Render /etc/fstab for a layout.

    Args:
        layout: Partition layout.
        node_prefix: Partition node prefix, e.g. '/dev/mmcblk0p'.

    Returns:
        fstab text with the root partition first.
    """
    lines = ["# <file system> <mount point> <type> <options> <dump> <pass>"]
    for partition, mount_point in ((layout.root, "/"), (layout.boot, "/boot")):
        fs_type, options, fsck_pass = _FSTAB_ENTRIES[partition.filesystem]
        lines.append(
            f"{node_prefix}{partition.number} {mount_point} {fs_type} "
            f"{options} 0 {fsck_pass}"
        )
    return "\n".join(lines) + "\n"


class ImageAssembler:
    """Produces the deliverable from a staged rootfs and boot tree."""

    def __init__(
        self,
        runner: CommandRunner,
        mount_root: Path,
        *,
        fstab_device_prefix: str = DEFAULT_FSTAB_PREFIX,
        layout: PartitionLayout | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.runner = runner
        self.mount_root = mount_root
        self.fstab_device_prefix = fstab_device_prefix
        self.layout = layout if layout is not None else PartitionLayout.standard()
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def create_image(
        self,
        image_path: Path,
        size_gb: int,
        rootfs: Path,
        boot_dir: Path,
        bootloader: Path | None = None,
    ) -> Path:
        """Create a partitioned, populated disk image file.

        Args:
            image_path: Image file to create (overwritten if present).
            size_gb: Image size in GiB.
            rootfs: Staged root filesystem.
            boot_dir: Staged boot tree (kernel, DTBs, boot script).
            bootloader: Raw bootloader binary written at sector 64.

        Returns:
            Path to the image.

        Raises:
            ArtifactNotFoundError: If an input tree or the bootloader is missing.
            BuildIOError: If the image file cannot be allocated.
            SystemCommandError: If partitioning, formatting or copying fails.
        """
        self._check_inputs(rootfs, boot_dir, bootloader)
        if size_gb < 1:
            raise BuildIOError(f"Image size must be at least 1 GiB, got {size_gb}")

        self.logger.info("Allocating %d GiB image at %s", size_gb, image_path)
        try:
            image_path.parent.mkdir(parents=True, exist_ok=True)
            with image_path.open("wb") as f:
                f.truncate(size_gb * GIB)
        except OSError as e:
            raise BuildIOError(f"Failed to allocate image {image_path}: {e}") from e

        self._partition(image_path)
        if bootloader is not None:
            self._write_bootloader(bootloader, image_path)

        with self.loop_device(image_path) as loop:
            self._populate(loop, rootfs, boot_dir, self.fstab_device_prefix)

        self.logger.info("Image created: %s", image_path)
        return image_path

    def write_device(
        self,
        device: str,
        rootfs: Path,
        boot_dir: Path,
        bootloader: Path | None = None,
    ) -> str:
        """Partition, format and populate a block device directly.

        The device is validated first; nothing destructive runs if any
        check fails.

        Returns:
            The device path.

        Raises:
            DeviceValidationError: If the device is not an acceptable target.
            ArtifactNotFoundError: If an input tree or the bootloader is missing.
            SystemCommandError: If partitioning, formatting or copying fails.
        """
        info = validate_target_device(device)
        self._check_inputs(rootfs, boot_dir, bootloader)

        self.logger.warning("Writing directly to %s; existing data is destroyed", info.path)
        self._partition(Path(info.path))
        if bootloader is not None:
            self._write_bootloader(bootloader, Path(info.path))
        ensure_success(
            self.runner.run(["partprobe", info.path], log_name="partprobe"),
            f"Re-reading partition table of {info.path}",
        )

        self._populate(info.path, rootfs, boot_dir, partition_prefix(info.path))
        self.logger.info("Device written: %s", info.path)
        return info.path

    @contextmanager
    def loop_device(self, image_path: Path) -> Iterator[str]:
        """Attach an image to a loop device with partition scanning.

        Yields:
            Loop device path, e.g. '/dev/loop0'.
        """
        result = self.runner.run(
            ["losetup", "-P", "-f", "--show", str(image_path)], log_name="losetup"
        )
        ensure_success(result, f"Attaching {image_path} to a loop device")
        loop = result.stdout.strip()
        self.logger.debug("Attached %s to %s", image_path, loop)
        try:
            yield loop
        finally:
            detach = self.runner.run(
                ["losetup", "-d", loop], log_name="losetup-detach", cancellable=False
            )
            if not detach.success:
                self.logger.warning(
                    "Failed to detach %s (exit %d): %s",
                    loop,
                    detach.exit_code,
                    detach.stderr_preview(),
                )

    @contextmanager
    def mounted(self, device: str, mount_point: Path) -> Iterator[Path]:
        """Mount a partition for the duration of the block."""
        try:
            mount_point.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildIOError(f"Failed to create mount point {mount_point}: {e}") from e
        result = self.runner.run(["mount", device, str(mount_point)], log_name="mount")
        ensure_success(result, f"Mounting {device}")
        try:
            yield mount_point
        finally:
            umount = self.runner.run(
                ["umount", str(mount_point)], log_name="umount", cancellable=False
            )
            if not umount.success:
                self.logger.warning(
                    "Failed to unmount %s (exit %d): %s",
                    mount_point,
                    umount.exit_code,
                    umount.stderr_preview(),
                )

    def _check_inputs(
        self, rootfs: Path, boot_dir: Path, bootloader: Path | None
    ) -> None:
        if not rootfs.is_dir():
            raise ArtifactNotFoundError(rootfs, f"Rootfs not found: {rootfs}")
        if not boot_dir.is_dir():
            raise ArtifactNotFoundError(boot_dir, f"Boot directory not found: {boot_dir}")
        if bootloader is not None and not bootloader.is_file():
            raise ArtifactNotFoundError(bootloader, f"Bootloader not found: {bootloader}")

    def _partition(self, target: Path) -> None:
        result = self.runner.run(
            ["parted", "--script", str(target), *self.layout.parted_commands()],
            log_name="parted",
        )
        ensure_success(result, f"Partitioning {target}")

    def _write_bootloader(self, bootloader: Path, target: Path) -> None:
        result = self.runner.run(
            [
                "dd",
                f"if={bootloader}",
                f"of={target}",
                f"seek={BOOTLOADER_SECTOR}",
                "conv=notrunc,fsync",
            ],
            log_name="dd-bootloader",
        )
        ensure_success(result, f"Writing bootloader to {target}")

    def _populate(
        self, device: str, rootfs: Path, boot_dir: Path, fstab_prefix: str
    ) -> None:
        boot = self.layout.boot
        root = self.layout.root
        boot_node = partition_path(device, boot.number)
        root_node = partition_path(device, root.number)

        for partition, node in ((boot, boot_node), (root, root_node)):
            result = self.runner.run(
                [*_MKFS[partition.filesystem], partition.label, node],
                log_name=f"mkfs-{partition.role.value}",
            )
            ensure_success(result, f"Formatting {node}")

        mount_point = self.mount_root / Path(device).name
        with self.mounted(root_node, mount_point) as mnt:
            result = self.runner.run(
                ["cp", "-a", f"{rootfs}/.", f"{mnt}/"], log_name="copy-rootfs"
            )
            ensure_success(result, "Copying rootfs")

            with self.mounted(boot_node, mnt / "boot") as boot_mnt:
                result = self.runner.run(
                    ["cp", "-r", f"{boot_dir}/.", f"{boot_mnt}/"], log_name="copy-boot"
                )
                ensure_success(result, "Copying boot files")

            fstab_path = mnt / "etc" / "fstab"
            try:
                fstab_path.parent.mkdir(parents=True, exist_ok=True)
                fstab_path.write_text(
                    render_fstab(self.layout, fstab_prefix), encoding="utf-8"
                )
            except OSError as e:
                raise BuildIOError(f"Failed to write {fstab_path}: {e}") from e

            ensure_success(self.runner.run(["sync"], log_name="sync"), "sync")


__all__ = [
    "DEFAULT_FSTAB_PREFIX",
    "ImageAssembler",
    "render_fstab",
]
