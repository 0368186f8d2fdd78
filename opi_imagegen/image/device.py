"""Target device validation for direct writes.

This module handles all device-related checks before a direct write:
- Validate the device path exists
- Accept only whole NVMe (/dev/nvmeXnY) and eMMC (/dev/mmcblkX) devices
- Validate the path is a block device
- Refuse the system root device
- Refuse devices with mounted partitions

Validation is read-only. Nothing destructive runs until every check has
passed.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path

from opi_imagegen.errors import ConfigValidationError

logger = logging.getLogger(__name__)

# /dev/nvme0n1, /dev/mmcblk0
_NVME_DEVICE = re.compile(r"^/dev/nvme\d+n\d+$")
_MMC_DEVICE = re.compile(r"^/dev/mmcblk\d+$")

# Partition patterns used to find the whole device behind the root mount
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
_PARTITION_PATTERN_P = re.compile(r"^/dev/(nvme\d+n\d+|mmcblk\d+|loop\d+)p(\d+)$")


@dataclass
class DeviceInfo:
    """Information about a validated target device.

    Attributes:
        path: Absolute path to the device.
        size_bytes: Size of the device in bytes (if available).
    """

    path: str
    size_bytes: int | None = None


class DeviceValidationError(ConfigValidationError):
    """Base exception for device validation errors."""


class DeviceNotFoundError(DeviceValidationError):
    """Device path does not exist."""

    def __init__(self, device_path: str) -> None:
        super().__init__(f"Device not found: {device_path}", code="device_not_found")
        self.device_path = device_path


class UnsupportedDeviceError(DeviceValidationError):
    """Device is not a whole NVMe or eMMC device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Unsupported device: {device_path}. Only whole NVMe "
            "(/dev/nvmeXnY) and eMMC (/dev/mmcblkX) devices are supported.",
            code="unsupported_device",
        )
        self.device_path = device_path


class NotBlockDeviceError(DeviceValidationError):
    """Path exists but is not a block device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(f"Not a block device: {device_path}", code="not_block_device")
        self.device_path = device_path


class SystemDeviceError(DeviceValidationError):
    """Device holds the running system's root filesystem."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device {device_path} appears to be the system root device. "
            "Refusing to write to it.",
            code="system_device",
        )
        self.device_path = device_path


class DeviceMountedError(DeviceValidationError):
    """Device or its partitions are mounted."""

    def __init__(self, device_path: str, mount_points: list[str]) -> None:
        super().__init__(
            f"Device {device_path} has mounted partitions: {', '.join(mount_points)}. "
            "Unmount all partitions before writing.",
            code="device_mounted",
        )
        self.device_path = device_path
        self.mount_points = mount_points


def is_supported_device_path(device_path: str) -> bool:
    """Whether a path names a whole NVMe or eMMC device."""
    return bool(_NVME_DEVICE.match(device_path) or _MMC_DEVICE.match(device_path))


def partition_prefix(device_path: str) -> str:
    """Return the prefix of partition nodes on a device.

    Devices whose name ends in a digit (nvme0n1, mmcblk0, loop0) use a
    'p' separator; others (sda) do not.
    """
    separator = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{separator}"


def partition_path(device_path: str, number: int) -> str:
    """Return the node of a partition on a device."""
    return f"{partition_prefix(device_path)}{number}"


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device."""
    try:
        mode = os.stat(device_path).st_mode
        return stat.S_ISBLK(mode)
    except OSError:
        return False


def _read_mounts(mounts_file: str) -> list[tuple[str, str]]:
    entries = []
    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    entries.append((parts[0], parts[1]))
    except OSError:
        logger.warning("Could not read %s, skipping mount checks", mounts_file)
    return entries


def get_mount_points(device_path: str, mounts_file: str = "/proc/mounts") -> list[str]:
    """Get mount points of a device and its partitions.

    Args:
        device_path: Path to the device (e.g., '/dev/mmcblk0').
        mounts_file: Mount table to parse.

    Returns:
        List of mount points (empty if none mounted).
    """
    device_name = Path(device_path).name
    node_prefix = Path(partition_prefix(device_path)).name
    mount_points = []
    for mounted_device, mount_point in _read_mounts(mounts_file):
        mounted_name = Path(mounted_device).name
        if mounted_name == device_name or (
            mounted_name.startswith(node_prefix)
            and mounted_name[len(node_prefix) :].isdigit()
        ):
            mount_points.append(mount_point)
    return mount_points


def whole_device_of(partition: str) -> str:
    """Convert a partition path to its whole device path."""
    match = _PARTITION_PATTERN_P.match(partition)
    if match:
        return f"/dev/{match.group(1)}"
    match = _PARTITION_PATTERN_SD.match(partition)
    if match:
        return partition[: -len(match.group(1))]
    return partition


def get_mounts_under(path: Path | str, mounts_file: str = "/proc/mounts") -> list[str]:
    """Return the mount points at or below a directory.

    Paths in /proc/mounts escape spaces as \\040.
    """
    base = Path(path).resolve()
    found = []
    for _, mount_point in _read_mounts(mounts_file):
        point = Path(mount_point.replace("\\040", " "))
        if point == base or base in point.parents:
            found.append(str(point))
    return found


def get_root_device(mounts_file: str = "/proc/mounts") -> str | None:
    """Return the whole device holding '/', or None if unknown."""
    for mounted_device, mount_point in _read_mounts(mounts_file):
        if mount_point == "/":
            return whole_device_of(mounted_device)
    return None


def get_device_size(device_path: str) -> int | None:
    """Get the size of a block device in bytes from sysfs.

    Returns:
        Size in bytes, or None if unknown.
    """
    size_path = Path("/sys/block") / Path(device_path).name / "size"
    try:
        if size_path.exists():
            # Size is in 512-byte sectors
            return int(size_path.read_text().strip()) * 512
    except (OSError, ValueError) as e:
        logger.warning("Could not read device size for %s: %s", device_path, e)
    return None


def validate_target_device(
    device_path: str, mounts_file: str = "/proc/mounts"
) -> DeviceInfo:
    """Validate a device before a direct write.

    Checks, in order:
    1. The path exists
    2. It is a whole NVMe or eMMC device
    3. It is a block device
    4. It is not the system root device
    5. It is not mounted

    Args:
        device_path: Path to the device to validate.
        mounts_file: Mount table to consult.

    Returns:
        DeviceInfo for the validated device.

    Raises:
        DeviceNotFoundError: Device path does not exist.
        UnsupportedDeviceError: Not a whole NVMe or eMMC device.
        NotBlockDeviceError: Path is not a block device.
        SystemDeviceError: Device is the system root device.
        DeviceMountedError: Device has mounted partitions.
    """
    device_path = os.path.abspath(device_path)
    logger.debug("Validating device: %s", device_path)

    if not os.path.exists(device_path):
        raise DeviceNotFoundError(device_path)

    if not is_supported_device_path(device_path):
        raise UnsupportedDeviceError(device_path)

    if not is_block_device(device_path):
        raise NotBlockDeviceError(device_path)

    root_device = get_root_device(mounts_file)
    if root_device and device_path == root_device:
        raise SystemDeviceError(device_path)

    mount_points = get_mount_points(device_path, mounts_file)
    if mount_points:
        raise DeviceMountedError(device_path, mount_points)

    size_bytes = get_device_size(device_path)
    logger.info("Device validated: %s (size=%s)", device_path, size_bytes)
    return DeviceInfo(path=device_path, size_bytes=size_bytes)


def detect_devices() -> list[str]:
    """List candidate NVMe and eMMC disks via lsblk.

    Returns:
        Device paths, empty if lsblk is unavailable or fails.
    """
    try:
        result = subprocess.run(
            ["lsblk", "-d", "-n", "-o", "NAME,TYPE"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        logger.warning("Could not run lsblk: %s", e)
        return []
    if result.returncode != 0:
        logger.warning("lsblk failed: %s", result.stderr.strip())
        return []

    devices = []
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) != 2 or parts[1] != "disk":
            continue
        path = f"/dev/{parts[0]}"
        if is_supported_device_path(path):
            devices.append(path)
    return devices


__all__ = [
    "DeviceInfo",
    "DeviceMountedError",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "NotBlockDeviceError",
    "SystemDeviceError",
    "UnsupportedDeviceError",
    "detect_devices",
    "get_device_size",
    "get_mount_points",
    "get_mounts_under",
    "get_root_device",
    "is_block_device",
    "is_supported_device_path",
    "partition_path",
    "partition_prefix",
    "validate_target_device",
    "whole_device_of",
]
