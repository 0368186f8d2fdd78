"""Tests for image/device.py - target device validation."""

import stat
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from opi_imagegen.image.device import (
    DeviceMountedError,
    DeviceNotFoundError,
    NotBlockDeviceError,
    SystemDeviceError,
    UnsupportedDeviceError,
    detect_devices,
    get_mount_points,
    get_mounts_under,
    get_root_device,
    is_block_device,
    is_supported_device_path,
    partition_path,
    validate_target_device,
    whole_device_of,
)


@pytest.fixture
def mounts_file(tmp_path):
    """Return a mount table with root on sda."""
    path = tmp_path / "mounts"
    path.write_text(
        "/dev/sda2 / ext4 rw 0 0\n"
        "/dev/sda1 /boot vfat rw 0 0\n"
        "proc /proc proc rw 0 0\n"
    )
    return str(path)


class TestDevicePaths:
    """Tests for path helpers."""

    def test_supported_devices(self):
        """Only whole NVMe and eMMC devices are supported."""
        assert is_supported_device_path("/dev/nvme0n1")
        assert is_supported_device_path("/dev/mmcblk1")
        assert not is_supported_device_path("/dev/nvme0n1p1")
        assert not is_supported_device_path("/dev/mmcblk0p2")
        assert not is_supported_device_path("/dev/sda")

    def test_partition_path(self):
        """Devices ending in a digit use the 'p' separator."""
        assert partition_path("/dev/nvme0n1", 2) == "/dev/nvme0n1p2"
        assert partition_path("/dev/mmcblk0", 1) == "/dev/mmcblk0p1"
        assert partition_path("/dev/sda", 1) == "/dev/sda1"

    def test_whole_device_of(self):
        """Partition nodes should map to their whole device."""
        assert whole_device_of("/dev/nvme0n1p2") == "/dev/nvme0n1"
        assert whole_device_of("/dev/mmcblk0p1") == "/dev/mmcblk0"
        assert whole_device_of("/dev/sda2") == "/dev/sda"
        assert whole_device_of("/dev/nvme0n1") == "/dev/nvme0n1"


class TestMounts:
    """Tests for mount table parsing."""

    def test_root_device(self, mounts_file):
        """The root device is the whole device behind '/'."""
        assert get_root_device(mounts_file) == "/dev/sda"

    def test_mount_points_of_partitions(self, tmp_path):
        """Partitions of the device count, similarly named devices do not."""
        path = tmp_path / "mounts"
        path.write_text(
            "/dev/mmcblk0p1 /media/boot vfat rw 0 0\n"
            "/dev/mmcblk01p1 /media/other vfat rw 0 0\n"
        )
        assert get_mount_points("/dev/mmcblk0", str(path)) == ["/media/boot"]

    def test_unreadable_mounts(self, tmp_path):
        """A missing mount table yields no mount points."""
        assert get_mount_points("/dev/nvme0n1", str(tmp_path / "missing")) == []

    def test_mounts_under_directory(self, tmp_path):
        """Only mounts at or below the directory are reported."""
        rootfs = (tmp_path / "rootfs").resolve()
        path = tmp_path / "mounts"
        path.write_text(
            f"proc {rootfs}/proc proc rw 0 0\n"
            f"/dev {rootfs}/dev none rw,bind 0 0\n"
            f"tmpfs {tmp_path}/rootfs-old tmpfs rw 0 0\n"
            "proc /proc proc rw 0 0\n"
        )
        assert get_mounts_under(rootfs, str(path)) == [f"{rootfs}/proc", f"{rootfs}/dev"]

    def test_mounts_under_escaped_space(self, tmp_path):
        """Escaped spaces in the mount table are decoded."""
        rootfs = (tmp_path / "my rootfs").resolve()
        path = tmp_path / "mounts"
        escaped = str(rootfs).replace(" ", "\\040")
        path.write_text(f"sysfs {escaped}/sys sysfs rw 0 0\n")
        assert get_mounts_under(rootfs, str(path)) == [f"{rootfs}/sys"]


class TestIsBlockDevice:
    """Tests for is_block_device."""

    def test_regular_file(self, tmp_path):
        """Regular files are not block devices."""
        path = tmp_path / "disk.img"
        path.write_bytes(b"")
        assert is_block_device(str(path)) is False

    def test_missing_path(self, tmp_path):
        """Missing paths are not block devices."""
        assert is_block_device(str(tmp_path / "missing")) is False

    def test_block_device(self):
        """Block device modes should be recognized."""
        with patch("os.stat") as mock_stat:
            mock_stat.return_value.st_mode = stat.S_IFBLK | 0o660
            assert is_block_device("/dev/nvme0n1") is True


class TestValidateTargetDevice:
    """Tests for validate_target_device, in check order."""

    def test_missing_device(self, mounts_file):
        """Nonexistent paths are rejected first."""
        with pytest.raises(DeviceNotFoundError):
            validate_target_device("/dev/nvme9n9", mounts_file)

    def test_unsupported_device(self, mounts_file):
        """Existing paths that are not NVMe or eMMC disks are rejected."""
        with patch("os.path.exists", return_value=True):
            with pytest.raises(UnsupportedDeviceError) as exc_info:
                validate_target_device("/dev/sdb", mounts_file)
        assert exc_info.value.code == "unsupported_device"

    def test_not_block_device(self, mounts_file):
        """Supported names that are not block devices are rejected."""
        with patch("os.path.exists", return_value=True), patch(
            "opi_imagegen.image.device.is_block_device", return_value=False
        ):
            with pytest.raises(NotBlockDeviceError):
                validate_target_device("/dev/nvme0n1", mounts_file)

    def test_system_device(self, tmp_path):
        """The device holding '/' is refused."""
        mounts = tmp_path / "mounts"
        mounts.write_text("/dev/nvme0n1p2 / ext4 rw 0 0\n")
        with patch("os.path.exists", return_value=True), patch(
            "opi_imagegen.image.device.is_block_device", return_value=True
        ):
            with pytest.raises(SystemDeviceError):
                validate_target_device("/dev/nvme0n1", str(mounts))

    def test_mounted_device(self, tmp_path, mounts_file):
        """Devices with mounted partitions are refused."""
        mounts = tmp_path / "mounts2"
        mounts.write_text(
            open(mounts_file).read() + "/dev/mmcblk0p1 /media/sd vfat rw 0 0\n"
        )
        with patch("os.path.exists", return_value=True), patch(
            "opi_imagegen.image.device.is_block_device", return_value=True
        ):
            with pytest.raises(DeviceMountedError) as exc_info:
                validate_target_device("/dev/mmcblk0", str(mounts))
        assert exc_info.value.mount_points == ["/media/sd"]

    def test_valid_device(self, mounts_file):
        """A free, unmounted NVMe disk passes."""
        with patch("os.path.exists", return_value=True), patch(
            "opi_imagegen.image.device.is_block_device", return_value=True
        ), patch("opi_imagegen.image.device.get_device_size", return_value=1024):
            info = validate_target_device("/dev/nvme0n1", mounts_file)
        assert info.path == "/dev/nvme0n1"
        assert info.size_bytes == 1024


class TestDetectDevices:
    """Tests for detect_devices."""

    def test_filters_disks(self):
        """Only NVMe and eMMC disks are listed."""
        completed = MagicMock(
            returncode=0,
            stdout="sda disk\nnvme0n1 disk\nmmcblk0 disk\nmmcblk0boot0 disk\nsr0 rom\n",
            stderr="",
        )
        with patch("subprocess.run", return_value=completed):
            assert detect_devices() == ["/dev/nvme0n1", "/dev/mmcblk0"]

    def test_lsblk_missing(self):
        """An unavailable lsblk yields an empty list."""
        with patch("subprocess.run", side_effect=FileNotFoundError("lsblk")):
            assert detect_devices() == []

    def test_lsblk_failure(self):
        """A failing lsblk yields an empty list."""
        completed = subprocess.CompletedProcess(["lsblk"], 1, stdout="", stderr="boom")
        with patch("subprocess.run", return_value=completed):
            assert detect_devices() == []
