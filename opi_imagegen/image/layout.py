"""GPT partition layout for Orange Pi images.

The layout is a fixed two-partition scheme shared by image files and
direct device writes:

    p1  FAT32  BOOT    16 MiB - 528 MiB  (boot flag)
    p2  ext4   rootfs  528 MiB - 100%

The gap before p1 holds the bootloader, written raw at sector 64.
"""

from __future__ import annotations

from dataclasses import dataclass

from opi_imagegen.types import Filesystem, PartitionRole

MIB = 1024 * 1024
GIB = 1024 * MIB
SECTOR_SIZE = 512

BOOT_START_MIB = 16
BOOT_SIZE_MIB = 512
BOOTLOADER_SECTOR = 64


@dataclass(frozen=True)
class Partition:
    """One partition of the layout.

    Attributes:
        number: Partition number (1-based).
        role: What the partition holds.
        filesystem: Filesystem created on it.
        start: parted start position, e.g. '16MiB'.
        end: parted end position, e.g. '528MiB' or '100%'.
        label: Filesystem label.
        boot: Whether the boot flag is set.
    """

    number: int
    role: PartitionRole
    filesystem: Filesystem
    start: str
    end: str
    label: str
    boot: bool = False


@dataclass(frozen=True)
class PartitionLayout:
    """Ordered, immutable set of partitions."""

    partitions: tuple[Partition, ...]
    label_type: str = "gpt"

    @classmethod
    def standard(cls) -> PartitionLayout:
        """Return the boot + root layout used for every output."""
        boot_end = BOOT_START_MIB + BOOT_SIZE_MIB
        return cls(
            partitions=(
                Partition(
                    number=1,
                    role=PartitionRole.BOOT,
                    filesystem=Filesystem.FAT32,
                    start=f"{BOOT_START_MIB}MiB",
                    end=f"{boot_end}MiB",
                    label="BOOT",
                    boot=True,
                ),
                Partition(
                    number=2,
                    role=PartitionRole.ROOT,
                    filesystem=Filesystem.EXT4,
                    start=f"{boot_end}MiB",
                    end="100%",
                    label="rootfs",
                ),
            )
        )

    def by_role(self, role: PartitionRole) -> Partition:
        """Return the partition with a role.

        Raises:
            KeyError: If no partition has the role.
        """
        for partition in self.partitions:
            if partition.role is role:
                return partition
        raise KeyError(role.value)

    @property
    def boot(self) -> Partition:
        return self.by_role(PartitionRole.BOOT)

    @property
    def root(self) -> Partition:
        return self.by_role(PartitionRole.ROOT)

    def parted_commands(self) -> list[str]:
        """Return the parted --script arguments that create the layout."""
        args = ["mklabel", self.label_type]
        for partition in self.partitions:
            args.extend(
                [
                    "mkpart",
                    partition.label,
                    partition.filesystem.value,
                    partition.start,
                    partition.end,
                ]
            )
        for partition in self.partitions:
            if partition.boot:
                args.extend(["set", str(partition.number), "boot", "on"])
        return args

    def partition_sizes(self, disk_bytes: int) -> dict[int, int]:
        """Return partition sizes in bytes for a disk of the given size."""
        sizes: dict[int, int] = {}
        for partition in self.partitions:
            start = _position_bytes(partition.start, disk_bytes)
            end = _position_bytes(partition.end, disk_bytes)
            sizes[partition.number] = end - start
        return sizes


def _position_bytes(position: str, disk_bytes: int) -> int:
    if position.endswith("%"):
        return disk_bytes * int(position[:-1]) // 100
    if position.endswith("MiB"):
        return int(position[:-3]) * MIB
    raise ValueError(f"Unsupported parted position: {position}")


__all__ = [
    "BOOTLOADER_SECTOR",
    "BOOT_SIZE_MIB",
    "BOOT_START_MIB",
    "GIB",
    "MIB",
    "SECTOR_SIZE",
    "Partition",
    "PartitionLayout",
]
