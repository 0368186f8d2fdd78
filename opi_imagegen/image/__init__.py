"""Partition layout, target device checks and image assembly."""

from opi_imagegen.image.assembler import ImageAssembler, render_fstab
from opi_imagegen.image.device import (
    DeviceValidationError,
    detect_devices,
    validate_target_device,
)
from opi_imagegen.image.layout import Partition, PartitionLayout

__all__ = [
    "DeviceValidationError",
    "ImageAssembler",
    "Partition",
    "PartitionLayout",
    "detect_devices",
    "render_fstab",
    "validate_target_device",
]
