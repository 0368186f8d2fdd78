"""Device-tree generation module.

This module handles:
- Table-driven rendering of board device-tree sources per build variant
- Compiling sources with the device tree compiler
- Bulk generation of every supported variant
"""

from opi_imagegen.devicetree.generator import DeviceTreeGenerator, dts_filename, render_dts
from opi_imagegen.devicetree.models import DeviceTreeConfig

__all__ = ["DeviceTreeConfig", "DeviceTreeGenerator", "dts_filename", "render_dts"]
