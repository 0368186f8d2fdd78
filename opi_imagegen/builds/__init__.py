"""Build orchestration module.

This module handles:
- The stage pipeline and its progress state machine
- Package selection, kernel defconfig and system configuration
- Build run records and the build service
"""

from opi_imagegen.builds.models import BuildRun

__all__ = ["BuildRun"]

# Submodules are imported directly (opi_imagegen.builds.pipeline, ...)
# to keep this package import cheap.
