"""Build configuration module.

This module handles:
- The immutable BuildConfig record and its validation
- Loading build configurations from YAML/JSON files
"""

from opi_imagegen.buildconfig.io import load_build_config
from opi_imagegen.buildconfig.schema import BuildConfig

__all__ = ["BuildConfig", "load_build_config"]
