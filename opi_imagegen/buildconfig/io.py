"""Build configuration file loading.

This module provides helpers for loading BuildConfig records from YAML or
JSON files. The format is chosen by file suffix.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from opi_imagegen.buildconfig.schema import BuildConfig

YAML_SUFFIXES = {".yaml", ".yml"}
JSON_SUFFIXES = {".json"}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_build_config(data: dict[str, Any]) -> BuildConfig:
    """Validate raw data as a BuildConfig.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    return BuildConfig.model_validate(data)


def load_build_config(path: Path) -> BuildConfig:
    """Load and validate a build configuration file.

    Args:
        path: Path to a .yaml, .yml or .json file.

    Returns:
        Validated BuildConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the suffix is unsupported or the content is not a mapping.
        pydantic.ValidationError: If data does not match the schema.
    """
    suffix = path.suffix.lower()
    if suffix in YAML_SUFFIXES:
        data = load_yaml(path)
    elif suffix in JSON_SUFFIXES:
        data = load_json(path)
    else:
        raise ValueError(f"Unsupported config format: {path.suffix or '(none)'}")
    return parse_build_config(data)


__all__ = [
    "load_build_config",
    "load_json",
    "load_yaml",
    "parse_build_config",
]
