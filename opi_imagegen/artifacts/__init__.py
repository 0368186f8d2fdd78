"""Artifact sources, fetching and the workspace cache."""

from opi_imagegen.artifacts.cache import ArtifactCache, ArtifactStatus, required_artifacts
from opi_imagegen.artifacts.sources import (
    SOURCES,
    ArtifactSource,
    find_source,
    identifiers_for,
    kernel_choices,
)

__all__ = [
    "SOURCES",
    "ArtifactCache",
    "ArtifactSource",
    "ArtifactStatus",
    "find_source",
    "identifiers_for",
    "kernel_choices",
    "required_artifacts",
]
