"""Idempotent artifact cache.

This module provides high-level APIs for the artifact workspace:
- ensure_workspace(): Create every category directory
- ensure(): Return an artifact path, fetching it only when absent
- update(): Best-effort pull of an existing git clone
- status(): Presence of every known artifact
- required_artifacts(): Artifacts a build configuration needs

The workspace is keyed by category (<workspace>/<category>). The only
invariant is that presence implies skip-fetch: a present artifact is
returned without any network access. A run is the single writer of its
workspace; there is no locking and no retry.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from opi_imagegen.artifacts.fetch import apt_download, download_file, git_clone, git_pull
from opi_imagegen.artifacts.sources import SOURCES, ArtifactSource, find_source
from opi_imagegen.config import DEFAULT_GPU_BLOB_BASE_URL
from opi_imagegen.errors import BuildIOError, DownloadFailedError
from opi_imagegen.process import CommandRunner
from opi_imagegen.types import BUILDABLE_BOOTLOADERS, ArtifactCategory, FetchMethod

if TYPE_CHECKING:
    from opi_imagegen.buildconfig.schema import BuildConfig

OFFLINE_CODE = "offline"


@dataclass
class ArtifactStatus:
    """Presence of one artifact in the workspace."""

    category: ArtifactCategory
    identifier: str
    method: FetchMethod
    path: Path
    present: bool

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-safe representation."""
        return {
            "category": self.category.value,
            "identifier": self.identifier,
            "method": self.method.value,
            "path": str(self.path),
            "present": self.present,
        }


class ArtifactCache:
    """Presence-checked fetcher rooted at an explicit workspace directory."""

    def __init__(
        self,
        workspace_root: Path,
        runner: CommandRunner,
        *,
        client_factory: Callable[[], httpx.Client] = httpx.Client,
        offline: bool = False,
        gpu_blob_base_url: str = DEFAULT_GPU_BLOB_BASE_URL,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize ArtifactCache.

        Args:
            workspace_root: Root of the category-keyed workspace.
            runner: Command runner used for git and apt.
            client_factory: Factory for the HTTP client used by HTTP sources.
            offline: Never fetch; a missing artifact is an error.
            gpu_blob_base_url: Base URL for HTTP sources that give only a filename.
            logger: Logger for cache events.
        """
        self.workspace_root = workspace_root
        self.runner = runner
        self.client_factory = client_factory
        self.offline = offline
        self.gpu_blob_base_url = gpu_blob_base_url.rstrip("/")
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def ensure_workspace(self) -> list[Path]:
        """Create the workspace root and every category directory.

        Raises:
            BuildIOError: If a directory cannot be created.
        """
        created = []
        for category in ArtifactCategory:
            path = self.category_dir(category)
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise BuildIOError(f"Failed to create {path}: {e}") from e
            created.append(path)
        return created

    def category_dir(self, category: ArtifactCategory) -> Path:
        """Return the directory of a category."""
        return self.workspace_root / category.value

    def path_for(self, source: ArtifactSource) -> Path:
        """Return where an artifact lives in the workspace.

        Git clones get their own subdirectory; HTTP and APT artifacts share
        the category directory.
        """
        directory = self.category_dir(source.category)
        if source.directory_name is None:
            return directory
        return directory / source.directory_name

    def is_present(self, source: ArtifactSource) -> bool:
        """Whether the artifact path exists and every marker matches in it."""
        path = self.path_for(source)
        if not path.is_dir():
            return False
        return all(any(path.glob(marker)) for marker in source.markers)

    def ensure(self, category: ArtifactCategory, identifier: str) -> Path:
        """Return the path of an artifact, fetching it if absent.

        Args:
            category: Artifact category.
            identifier: Artifact name within the category.

        Returns:
            Path to the artifact directory.

        Raises:
            ConfigValidationError: If the artifact is unknown.
            DownloadFailedError: If the fetch fails, leaves the artifact
                incomplete, or is needed in offline mode.
        """
        source = find_source(category, identifier)
        path = self.path_for(source)

        if self.is_present(source):
            self.logger.debug("Cache hit: %s/%s at %s", category.value, identifier, path)
            return path

        if self.offline:
            raise DownloadFailedError(
                category.value,
                f"{identifier} is missing from {path} and must be provided "
                "manually in offline mode",
                code=OFFLINE_CODE,
            )

        self.logger.info("Fetching %s/%s into %s", category.value, identifier, path)
        self._fetch(source, path)

        if not self.is_present(source):
            raise DownloadFailedError(
                category.value,
                f"{identifier} fetched into {path} but markers "
                f"{list(source.markers)} are missing",
            )
        return path

    def update(self, category: ArtifactCategory, identifier: str) -> bool:
        """Pull the latest commits into an existing clone.

        Failures are logged as warnings and never raised.

        Returns:
            True if the pull succeeded.
        """
        source = find_source(category, identifier)
        if source.method is not FetchMethod.GIT:
            self.logger.debug(
                "%s/%s is not a git source; skipping update", category.value, identifier
            )
            return False
        path = self.path_for(source)
        if not (path / ".git").exists():
            self.logger.warning(
                "Cannot update %s/%s: %s is not a clone", category.value, identifier, path
            )
            return False

        result = git_pull(self.runner, category.value, path, source.branch)
        if not result.success:
            self.logger.warning(
                "Update of %s/%s failed (exit %d): %s",
                category.value,
                identifier,
                result.exit_code,
                result.stderr_preview(),
            )
            return False
        return True

    def status(self) -> list[ArtifactStatus]:
        """Return the presence of every known artifact."""
        return [
            ArtifactStatus(
                category=source.category,
                identifier=source.identifier,
                method=source.method,
                path=self.path_for(source),
                present=self.is_present(source),
            )
            for source in SOURCES
        ]

    def _fetch(self, source: ArtifactSource, path: Path) -> None:
        category = source.category.value
        category_dir = self.category_dir(source.category)
        try:
            category_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadFailedError(
                category, f"Failed to create {category_dir}: {e}", code="io_error"
            ) from e

        if source.method is FetchMethod.GIT:
            if path.exists():
                self.logger.warning("Removing incomplete clone at %s", path)
                try:
                    shutil.rmtree(path)
                except OSError as e:
                    raise DownloadFailedError(
                        category,
                        f"Failed to remove incomplete clone {path}: {e}",
                        code="io_error",
                    ) from e
            if not source.url:
                raise DownloadFailedError(category, f"No URL for {source.identifier}")
            git_clone(
                self.runner, category, source.url, path, source.branch, source.shallow
            )

        elif source.method is FetchMethod.HTTP:
            filename = source.filename or source.identifier
            url = source.url or f"{self.gpu_blob_base_url}/{filename}"
            with self.client_factory() as client:
                download_file(client, category, url, path / filename)

        else:
            apt_download(self.runner, category, source.packages, path)


def required_artifacts(config: BuildConfig) -> list[tuple[ArtifactCategory, str]]:
    """Return the artifacts a build needs, in fetch order.

    Args:
        config: Build configuration.

    Returns:
        (category, identifier) pairs: kernel, bootloader, firmware and the
        GPU blob for proprietary drivers.
    """
    required = [(ArtifactCategory.KERNEL, config.kernel)]
    if config.bootloader in BUILDABLE_BOOTLOADERS:
        required.append((ArtifactCategory.BOOTLOADER, config.bootloader.value))
    required.append((ArtifactCategory.FIRMWARE, "rkbin"))
    if config.gpu_driver.is_proprietary:
        required.append((ArtifactCategory.GPU, config.gpu_driver.value))
    return required


__all__ = [
    "OFFLINE_CODE",
    "ArtifactCache",
    "ArtifactStatus",
    "required_artifacts",
]
