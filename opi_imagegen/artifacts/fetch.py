"""Artifact fetch primitives.

This module handles:
- Shallow git clones at a pinned branch and best-effort pulls
- HTTP downloads with optional checksum verification
- Package downloads with apt-get

Each function performs exactly one fetch; presence checks and the
fetch-once policy live in ArtifactCache.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from opi_imagegen.errors import DownloadFailedError
from opi_imagegen.process import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of an HTTP download."""

    path: Path
    checksum: str
    size_bytes: int


def compose_clone_command(
    url: str, dest: Path, branch: str | None = None, shallow: bool = True
) -> list[str]:
    """Compose a git clone command.

    Args:
        url: Remote URL.
        dest: Destination directory.
        branch: Branch or tag to check out.
        shallow: Clone only the tip commit.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["git", "clone"]
    if shallow:
        cmd.append("--depth=1")
    if branch:
        cmd.extend(["-b", branch])
    cmd.extend([url, str(dest)])
    return cmd


def git_clone(
    runner: CommandRunner,
    category: str,
    url: str,
    dest: Path,
    branch: str | None = None,
    shallow: bool = True,
) -> CommandResult:
    """Clone a repository.

    Raises:
        DownloadFailedError: If git exits non-zero.
    """
    result = runner.run(
        compose_clone_command(url, dest, branch, shallow),
        log_name=f"git-clone-{category}",
    )
    if not result.success:
        raise DownloadFailedError(
            category,
            f"git clone {url} failed with exit code {result.exit_code}: "
            f"{result.stderr_preview()}",
        )
    return result


def git_pull(
    runner: CommandRunner, category: str, repo_dir: Path, branch: str | None = None
) -> CommandResult:
    """Pull the latest commits into an existing clone.

    The result is returned unchecked; callers treat pulls as best-effort.
    """
    cmd = ["git", "-C", str(repo_dir), "pull", "origin"]
    if branch:
        cmd.append(branch)
    return runner.run(cmd, log_name=f"git-pull-{category}")


def apt_download(
    runner: CommandRunner, category: str, packages: tuple[str, ...], dest: Path
) -> CommandResult:
    """Download .deb files for packages into a directory.

    Raises:
        DownloadFailedError: If apt-get exits non-zero.
    """
    result = runner.run(
        ["apt-get", "download", *packages],
        log_name=f"apt-download-{category}",
        cwd=dest,
    )
    if not result.success:
        raise DownloadFailedError(
            category,
            f"apt-get download {' '.join(packages)} failed with exit code "
            f"{result.exit_code}: {result.stderr_preview()}",
        )
    return result


def download_file(
    client: httpx.Client,
    category: str,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    The file is streamed to a temporary name and renamed into place, so a
    failed download never leaves a file matching the presence markers.

    Args:
        client: HTTPX client instance.
        category: Artifact category, for error reporting.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadFailedError: If the download or verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    partial_path = dest_path.with_name(dest_path.name + ".part")

    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with partial_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        partial_path.unlink(missing_ok=True)
        raise DownloadFailedError(
            category,
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        partial_path.unlink(missing_ok=True)
        raise DownloadFailedError(
            category, f"Timeout downloading {url}", code="timeout"
        ) from e
    except httpx.RequestError as e:
        partial_path.unlink(missing_ok=True)
        raise DownloadFailedError(
            category, f"Network error downloading {url}: {e}", code="network_error"
        ) from e
    except OSError as e:
        partial_path.unlink(missing_ok=True)
        raise DownloadFailedError(
            category, f"Failed to write {dest_path}: {e}", code="io_error"
        ) from e

    computed_checksum = sha256.hexdigest()
    if expected_checksum and computed_checksum != expected_checksum.lower():
        partial_path.unlink(missing_ok=True)
        raise DownloadFailedError(
            category,
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}",
            code="verification_error",
        )

    partial_path.replace(dest_path)
    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )
    return DownloadResult(
        path=dest_path, checksum=computed_checksum, size_bytes=total_bytes
    )


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadResult",
    "apt_download",
    "compose_clone_command",
    "download_file",
    "git_clone",
    "git_pull",
]
