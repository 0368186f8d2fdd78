"""Configuration settings for opi_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings only supply defaults at the CLI edge; the build core receives
its workspace, build and log directories explicitly.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BOARD = "rk3588s-orangepi-5-plus"
DEFAULT_GPU_BLOB_BASE_URL = (
    "https://github.com/tsukumijima/libmali-rockchip/releases/download/v1.9-1-55611b0"
)


def _default_workspace_dir() -> Path:
    """Return the default artifact workspace directory."""
    return Path.home() / "Orange-Pi"


def _default_build_dir() -> Path:
    """Return the default build directory."""
    return Path.home() / ".local" / "share" / "opi-imagegen" / "build"


def _default_log_dir() -> Path:
    """Return the default log directory."""
    return Path.home() / ".local" / "share" / "opi-imagegen" / "logs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "opi-imagegen" / "db.sqlite"
    return f"sqlite:///{db_path}"


def _default_make_jobs() -> int:
    """Return the default parallelism for make."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the OPI_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="OPI_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    workspace_dir: Path = Field(
        default_factory=_default_workspace_dir,
        description="Root directory for fetched artifacts (one subdirectory per category)",
    )
    build_dir: Path = Field(
        default_factory=_default_build_dir,
        description="Directory holding the staged rootfs, boot tree and device trees",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Directory for the aggregate build log and per-command logs",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    mount_root: Path = Field(
        default=Path("/mnt/opi-imagegen"),
        description="Directory under which image partitions are mounted",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - never fetch missing artifacts",
    )
    update_sources: bool = Field(
        default=False,
        description="Run a best-effort git pull on cached source trees",
    )
    keep_rootfs_on_failure: bool = Field(
        default=False,
        description="Keep the staged rootfs when a build fails",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Toolchain
    board: str = Field(
        default=DEFAULT_BOARD,
        description="Board prefix used in device-tree file names",
    )
    cross_compile: str = Field(
        default="aarch64-linux-gnu-",
        description="CROSS_COMPILE prefix for kernel and U-Boot builds",
    )
    make_jobs: int = Field(
        default_factory=_default_make_jobs,
        ge=1,
        description="Parallel jobs passed to make",
    )
    dtc_binary: str = Field(
        default="dtc",
        description="Device tree compiler executable",
    )
    gpu_blob_base_url: str = Field(
        default=DEFAULT_GPU_BLOB_BASE_URL,
        description="Base URL for proprietary Mali userspace packages",
    )
    fstab_device_prefix: str = Field(
        default="/dev/mmcblk0p",
        description="Partition node prefix written to fstab for image files",
    )

    # Worker behaviour
    poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Seconds between progress polls and cancel checks",
    )
    cancel_grace_period: float = Field(
        default=10.0,
        ge=0,
        description="Seconds to wait after SIGTERM before killing a cancelled command",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_BOARD",
    "DEFAULT_GPU_BLOB_BASE_URL",
    "Settings",
    "get_settings",
    "print_settings_json",
]
