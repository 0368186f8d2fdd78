"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from opi_imagegen.config import (
    DEFAULT_BOARD,
    Settings,
    get_settings,
    print_settings_json,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.workspace_dir == Path.home() / "Orange-Pi"
        assert "sqlite" in settings.db_url
        assert settings.offline is False
        assert settings.update_sources is False
        assert settings.keep_rootfs_on_failure is False
        assert settings.log_level == "INFO"
        assert settings.board == DEFAULT_BOARD
        assert settings.cross_compile == "aarch64-linux-gnu-"
        assert settings.make_jobs >= 1
        assert settings.fstab_device_prefix == "/dev/mmcblk0p"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "OPI_IMG_OFFLINE": "true",
                "OPI_IMG_LOG_LEVEL": "DEBUG",
                "OPI_IMG_MAKE_JOBS": "4",
                "OPI_IMG_BOARD": "rk3588-custom",
            },
        ):
            settings = Settings()
            assert settings.offline is True
            assert settings.log_level == "DEBUG"
            assert settings.make_jobs == 4
            assert settings.board == "rk3588-custom"

    def test_workspace_dir_from_env(self) -> None:
        """Workspace dir should be configurable via env."""
        with patch.dict(os.environ, {"OPI_IMG_WORKSPACE_DIR": "/tmp/opi-ws"}):
            settings = Settings()
            assert settings.workspace_dir == Path("/tmp/opi-ws")

    def test_make_jobs_must_be_positive(self) -> None:
        """make_jobs below 1 should be rejected."""
        with patch.dict(os.environ, {"OPI_IMG_MAKE_JOBS": "0"}):
            with pytest.raises(ValidationError):
                Settings()

    def test_poll_interval_must_be_positive(self) -> None:
        """poll_interval of zero should be rejected."""
        with patch.dict(os.environ, {"OPI_IMG_POLL_INTERVAL": "0"}):
            with pytest.raises(ValidationError):
                Settings()

    def test_invalid_log_level(self) -> None:
        """Unknown log levels should be rejected."""
        with patch.dict(os.environ, {"OPI_IMG_LOG_LEVEL": "CHATTY"}):
            with pytest.raises(ValidationError):
                Settings()


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        parsed = json.loads(print_settings_json(Settings()))

        assert "workspace_dir" in parsed
        assert "build_dir" in parsed
        assert "db_url" in parsed
        assert "offline" in parsed
        assert "cancel_grace_period" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "workspace_dir" in parsed
