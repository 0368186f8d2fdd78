"""Error taxonomy for opi_imagegen.

Every error carries a stable ``code`` so callers (the CLI and the build
history) can report failures without parsing messages. Errors raised
inside a pipeline stage are wrapped in StageFailedError, which adds the
stage name and exposes the captured command output of the cause.
"""

from __future__ import annotations

from pathlib import Path

# Error code constants
IO_ERROR = "io_error"
DOWNLOAD_FAILED = "download_failed"
BUILD_FAILED = "build_failed"
VALIDATION_ERROR = "validation"
FILE_NOT_FOUND = "file_not_found"
SYSTEM_COMMAND_FAILED = "system_command_failed"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal_error"


class ImageGenError(Exception):
    """Base class for all opi_imagegen errors."""

    default_code = INTERNAL_ERROR

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize ImageGenError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class BuildIOError(ImageGenError):
    """A filesystem operation failed."""

    default_code = IO_ERROR


class DownloadFailedError(ImageGenError):
    """An artifact fetch failed."""

    default_code = DOWNLOAD_FAILED

    def __init__(self, category: str, message: str, code: str | None = None) -> None:
        super().__init__(f"[{category}] {message}", code)
        self.category = category


class ConfigValidationError(ImageGenError):
    """A configuration value or target device is not acceptable."""

    default_code = VALIDATION_ERROR


class ArtifactNotFoundError(ImageGenError):
    """A required file or directory does not exist."""

    default_code = FILE_NOT_FOUND

    def __init__(self, path: Path | str, message: str | None = None) -> None:
        super().__init__(message or f"Not found: {path}")
        self.path = Path(path)


class SystemCommandError(ImageGenError):
    """An external command returned a non-zero exit code."""

    default_code = SYSTEM_COMMAND_FAILED

    def __init__(
        self,
        message: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        log_path: Path | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.log_path = log_path


class BuildFailedError(SystemCommandError):
    """A compilation or packaging step returned non-zero."""

    default_code = BUILD_FAILED


class BuildCancelledError(ImageGenError):
    """The build was cancelled while a command or stage was running."""

    default_code = CANCELLED


class StageFailedError(ImageGenError):
    """A fatal error inside a named pipeline stage."""

    def __init__(self, stage: str, cause: ImageGenError) -> None:
        super().__init__(f"Stage '{stage}' failed: {cause.message}", cause.code)
        self.stage = stage
        self.cause = cause

    @property
    def error_kind(self) -> str:
        """Class name of the underlying error."""
        return type(self.cause).__name__

    @property
    def stdout(self) -> str:
        """Captured stdout of the failing command, if any."""
        return getattr(self.cause, "stdout", "")

    @property
    def stderr(self) -> str:
        """Captured stderr of the failing command, if any."""
        return getattr(self.cause, "stderr", "")

    @property
    def log_path(self) -> Path | None:
        """Per-command log of the failing command, if any."""
        return getattr(self.cause, "log_path", None)


__all__ = [
    "BUILD_FAILED",
    "CANCELLED",
    "DOWNLOAD_FAILED",
    "FILE_NOT_FOUND",
    "INTERNAL_ERROR",
    "IO_ERROR",
    "SYSTEM_COMMAND_FAILED",
    "VALIDATION_ERROR",
    "ArtifactNotFoundError",
    "BuildCancelledError",
    "BuildFailedError",
    "BuildIOError",
    "ConfigValidationError",
    "DownloadFailedError",
    "ImageGenError",
    "StageFailedError",
    "SystemCommandError",
]
