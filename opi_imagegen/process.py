"""External command execution with logging and cancellation.

This module handles:
- Running external tools (git, make, debootstrap, parted, dtc, ...) with subprocess
- Capturing stdout/stderr and writing one timestamped log file per invocation
- Appending a one-line summary per invocation to the aggregate build log
- Cooperative cancellation: a CancelToken is polled while a child runs and
  the child is terminated (then killed) when the token fires

Commands are synchronous from the caller's point of view and never time out.
A non-zero exit is returned to the caller, never raised; use ensure_success()
where a failure must abort.
"""

from __future__ import annotations

import itertools
import logging
import os
import re
import shlex
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from opi_imagegen.errors import (
    BuildCancelledError,
    BuildIOError,
    SystemCommandError,
)


AGGREGATE_LOG_NAME = "build.log"

# Exit code reported when the executable could not be started
EXIT_NOT_EXECUTABLE = 127

_UNSAFE_LOG_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        argv: Command line that was executed.
        exit_code: Process exit code (negative for signals).
        stdout: Complete captured stdout.
        stderr: Complete captured stderr.
        started_at: Start time.
        finished_at: Finish time.
        log_path: Per-invocation log file, once written.
    """

    argv: list[str]
    exit_code: int
    stdout: str
    stderr: str
    started_at: datetime
    finished_at: datetime
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        """Whether the command exited with status 0."""
        return self.exit_code == 0

    @property
    def command(self) -> str:
        """Shell-quoted command line."""
        return shlex.join(self.argv)

    def stderr_preview(self, lines: int = 5) -> str:
        """Return the last few lines of stderr."""
        return "\n".join(self.stderr.strip().splitlines()[-lines:])


class CancelToken:
    """Thread-safe cancellation flag shared by a pipeline and its commands."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "build") -> None:
        """Raise BuildCancelledError if cancellation was requested."""
        if self.cancelled:
            raise BuildCancelledError(f"Cancelled before {what}")


class CommandLog:
    """Writes per-invocation log files and the aggregate build log."""

    def __init__(self, log_dir: Path, aggregate_name: str = AGGREGATE_LOG_NAME) -> None:
        self.log_dir = log_dir
        self.aggregate_path = log_dir / aggregate_name
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def write(self, result: CommandResult, log_name: str) -> Path:
        """Write the invocation log and append the aggregate summary.

        Args:
            result: Finished command result.
            log_name: Base name for the per-invocation file.

        Returns:
            Path to the per-invocation log file.

        Raises:
            BuildIOError: If the logs cannot be written.
        """
        stamp = result.started_at.strftime("%Y-%m-%d_%H-%M-%S")
        safe_name = _UNSAFE_LOG_CHARS.sub("-", log_name).strip("-") or "command"

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self._lock:
                seq = next(self._sequence)
                log_path = self.log_dir / f"{safe_name}_{stamp}_{seq:04d}.log"

                with log_path.open("w", encoding="utf-8") as log_file:
                    log_file.write(f"# Command: {result.command}\n")
                    log_file.write(f"# Started: {result.started_at.isoformat()}\n")
                    log_file.write(f"# Finished: {result.finished_at.isoformat()}\n")
                    log_file.write(f"# Exit code: {result.exit_code}\n")
                    log_file.write("# " + "=" * 70 + "\n\n")
                    log_file.write("=== STDOUT ===\n")
                    log_file.write(result.stdout)
                    log_file.write("\n=== STDERR ===\n")
                    log_file.write(result.stderr)
                    log_file.write("\n=== END OF LOG ===\n")

                status = "OK" if result.success else "FAILED"
                with self.aggregate_path.open("a", encoding="utf-8") as aggregate:
                    aggregate.write(
                        f"{result.finished_at.isoformat()} {status} "
                        f"exit={result.exit_code} cmd={result.command} "
                        f"log={log_path.name}\n"
                    )
        except OSError as e:
            raise BuildIOError(f"Failed to write command log: {e}") from e

        return log_path


class CommandRunner:
    """Runs external commands, logging each one and honouring a cancel token."""

    def __init__(
        self,
        command_log: CommandLog,
        cancel_token: CancelToken | None = None,
        logger: logging.Logger | None = None,
        poll_interval: float = 0.5,
        grace_period: float = 10.0,
    ) -> None:
        self.command_log = command_log
        self.cancel_token = cancel_token
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.poll_interval = poll_interval
        self.grace_period = grace_period

    def run(
        self,
        argv: Sequence[str | os.PathLike[str]],
        *,
        log_name: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
        cancellable: bool = True,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            argv: Command and arguments.
            log_name: Base name for the per-invocation log (defaults to argv[0]).
            cwd: Working directory.
            env: Variables added to the inherited environment.
            input_text: Text written to the child's stdin.
            cancellable: Honour the cancel token. Cleanup commands (unmount,
                loop detach) pass False so they still run after a cancel.

        Returns:
            CommandResult with the exit code and complete output.

        Raises:
            BuildCancelledError: If the cancel token fired before or during the run.
            BuildIOError: If the logs cannot be written.
        """
        args = [os.fspath(a) for a in argv]
        name = log_name or Path(args[0]).name
        token = self.cancel_token if cancellable else None
        if token is not None:
            token.raise_if_cancelled(shlex.join(args))

        self.logger.info("Executing: %s", shlex.join(args))
        if cwd is not None:
            self.logger.debug("Working directory: %s", cwd)

        merged_env: dict[str, str] | None = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)

        started_at = datetime.now(timezone.utc)
        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                env=merged_env,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            result = CommandResult(
                argv=args,
                exit_code=EXIT_NOT_EXECUTABLE,
                stdout="",
                stderr=f"Failed to execute {args[0]}: {e}",
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )
            result.log_path = self.command_log.write(result, name)
            self.logger.error(result.stderr)
            return result

        stdout, stderr, cancelled = self._wait(proc, input_text, token)

        result = CommandResult(
            argv=args,
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        result.log_path = self.command_log.write(result, name)

        if cancelled:
            raise BuildCancelledError(f"Cancelled while running: {result.command}")

        if not result.success:
            self.logger.debug(
                "Command exited with %d. See log: %s", result.exit_code, result.log_path
            )
        return result

    def _wait(
        self,
        proc: subprocess.Popen[str],
        input_text: str | None,
        token: CancelToken | None,
    ) -> tuple[str, str, bool]:
        """Wait for a child, terminating it if the cancel token fires."""
        if token is None:
            stdout, stderr = proc.communicate(input=input_text)
            return stdout, stderr, False

        pending_input = input_text
        while True:
            try:
                stdout, stderr = proc.communicate(
                    input=pending_input, timeout=self.poll_interval
                )
                return stdout, stderr, False
            except subprocess.TimeoutExpired:
                pending_input = None
                if token.cancelled:
                    break

        self.logger.warning("Cancelling pid %d", proc.pid)
        proc.terminate()
        try:
            stdout, stderr = proc.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            self.logger.warning("pid %d ignored SIGTERM, killing", proc.pid)
            proc.kill()
            stdout, stderr = proc.communicate()
        return stdout, stderr, True


def ensure_success(
    result: CommandResult,
    description: str,
    error_cls: type[SystemCommandError] = SystemCommandError,
) -> CommandResult:
    """Raise if a command failed.

    Args:
        result: Command result to check.
        description: What the command was doing, for the error message.
        error_cls: SystemCommandError subclass to raise.

    Returns:
        The same result, for chaining.

    Raises:
        SystemCommandError: (or error_cls) if the exit code is non-zero.
    """
    if result.success:
        return result
    message = f"{description} failed with exit code {result.exit_code}"
    preview = result.stderr_preview()
    if preview:
        message = f"{message}: {preview}"
    raise error_cls(
        message,
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
        log_path=result.log_path,
    )


__all__ = [
    "AGGREGATE_LOG_NAME",
    "EXIT_NOT_EXECUTABLE",
    "CancelToken",
    "CommandLog",
    "CommandResult",
    "CommandRunner",
    "ensure_success",
]
