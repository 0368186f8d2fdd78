"""Command execution inside a staged root filesystem.

This module handles:
- Running a command under chroot with a non-interactive environment
- Passing credentials to chpasswd on stdin
- Bind-mounting /proc, /sys and /dev for the duration of package work

run_in_root() never raises on a non-zero exit: the caller decides whether
a failure is fatal or best-effort.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

from opi_imagegen.errors import ArtifactNotFoundError, BuildIOError
from opi_imagegen.process import CommandResult, CommandRunner, ensure_success

CHROOT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "LC_ALL": "C",
}

# Host filesystems bound into the rootfs, in mount order
BIND_MOUNTS = ("proc", "sys", "dev")


class ChrootExecutor:
    """Runs commands inside a rootfs through a CommandRunner."""

    def __init__(
        self,
        runner: CommandRunner,
        logger: logging.Logger | None = None,
        chroot_binary: str = "chroot",
    ) -> None:
        self.runner = runner
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.chroot_binary = chroot_binary

    def run_in_root(
        self,
        rootfs: Path,
        argv: Sequence[str],
        *,
        log_name: str | None = None,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run a command inside a rootfs.

        Args:
            rootfs: Root of the staged filesystem.
            argv: Command to run, resolved inside the rootfs.
            log_name: Base name for the per-invocation log.
            env: Extra environment on top of the chroot defaults.
            input_text: Text written to the command's stdin.

        Returns:
            CommandResult of the chroot invocation.

        Raises:
            ArtifactNotFoundError: If rootfs is not a directory.
            BuildCancelledError: If the build was cancelled.
        """
        if not rootfs.is_dir():
            raise ArtifactNotFoundError(rootfs, f"Rootfs is not a directory: {rootfs}")

        merged_env = dict(CHROOT_ENV)
        if env:
            merged_env.update(env)

        self.logger.debug("chroot %s: %s", rootfs, " ".join(argv))
        return self.runner.run(
            [self.chroot_binary, str(rootfs), *argv],
            log_name=log_name or f"chroot-{Path(argv[0]).name}",
            env=merged_env,
            input_text=input_text,
        )

    def set_password(self, rootfs: Path, user: str, password: str) -> CommandResult:
        """Set a user's password with chpasswd.

        The credential is written to stdin and never appears in argv or logs.
        """
        return self.run_in_root(
            rootfs,
            ["chpasswd"],
            log_name=f"chpasswd-{user}",
            input_text=f"{user}:{password}\n",
        )

    @contextmanager
    def mounted_filesystems(self, rootfs: Path) -> Iterator[None]:
        """Bind-mount the host pseudo filesystems into a rootfs.

        Everything mounted is unmounted in reverse order on every exit path,
        including a failure part way through mounting.

        Raises:
            SystemCommandError: If a bind mount fails.
        """
        mounted: list[Path] = []
        try:
            for name in BIND_MOUNTS:
                target = rootfs / name
                try:
                    target.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise BuildIOError(f"Failed to create mount point {target}: {e}") from e
                result = self.runner.run(
                    ["mount", "--bind", f"/{name}", str(target)],
                    log_name=f"mount-{name}",
                )
                ensure_success(result, f"Bind mount of /{name}")
                mounted.append(target)
            yield
        finally:
            for target in reversed(mounted):
                result = self.runner.run(
                    ["umount", "-l", str(target)], log_name="umount", cancellable=False
                )
                if not result.success:
                    self.logger.warning(
                        "Failed to unmount %s (exit %d): %s",
                        target,
                        result.exit_code,
                        result.stderr_preview(),
                    )


__all__ = [
    "BIND_MOUNTS",
    "CHROOT_ENV",
    "ChrootExecutor",
]
