"""Build pipeline orchestration.

This module handles:
- Running the stages in canonical order, each exactly once
- Driving the BuildProgress state machine and its step records
- Attributing a fatal failure to its stage (StageFailedError)
- Discarding the staged rootfs after a failure unless asked to keep it
- Running on a single worker thread with cooperative cancellation

Stages never run concurrently. The worker is the only writer of the
progress; pollers call progress.snapshot().
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

import httpx

from opi_imagegen.artifacts.cache import ArtifactCache
from opi_imagegen.builds.progress import BuildProgress, ProgressSnapshot
from opi_imagegen.builds.stages import (
    STAGES,
    BuildOptions,
    BuildPaths,
    Stage,
    StageContext,
    remove_rootfs,
)
from opi_imagegen.chroot.executor import ChrootExecutor
from opi_imagegen.errors import (
    BuildCancelledError,
    BuildIOError,
    ImageGenError,
    StageFailedError,
)
from opi_imagegen.image.assembler import ImageAssembler
from opi_imagegen.process import CancelToken, CommandLog, CommandRunner
from opi_imagegen.types import StepPolicy

if TYPE_CHECKING:
    from opi_imagegen.buildconfig.schema import BuildConfig
    from opi_imagegen.config import Settings


class Pipeline:
    """Linear stage runner for one build."""

    def __init__(
        self,
        config: BuildConfig,
        paths: BuildPaths,
        options: BuildOptions,
        runner: CommandRunner,
        *,
        cache: ArtifactCache,
        chroot: ChrootExecutor,
        assembler: ImageAssembler,
        cancel_token: CancelToken,
        stages: Sequence[Stage] = STAGES,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.paths = paths
        self.options = options
        self.stages = tuple(stages)
        self.cancel_token = cancel_token
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.progress = BuildProgress(total_steps=len(self.stages))
        self.context = StageContext(
            config=config,
            paths=paths,
            options=options,
            runner=runner,
            cache=cache,
            chroot=chroot,
            assembler=assembler,
            cancel_token=cancel_token,
            progress=self.progress,
            logger=self.logger,
        )
        self.error: StageFailedError | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        config: BuildConfig,
        settings: Settings,
        *,
        client_factory: Callable[[], httpx.Client] = httpx.Client,
        stages: Sequence[Stage] = STAGES,
        logger: logging.Logger | None = None,
    ) -> Pipeline:
        """Wire a pipeline and its collaborators from application settings."""
        log = logger if logger is not None else logging.getLogger(__name__)
        paths = BuildPaths(
            workspace=settings.workspace_dir,
            build_dir=settings.build_dir,
            log_dir=settings.log_dir,
            mount_root=settings.mount_root,
        )
        options = BuildOptions(
            board=settings.board,
            cross_compile=settings.cross_compile,
            make_jobs=settings.make_jobs,
            dtc_binary=settings.dtc_binary,
            fstab_device_prefix=settings.fstab_device_prefix,
            update_sources=settings.update_sources,
            keep_rootfs_on_failure=settings.keep_rootfs_on_failure,
        )
        token = CancelToken()
        runner = CommandRunner(
            CommandLog(settings.log_dir),
            cancel_token=token,
            logger=log,
            poll_interval=settings.poll_interval,
            grace_period=settings.cancel_grace_period,
        )
        return cls(
            config,
            paths,
            options,
            runner,
            cache=ArtifactCache(
                settings.workspace_dir,
                runner,
                client_factory=client_factory,
                offline=settings.offline,
                gpu_blob_base_url=settings.gpu_blob_base_url,
                logger=log,
            ),
            chroot=ChrootExecutor(runner, logger=log),
            assembler=ImageAssembler(
                runner,
                settings.mount_root,
                fstab_device_prefix=settings.fstab_device_prefix,
                logger=log,
            ),
            cancel_token=token,
            stages=stages,
            logger=log,
        )

    @property
    def output(self) -> str | None:
        """Written image path or device, once assembled."""
        return self.context.output

    def run(self) -> ProgressSnapshot:
        """Run every stage on the calling thread.

        Returns:
            Final progress snapshot (status COMPLETED).

        Raises:
            StageFailedError: If a fatal stage failed or the build was
                cancelled; progress is left FAILED.
        """
        total = len(self.stages)
        self.logger.info(
            "Starting build: %s %s, kernel %s, %s, %s -> %s",
            self.config.distro.value,
            self.config.distro_version,
            self.config.kernel,
            self.config.build_type.value,
            self.config.gpu_driver.value,
            self.config.output,
        )

        for index, stage in enumerate(self.stages, start=1):
            try:
                self.cancel_token.raise_if_cancelled(stage.name)
                self.progress.begin_step(index, stage.name, stage.status)
                self.logger.info("Step %d/%d: %s", index, total, stage.name)
                self._run_stage(stage)
            except ImageGenError as e:
                if stage.policy is StepPolicy.BEST_EFFORT and not isinstance(
                    e, BuildCancelledError
                ):
                    self.logger.warning("Stage %s failed, continuing: %s", stage.name, e)
                    self.progress.fail_step(index, stage.name, e.message)
                    continue
                self._fail(index, stage, e)
            except Exception as e:
                self.logger.exception("Unexpected error in stage %s", stage.name)
                self._fail(index, stage, ImageGenError(f"Unexpected error: {e}"))
            self.progress.finish_step(index, stage.name)

        self.progress.complete()
        self.logger.info("Build completed: %s", self.output)
        return self.progress.snapshot()

    def start(self) -> threading.Thread:
        """Run the pipeline on a single worker thread.

        The outcome is available from progress and, on failure, from error.
        """
        if self._thread is not None:
            raise RuntimeError("Pipeline already started")
        self._thread = threading.Thread(
            target=self._worker, name="opi-imagegen-build", daemon=False
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker; return True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel(self) -> None:
        """Request cancellation of the running build."""
        self.logger.warning("Cancellation requested")
        self.cancel_token.cancel()

    def _worker(self) -> None:
        try:
            self.run()
        except StageFailedError as e:
            self.error = e

    def _run_stage(self, stage: Stage) -> None:
        try:
            stage.run(self.context)
        except OSError as e:
            raise BuildIOError(f"{stage.name}: {e}") from e

    def _fail(self, index: int, stage: Stage, cause: ImageGenError) -> None:
        error = StageFailedError(stage.name, cause)
        reason = "cancelled" if isinstance(cause, BuildCancelledError) else error.message
        self.logger.error("%s", error.message)
        if error.log_path is not None:
            self.logger.error("See log: %s", error.log_path)
        self.progress.fail_step(index, stage.name, cause.message)
        self.progress.fail(reason)
        self._discard_rootfs()
        self.error = error
        raise error from cause

    def _discard_rootfs(self) -> None:
        rootfs = self.paths.rootfs
        if self.options.keep_rootfs_on_failure or not rootfs.exists():
            return
        self.logger.info("Discarding rootfs %s", rootfs)
        try:
            remove_rootfs(rootfs, self.options.mounts_file)
        except BuildIOError as e:
            self.logger.error("Keeping rootfs: %s", e.message)


__all__ = ["Pipeline"]
