"""Build service module.

This module provides the high-level build API:
- start_build(): record a run and start its pipeline on a worker thread
- finish_build(): wait for the pipeline and persist its outcome
- execute_build(): both of the above, blocking
- Build history lookup
"""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from opi_imagegen.builds.models import BuildRun
from opi_imagegen.builds.pipeline import Pipeline
from opi_imagegen.builds.stages import STAGES, Stage
from opi_imagegen.errors import BuildCancelledError, ImageGenError, StageFailedError
from opi_imagegen.types import BuildStatus, RunStatus

if TYPE_CHECKING:
    from opi_imagegen.buildconfig.schema import BuildConfig
    from opi_imagegen.config import Settings

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".build.lock"


class BuildNotFoundError(ImageGenError):
    """Raised when a build run is not found."""

    default_code = "build_not_found"

    def __init__(self, build_id: int) -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id


class BuildInProgressError(ImageGenError):
    """Raised when another build holds the workspace lock."""

    default_code = "build_in_progress"


@contextmanager
def workspace_lock(workspace: Path) -> Iterator[None]:
    """Hold an exclusive lock on a workspace for the duration of a build.

    Two builds sharing a workspace would share its rootfs, so the second
    one fails immediately instead of waiting.

    Raises:
        BuildInProgressError: If the lock is already held.
    """
    workspace.mkdir(parents=True, exist_ok=True)
    lock_file = workspace / LOCK_FILE_NAME
    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise BuildInProgressError(
                f"Another build is running in {workspace}"
            ) from None
        logger.debug("Workspace lock acquired: %s", lock_file)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Workspace lock released: %s", lock_file)
    finally:
        os.close(fd)


def create_run(session: Session, config: BuildConfig, settings: Settings) -> BuildRun:
    """Persist a pending run for a configuration."""
    run = BuildRun(
        status=RunStatus.PENDING.value,
        config_snapshot=config.snapshot(),
        output=config.output,
        log_dir=str(settings.log_dir),
    )
    session.add(run)
    session.flush()
    logger.info("Created build run %d", run.id)
    return run


def record_outcome(session: Session, run: BuildRun, pipeline: Pipeline) -> BuildRun:
    """Copy a finished pipeline's outcome onto its run record.

    Args:
        session: Database session.
        run: The run being executed.
        pipeline: A pipeline whose worker has finished.

    Returns:
        The updated BuildRun.
    """
    snapshot = pipeline.progress.snapshot()
    error = pipeline.error

    if snapshot.status is BuildStatus.COMPLETED:
        run.mark_succeeded()
        if pipeline.output is not None:
            run.output = pipeline.output
    elif isinstance(error, StageFailedError):
        if isinstance(error.cause, BuildCancelledError):
            run.mark_cancelled(error.stage)
        else:
            run.mark_failed(error.stage, error.code, error.message)
    else:
        run.mark_failed(None, "internal_error", snapshot.failure_reason)

    session.flush()
    logger.info("Build run %d finished: %s", run.id, run.status)
    return run


def start_build(
    session: Session,
    config: BuildConfig,
    settings: Settings,
    *,
    client_factory: Callable[[], httpx.Client] = httpx.Client,
    stages: Sequence[Stage] = STAGES,
    pipeline_logger: logging.Logger | None = None,
) -> tuple[BuildRun, Pipeline]:
    """Record a run and start its pipeline on a worker thread.

    The caller owns the workspace lock and must call finish_build().
    """
    run = create_run(session, config, settings)
    pipeline = Pipeline.from_settings(
        config,
        settings,
        client_factory=client_factory,
        stages=stages,
        logger=pipeline_logger,
    )
    run.mark_running()
    session.commit()
    pipeline.start()
    return run, pipeline


def finish_build(session: Session, run: BuildRun, pipeline: Pipeline) -> BuildRun:
    """Wait for a started pipeline and persist its outcome."""
    pipeline.join()
    run = record_outcome(session, run, pipeline)
    session.commit()
    return run


def execute_build(
    session: Session,
    config: BuildConfig,
    settings: Settings,
    *,
    client_factory: Callable[[], httpx.Client] = httpx.Client,
    stages: Sequence[Stage] = STAGES,
    pipeline_logger: logging.Logger | None = None,
) -> BuildRun:
    """Record a run and execute its pipeline, blocking until it finishes.

    Failures of the pipeline are recorded on the returned run, not raised.

    Args:
        session: Database session.
        config: Validated build configuration.
        settings: Application settings.
        client_factory: Factory for the HTTP client used for downloads.
        stages: Stages to run, in order.
        pipeline_logger: Logger handed to the pipeline and its collaborators.

    Returns:
        The finished BuildRun.

    Raises:
        BuildInProgressError: If another build holds the workspace.
    """
    with workspace_lock(settings.workspace_dir):
        run, pipeline = start_build(
            session,
            config,
            settings,
            client_factory=client_factory,
            stages=stages,
            pipeline_logger=pipeline_logger,
        )
        return finish_build(session, run, pipeline)


def get_build(session: Session, build_id: int) -> BuildRun:
    """Get a build run by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    run = session.get(BuildRun, build_id)
    if run is None:
        raise BuildNotFoundError(build_id)
    return run


def list_builds(
    session: Session,
    limit: int = 20,
    status: RunStatus | None = None,
) -> list[BuildRun]:
    """List build runs, newest first.

    Args:
        session: Database session.
        limit: Maximum results to return.
        status: Filter by status.
    """
    stmt = select(BuildRun)
    if status is not None:
        stmt = stmt.where(BuildRun.status == status.value)
    stmt = stmt.order_by(BuildRun.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildInProgressError",
    "BuildNotFoundError",
    "create_run",
    "execute_build",
    "finish_build",
    "get_build",
    "list_builds",
    "record_outcome",
    "start_build",
    "workspace_lock",
]
