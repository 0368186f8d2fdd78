"""Build history ORM model.

This module defines BuildRun, the persisted record of one pipeline
execution: the configuration it ran with (secrets masked), its outcome
and where its command logs went.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from opi_imagegen.db import Base
from opi_imagegen.types import RunStatus


class BuildRun(Base):
    """ORM model for build runs.

    Attributes:
        id: Primary key.
        status: Run status (pending, running, succeeded, failed, cancelled).
        created_at: Timestamp when the run was recorded.
        started_at: Timestamp when the pipeline started.
        finished_at: Timestamp when the pipeline finished.
        config_snapshot: JSON dump of the BuildConfig with secrets masked.
        output: Image path or block device written.
        failed_stage: Name of the stage that failed, if any.
        error_code: Error code of the failure.
        error_message: Error message of the failure.
        log_dir: Directory holding the command logs.
    """

    __tablename__ = "build_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    config_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    output: Mapped[str] = mapped_column(String(500), nullable=False)

    failed_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    log_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (Index("ix_build_runs_status_created", "status", "created_at"),)

    def __repr__(self) -> str:
        return f"<BuildRun(id={self.id}, status='{self.status}', output='{self.output}')>"

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        stage: str | None = None,
        error_type: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this run as failed.

        Args:
            stage: Stage the failure is attributed to.
            error_type: Error code of the failure.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        self.failed_stage = stage
        self.error_code = error_type
        self.error_message = message

    def mark_cancelled(self, stage: str | None = None) -> None:
        """Mark this run as cancelled by the user."""
        self.status = RunStatus.CANCELLED.value
        self.finished_at = datetime.now()
        self.failed_stage = stage
        self.error_code = "cancelled"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-safe representation."""
        return {
            "id": self.id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "output": self.output,
            "failed_stage": self.failed_stage,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "log_dir": self.log_dir,
            "config": self.config_snapshot,
        }


__all__ = ["BuildRun"]
