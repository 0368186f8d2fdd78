"""Build progress and status state machine.

BuildProgress is shared between the pipeline worker (the only writer) and
any number of pollers. Every mutation happens under a lock and pollers
read immutable snapshots, so a poll never observes a half-updated state.

Status transitions follow BuildStatus declaration order and never move
backwards; FAILED is reachable from any non-terminal state and terminal
states cannot be left.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from opi_imagegen.errors import ImageGenError
from opi_imagegen.types import BuildStatus


class InvalidTransitionError(ImageGenError):
    """A status change would move backwards or leave a terminal state."""

    default_code = "invalid_transition"

    def __init__(self, current: BuildStatus, target: BuildStatus) -> None:
        super().__init__(
            f"Invalid status transition: {current.value} -> {target.value}"
        )
        self.current = current
        self.target = target


@dataclass(frozen=True)
class ProgressRecord:
    """One entry of the progress history.

    Attributes:
        step_index: 1-based stage index.
        step_count: Total number of stages.
        label: Stage name.
        event: 'started', 'succeeded' or 'failed'.
        timestamp: When the event happened.
        detail: Failure reason or other detail.
    """

    step_index: int
    step_count: int
    label: str
    event: str
    timestamp: datetime
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "step_index": self.step_index,
            "step_count": self.step_count,
            "label": self.label,
            "event": self.event,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time copy of a BuildProgress."""

    status: BuildStatus
    total_steps: int
    current_step: int
    current_label: str | None
    percentage: int
    failure_reason: str | None
    messages: tuple[str, ...] = field(default_factory=tuple)
    records: tuple[ProgressRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "total_steps": self.total_steps,
            "current_step": self.current_step,
            "current_label": self.current_label,
            "percentage": self.percentage,
            "failure_reason": self.failure_reason,
            "messages": list(self.messages),
            "records": [r.to_dict() for r in self.records],
        }


class BuildProgress:
    """Mutex-guarded progress of one pipeline run."""

    def __init__(self, total_steps: int = 0) -> None:
        self._lock = threading.Lock()
        self._status = BuildStatus.NOT_STARTED
        self._total_steps = total_steps
        self._current_step = 0
        self._completed_steps = 0
        self._current_label: str | None = None
        self._failure_reason: str | None = None
        self._messages: list[str] = []
        self._records: list[ProgressRecord] = []

    @property
    def status(self) -> BuildStatus:
        with self._lock:
            return self._status

    def advance(self, status: BuildStatus) -> None:
        """Move forward to a status.

        Staying in the current status is allowed.

        Raises:
            InvalidTransitionError: If the move is backwards or out of a
                terminal state, or targets FAILED (use fail()).
        """
        with self._lock:
            self._advance(status)

    def _advance(self, status: BuildStatus) -> None:
        current = self._status
        if current.is_terminal or status is BuildStatus.FAILED:
            raise InvalidTransitionError(current, status)
        if status.rank < current.rank:
            raise InvalidTransitionError(current, status)
        self._status = status

    def begin_step(self, index: int, label: str, status: BuildStatus) -> None:
        """Record the start of a stage and advance to its status."""
        with self._lock:
            self._advance(status)
            self._current_step = index
            self._current_label = label
            message = f"Step {index}/{self._total_steps}: {label}"
            self._messages.append(message)
            self._records.append(self._record(index, label, "started"))

    def finish_step(self, index: int, label: str, detail: str | None = None) -> None:
        """Record the successful end of a stage."""
        with self._lock:
            self._completed_steps = max(self._completed_steps, index)
            self._records.append(self._record(index, label, "succeeded", detail))

    def fail_step(self, index: int, label: str, reason: str) -> None:
        """Record the failed end of a stage without changing status."""
        with self._lock:
            self._records.append(self._record(index, label, "failed", reason))

    def add_message(self, message: str) -> None:
        """Append a free-form message."""
        with self._lock:
            self._messages.append(message)

    def complete(self) -> None:
        """Mark the run completed."""
        with self._lock:
            self._advance(BuildStatus.COMPLETED)
            self._completed_steps = self._total_steps
            self._current_label = None
            self._messages.append("Build completed successfully")

    def fail(self, reason: str) -> None:
        """Mark the run failed.

        Raises:
            InvalidTransitionError: If the run is already terminal.
        """
        with self._lock:
            if self._status.is_terminal:
                raise InvalidTransitionError(self._status, BuildStatus.FAILED)
            self._status = BuildStatus.FAILED
            self._failure_reason = reason
            self._messages.append(f"Build failed: {reason}")

    def snapshot(self) -> ProgressSnapshot:
        """Return an immutable copy for pollers."""
        with self._lock:
            if self._total_steps:
                percentage = self._completed_steps * 100 // self._total_steps
            else:
                percentage = 0
            return ProgressSnapshot(
                status=self._status,
                total_steps=self._total_steps,
                current_step=self._current_step,
                current_label=self._current_label,
                percentage=percentage,
                failure_reason=self._failure_reason,
                messages=tuple(self._messages),
                records=tuple(self._records),
            )

    def _record(
        self, index: int, label: str, event: str, detail: str | None = None
    ) -> ProgressRecord:
        return ProgressRecord(
            step_index=index,
            step_count=self._total_steps,
            label=label,
            event=event,
            timestamp=datetime.now(timezone.utc),
            detail=detail,
        )


__all__ = [
    "BuildProgress",
    "InvalidTransitionError",
    "ProgressRecord",
    "ProgressSnapshot",
]
