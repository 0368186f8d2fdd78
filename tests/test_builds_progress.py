"""Tests for builds/progress.py."""

import threading

import pytest

from opi_imagegen.builds.progress import BuildProgress, InvalidTransitionError
from opi_imagegen.types import BuildStatus


class TestTransitions:
    """Tests for status transitions."""

    def test_starts_not_started(self):
        """A fresh progress is NOT_STARTED at 0%."""
        snapshot = BuildProgress(4).snapshot()
        assert snapshot.status is BuildStatus.NOT_STARTED
        assert snapshot.percentage == 0

    def test_forward_and_same_status(self):
        """Moving forward or staying put is allowed."""
        progress = BuildProgress(4)
        progress.advance(BuildStatus.PREPARING)
        progress.advance(BuildStatus.PREPARING)
        progress.advance(BuildStatus.BUILDING)
        assert progress.status is BuildStatus.BUILDING

    def test_backwards_rejected(self):
        """Moving backwards should raise."""
        progress = BuildProgress(4)
        progress.advance(BuildStatus.BUILDING)
        with pytest.raises(InvalidTransitionError) as exc_info:
            progress.advance(BuildStatus.DOWNLOADING)
        assert exc_info.value.code == "invalid_transition"

    def test_failed_only_through_fail(self):
        """advance() must not be used to fail a run."""
        with pytest.raises(InvalidTransitionError):
            BuildProgress(4).advance(BuildStatus.FAILED)

    def test_terminal_states_are_final(self):
        """Nothing leaves COMPLETED or FAILED."""
        progress = BuildProgress(1)
        progress.complete()
        with pytest.raises(InvalidTransitionError):
            progress.advance(BuildStatus.BUILDING)
        with pytest.raises(InvalidTransitionError):
            progress.fail("late")

        failed = BuildProgress(1)
        failed.advance(BuildStatus.BUILDING)
        failed.fail("boom")
        with pytest.raises(InvalidTransitionError):
            failed.complete()


class TestSteps:
    """Tests for step bookkeeping."""

    def test_step_messages_and_percentage(self):
        """Steps produce 'Step i/N' messages and percentage follows finished steps."""
        progress = BuildProgress(4)
        progress.begin_step(1, "ensure-workspace", BuildStatus.PREPARING)
        progress.finish_step(1, "ensure-workspace")
        progress.begin_step(2, "ensure-artifacts", BuildStatus.DOWNLOADING)

        snapshot = progress.snapshot()
        assert snapshot.current_step == 2
        assert snapshot.current_label == "ensure-artifacts"
        assert snapshot.percentage == 25
        assert snapshot.messages == (
            "Step 1/4: ensure-workspace",
            "Step 2/4: ensure-artifacts",
        )
        assert [r.event for r in snapshot.records] == ["started", "succeeded", "started"]

    def test_complete(self):
        """Completion reaches 100% with the success message."""
        progress = BuildProgress(2)
        progress.begin_step(1, "a", BuildStatus.PREPARING)
        progress.finish_step(1, "a")
        progress.complete()

        snapshot = progress.snapshot()
        assert snapshot.status is BuildStatus.COMPLETED
        assert snapshot.percentage == 100
        assert snapshot.messages[-1] == "Build completed successfully"

    def test_fail_records_reason(self):
        """Failure keeps the reason and the step's failed record."""
        progress = BuildProgress(2)
        progress.begin_step(1, "build-kernel", BuildStatus.BUILDING)
        progress.fail_step(1, "build-kernel", "make exited 2")
        progress.fail("build-kernel: make exited 2")

        snapshot = progress.snapshot()
        assert snapshot.status is BuildStatus.FAILED
        assert snapshot.failure_reason == "build-kernel: make exited 2"
        assert snapshot.messages[-1] == "Build failed: build-kernel: make exited 2"
        assert snapshot.records[-1].detail == "make exited 2"

    def test_snapshot_is_detached(self):
        """A snapshot does not change when progress moves on."""
        progress = BuildProgress(2)
        snapshot = progress.snapshot()
        progress.add_message("later")
        assert snapshot.messages == ()
        assert snapshot.to_dict()["status"] == "not-started"

    def test_concurrent_pollers(self):
        """Snapshots taken while a writer runs are always consistent."""
        progress = BuildProgress(200)
        seen = []

        def poll():
            for _ in range(200):
                s = progress.snapshot()
                seen.append(len(s.messages) >= s.current_step)

        poller = threading.Thread(target=poll)
        poller.start()
        for i in range(1, 201):
            progress.begin_step(i, f"s{i}", BuildStatus.BUILDING)
            progress.finish_step(i, f"s{i}")
        poller.join()

        assert all(seen)
        assert progress.snapshot().percentage == 100
