"""Tests for the build pipeline and its stages.

The stages drive FakeRunner, which fakes every external tool, so a full
gaming build runs end to end without root or network.
"""

import pytest

from opi_imagegen.artifacts.cache import ArtifactCache
from opi_imagegen.artifacts.sources import find_source
from opi_imagegen.buildconfig.schema import BuildConfig
from opi_imagegen.builds.pipeline import Pipeline
from opi_imagegen.builds.stages import (
    STAGES,
    BuildOptions,
    BuildPaths,
    Stage,
)
from opi_imagegen.chroot.executor import ChrootExecutor
from opi_imagegen.config import DEFAULT_BOARD
from opi_imagegen.errors import (
    BuildCancelledError,
    BuildFailedError,
    BuildIOError,
    ConfigValidationError,
    ImageGenError,
    StageFailedError,
)
from opi_imagegen.image.assembler import ImageAssembler
from opi_imagegen.image.layout import GIB
from opi_imagegen.process import CancelToken
from opi_imagegen.types import ArtifactCategory, BuildStatus, StepPolicy


@pytest.fixture
def paths(tmp_path):
    """Return staging paths under a temporary directory."""
    return BuildPaths(
        workspace=tmp_path / "workspace",
        build_dir=tmp_path / "build",
        log_dir=tmp_path / "logs",
        mount_root=tmp_path / "mnt",
    )


@pytest.fixture
def seeded_gpu_blob(paths):
    """Place the g13p0 blob in the workspace so no HTTP download is needed."""
    source = find_source(ArtifactCategory.GPU, "g13p0")
    gpu_dir = paths.workspace / "gpu"
    gpu_dir.mkdir(parents=True)
    (gpu_dir / source.filename).write_bytes(b"mali")
    return gpu_dir / source.filename


@pytest.fixture
def make_pipeline(paths, fake_runner, build_config_data):
    """Return a factory for pipelines wired to FakeRunner."""

    def factory(stages=STAGES, keep_rootfs=False, mounts_file="/proc/mounts", **overrides):
        config = BuildConfig.model_validate({**build_config_data, **overrides})
        token = CancelToken()
        fake_runner.cancel_token = token
        return Pipeline(
            config,
            paths,
            BuildOptions(
                board=DEFAULT_BOARD,
                make_jobs=4,
                keep_rootfs_on_failure=keep_rootfs,
                mounts_file=mounts_file,
            ),
            fake_runner,
            cache=ArtifactCache(paths.workspace, fake_runner),
            chroot=ChrootExecutor(fake_runner),
            assembler=ImageAssembler(fake_runner, paths.mount_root),
            cancel_token=token,
            stages=stages,
        )

    return factory


def recording_stage(name, calls, status=BuildStatus.BUILDING, policy=StepPolicy.FATAL, action=None):
    """Return a stage that records its name and optionally runs an action."""

    def run(ctx):
        calls.append(name)
        if action is not None:
            action(ctx)

    return Stage(name, status, run, policy)


def raise_error(error):
    """Return an action raising the given error."""

    def action(ctx):
        raise error

    return action


class TestEndToEnd:
    """A full gaming build with every external tool faked."""

    def test_gaming_build(self, paths, fake_runner, make_pipeline, seeded_gpu_blob, build_config_data):
        """Debian 12, kernel 6.1, g13p0: every stage runs and the image is assembled."""
        pipeline = make_pipeline()
        snapshot = pipeline.run()

        assert snapshot.status is BuildStatus.COMPLETED
        assert snapshot.percentage == 100
        assert [r.label for r in snapshot.records if r.event == "started"] == [
            s.name for s in STAGES
        ]

        dts = paths.devicetree / "rk3588s-orangepi-5-plus-debian-12-6-1-gamescope.dts"
        text = dts.read_text()
        assert "0x20000000" in text
        assert text.count("opp-hz = ") == 5
        assert "opp-microvolt = <950000>;" in text

        image = paths.build_dir.parent / "out.img"
        assert pipeline.output == str(image)
        assert image.stat().st_size == 8 * GIB

        assert (paths.boot / "Image").exists()
        assert (paths.boot / "dtbs" / "rockchip" / dts.with_suffix(".dtb").name).exists()
        assert (paths.bootloader / "u-boot-rockchip.bin").exists()

    def test_gaming_build_system_files(self, paths, fake_runner, make_pipeline, seeded_gpu_blob):
        """The staged rootfs gets identity, locale and multiarch files."""
        make_pipeline().run()

        etc = paths.rootfs / "etc"
        assert (etc / "hostname").read_text() == "opi\n"
        assert (etc / "locale.gen").read_text() == "en_US.UTF-8 UTF-8\n"
        assert (paths.rootfs / "var/lib/dpkg/arch").read_text() == "arm64\narmhf\n"
        assert "bookworm" in (etc / "apt/sources.list").read_text()

    def test_commands_and_secrets(self, fake_runner, make_pipeline, seeded_gpu_blob):
        """Key commands run, and passwords never appear in any argv."""
        make_pipeline().run()

        programs = fake_runner.programs()
        for program in ("git", "debootstrap", "apt-get", "dpkg", "make", "dtc", "parted", "losetup"):
            assert program in programs
        assert programs.index("debootstrap") < programs.index("dtc") < programs.index("parted")

        for call in fake_runner.calls:
            joined = " ".join(call.argv)
            assert "userpass" not in joined
            assert "rootpass" not in joined
        assert {c.input_text for c in fake_runner.find("chpasswd")} == {
            "root:rootpass\n",
            "gamer:userpass\n",
        }

    def test_kernel_make_arguments(self, fake_runner, make_pipeline, seeded_gpu_blob):
        """The kernel is cross-compiled with the configured job count."""
        make_pipeline().run()

        build = fake_runner.find("Image")[0]
        assert build.argv[:3] == ["make", "ARCH=arm64", "CROSS_COMPILE=aarch64-linux-gnu-"]
        assert "-j4" in build.argv
        assert fake_runner.find("orangepi5plus_gaming_defconfig")

    def test_best_effort_package_group_failure(self, make_pipeline, fake_runner, seeded_gpu_blob, caplog):
        """A failing optional group is logged and the build still completes."""
        fake_runner.fail("mangohud")
        snapshot = make_pipeline().run()

        assert snapshot.status is BuildStatus.COMPLETED
        assert "Installing gaming packages failed" in caplog.text

    def test_fatal_core_package_failure(self, paths, make_pipeline, fake_runner, seeded_gpu_blob):
        """A failing core install stops the run in install-packages."""
        fake_runner.fail("gamescope", "install")

        pipeline = make_pipeline()
        with pytest.raises(StageFailedError) as exc_info:
            pipeline.run()

        assert exc_info.value.stage == "install-packages"
        assert pipeline.progress.status is BuildStatus.FAILED
        assert not fake_runner.find("dtc")
        assert not paths.rootfs.exists()

    def test_kernel_build_failure_is_build_failed(self, make_pipeline, fake_runner, seeded_gpu_blob):
        """Kernel make failures are BuildFailedError attributed to build-kernel."""
        fake_runner.fail("Image")

        with pytest.raises(StageFailedError) as exc_info:
            make_pipeline().run()

        assert exc_info.value.stage == "build-kernel"
        assert isinstance(exc_info.value.cause, BuildFailedError)
        assert exc_info.value.stderr == "make: simulated failure"

    def test_rerun_skips_fetches_but_rebuilds(self, fake_runner, make_pipeline, seeded_gpu_blob):
        """A second run over a satisfied workspace fetches nothing and rebuilds everything."""
        make_pipeline().run()
        assert len(fake_runner.find("clone")) == 3
        first_run = len(fake_runner.calls)

        snapshot = make_pipeline().run()

        assert snapshot.status is BuildStatus.COMPLETED
        second = [c.argv for c in fake_runner.calls[first_run:]]
        assert not [argv for argv in second if argv[:2] == ["git", "clone"]]
        assert any(argv[0] == "debootstrap" for argv in second)
        assert any(argv[0] == "make" and "Image" in argv for argv in second)
        assert any(argv[0] == "parted" for argv in second)

    def test_debian_11_debootstrap_components(self, fake_runner, make_pipeline, seeded_gpu_blob):
        """Bullseye is bootstrapped without the non-free-firmware component."""
        make_pipeline(distro_version="11").run()

        debootstrap = fake_runner.find("debootstrap")[0]
        assert "--components=main,contrib,non-free" in debootstrap.argv
        assert "bullseye" in debootstrap.argv

    def test_unbuildable_bootloader(self, fake_runner, make_pipeline):
        """Only U-Boot can be built; others fail in the first stage."""
        pipeline = make_pipeline(bootloader="edk2-uefi")

        with pytest.raises(StageFailedError) as exc_info:
            pipeline.run()

        assert exc_info.value.stage == "ensure-workspace"
        assert isinstance(exc_info.value.cause, ConfigValidationError)
        assert fake_runner.calls == []


class TestStageOrchestration:
    """Tests for ordering, policies and cancellation with stub stages."""

    def test_stages_run_in_order_once(self, make_pipeline):
        """Each stage runs exactly once, in declaration order."""
        calls = []
        stages = [recording_stage(n, calls) for n in ("a", "b", "c")]
        snapshot = make_pipeline(stages=stages).run()

        assert calls == ["a", "b", "c"]
        assert snapshot.messages[:3] == ("Step 1/3: a", "Step 2/3: b", "Step 3/3: c")

    def test_fatal_stage_stops_run(self, make_pipeline):
        """Stages after a fatal failure do not run."""
        calls = []
        stages = [
            recording_stage("a", calls),
            recording_stage("b", calls, action=raise_error(ImageGenError("nope"))),
            recording_stage("c", calls),
        ]
        pipeline = make_pipeline(stages=stages)

        with pytest.raises(StageFailedError, match="Stage 'b' failed: nope"):
            pipeline.run()

        assert calls == ["a", "b"]
        snapshot = pipeline.progress.snapshot()
        assert snapshot.failure_reason == "Stage 'b' failed: nope"
        assert snapshot.percentage == 33

    def test_best_effort_stage_continues(self, make_pipeline):
        """A best-effort stage failure is recorded and the run goes on."""
        calls = []
        stages = [
            recording_stage(
                "optional", calls, policy=StepPolicy.BEST_EFFORT, action=raise_error(ImageGenError("meh"))
            ),
            recording_stage("b", calls),
        ]
        snapshot = make_pipeline(stages=stages).run()

        assert calls == ["optional", "b"]
        assert snapshot.status is BuildStatus.COMPLETED
        assert ("optional", "failed") in [(r.label, r.event) for r in snapshot.records]

    def test_unexpected_exception_is_attributed(self, make_pipeline):
        """Non-domain exceptions still fail the stage they came from."""
        calls = []
        stages = [recording_stage("a", calls, action=raise_error(KeyError("x")))]

        with pytest.raises(StageFailedError) as exc_info:
            make_pipeline(stages=stages).run()
        assert exc_info.value.stage == "a"

    def test_cancel_between_stages(self, make_pipeline):
        """Cancelling stops the run before the next stage."""
        calls = []

        def cancel(ctx):
            ctx.cancel_token.cancel()

        stages = [recording_stage("a", calls, action=cancel), recording_stage("b", calls)]
        pipeline = make_pipeline(stages=stages)

        with pytest.raises(StageFailedError) as exc_info:
            pipeline.run()

        assert calls == ["a"]
        assert isinstance(exc_info.value.cause, BuildCancelledError)
        assert pipeline.progress.snapshot().failure_reason == "cancelled"

    def test_cancel_not_swallowed_by_best_effort(self, make_pipeline):
        """Cancellation inside a best-effort stage still stops the run."""
        calls = []
        stages = [
            recording_stage(
                "optional",
                calls,
                policy=StepPolicy.BEST_EFFORT,
                action=raise_error(BuildCancelledError("stop")),
            ),
            recording_stage("b", calls),
        ]
        with pytest.raises(StageFailedError):
            make_pipeline(stages=stages).run()
        assert calls == ["optional"]

    def test_rootfs_discarded_on_failure(self, paths, make_pipeline):
        """A failed run removes the partially staged rootfs."""
        calls = []

        def stage_rootfs(ctx):
            ctx.paths.rootfs.mkdir(parents=True)
            raise ImageGenError("boom")

        with pytest.raises(StageFailedError):
            make_pipeline(stages=[recording_stage("a", calls, action=stage_rootfs)]).run()
        assert not paths.rootfs.exists()

    def test_rootfs_with_live_mounts_is_kept(self, paths, make_pipeline, tmp_path, caplog):
        """A rootfs with a bind mount still inside it is never removed."""
        mounts = tmp_path / "mounts"
        mounts.write_text(f"proc {paths.rootfs.resolve()}/proc proc rw 0 0\n")
        calls = []

        def stage_rootfs(ctx):
            (ctx.paths.rootfs / "proc").mkdir(parents=True)
            raise ImageGenError("boom")

        pipeline = make_pipeline(
            stages=[recording_stage("a", calls, action=stage_rootfs)], mounts_file=str(mounts)
        )
        with pytest.raises(StageFailedError):
            pipeline.run()

        assert (paths.rootfs / "proc").exists()
        assert "Refusing to remove" in caplog.text

    def test_base_system_refuses_mounted_rootfs(self, paths, fake_runner, make_pipeline, tmp_path):
        """create-base-system fails instead of deleting a rootfs with live mounts."""
        (paths.rootfs / "dev").mkdir(parents=True)
        mounts = tmp_path / "mounts"
        mounts.write_text(f"/dev {paths.rootfs.resolve()}/dev none rw,bind 0 0\n")
        stage = next(s for s in STAGES if s.name == "create-base-system")

        with pytest.raises(StageFailedError) as exc_info:
            make_pipeline(stages=[stage], mounts_file=str(mounts)).run()

        assert isinstance(exc_info.value.cause, BuildIOError)
        assert (paths.rootfs / "dev").exists()
        assert not fake_runner.find("debootstrap")

    def test_rootfs_kept_when_asked(self, paths, make_pipeline):
        """keep_rootfs_on_failure leaves the rootfs for inspection."""
        calls = []

        def stage_rootfs(ctx):
            ctx.paths.rootfs.mkdir(parents=True)
            raise ImageGenError("boom")

        pipeline = make_pipeline(
            stages=[recording_stage("a", calls, action=stage_rootfs)], keep_rootfs=True
        )
        with pytest.raises(StageFailedError):
            pipeline.run()
        assert paths.rootfs.exists()


class TestWorkerThread:
    """Tests for start/join/cancel."""

    def test_worker_records_error(self, make_pipeline):
        """Failures on the worker are exposed through .error."""
        stages = [recording_stage("a", [], action=raise_error(ImageGenError("x")))]
        pipeline = make_pipeline(stages=stages)
        pipeline.start()

        assert pipeline.join(timeout=10)
        assert isinstance(pipeline.error, StageFailedError)
        assert pipeline.progress.status is BuildStatus.FAILED

    def test_worker_success(self, make_pipeline):
        """A successful worker leaves no error."""
        pipeline = make_pipeline(stages=[recording_stage("a", [])])
        pipeline.start()

        assert pipeline.join(timeout=10)
        assert pipeline.error is None
        assert pipeline.progress.status is BuildStatus.COMPLETED

    def test_start_twice(self, make_pipeline):
        """A pipeline runs at most once."""
        pipeline = make_pipeline(stages=[recording_stage("a", [])])
        pipeline.start()
        pipeline.join(timeout=10)
        with pytest.raises(RuntimeError):
            pipeline.start()
