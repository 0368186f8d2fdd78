"""Shared fixtures for opi_imagegen tests.

FakeRunner stands in for CommandRunner: it records every argv and
simulates the filesystem side effects of the external tools the build
drives, so no test needs root privileges, network access or real tools.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import pytest

from opi_imagegen.process import CancelToken, CommandResult


@dataclass
class RecordedCall:
    """One command seen by FakeRunner."""

    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] | None = None
    input_text: str | None = None
    cancellable: bool = True
    log_name: str | None = None


@dataclass
class FakeRunner:
    """CommandRunner double that records calls and fakes tool side effects."""

    loop_device: str = "/dev/loop0"
    cancel_token: CancelToken | None = None
    calls: list[RecordedCall] = field(default_factory=list)
    _failures: list[tuple[tuple[str, ...], int]] = field(default_factory=list)

    def fail(self, *tokens: str, exit_code: int = 1) -> None:
        """Make every command containing all tokens exit non-zero."""
        self._failures.append((tokens, exit_code))

    def programs(self) -> list[str]:
        """Return the program name of each call; chroot calls give the inner one."""
        names = []
        for call in self.calls:
            argv = call.argv[2:] if call.argv[0] == "chroot" else call.argv
            names.append(Path(argv[0]).name)
        return names

    def find(self, *tokens: str) -> list[RecordedCall]:
        """Return calls whose argv contains all tokens."""
        return [c for c in self.calls if all(t in c.argv for t in tokens)]

    def run(
        self,
        argv,
        *,
        log_name=None,
        cwd=None,
        env=None,
        input_text=None,
        cancellable=True,
    ) -> CommandResult:
        args = [os.fspath(a) for a in argv]
        if cancellable and self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled(" ".join(args))
        self.calls.append(
            RecordedCall(
                argv=args,
                cwd=cwd,
                env=dict(env) if env else None,
                input_text=input_text,
                cancellable=cancellable,
                log_name=log_name,
            )
        )

        now = datetime.now(timezone.utc)
        for tokens, exit_code in self._failures:
            if all(t in args for t in tokens):
                return CommandResult(
                    argv=args,
                    exit_code=exit_code,
                    stdout="partial output",
                    stderr=f"{args[0]}: simulated failure",
                    started_at=now,
                    finished_at=now,
                )

        stdout = self._simulate(args, cwd)
        return CommandResult(
            argv=args,
            exit_code=0,
            stdout=stdout,
            stderr="",
            started_at=now,
            finished_at=now,
        )

    def _simulate(self, args: list[str], cwd: Path | None) -> str:
        program = Path(args[0]).name
        if program == "git" and args[1] == "clone":
            _fake_clone(Path(args[-1]))
        elif program == "debootstrap":
            (Path(args[-2]) / "etc").mkdir(parents=True, exist_ok=True)
        elif program == "apt-get" and args[1] == "download" and cwd is not None:
            for pkg in args[2:]:
                (Path(cwd) / f"{pkg}_1.0_arm64.deb").write_bytes(b"deb")
        elif program == "make" and cwd is not None:
            _fake_make(args, Path(cwd))
        elif program == "dtc":
            out = Path(args[args.index("-o") + 1])
            out.write_bytes(b"\xd0\x0d\xfe\xed")
        elif program == "losetup" and "--show" in args:
            return f"{self.loop_device}\n"
        return ""


def _fake_clone(dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    for name in (".git", "configs", "bin/rk35", "tools", "arch/arm64/configs"):
        (dest / name).mkdir(parents=True, exist_ok=True)
    for name in ("Makefile", "Kconfig", "build.sh"):
        (dest / name).write_text("# fake\n")
    (dest / "bin/rk35/rk3588_bl31_v1.45.elf").write_bytes(b"bl31")
    (dest / "bin/rk35/rk3588_ddr_lp4_v1.16.bin").write_bytes(b"ddr")
    (dest / "arch/arm64/configs/rockchip_linux_defconfig").write_text(
        "CONFIG_ARM64=y\nCONFIG_PREEMPT=y\n"
    )


def _fake_make(args: list[str], cwd: Path) -> None:
    if "Image" in args:
        boot = cwd / "arch" / "arm64" / "boot"
        boot.mkdir(parents=True, exist_ok=True)
        (boot / "Image").write_bytes(b"kernel")
    elif any(a.startswith("-j") for a in args) and "ARCH=arm64" not in args:
        (cwd / "u-boot-rockchip.bin").write_bytes(b"uboot")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a fresh FakeRunner."""
    return FakeRunner()


@pytest.fixture
def build_config_data(tmp_path) -> dict:
    """Raw data for a gaming build on Debian 12 with the 6.1 kernel."""
    return {
        "distro": "debian",
        "distro_version": "12",
        "kernel": "rockchip/6.1",
        "build_type": "gaming",
        "desktop": "lxqt",
        "gpu_driver": "g13p0",
        "hostname": "opi",
        "username": "gamer",
        "password": "userpass",
        "root_password": "rootpass",
        "output": str(tmp_path / "out.img"),
        "image_size_gb": 8,
    }
