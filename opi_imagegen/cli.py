"""Thin CLI wrapper for opi_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from opi_imagegen import __version__
from opi_imagegen.config import get_settings, print_settings_json

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from opi_imagegen.artifacts.cache import ArtifactCache
    from opi_imagegen.builds.pipeline import Pipeline
    from opi_imagegen.builds.progress import ProgressSnapshot
    from opi_imagegen.config import Settings
    from opi_imagegen.devicetree.generator import DeviceTreeGenerator

app = typer.Typer(
    name="opi-imagegen",
    help="Orange Pi 5 Plus image generator - build bootable images and device trees",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "cancelled": "magenta",
    "running": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"opi-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through rich at the given level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=False, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Orange Pi 5 Plus image generator."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Workspace:           {settings.workspace_dir}")
    console.print(f"  Build directory:     {settings.build_dir}")
    console.print(f"  Log directory:       {settings.log_dir}")
    console.print(f"  Mount root:          {settings.mount_root}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Update sources:      {settings.update_sources}")
    console.print(f"  Keep rootfs:         {settings.keep_rootfs_on_failure}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Toolchain:[/bold]")
    console.print(f"  Board:               {settings.board}")
    console.print(f"  Cross compiler:      {settings.cross_compile}")
    console.print(f"  Make jobs:           {settings.make_jobs}")
    console.print(f"  DTC binary:          {settings.dtc_binary}")


def _session_factory() -> sessionmaker[Session]:
    from opi_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _make_cache(settings: Settings) -> ArtifactCache:
    from opi_imagegen.artifacts.cache import ArtifactCache
    from opi_imagegen.process import CommandLog, CommandRunner

    runner = CommandRunner(
        CommandLog(settings.log_dir),
        poll_interval=settings.poll_interval,
        grace_period=settings.cancel_grace_period,
    )
    return ArtifactCache(
        settings.workspace_dir,
        runner,
        offline=settings.offline,
        gpu_blob_base_url=settings.gpu_blob_base_url,
    )


# Build commands

build_app = typer.Typer(help="Run builds and inspect build history")
app.add_typer(build_app, name="build")


def _follow(pipeline: Pipeline, poll_interval: float, quiet: bool) -> ProgressSnapshot:
    """Poll a running pipeline until its worker exits.

    Ctrl-C requests cancellation and keeps waiting so cleanup can finish.
    """
    seen = 0
    while True:
        try:
            done = pipeline.join(timeout=poll_interval)
        except KeyboardInterrupt:
            console.print("[yellow]Cancelling build, waiting for cleanup...[/yellow]")
            pipeline.cancel()
            continue
        snapshot = pipeline.progress.snapshot()
        if not quiet:
            for message in snapshot.messages[seen:]:
                console.print(f"[cyan][{snapshot.percentage:3d}%][/cyan] {message}")
        seen = len(snapshot.messages)
        if done:
            return snapshot


@build_app.command("run")
def build_run(
    config_file: Annotated[
        Path,
        typer.Argument(help="Build configuration file (.yaml, .yml or .json)"),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run a build from a configuration file.

    Progress is printed as each stage starts. Press Ctrl-C to cancel;
    mounts and loop devices are still released.
    """
    import yaml
    from pydantic import ValidationError

    from opi_imagegen.buildconfig.io import load_build_config
    from opi_imagegen.builds.service import finish_build, start_build, workspace_lock
    from opi_imagegen.errors import ImageGenError

    settings = get_settings()

    try:
        build_config = load_build_config(config_file)
    except FileNotFoundError:
        console.print(f"[red]Configuration file not found: {config_file}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        console.print("[red]Invalid build configuration:[/red]")
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"])
            console.print(f"  {loc}: {err['msg']}")
        raise typer.Exit(code=1) from None
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Failed to load configuration: {e}[/red]")
        raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        try:
            with workspace_lock(settings.workspace_dir):
                run, pipeline = start_build(session, build_config, settings)
                snapshot = _follow(pipeline, settings.poll_interval, quiet=json_output)
                run = finish_build(session, run, pipeline)
        except ImageGenError as e:
            console.print(f"[red]Build failed to start: {escape(e.message)}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            output = run.to_dict()
            output["progress"] = snapshot.to_dict()
            console.print_json(data=output)
        else:
            color = STATUS_COLORS.get(run.status, "white")
            console.print(f"[{color}]Build #{run.id} {run.status}[/{color}]")
            console.print(f"  Output: {run.output}")
            if run.failed_stage:
                console.print(f"  Stage: {run.failed_stage}")
            if run.error_message:
                console.print(f"  Error: {escape(run.error_message)}")
            if pipeline.error is not None:
                console.print(f"  Kind: {pipeline.error.error_kind}")
                if pipeline.error.log_path is not None:
                    console.print(f"  Log: {pipeline.error.log_path}")

        if run.status != "succeeded":
            raise typer.Exit(code=1)


@build_app.command("list")
def build_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending/running/succeeded/failed/cancelled)",
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of runs to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded build runs, newest first."""
    from opi_imagegen.builds.service import list_builds
    from opi_imagegen.types import RunStatus

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(f"Valid values: {', '.join(s.value for s in RunStatus)}")
            raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        runs = list_builds(session, limit=limit, status=status_filter)

        if json_output:
            console.print_json(data=[r.to_dict() for r in runs])
            return

        if not runs:
            console.print("[yellow]No builds found[/yellow]")
            return

        table = Table(title=f"{len(runs)} build(s)")
        table.add_column("ID", justify="right")
        table.add_column("Status")
        table.add_column("Created")
        table.add_column("Output")
        table.add_column("Failed stage")
        for r in runs:
            color = STATUS_COLORS.get(r.status, "white")
            table.add_row(
                str(r.id),
                f"[{color}]{r.status}[/{color}]",
                r.created_at.isoformat(timespec="seconds") if r.created_at else "",
                r.output,
                r.failed_stage or "",
            )
        console.print(table)


@build_app.command("show")
def build_show(
    build_id: Annotated[int, typer.Argument(help="Build run ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a build run."""
    from opi_imagegen.builds.service import BuildNotFoundError, get_build

    factory = _session_factory()
    with factory() as session:
        try:
            run = get_build(session, build_id)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            console.print_json(data=run.to_dict())
            return

        color = STATUS_COLORS.get(run.status, "white")
        console.print(f"[bold]Build #{run.id}[/bold] [{color}]{run.status}[/{color}]")
        console.print(f"  Output: {run.output}")
        console.print(f"  Started: {run.started_at or 'N/A'}")
        console.print(f"  Finished: {run.finished_at or 'N/A'}")
        console.print(f"  Logs: {run.log_dir or 'N/A'}")
        if run.failed_stage:
            console.print(f"  Failed stage: {run.failed_stage}")
        if run.error_code:
            console.print(f"  Error code: {run.error_code}")
        if run.error_message:
            console.print(f"  Error: {escape(run.error_message)}")
        if run.config_snapshot:
            console.print("  Config:")
            for key, value in run.config_snapshot.items():
                console.print(f"    {key}: {value}")


# Artifact commands

artifacts_app = typer.Typer(help="Inspect and fetch workspace artifacts")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("status")
def artifacts_status(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show which artifacts are present in the workspace."""
    cache = _make_cache(get_settings())
    statuses = cache.status()

    if json_output:
        console.print_json(data=[s.to_dict() for s in statuses])
        return

    table = Table(title=f"Artifacts in {cache.workspace_root}")
    table.add_column("Category")
    table.add_column("Identifier")
    table.add_column("Method")
    table.add_column("Present")
    table.add_column("Path")
    for s in statuses:
        present = "[green]yes[/green]" if s.present else "[red]no[/red]"
        table.add_row(
            s.category.value, s.identifier, s.method.value, present, str(s.path)
        )
    console.print(table)


@artifacts_app.command("ensure")
def artifacts_ensure(
    category: Annotated[
        str, typer.Argument(help="Artifact category (kernel/uboot/firmware/gpu)")
    ],
    identifier: Annotated[
        str, typer.Argument(help="Artifact identifier, e.g. 'rockchip/6.1'")
    ],
    update: Annotated[
        bool,
        typer.Option("--update", help="Pull the latest commits if already present"),
    ] = False,
) -> None:
    """Fetch an artifact into the workspace unless it is already present."""
    from opi_imagegen.artifacts.sources import find_source
    from opi_imagegen.errors import ImageGenError
    from opi_imagegen.types import ArtifactCategory

    try:
        artifact_category = ArtifactCategory(category)
    except ValueError:
        console.print(f"[red]Invalid category: {category}[/red]")
        console.print(f"Valid values: {', '.join(c.value for c in ArtifactCategory)}")
        raise typer.Exit(code=1) from None

    cache = _make_cache(get_settings())
    try:
        source = find_source(artifact_category, identifier)
        if update and cache.is_present(source):
            if not cache.update(artifact_category, identifier):
                console.print("[yellow]Update failed; keeping existing copy[/yellow]")
        path = cache.ensure(artifact_category, identifier)
    except ImageGenError as e:
        console.print(f"[red]{escape(e.message)}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]✓ {category}/{identifier}[/green] at {path}")


# Device tree commands

devicetree_app = typer.Typer(help="Generate RK3588 device-tree sources")
app.add_typer(devicetree_app, name="devicetree")


def _make_generator(settings: Settings, output_dir: Path | None) -> DeviceTreeGenerator:
    from opi_imagegen.devicetree.generator import DeviceTreeGenerator
    from opi_imagegen.process import CommandLog, CommandRunner

    runner = CommandRunner(CommandLog(settings.log_dir))
    return DeviceTreeGenerator(
        output_dir or settings.build_dir / "devicetree",
        runner,
        board=settings.board,
        dtc_binary=settings.dtc_binary,
    )


@devicetree_app.command("generate")
def devicetree_generate(
    kernel_version: Annotated[
        str, typer.Option("--kernel-version", "-k", help="Kernel version, e.g. 6.1")
    ] = "6.1",
    distro: Annotated[
        str, typer.Option("--distro", "-d", help="Distribution name")
    ] = "debian",
    distro_version: Annotated[
        str, typer.Option("--distro-version", help="Distribution version")
    ] = "12",
    gpu_driver: Annotated[
        str, typer.Option("--gpu-driver", "-g", help="GPU driver id")
    ] = "g13p0",
    build_type: Annotated[
        str,
        typer.Option("--build-type", "-t", help="Build type or alias (e.g. gamescope-pi)"),
    ] = "desktop",
    output_dir: Annotated[
        Path | None, typer.Option("--output-dir", "-o", help="Output directory")
    ] = None,
    compile_dtb: Annotated[
        bool, typer.Option("--compile", help="Compile the source with dtc")
    ] = False,
) -> None:
    """Generate the device tree for one build variant."""
    from opi_imagegen.errors import ImageGenError
    from opi_imagegen.types import GpuDriver

    try:
        driver = GpuDriver(gpu_driver)
    except ValueError:
        console.print(f"[red]Invalid GPU driver: {gpu_driver}[/red]")
        console.print(f"Valid values: {', '.join(d.value for d in GpuDriver)}")
        raise typer.Exit(code=1) from None

    from opi_imagegen.devicetree.generator import check_dtc_available

    settings = get_settings()
    if compile_dtb and not check_dtc_available(settings.dtc_binary):
        console.print(f"[red]Device tree compiler not available: {settings.dtc_binary}[/red]")
        console.print("Install it with: apt-get install device-tree-compiler")
        raise typer.Exit(code=1)

    generator = _make_generator(settings, output_dir)
    try:
        source = generator.generate_for_build(
            kernel_version, distro, distro_version, driver, build_type
        )
        console.print(f"[green]✓ Generated[/green] {source}")
        if compile_dtb:
            blob = generator.compile(source)
            console.print(f"[green]✓ Compiled[/green] {blob}")
    except ImageGenError as e:
        console.print(f"[red]{escape(e.message)}[/red]")
        raise typer.Exit(code=1) from None


@devicetree_app.command("variants")
def devicetree_variants(
    output_dir: Annotated[
        Path | None, typer.Option("--output-dir", "-o", help="Output directory")
    ] = None,
) -> None:
    """Generate every supported device-tree variant."""
    generator = _make_generator(get_settings(), output_dir)
    paths = generator.generate_all_variants()
    console.print(f"[green]Generated {len(paths)} device tree file(s)[/green]")
    for path in paths:
        console.print(f"  {path.name}")


@app.command()
def devices(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List NVMe and eMMC disks that can be written to."""
    from opi_imagegen.image.device import detect_devices, get_device_size, get_mount_points

    found = [
        {
            "path": path,
            "size_bytes": get_device_size(path),
            "mount_points": get_mount_points(path),
        }
        for path in detect_devices()
    ]

    if json_output:
        console.print_json(data=found)
        return
    if not found:
        console.print("[yellow]No NVMe or eMMC devices found[/yellow]")
        return
    for dev in found:
        size = dev["size_bytes"]
        size_text = f"{size / 1024**3:.1f} GiB" if size else "unknown size"
        console.print(f"  [green]{dev['path']}[/green] ({size_text})")
        if dev["mount_points"]:
            console.print(f"    [yellow]Mounted at: {', '.join(dev['mount_points'])}[/yellow]")


if __name__ == "__main__":
    app()
