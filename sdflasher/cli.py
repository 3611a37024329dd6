"""Thin CLI wrapper for sdflasher.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from sdflasher import __version__
from sdflasher.config import Settings, get_settings, print_settings_json
from sdflasher.logging_config import configure_logging
from sdflasher.privileged.shell import PrivilegedShell
from sdflasher.types import CompressionKind, FlashStage

app = typer.Typer(
    name="sdflasher",
    help="SD card flasher - write compressed disk images to removable media",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sdflasher version {__version__}")
        raise typer.Exit()


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
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """SD card flasher - write compressed disk images to removable media."""
    configure_logging(log_level or get_settings().log_level)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _get_shell(settings: Settings) -> PrivilegedShell:
    from sdflasher.privileged.session import init_session

    return init_session(settings)


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
        typer.echo(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Storage:[/bold]")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Copy loop:[/bold]")
        console.print(f"  Chunk size:          {settings.chunk_size}")
        console.print(f"  Progress interval:   {settings.progress_interval}s")
        console.print()
        console.print("[bold]Devices:[/bold]")
        console.print(f"  Minimum size:        {settings.min_device_size}")
        console.print(f"  Block namespace:     {settings.sys_block_dir}")
        console.print(f"  Device nodes:        {settings.dev_dir}")
        console.print(f"  Mount table:         {settings.mounts_path}")
        console.print()
        console.print("[bold]Flash:[/bold]")
        console.print(f"  Strict unmount:      {settings.strict_unmount}")
        console.print(f"  Verify after flash:  {settings.verify_after_flash}")
        console.print(f"  Use sudo:            {settings.use_sudo}")
        console.print(f"  Command timeout:     {settings.command_timeout}s")


@app.command()
def devices(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List removable block devices that can be flashed."""
    from sdflasher.flash.device import (
        DeviceCatalogError,
        devices_to_json,
        list_removable_devices,
    )

    settings = get_settings()
    try:
        found = list_removable_devices(_get_shell(settings), settings)
    except DeviceCatalogError as e:
        console.print(f"[red]Cannot list devices: {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(devices_to_json(found))
        return

    if not found:
        console.print("[yellow]No removable devices found[/yellow]")
        return

    table = Table(title="Removable devices")
    table.add_column("Device")
    table.add_column("Size", justify="right")
    table.add_column("Removable")
    table.add_column("Partitions")
    for device in found:
        table.add_row(
            device.path,
            device.size_formatted,
            "yes" if device.is_removable else "no",
            ", ".join(device.partitions) or "-",
        )
    console.print(table)


@app.command()
def detect(
    image_path: Annotated[str, typer.Argument(help="Path to image file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Detect an image's compression and estimate its decompressed size."""
    from sdflasher.images.source import (
        ImageNotFoundError,
        estimate_uncompressed_size,
        image_from_path,
    )
    from sdflasher.types import format_bytes

    try:
        image = image_from_path(image_path)
    except ImageNotFoundError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1) from None

    estimate = estimate_uncompressed_size(image)
    if json_output:
        _echo_json(
            {
                "name": image.name,
                "path": image.path,
                "compression": image.compression.value,
                "declared_size_bytes": image.declared_size_bytes,
                "estimated_size_bytes": estimate,
            }
        )
    else:
        console.print(f"[bold]{image.display_name}[/bold]")
        console.print(f"  Compression:     {image.compression.display_name}")
        console.print(f"  File size:       {image.size_formatted}")
        console.print(f"  Estimated size:  {format_bytes(estimate)}")


@app.command()
def unmount(
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/sdX)")],
) -> None:
    """Unmount every filesystem mounted from a device."""
    from sdflasher.flash.unmount import UnmountCoordinator, UnmountFailureError

    settings = get_settings()
    coordinator = UnmountCoordinator(_get_shell(settings), settings)
    try:
        result = coordinator.unmount(device)
    except UnmountFailureError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1) from None

    if not result.success:
        console.print(f"[red]Unmount failed: {result.error_message}[/red]")
        raise typer.Exit(code=1)

    for mount_point in result.unmounted:
        console.print(f"[green]✓ Unmounted {mount_point}[/green]")
    for mount_point in result.failed:
        console.print(f"[yellow]! Still mounted: {mount_point}[/yellow]")
    if not result.unmounted and not result.failed:
        console.print(f"Nothing mounted from {device}")


flash_app = typer.Typer(help="Flash images to removable media")
app.add_typer(flash_app, name="flash")


class _ProgressCallback:
    """Render flash events as a Rich progress bar."""

    def __init__(self, progress: Progress, task_id: TaskID) -> None:
        self.progress = progress
        self.task_id = task_id

    def on_stage_changed(self, stage_code: int) -> None:
        stage = FlashStage.from_code(stage_code)
        self.progress.update(self.task_id, description=stage.display_name)

    def on_progress(
        self, bytes_written: int, total_bytes: int, speed_bytes_per_sec: int
    ) -> None:
        self.progress.update(
            self.task_id, completed=bytes_written, total=max(total_bytes, bytes_written)
        )

    def on_complete(self, success: bool, message: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


def _result_to_dict(result: Any) -> dict[str, Any]:
    return {
        "success": result.success,
        "stage": result.stage.value,
        "image_path": result.image_path,
        "device_path": result.device_path,
        "bytes_written": result.bytes_written,
        "total_bytes": result.total_bytes,
        "message": result.message,
        "flash_record_id": result.flash_record_id,
        "error_message": result.error_message,
        "error_code": result.error_code,
    }


@flash_app.command("image")
def flash_image_cmd(
    image_path: Annotated[str, typer.Argument(help="Path to image file")],
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/sdX)")],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be done without writing"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    verify: Annotated[
        bool | None,
        typer.Option("--verify/--no-verify", help="Run the verification stage"),
    ] = None,
    compression: Annotated[
        CompressionKind | None,
        typer.Option("--compression", "-c", help="Override compression detection"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Flash an image file to a removable device.

    Gzip, xz and zip images are decompressed on the fly.
    Requires an explicit whole-device path (e.g., /dev/sdb, /dev/mmcblk0).

    Use --dry-run to see what would happen without writing.
    Press Ctrl-C during the write to cancel.
    """
    from sdflasher.db import create_all_tables, get_engine, get_session_factory
    from sdflasher.flash.orchestrator import FlashError, FlashOrchestrator
    from sdflasher.flash.service import FlashResult, plan_flash, start_flash
    from sdflasher.images.source import ImageNotFoundError, image_from_path
    from sdflasher.types import format_bytes

    settings = get_settings()
    if verify is None:
        verify = settings.verify_after_flash
    shell = _get_shell(settings)

    try:
        plan = plan_flash(
            image_path,
            device,
            shell=shell,
            settings=settings,
            compression=compression,
            verify=verify,
        )
    except (ImageNotFoundError, FlashError) as e:
        if json_output:
            _echo_json(
                {"success": False, "error_code": e.error_code, "error_message": e.message}
            )
        else:
            console.print(f"[red]✗ {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if dry_run:
        if json_output:
            _echo_json(
                {
                    "success": True,
                    "dry_run": True,
                    "image_path": plan.image_path,
                    "compression": plan.compression.value,
                    "estimated_size_bytes": plan.estimated_size_bytes,
                    "device_path": plan.device_path,
                    "device_size_bytes": plan.device_size_bytes,
                    "verify": plan.verify,
                }
            )
        else:
            console.print("[green]✓ Dry-run validation passed[/green]")
            console.print(f"  Image: {plan.image_path}")
            console.print(f"  Compression: {plan.compression.display_name}")
            console.print(
                f"  Would write about {format_bytes(plan.estimated_size_bytes)}"
            )
            console.print(f"  Device: {plan.device_path}")
        return

    # Confirmation prompt unless force
    if not force:
        console.print(f"[bold red]WARNING:[/bold red] This will OVERWRITE {device}")
        console.print(f"  Image: {image_path}")
        confirm = typer.confirm("Are you sure you want to continue?", default=False)
        if not confirm:
            console.print("[yellow]Aborted[/yellow]")
            raise typer.Exit(code=0)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    orchestrator = FlashOrchestrator(shell, settings)
    image = image_from_path(image_path, plan.compression)

    progress = Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
        disable=json_output,
    )
    result: FlashResult | None = None
    with progress:
        task_id = progress.add_task("Preparing", total=plan.estimated_size_bytes)
        handle = start_flash(
            orchestrator,
            image,
            device,
            verify=verify,
            callback=_ProgressCallback(progress, task_id),
            session_factory=factory,
        )
        while result is None:
            try:
                result = handle.wait(0.2)
            except KeyboardInterrupt:
                console.print("[yellow]Cancelling...[/yellow]")
                handle.cancel()

    if json_output:
        _echo_json(_result_to_dict(result))
    elif result.success:
        console.print("[green]✓ Flash succeeded[/green]")
        console.print(f"  {result.message}")
        if result.flash_record_id:
            console.print(f"  Record ID: {result.flash_record_id}")
    elif result.stage is FlashStage.CANCELLED:
        console.print(f"[yellow]{result.message}[/yellow]")
    else:
        console.print("[red]✗ Flash failed[/red]")
        if result.error_message:
            console.print(f"  Error: {result.error_message}")

    if not result.success:
        raise typer.Exit(code=1)


@flash_app.command("list")
def flash_list(
    device_path: Annotated[
        str | None,
        typer.Option("--device", "-d", help="Filter by device path"),
    ] = None,
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
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List flash records.

    Shows history of flash operations with optional filters.
    """
    from sdflasher.db import create_all_tables, get_engine, get_session_factory
    from sdflasher.flash.service import get_flash_records
    from sdflasher.types import FlashStatus

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    # Parse status filter
    status_filter: FlashStatus | None = None
    if status:
        try:
            status_filter = FlashStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed, cancelled")
            raise typer.Exit(code=1) from None

    with factory() as session:
        records = get_flash_records(
            session,
            device_path=device_path,
            status=status_filter,
            limit=limit,
        )

        if not records:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No flash records found[/yellow]")
            return

        if json_output:
            _echo_json(
                [
                    {
                        "id": r.id,
                        "image_name": r.image_name,
                        "image_path": r.image_path,
                        "compression": r.compression,
                        "device_path": r.device_path,
                        "status": r.status,
                        "final_stage": r.final_stage,
                        "bytes_written": r.bytes_written,
                        "total_bytes": r.total_bytes,
                        "verify_requested": r.verify_requested,
                        "requested_at": r.requested_at.isoformat()
                        if r.requested_at
                        else None,
                        "started_at": r.started_at.isoformat()
                        if r.started_at
                        else None,
                        "finished_at": r.finished_at.isoformat()
                        if r.finished_at
                        else None,
                        "error_type": r.error_type,
                        "error_message": r.error_message,
                    }
                    for r in records
                ]
            )
        else:
            console.print(f"[bold]Found {len(records)} flash record(s):[/bold]")
            console.print()
            for r in records:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "pending": "yellow",
                    "cancelled": "magenta",
                }.get(r.status, "white")
                console.print(f"  [{status_color}]Flash #{r.id}[/{status_color}]")
                console.print(f"    Image: {r.image_name}")
                console.print(f"    Device: {r.device_path}")
                console.print(f"    Status: {r.status} ({r.final_stage})")
                console.print(f"    Bytes written: {r.bytes_written}")
                console.print(
                    f"    Requested: {r.requested_at.isoformat() if r.requested_at else 'N/A'}"
                )
                if r.error_message:
                    console.print(f"    Error: {r.error_message}")
                console.print()


if __name__ == "__main__":
    app()
