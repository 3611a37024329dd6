"""MCP server implementation.

This module creates the FastMCP server and registers all tools.
Tools are thin wrappers around core sdflasher services.

- Tools return structured errors with codes, never raise
- Destructive writes require force=True
- One flash runs at a time; flash_status and cancel_flash act on it
"""

import threading
from typing import Annotated, Any

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from mcp_server.errors import (
    INTERNAL_ERROR,
    flash_error,
    from_exception,
    make_error,
    validation_error,
)
from mcp_server.schemas import (
    CancelFlashResponse,
    DetectImageResponse,
    DeviceSummary,
    FlashRecordSummary,
    FlashResponse,
    FlashStatusResponse,
    ListDevicesResponse,
    ListFlashRecordsResponse,
)
from sdflasher.flash.orchestrator import FlashOrchestrator
from sdflasher.flash.service import FlashHandle
from sdflasher.types import CompressionKind, FlashStatus

# Create the FastMCP server instance
mcp = FastMCP(
    name="sdflasher",
)

_state_lock = threading.Lock()
_orchestrator: FlashOrchestrator | None = None
_handle: FlashHandle | None = None


def _get_session_factory() -> Any:
    """Get the database session factory.

    Returns:
        Session factory callable.
    """
    from sdflasher.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _get_orchestrator() -> FlashOrchestrator:
    """Return the process-wide orchestrator, creating it on first use."""
    global _orchestrator

    from sdflasher.config import get_settings
    from sdflasher.privileged.session import init_session

    with _state_lock:
        if _orchestrator is None:
            settings = get_settings()
            _orchestrator = FlashOrchestrator(init_session(settings), settings)
        return _orchestrator


@mcp.tool()
def list_devices() -> ListDevicesResponse:
    """List removable block devices that can be flashed.

    Loop, device-mapper, RAM and zram devices are never listed, nor
    devices smaller than 64 MiB.

    Returns:
        ListDevicesResponse with devices in kernel order or error.
    """
    from sdflasher.flash.device import list_removable_devices

    try:
        orchestrator = _get_orchestrator()
        found = list_removable_devices(orchestrator.shell, orchestrator.settings)
    except Exception as e:
        return ListDevicesResponse(
            success=False, devices=[], total=0, error=from_exception(e).to_dict()
        )

    summaries = [
        DeviceSummary(
            path=d.path,
            name=d.name,
            size_bytes=d.size_bytes,
            size_formatted=d.size_formatted,
            is_removable=d.is_removable,
            partitions=list(d.partitions),
            label=d.label,
        )
        for d in found
    ]
    return ListDevicesResponse(success=True, devices=summaries, total=len(summaries))


@mcp.tool()
def detect_image(
    image_path: Annotated[str, Field(description="Path to the image file")],
) -> DetectImageResponse:
    """Detect an image's compression and estimate its decompressed size.

    Returns:
        DetectImageResponse with compression kind and size estimate.
    """
    from sdflasher.images.source import estimate_uncompressed_size, image_from_path

    try:
        image = image_from_path(image_path)
        estimate = estimate_uncompressed_size(image)
    except Exception as e:
        return DetectImageResponse(
            success=False, image_path=image_path, error=from_exception(e).to_dict()
        )

    return DetectImageResponse(
        success=True,
        image_path=image_path,
        compression=image.compression.value,
        declared_size_bytes=image.declared_size_bytes,
        estimated_size_bytes=estimate,
    )


@mcp.tool()
def flash_image(
    image_path: Annotated[str, Field(description="Path to the image file")],
    device_path: Annotated[
        str, Field(description="Device path (e.g., /dev/sdX). Must be whole device.")
    ],
    dry_run: Annotated[bool, Field(description="Validate without writing")] = False,
    force: Annotated[
        bool, Field(description="Confirm the write (required for actual writes)")
    ] = False,
    verify: Annotated[
        bool | None, Field(description="Run the verification stage")
    ] = None,
    compression: Annotated[
        str | None, Field(description="Override detection: none, gzip, xz or zip")
    ] = None,
    wait: Annotated[
        bool, Field(description="Block until the flash finishes")
    ] = False,
) -> FlashResponse:
    """Flash an image to a removable device.

    Gzip, xz and zip images are decompressed on the fly. Without wait,
    the write runs in the background; poll flash_status for progress.

    Use dry_run=True to validate without writing.

    Returns:
        FlashResponse with the plan, the started attempt, or its outcome.
    """
    global _handle

    from sdflasher.flash.service import plan_flash, start_flash
    from sdflasher.images.source import image_from_path

    compression_kind: CompressionKind | None = None
    if compression is not None:
        try:
            compression_kind = CompressionKind(compression.lower())
        except ValueError:
            return FlashResponse(
                success=False,
                device_path=device_path,
                error=validation_error(
                    f"Invalid compression: {compression}. "
                    "Valid values: none, gzip, xz, zip"
                ).to_dict(),
            )

    # Require force flag for actual writes (safety)
    if not dry_run and not force:
        error = validation_error(
            "Flash requires force=True for actual writes. "
            "Use dry_run=True to validate first."
        )
        return FlashResponse(
            success=False,
            device_path=device_path,
            error=error.to_dict(),
        )

    try:
        orchestrator = _get_orchestrator()
        settings = orchestrator.settings
        if verify is None:
            verify = settings.verify_after_flash

        plan = plan_flash(
            image_path,
            device_path,
            shell=orchestrator.shell,
            settings=settings,
            compression=compression_kind,
            verify=verify,
        )
        if dry_run:
            return FlashResponse(
                success=True,
                status="dry_run",
                image_path=plan.image_path,
                device_path=plan.device_path,
                compression=plan.compression.value,
                total_bytes=plan.estimated_size_bytes,
                device_size_bytes=plan.device_size_bytes,
                message="Dry-run mode: no write performed",
            )

        handle = start_flash(
            orchestrator,
            image_from_path(image_path, plan.compression),
            device_path,
            verify=verify,
            session_factory=_get_session_factory(),
        )
    except Exception as e:
        return FlashResponse(
            success=False,
            device_path=device_path,
            error=from_exception(e).to_dict(),
        )

    with _state_lock:
        _handle = handle

    if not wait:
        return FlashResponse(
            success=True,
            status="started",
            image_path=plan.image_path,
            device_path=device_path,
            compression=plan.compression.value,
            total_bytes=plan.estimated_size_bytes,
            device_size_bytes=plan.device_size_bytes,
        )

    result = handle.wait()
    if result is None:
        error = make_error(INTERNAL_ERROR, "Flash did not finish")
        return FlashResponse(success=False, device_path=device_path, error=error.to_dict())

    response = FlashResponse(
        success=result.success,
        status="finished",
        stage=result.stage.value,
        flash_record_id=result.flash_record_id,
        image_path=result.image_path,
        device_path=result.device_path,
        compression=plan.compression.value,
        bytes_written=result.bytes_written,
        total_bytes=result.total_bytes,
        device_size_bytes=plan.device_size_bytes,
        message=result.message,
    )
    if not result.success:
        response.error = flash_error(
            result.error_message or "Flash failed", error_code=result.error_code
        ).to_dict()
    return response


@mcp.tool()
def flash_status() -> FlashStatusResponse:
    """Report progress of the current (or most recent) flash.

    Returns:
        FlashStatusResponse with stage, byte counts, speed and ETA.
    """
    orchestrator = _get_orchestrator()
    progress = orchestrator.progress
    response = FlashStatusResponse(
        is_flashing=orchestrator.is_flashing,
        stage=progress.stage.value,
        stage_code=progress.stage.code,
        bytes_written=progress.bytes_written,
        total_bytes=progress.total_bytes,
        speed_bytes_per_sec=progress.speed_bytes_per_sec,
        percentage=round(progress.percentage, 1),
        eta_seconds=progress.eta_seconds,
    )
    handle = _handle
    if handle is not None:
        response.flash_record_id = handle.tracker.record_id
        if handle.done:
            response.message = handle.tracker.message
    return response


@mcp.tool()
def cancel_flash() -> CancelFlashResponse:
    """Cancel the running flash.

    Idempotent: cancelling twice, or when nothing runs, is not an error.

    Returns:
        CancelFlashResponse indicating whether a flash was running.
    """
    orchestrator = _get_orchestrator()
    was_flashing = orchestrator.is_flashing
    orchestrator.cancel()
    return CancelFlashResponse(
        success=True,
        cancel_requested=was_flashing,
        stage=orchestrator.stage.value,
    )


@mcp.tool()
def list_flash_records(
    device_path: Annotated[
        str | None, Field(description="Filter by device path")
    ] = None,
    status: Annotated[
        str | None,
        Field(description="Filter by status (pending/running/succeeded/failed/cancelled)"),
    ] = None,
    limit: Annotated[int, Field(description="Maximum records", ge=1, le=1000)] = 100,
) -> ListFlashRecordsResponse:
    """List the history of flash attempts, newest first.

    Returns:
        ListFlashRecordsResponse with records or error.
    """
    from sdflasher.flash.service import get_flash_records

    status_filter: FlashStatus | None = None
    if status:
        try:
            status_filter = FlashStatus(status)
        except ValueError:
            return ListFlashRecordsResponse(
                success=False,
                records=[],
                total=0,
                error=validation_error(f"Invalid status: {status}").to_dict(),
            )

    try:
        factory = _get_session_factory()
        with factory() as session:
            records = get_flash_records(
                session,
                device_path=device_path,
                status=status_filter,
                limit=limit,
            )
            summaries = [
                FlashRecordSummary(
                    id=r.id,
                    image_name=r.image_name,
                    device_path=r.device_path,
                    compression=r.compression,
                    status=r.status,
                    final_stage=r.final_stage,
                    bytes_written=r.bytes_written,
                    total_bytes=r.total_bytes,
                    requested_at=r.requested_at.isoformat()
                    if r.requested_at
                    else None,
                    finished_at=r.finished_at.isoformat() if r.finished_at else None,
                    error_type=r.error_type,
                    error_message=r.error_message,
                )
                for r in records
            ]
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return ListFlashRecordsResponse(
            success=False, records=[], total=0, error=error.to_dict()
        )

    return ListFlashRecordsResponse(
        success=True, records=summaries, total=len(summaries)
    )


__all__ = [
    "cancel_flash",
    "detect_image",
    "flash_image",
    "flash_status",
    "list_devices",
    "list_flash_records",
    "mcp",
]
