"""Flash operation endpoints.

- POST /flash - Start flashing an image to a device (or dry-run it)
- GET /flash/status - Progress of the current or last attempt
- POST /flash/cancel - Cancel the running attempt
- GET /flash - List flash records

Writes are destructive: a real flash requires force=true.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from sdflasher.config import Settings
from sdflasher.flash.orchestrator import (
    AlreadyInProgressError,
    DeviceNotFoundError,
    FlashOrchestrator,
    InvalidTargetError,
    SizeExceededError,
)
from sdflasher.flash.service import (
    ConfirmationRequiredError,
    get_flash_records,
    plan_flash,
    start_flash,
)
from sdflasher.images.source import ImageNotFoundError, image_from_path
from sdflasher.types import CompressionKind, FlashStatus
from web.deps import get_app_settings, get_db, get_orchestrator, get_session_factory

router = APIRouter()

# Starlette renamed the 422 constant between releases
UNPROCESSABLE = 422


class FlashStartRequest(BaseModel):
    """Request body for flash operation."""

    image_path: str
    device_path: str
    compression: CompressionKind | None = None
    verify: bool | None = None
    dry_run: bool = False
    force: bool = False


def _error(status_code: int, error: Any) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": error.error_code, "message": error.message},
    )


def _flash_record_to_dict(record: Any) -> dict[str, Any]:
    """Convert a flash record to a dictionary."""
    return {
        "id": record.id,
        "image_name": record.image_name,
        "image_path": record.image_path,
        "compression": record.compression,
        "device_path": record.device_path,
        "device_size_bytes": record.device_size_bytes,
        "status": record.status,
        "final_stage": record.final_stage,
        "bytes_written": record.bytes_written,
        "total_bytes": record.total_bytes,
        "verify_requested": record.verify_requested,
        "requested_at": record.requested_at.isoformat()
        if record.requested_at
        else None,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "error_type": record.error_type,
        "error_message": record.error_message,
    }


@router.get("")
def list_flash_records_endpoint(
    device: str | None = Query(None, description="Filter by device path"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List flash records.

    Args:
        device: Filter by device path.
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of flash records, newest first.
    """
    status_filter: FlashStatus | None = None
    if status:
        try:
            status_filter = FlashStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: "
                    "pending, running, succeeded, failed, cancelled",
                },
            ) from None

    records = get_flash_records(
        db,
        device_path=device,
        status=status_filter,
        limit=limit,
    )
    return [_flash_record_to_dict(r) for r in records]


@router.post("", status_code=http_status.HTTP_202_ACCEPTED)
def start_flash_endpoint(
    body: FlashStartRequest,
    request: Request,
    orchestrator: FlashOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> dict[str, Any]:
    """Start flashing an image to a device.

    The write runs in the background; poll GET /flash/status for progress.
    Use dry_run=true to validate without writing.

    Raises:
        HTTPException: 404 for a missing image or device, 422 for an
            oversize image, an invalid target or missing force, 409 while
            another flash runs.
    """
    verify = body.verify if body.verify is not None else settings.verify_after_flash

    try:
        plan = plan_flash(
            body.image_path,
            body.device_path,
            shell=orchestrator.shell,
            settings=settings,
            compression=body.compression,
            verify=verify,
        )
    except (ImageNotFoundError, DeviceNotFoundError) as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None
    except (InvalidTargetError, SizeExceededError) as e:
        raise _error(UNPROCESSABLE, e) from None

    if body.dry_run:
        return {
            "status": "dry_run",
            "image_path": plan.image_path,
            "compression": plan.compression.value,
            "estimated_size_bytes": plan.estimated_size_bytes,
            "device_path": plan.device_path,
            "device_size_bytes": plan.device_size_bytes,
            "verify": plan.verify,
        }

    if not body.force:
        raise _error(
            UNPROCESSABLE,
            ConfirmationRequiredError(body.device_path),
        )

    try:
        image = image_from_path(body.image_path, plan.compression)
        handle = start_flash(
            orchestrator,
            image,
            body.device_path,
            verify=verify,
            session_factory=session_factory,
        )
    except AlreadyInProgressError as e:
        raise _error(http_status.HTTP_409_CONFLICT, e) from None
    except ImageNotFoundError as e:
        raise _error(http_status.HTTP_404_NOT_FOUND, e) from None

    request.app.state.flash_handle = handle
    return {
        "status": "started",
        "image_path": plan.image_path,
        "device_path": plan.device_path,
        "total_bytes": plan.estimated_size_bytes,
    }


@router.get("/status")
def flash_status_endpoint(
    request: Request,
    orchestrator: FlashOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Progress of the current (or most recent) flash attempt."""
    progress = orchestrator.progress
    data: dict[str, Any] = {
        "is_flashing": orchestrator.is_flashing,
        "stage": progress.stage.value,
        "stage_code": progress.stage.code,
        "bytes_written": progress.bytes_written,
        "total_bytes": progress.total_bytes,
        "speed_bytes_per_sec": progress.speed_bytes_per_sec,
        "percentage": round(progress.percentage, 1),
        "eta_seconds": progress.eta_seconds,
        "message": None,
        "flash_record_id": None,
    }
    handle = getattr(request.app.state, "flash_handle", None)
    if handle is not None:
        data["flash_record_id"] = handle.tracker.record_id
        if handle.done:
            data["message"] = handle.tracker.message
    return data


@router.post("/cancel")
def cancel_flash_endpoint(
    orchestrator: FlashOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Request cancellation of the running flash.

    Idempotent; cancelling when nothing runs is not an error.
    """
    was_flashing = orchestrator.is_flashing
    orchestrator.cancel()
    return {"cancel_requested": was_flashing, "stage": orchestrator.stage.value}

