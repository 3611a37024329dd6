"""Flash service layer.

This module provides high-level flash operations on top of the
orchestrator:
- plan_flash: Validate an image and device without writing (dry-run)
- start_flash: Launch a background attempt and return a handle
- flash_image: Flash an image file and block until it finishes
- FlashRecord persistence for every attempt

Frontends (CLI, HTTP, MCP) only call into this module and the device
catalog.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from sdflasher.config import Settings, get_settings
from sdflasher.flash.device import get_device_size
from sdflasher.flash.models import FlashRecord
from sdflasher.flash.orchestrator import (
    AlreadyInProgressError,
    DeviceNotFoundError,
    FlashCallback,
    FlashError,
    FlashOrchestrator,
    FlashRequest,
    InvalidTargetError,
    SizeExceededError,
    describe_error,
    validate_target,
)
from sdflasher.images.source import (
    ImageFile,
    ImageNotFoundError,
    estimate_uncompressed_size,
    image_from_path,
)
from sdflasher.privileged.shell import PrivilegedShell
from sdflasher.types import CompressionKind, FlashStage, FlashStatus

logger = logging.getLogger(__name__)


class FlashServiceError(Exception):
    """Base exception for flash service errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ConfirmationRequiredError(FlashServiceError):
    """A destructive write was requested without explicit confirmation."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Flashing {device_path} erases it; pass force to confirm",
            error_code="CONFIRMATION_REQUIRED",
        )
        self.device_path = device_path


@dataclass
class FlashPlan:
    """Plan for a flash operation (used for dry-run).

    Attributes:
        image_name: File name of the image.
        image_path: Path to the image file, if local.
        compression: Resolved compression kind.
        declared_size_bytes: Size of the image as stored.
        estimated_size_bytes: Expected decompressed size.
        device_path: Path to the target device.
        device_size_bytes: Device capacity, if it could be read.
        verify: Whether verification will run.
    """

    image_name: str
    image_path: str | None
    compression: CompressionKind
    declared_size_bytes: int
    estimated_size_bytes: int
    device_path: str
    device_size_bytes: int | None
    verify: bool


@dataclass
class FlashResult:
    """Result of a flash operation.

    Attributes:
        success: Whether the flash succeeded.
        stage: Terminal stage reached.
        image_path: Path (or name) of the flashed image.
        device_path: Path to the target device.
        bytes_written: Number of bytes written.
        total_bytes: Estimated total bytes.
        message: Outcome message.
        flash_record_id: ID of the FlashRecord (if persisted).
        error_message: Error message if flash failed.
        error_code: Error code if flash failed.
    """

    success: bool
    stage: FlashStage
    image_path: str
    device_path: str
    bytes_written: int
    total_bytes: int
    message: str
    flash_record_id: int | None = None
    error_message: str | None = None
    error_code: str | None = None


def plan_flash(
    image_path: str | Path,
    device_path: str,
    *,
    shell: PrivilegedShell,
    settings: Settings | None = None,
    compression: CompressionKind | None = None,
    verify: bool | None = None,
) -> FlashPlan:
    """Create a plan for a flash operation.

    This validates inputs and computes what would happen without
    touching the device. Useful for dry-run mode.

    Args:
        image_path: Path to the image file.
        device_path: Path to the target device.
        shell: Privileged shell capability.
        settings: Application settings (optional).
        compression: Explicit compression kind (detected when None).
        verify: Whether to verify (defaults to settings).

    Returns:
        FlashPlan with operation details.

    Raises:
        ImageNotFoundError: Image file not found.
        DeviceNotFoundError: Device path does not exist.
        InvalidTargetError: Device is a partition, not a block device, or
            the system disk.
        SizeExceededError: Estimated image size exceeds the device.
    """
    if settings is None:
        settings = get_settings()
    if verify is None:
        verify = settings.verify_after_flash

    image = image_from_path(image_path, compression)
    return _plan_image(image, device_path, shell=shell, settings=settings, verify=verify)


def _plan_image(
    image: ImageFile,
    device_path: str,
    *,
    shell: PrivilegedShell,
    settings: Settings,
    verify: bool,
) -> FlashPlan:
    estimate = estimate_uncompressed_size(image)

    if not shell.exists(device_path):
        raise DeviceNotFoundError(device_path)
    device_path = validate_target(shell, device_path, settings)

    device_size = get_device_size(shell, device_path, settings)
    if device_size is not None and estimate > device_size:
        raise SizeExceededError(estimate, device_size)

    return FlashPlan(
        image_name=image.name,
        image_path=image.path,
        compression=image.compression,
        declared_size_bytes=image.declared_size_bytes,
        estimated_size_bytes=estimate,
        device_path=device_path,
        device_size_bytes=device_size,
        verify=verify,
    )


class FlashTracker:
    """Callback that tracks an attempt and persists its FlashRecord.

    Events are forwarded to an optional inner callback. When a session
    factory is given, a FlashRecord is created when the attempt starts
    and updated when it ends.

    Args:
        image: Image being flashed.
        request: Flash request submitted to the orchestrator.
        orchestrator: Orchestrator running the attempt (for error codes).
        inner: Callback to forward events to.
        session_factory: Session factory for FlashRecord persistence.
    """

    def __init__(
        self,
        image: ImageFile,
        request: FlashRequest,
        orchestrator: FlashOrchestrator,
        inner: FlashCallback | None = None,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self.image = image
        self.request = request
        self.orchestrator = orchestrator
        self.inner = inner
        self.session_factory = session_factory
        self.stage = FlashStage.IDLE
        self.bytes_written = 0
        self.total_bytes = request.total_size_estimate
        self.speed_bytes_per_sec = 0
        self.success = False
        self.message = ""
        self.error_message: str | None = None
        self.record_id: int | None = None
        self.done = threading.Event()

    def on_stage_changed(self, stage_code: int) -> None:
        self.stage = FlashStage.from_code(stage_code)
        if self.stage is FlashStage.PREPARING:
            self._create_record()
        if self.inner is not None:
            self.inner.on_stage_changed(stage_code)

    def on_progress(
        self, bytes_written: int, total_bytes: int, speed_bytes_per_sec: int
    ) -> None:
        self.bytes_written = bytes_written
        self.total_bytes = total_bytes
        self.speed_bytes_per_sec = speed_bytes_per_sec
        if self.inner is not None:
            self.inner.on_progress(bytes_written, total_bytes, speed_bytes_per_sec)

    def on_error(self, message: str) -> None:
        self.error_message = message
        if self.inner is not None:
            self.inner.on_error(message)

    def on_complete(self, success: bool, message: str) -> None:
        self.success = success
        self.message = message
        # Progress events are rate limited; the snapshot has the exact count
        self.bytes_written = max(
            self.bytes_written, self.orchestrator.progress.bytes_written
        )
        try:
            self._finish_record()
            if self.inner is not None:
                self.inner.on_complete(success, message)
        finally:
            self.done.set()

    def ensure_finished(self) -> None:
        """Close out an attempt whose worker ended without reporting an outcome."""
        if self.done.is_set():
            return
        error = self.orchestrator.last_error
        self.success = False
        self.message = (
            describe_error(error)
            if error is not None
            else "Flash ended without reporting an outcome"
        )
        if not self.stage.is_terminal:
            self.stage = FlashStage.FAILED
        logger.error("Flash worker ended without an outcome: %s", self.message)
        try:
            self._finish_record()
        finally:
            self.done.set()

    @property
    def error_code(self) -> str | None:
        if self.success or self.stage is FlashStage.CANCELLED:
            return None
        error = self.orchestrator.last_error
        return getattr(error, "error_code", None) or (
            type(error).__name__ if error is not None else None
        )

    def _create_record(self) -> None:
        if self.session_factory is None:
            return
        session = self.session_factory()
        try:
            record = FlashRecord(
                image_name=self.image.name,
                image_path=self.image.path,
                compression=self.image.compression.value,
                device_path=self.request.device_path,
                device_size_bytes=get_device_size(
                    self.orchestrator.shell,
                    self.request.device_path,
                    self.orchestrator.settings,
                ),
                total_bytes=self.request.total_size_estimate,
                verify_requested=self.request.verify,
                status=FlashStatus.PENDING.value,
            )
            record.mark_running()
            session.add(record)
            session.commit()
            self.record_id = record.id
            logger.debug("Created FlashRecord id=%d", record.id)
        except Exception:
            session.rollback()
            logger.exception("Could not create flash record")
        finally:
            session.close()

    def _finish_record(self) -> None:
        if self.session_factory is None or self.record_id is None:
            return
        session = self.session_factory()
        try:
            record = session.get(FlashRecord, self.record_id)
            if record is None:
                return
            record.final_stage = self.stage.value
            record.bytes_written = self.bytes_written
            record.total_bytes = self.total_bytes
            if self.success:
                record.mark_succeeded()
            elif self.stage is FlashStage.CANCELLED:
                record.mark_cancelled()
            else:
                record.mark_failed(error_type=self.error_code, message=self.message)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("Could not update flash record %s", self.record_id)
        finally:
            session.close()

    def result(self) -> FlashResult:
        """Build a FlashResult from the tracked state."""
        return FlashResult(
            success=self.success,
            stage=self.stage,
            image_path=self.image.path or self.image.name,
            device_path=self.request.device_path,
            bytes_written=self.bytes_written,
            total_bytes=self.total_bytes,
            message=self.message,
            flash_record_id=self.record_id,
            error_message=None if self.success else self.message,
            error_code=self.error_code,
        )


class FlashHandle:
    """Handle on a background flash attempt."""

    def __init__(self, orchestrator: FlashOrchestrator, tracker: FlashTracker) -> None:
        self.orchestrator = orchestrator
        self.tracker = tracker

    @property
    def done(self) -> bool:
        return self.tracker.done.is_set()

    def cancel(self) -> None:
        self.orchestrator.cancel()

    def wait(self, timeout: float | None = None) -> FlashResult | None:
        """Wait for the attempt to finish.

        Args:
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            FlashResult, or None if the attempt is still running.
        """
        if not self.orchestrator.wait(timeout):
            return None
        self.tracker.ensure_finished()
        return self.tracker.result()


def start_flash(
    orchestrator: FlashOrchestrator,
    image: ImageFile,
    device_path: str,
    *,
    verify: bool = False,
    callback: FlashCallback | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> FlashHandle:
    """Start flashing an image on the orchestrator's worker thread.

    Args:
        orchestrator: Orchestrator to run the attempt.
        image: Image to flash.
        device_path: Whole-device path to write to.
        verify: Whether to run the verification stage.
        callback: Observer for stage/progress/completion events.
        session_factory: Session factory for FlashRecord persistence.

    Returns:
        FlashHandle for waiting on or cancelling the attempt.

    Raises:
        AlreadyInProgressError: Another attempt is active.
        OSError: The image could not be opened.
    """
    if orchestrator.is_flashing:
        raise AlreadyInProgressError()

    total = estimate_uncompressed_size(image)
    stream = image.open()
    request = FlashRequest(
        device_path=device_path,
        image_stream=stream,
        total_size_estimate=total,
        compression=image.compression,
        verify=verify,
    )
    tracker = FlashTracker(
        image,
        request,
        orchestrator,
        inner=callback,
        session_factory=session_factory,
    )

    logger.info(
        "Starting flash: image=%s, device=%s, estimate=%d",
        image.name,
        device_path,
        total,
    )
    try:
        orchestrator.start(request, tracker)
    except AlreadyInProgressError:
        stream.close()
        raise
    return FlashHandle(orchestrator, tracker)


def _failed_result(
    image_path: str, device_path: str, error: FlashError | ImageNotFoundError
) -> FlashResult:
    return FlashResult(
        success=False,
        stage=FlashStage.FAILED,
        image_path=image_path,
        device_path=device_path,
        bytes_written=0,
        total_bytes=0,
        message=error.message,
        error_message=error.message,
        error_code=error.error_code,
    )


def flash_image(
    image_path: str | Path,
    device_path: str,
    *,
    orchestrator: FlashOrchestrator,
    settings: Settings | None = None,
    compression: CompressionKind | None = None,
    verify: bool | None = None,
    dry_run: bool = False,
    callback: FlashCallback | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> FlashResult:
    """Flash an image to a device and wait for the outcome.

    This is the main blocking entry point. It:
    1. Validates the image and device (plan)
    2. Returns the plan as a result in dry-run mode
    3. Runs the attempt on the orchestrator's worker thread
    4. Records the attempt when a session factory is given

    Args:
        image_path: Path to the image file.
        device_path: Path to the target device (must be whole device).
        orchestrator: Orchestrator to run the attempt.
        settings: Application settings (optional).
        compression: Explicit compression kind (detected when None).
        verify: Whether to verify (defaults to settings).
        dry_run: If True, validate and plan but don't actually write.
        callback: Observer for stage/progress/completion events.
        session_factory: Session factory for FlashRecord persistence.

    Returns:
        FlashResult with operation details.

    Raises:
        AlreadyInProgressError: Another attempt is active.
        FlashServiceError: The worker did not finish.
    """
    if settings is None:
        settings = orchestrator.settings
    if verify is None:
        verify = settings.verify_after_flash

    logger.info(
        "Flash requested: image=%s, device=%s, dry_run=%s",
        Path(image_path).name,
        device_path,
        dry_run,
    )

    try:
        image = image_from_path(image_path, compression)
        plan = _plan_image(
            image,
            device_path,
            shell=orchestrator.shell,
            settings=settings,
            verify=verify,
        )
    except (
        ImageNotFoundError,
        DeviceNotFoundError,
        InvalidTargetError,
        SizeExceededError,
    ) as e:
        logger.error("Flash validation failed: %s", e.message)
        return _failed_result(str(image_path), device_path, e)

    if dry_run:
        logger.info("Dry-run mode: not performing actual write")
        return FlashResult(
            success=True,
            stage=FlashStage.IDLE,
            image_path=plan.image_path or plan.image_name,
            device_path=plan.device_path,
            bytes_written=0,
            total_bytes=plan.estimated_size_bytes,
            message="Dry-run mode: no write performed",
        )

    handle = start_flash(
        orchestrator,
        image,
        device_path,
        verify=verify,
        callback=callback,
        session_factory=session_factory,
    )
    result = handle.wait()
    if result is None:
        raise FlashServiceError(
            "Flash worker did not finish", error_code="FLASH_NOT_FINISHED"
        )
    return result


def get_flash_records(
    session: Session,
    *,
    device_path: str | None = None,
    status: FlashStatus | None = None,
    limit: int = 100,
) -> list[FlashRecord]:
    """Query flash records with optional filters.

    Args:
        session: Database session.
        device_path: Filter by device path.
        status: Filter by status.
        limit: Maximum number of records to return.

    Returns:
        List of FlashRecord objects, newest first.
    """
    stmt = select(FlashRecord)

    if device_path is not None:
        stmt = stmt.where(FlashRecord.device_path == device_path)
    if status is not None:
        stmt = stmt.where(FlashRecord.status == status.value)

    stmt = stmt.order_by(FlashRecord.requested_at.desc(), FlashRecord.id.desc())
    stmt = stmt.limit(limit)

    result = session.execute(stmt)
    return list(result.scalars().all())


__all__ = [
    "ConfirmationRequiredError",
    "FlashHandle",
    "FlashPlan",
    "FlashResult",
    "FlashServiceError",
    "FlashTracker",
    "flash_image",
    "get_flash_records",
    "plan_flash",
    "start_flash",
]
