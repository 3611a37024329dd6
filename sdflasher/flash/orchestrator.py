"""Flash orchestration state machine.

One attempt moves through:

    IDLE -> PREPARING -> UNMOUNTING -> WRITING -> SYNCING -> [VERIFYING]
         -> COMPLETE | FAILED | CANCELLED

The orchestrator owns the progress/stage pair for the attempt and reports
every transition, in order, to a FlashCallback. Only one attempt may be in
flight per orchestrator; a concurrent start() is rejected, not queued.

Cancellation is cooperative: cancel() sets a flag that the copy loop polls
before each chunk, so it takes effect within one chunk's I/O time.
"""

import io
import logging
import os
import shlex
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, BinaryIO, Protocol

from sdflasher.config import Settings, get_settings
from sdflasher.flash.device import (
    get_device_size,
    get_root_device_name,
    is_block_device,
    is_partition_name,
    kernel_name,
    resolve_device_path,
)
from sdflasher.flash.progress import FlashProgress, ProgressAccountant
from sdflasher.flash.unmount import UnmountCoordinator
from sdflasher.images.reader import wrap
from sdflasher.privileged.shell import PrivilegedShell
from sdflasher.types import CompressionKind, FlashStage

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Flash cancelled by user"


class FlashCallback(Protocol):
    """Observer of a flash attempt.

    Stage codes are FlashStage.code values. Implementations raise
    ObserverDisconnectedError (or ConnectionError) when they can no longer
    receive events; during the copy loop that cancels the attempt.
    """

    def on_stage_changed(self, stage_code: int) -> None: ...

    def on_progress(
        self, bytes_written: int, total_bytes: int, speed_bytes_per_sec: int
    ) -> None: ...

    def on_complete(self, success: bool, message: str) -> None: ...

    def on_error(self, message: str) -> None: ...


class NullCallback:
    """Callback that ignores every event."""

    def on_stage_changed(self, stage_code: int) -> None:
        pass

    def on_progress(
        self, bytes_written: int, total_bytes: int, speed_bytes_per_sec: int
    ) -> None:
        pass

    def on_complete(self, success: bool, message: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class ObserverDisconnectedError(Exception):
    """Raised by a callback whose observer has gone away."""


class FlashError(Exception):
    """Base exception for flash orchestration errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class AlreadyInProgressError(FlashError):
    """A flash attempt is already running."""

    def __init__(self) -> None:
        super().__init__("Flash already in progress", error_code="ALREADY_IN_PROGRESS")


class DeviceNotFoundError(FlashError):
    """Target device path does not exist."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Target device not found: {device_path}", error_code="DEVICE_NOT_FOUND"
        )
        self.device_path = device_path


class InvalidTargetError(FlashError):
    """Target path is not a flashable whole device."""


class NotBlockDeviceError(InvalidTargetError):
    """Path exists but is not a block device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Not a block device: {device_path}", error_code="NOT_BLOCK_DEVICE"
        )
        self.device_path = device_path


class PartitionDeviceError(InvalidTargetError):
    """Device appears to be a partition, not a whole device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device appears to be a partition, not a whole device: {device_path}. "
            "Only whole devices (e.g., /dev/sda, /dev/mmcblk0) are supported.",
            error_code="PARTITION_NOT_ALLOWED",
        )
        self.device_path = device_path


class SystemDeviceError(InvalidTargetError):
    """Device holds the system root filesystem."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device {device_path} appears to be the system root device. "
            "Refusing to flash to avoid data loss.",
            error_code="SYSTEM_DEVICE",
        )
        self.device_path = device_path


class SizeExceededError(FlashError):
    """Image is larger than the target device."""

    def __init__(self, image_size: int, device_size: int) -> None:
        super().__init__(
            f"Image size ({image_size} bytes) exceeds device size "
            f"({device_size} bytes)",
            error_code="SIZE_EXCEEDED",
        )
        self.image_size = image_size
        self.device_size = device_size


class UnmountError(FlashError):
    """The unmount pass could not complete."""

    def __init__(self, device_path: str, detail: str | None) -> None:
        super().__init__(
            f"Failed to unmount device {device_path}: {detail or 'unknown error'}",
            error_code="UNMOUNT_FAILED",
        )
        self.device_path = device_path


class FlashIOError(FlashError):
    """Read or write failure during the copy."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="FLASH_IO_ERROR")


@dataclass
class FlashRequest:
    """Parameters of one flash attempt.

    Attributes:
        device_path: Whole-device path to write to.
        image_stream: Raw (possibly compressed) image stream. Owned by the
            orchestrator once submitted and always closed at the end.
        total_size_estimate: Expected decompressed size in bytes.
        compression: Compression kind of image_stream.
        verify: Whether to run the verification stage.
    """

    device_path: str
    image_stream: BinaryIO
    total_size_estimate: int
    compression: CompressionKind = CompressionKind.NONE
    verify: bool = False


def describe_error(error: BaseException) -> str:
    """One human-readable line for an exception."""
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or type(error).__name__


def validate_target(
    shell: PrivilegedShell, device_path: str, settings: Settings | None = None
) -> str:
    """Check that a path names a whole block device other than the system disk.

    Symlinks are resolved first so the checks apply to the node that is
    actually written. A path that does not exist is returned as-is; the
    caller reports it as DeviceNotFoundError.

    Args:
        shell: Privileged shell capability.
        device_path: Requested target path.
        settings: Application settings (mount table path).

    Returns:
        The resolved device path.

    Raises:
        PartitionDeviceError: Path names a partition.
        NotBlockDeviceError: Path exists but is not a block device.
        SystemDeviceError: Path is the disk holding the root filesystem.
    """
    resolved = resolve_device_path(shell, device_path)
    name = kernel_name(resolved)
    if resolved != device_path:
        logger.debug("Resolved %s to %s", device_path, resolved)

    if is_partition_name(name):
        logger.error("Device is a partition: %s", resolved)
        raise PartitionDeviceError(device_path)

    if shell.exists(resolved) and not is_block_device(shell, resolved):
        logger.error("Not a block device: %s", resolved)
        raise NotBlockDeviceError(device_path)

    root_name = get_root_device_name(shell, settings)
    if root_name is not None and name == root_name:
        logger.error("Device is system root: %s", resolved)
        raise SystemDeviceError(device_path)

    return resolved


def _write_all(device: BinaryIO, chunk: bytes) -> None:
    view = memoryview(chunk)
    while view:
        written = device.write(view)
        if written is None:
            written = len(view)
        view = view[written:]


class FlashOrchestrator:
    """Sequence unmount, decompressing copy, sync and verify for one device.

    Args:
        shell: Privileged shell capability.
        settings: Application settings (chunk size, report interval).
        clock: Monotonic clock used for progress accounting.
        unmounter: Unmount coordinator (built from shell when None).
    """

    def __init__(
        self,
        shell: PrivilegedShell,
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        unmounter: UnmountCoordinator | None = None,
    ) -> None:
        self.shell = shell
        self.settings = settings if settings is not None else get_settings()
        self.unmounter = unmounter or UnmountCoordinator(shell, self.settings)
        self._clock = clock
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._in_progress = False
        self._progress = FlashProgress()
        self._worker: threading.Thread | None = None
        self._last_error: Exception | None = None

    @property
    def is_flashing(self) -> bool:
        return self._in_progress

    @property
    def last_error(self) -> Exception | None:
        """Exception that failed the most recent attempt, if any."""
        return self._last_error

    @property
    def progress(self) -> FlashProgress:
        """Latest progress snapshot (read-only)."""
        return self._progress

    @property
    def stage(self) -> FlashStage:
        return self._progress.stage

    def _claim(self, request: FlashRequest) -> None:
        with self._lock:
            if self._in_progress:
                raise AlreadyInProgressError()
            self._in_progress = True
            self._cancel.clear()
            self._last_error = None
            self._progress = FlashProgress(total_bytes=request.total_size_estimate)

    def _release(self) -> None:
        with self._lock:
            self._in_progress = False

    def start(
        self, request: FlashRequest, callback: FlashCallback | None = None
    ) -> threading.Thread:
        """Run a flash attempt on a dedicated worker thread.

        Args:
            request: Flash parameters.
            callback: Observer for stage/progress/completion events.

        Returns:
            The started worker thread.

        Raises:
            AlreadyInProgressError: Another attempt is active. Nothing
                about the active attempt changes.
        """
        self._claim(request)
        worker = threading.Thread(
            target=self._execute,
            args=(request, callback),
            name="sdflasher-flash",
            daemon=True,
        )
        self._worker = worker
        try:
            worker.start()
        except RuntimeError:
            self._release()
            raise
        return worker

    def run(
        self, request: FlashRequest, callback: FlashCallback | None = None
    ) -> FlashProgress:
        """Run a flash attempt in the calling thread.

        Returns:
            Final progress snapshot (its stage is terminal).

        Raises:
            AlreadyInProgressError: Another attempt is active.
        """
        self._claim(request)
        return self._execute(request, callback)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the worker started by start() to finish.

        Returns:
            True if no attempt is running any more.
        """
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
            return not worker.is_alive()
        return True

    def cancel(self) -> None:
        """Request cancellation of the running attempt.

        Idempotent. Has no effect when idle or once a terminal stage has
        been reached.
        """
        with self._lock:
            if not self._in_progress or self._progress.stage.is_terminal:
                return
            if self._cancel.is_set():
                return
            self._cancel.set()
        logger.info("Cancellation requested")

    def _set_progress(self, progress: FlashProgress) -> None:
        with self._lock:
            self._progress = progress

    def _emit(self, method: Callable[..., Any], *args: Any) -> None:
        try:
            method(*args)
        except (ObserverDisconnectedError, ConnectionError):
            logger.warning("Flash observer disconnected, cancelling")
            self._cancel.set()

    def _emit_outcome(self, method: Callable[..., Any], *args: Any) -> None:
        # Outcome events must all be delivered whatever the observer does
        try:
            method(*args)
        except Exception:
            logger.exception("Flash observer raised while reporting the outcome")

    def _transition(self, stage: FlashStage, callback: FlashCallback) -> None:
        self._set_progress(self._progress.with_stage(stage))
        logger.info("Flash stage: %s", stage.value)
        if stage.is_terminal:
            self._emit_outcome(callback.on_stage_changed, stage.code)
        else:
            self._emit(callback.on_stage_changed, stage.code)

    def _execute(
        self, request: FlashRequest, callback: FlashCallback | None
    ) -> FlashProgress:
        observer: FlashCallback = callback if callback is not None else NullCallback()
        try:
            self._flash(request, observer)
        except Exception as e:
            self._last_error = e
            message = describe_error(e)
            logger.error("Flash to %s failed: %s", request.device_path, message)
            logger.debug("Flash failure details", exc_info=True)
            self._transition(FlashStage.FAILED, observer)
            self._emit_outcome(observer.on_error, message)
            self._emit_outcome(observer.on_complete, False, message)
        finally:
            try:
                request.image_stream.close()
            except OSError as e:
                logger.warning("Error closing image stream: %s", e)
            self._release()
        return self._progress

    def _flash(self, request: FlashRequest, callback: FlashCallback) -> None:
        logger.info(
            "Flashing %s (estimate=%d bytes, compression=%s, verify=%s)",
            request.device_path,
            request.total_size_estimate,
            request.compression.value,
            request.verify,
        )

        self._transition(FlashStage.PREPARING, callback)
        device_path = validate_target(self.shell, request.device_path, self.settings)

        self._transition(FlashStage.UNMOUNTING, callback)
        unmount_result = self.unmounter.unmount(device_path)
        if not unmount_result.success:
            raise UnmountError(device_path, unmount_result.error_message)

        if not self.shell.exists(device_path):
            raise DeviceNotFoundError(device_path)

        device_size = get_device_size(self.shell, device_path, self.settings)
        if device_size is not None and request.total_size_estimate > device_size:
            raise SizeExceededError(request.total_size_estimate, device_size)

        try:
            device = self.shell.open_raw(device_path)
        except OSError as e:
            raise FlashIOError(f"Cannot open {device_path} for writing: {e}") from e

        with device:
            self._set_progress(
                FlashProgress(total_bytes=request.total_size_estimate)
            )
            self._transition(FlashStage.WRITING, callback)

            with wrap(request.image_stream, request.compression) as source:
                bytes_written, cancelled = self._copy(
                    source, device, request, callback
                )

            if not cancelled:
                self._transition(FlashStage.SYNCING, callback)
                self._sync_handle(device, device_path)

        if cancelled:
            logger.info("Flash cancelled after %d bytes", bytes_written)
            self._transition(FlashStage.CANCELLED, callback)
            self._emit_outcome(callback.on_complete, False, CANCELLED_MESSAGE)
            return

        self.shell.exec("sync")
        self.shell.exec(f"blockdev --flushbufs {shlex.quote(device_path)}")

        if request.verify:
            self._transition(FlashStage.VERIFYING, callback)
            # TODO: compare a digest of the decompressed source with a read-back of the device
            logger.warning("Verification is not implemented yet; skipping")

        self._transition(FlashStage.COMPLETE, callback)
        message = f"Successfully flashed {bytes_written} bytes"
        if request.verify:
            message += " (verification not implemented)"
        logger.info("%s to %s", message, device_path)
        self._emit_outcome(callback.on_complete, True, message)

    def _copy(
        self,
        source: BinaryIO,
        device: BinaryIO,
        request: FlashRequest,
        callback: FlashCallback,
    ) -> tuple[int, bool]:
        accountant = ProgressAccountant(
            request.total_size_estimate,
            interval=self.settings.progress_interval,
            clock=self._clock,
        )
        chunk_size = self.settings.chunk_size
        bytes_written = 0

        while True:
            if self._cancel.is_set():
                return bytes_written, True

            try:
                chunk = source.read(chunk_size)
            except OSError as e:
                raise FlashIOError(f"Error reading image: {e}") from e
            if not chunk:
                break

            try:
                _write_all(device, chunk)
            except OSError as e:
                raise FlashIOError(
                    f"Error writing to {request.device_path} at offset "
                    f"{bytes_written}: {e}"
                ) from e
            bytes_written += len(chunk)

            self._set_progress(
                FlashProgress(
                    bytes_written=bytes_written,
                    total_bytes=request.total_size_estimate,
                    speed_bytes_per_sec=self._progress.speed_bytes_per_sec,
                    stage=FlashStage.WRITING,
                )
            )
            event = accountant.update(bytes_written)
            if event is not None:
                self._set_progress(event)
                self._emit(
                    callback.on_progress,
                    event.bytes_written,
                    event.total_bytes,
                    event.speed_bytes_per_sec,
                )

        final = accountant.finish(bytes_written)
        if final is not None:
            self._emit(
                callback.on_progress,
                final.bytes_written,
                final.total_bytes,
                final.speed_bytes_per_sec,
            )
        return bytes_written, False

    def _sync_handle(self, device: BinaryIO, device_path: str) -> None:
        try:
            device.flush()
            try:
                fd = device.fileno()
            except io.UnsupportedOperation:
                # Without a descriptor the handle commits its data on close
                device.close()
            else:
                os.fsync(fd)
        except OSError as e:
            raise FlashIOError(f"Error syncing {device_path}: {e}") from e


__all__ = [
    "CANCELLED_MESSAGE",
    "AlreadyInProgressError",
    "DeviceNotFoundError",
    "FlashCallback",
    "FlashError",
    "FlashIOError",
    "FlashOrchestrator",
    "FlashRequest",
    "InvalidTargetError",
    "NotBlockDeviceError",
    "NullCallback",
    "ObserverDisconnectedError",
    "PartitionDeviceError",
    "SizeExceededError",
    "SystemDeviceError",
    "UnmountError",
    "describe_error",
    "validate_target",
]
