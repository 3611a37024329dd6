"""Tests for flash/orchestrator.py - the flash state machine."""

import gzip
import io
import threading

import pytest

from sdflasher.config import MIB
from sdflasher.flash.orchestrator import (
    CANCELLED_MESSAGE,
    AlreadyInProgressError,
    FlashIOError,
    FlashOrchestrator,
    FlashRequest,
    NotBlockDeviceError,
    ObserverDisconnectedError,
    PartitionDeviceError,
    SizeExceededError,
    SystemDeviceError,
)
from sdflasher.flash.unmount import UnmountResult
from sdflasher.images.reader import DecompressionError
from sdflasher.types import CompressionKind, FlashStage

DEVICE = "/dev/sdb"


class RecordingCallback:
    """Collects every event in delivery order."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_stage_changed(self, stage_code: int) -> None:
        self.events.append(("stage", FlashStage.from_code(stage_code)))

    def on_progress(self, bytes_written, total_bytes, speed_bytes_per_sec) -> None:
        self.events.append(
            ("progress", bytes_written, total_bytes, speed_bytes_per_sec)
        )

    def on_complete(self, success: bool, message: str) -> None:
        self.events.append(("complete", success, message))

    def on_error(self, message: str) -> None:
        self.events.append(("error", message))

    @property
    def stages(self) -> list[FlashStage]:
        return [e[1] for e in self.events if e[0] == "stage"]

    @property
    def progress(self) -> list[tuple]:
        return [e for e in self.events if e[0] == "progress"]

    @property
    def completes(self) -> list[tuple]:
        return [e[1:] for e in self.events if e[0] == "complete"]

    @property
    def errors(self) -> list[str]:
        return [e[1] for e in self.events if e[0] == "error"]


class _ClosingBytesIO(io.BytesIO):
    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.was_closed = False

    def close(self) -> None:
        self.was_closed = True
        super().close()


def _request(stream, total, **kwargs) -> FlashRequest:
    return FlashRequest(
        device_path=DEVICE, image_stream=stream, total_size_estimate=total, **kwargs
    )


@pytest.fixture
def orchestrator(fake_shell, settings, fake_clock):
    return FlashOrchestrator(fake_shell, settings, clock=fake_clock)


class TestSuccessfulFlash:
    """Tests for the full success path."""

    def test_100_mib_in_4_mib_chunks(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        """100 MiB at 4 MiB per cycle is 25 writes and ends COMPLETE."""
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = RecordingCallback()

        final = orchestrator.run(_request(zero_stream(100 * MIB), 100 * MIB), callback)

        assert final.stage is FlashStage.COMPLETE
        assert counting_device.write_calls == 25
        assert counting_device.bytes_written == 100 * MIB
        assert callback.stages == [
            FlashStage.PREPARING,
            FlashStage.UNMOUNTING,
            FlashStage.WRITING,
            FlashStage.SYNCING,
            FlashStage.COMPLETE,
        ]
        assert callback.completes == [(True, "Successfully flashed 104857600 bytes")]
        assert callback.errors == []
        assert orchestrator.is_flashing is False

    def test_sync_commands(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)

        orchestrator.run(_request(zero_stream(MIB), MIB))

        assert counting_device.flushed is True
        assert "sync" in fake_shell.commands
        assert "blockdev --flushbufs /dev/sdb" in fake_shell.commands
        # Unmount happens before anything is written
        commands = fake_shell.commands
        assert commands.index("cat /proc/mounts") < commands.index("sync")

    def test_progress_monotonic_and_rate_limited(
        self, orchestrator, fake_shell, fake_clock, counting_device, zero_stream
    ):
        fake_clock.step = 0.25
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = RecordingCallback()

        orchestrator.run(_request(zero_stream(100 * MIB), 100 * MIB), callback)

        written = [p[1] for p in callback.progress]
        assert written == sorted(written)
        # One report per two chunks, plus the final zero-speed event
        assert len(written) == 13
        assert callback.progress[-1] == ("progress", 100 * MIB, 100 * MIB, 0)

    def test_progress_events_inside_writing(
        self, orchestrator, fake_shell, fake_clock, counting_device, zero_stream
    ):
        fake_clock.step = 1.0
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = RecordingCallback()

        orchestrator.run(_request(zero_stream(8 * MIB), 8 * MIB), callback)

        kinds = [e[0] if e[0] != "stage" else e[1] for e in callback.events]
        first = kinds.index("progress")
        assert kinds.index(FlashStage.WRITING) < first
        assert kinds.index(FlashStage.SYNCING) > first

    def test_gzip_image_to_file(self, fake_shell, settings, fake_clock, tmp_path):
        """Decompressed bytes land at offset 0 of the device."""
        payload = bytes(range(256)) * 8192
        backing = tmp_path / "sdb"
        backing.write_bytes(b"\xff" * (4 * MIB))
        fake_shell.add_device(DEVICE, 4 * MIB, str(backing))
        orchestrator = FlashOrchestrator(fake_shell, settings, clock=fake_clock)

        final = orchestrator.run(
            _request(
                io.BytesIO(gzip.compress(payload)),
                len(payload),
                compression=CompressionKind.GZIP,
            )
        )

        assert final.stage is FlashStage.COMPLETE
        assert backing.read_bytes()[: len(payload)] == payload

    def test_verify_placeholder(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = RecordingCallback()

        orchestrator.run(_request(zero_stream(MIB), MIB, verify=True), callback)

        assert callback.stages[-2:] == [FlashStage.VERIFYING, FlashStage.COMPLETE]
        success, message = callback.completes[0]
        assert success is True
        assert message.endswith("(verification not implemented)")

    def test_image_stream_closed(self, orchestrator, fake_shell, counting_device):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        stream = _ClosingBytesIO(b"\x00" * 1024)

        orchestrator.run(_request(stream, 1024))

        assert stream.was_closed is True


class TestFailures:
    """Tests for failure paths."""

    def test_oversize_fails_before_writing(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        """An estimate larger than the device never reaches WRITING."""
        fake_shell.add_device(DEVICE, 64 * MIB, counting_device)
        callback = RecordingCallback()

        final = orchestrator.run(_request(zero_stream(100 * MIB), 100 * MIB), callback)

        assert final.stage is FlashStage.FAILED
        assert FlashStage.WRITING not in callback.stages
        assert counting_device.write_calls == 0
        message = "Image size (104857600 bytes) exceeds device size (67108864 bytes)"
        assert callback.errors == [message]
        assert callback.completes == [(False, message)]
        assert isinstance(orchestrator.last_error, SizeExceededError)

    def test_unknown_device_size_allows_flash(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, None, counting_device)
        final = orchestrator.run(_request(zero_stream(MIB), MIB))
        assert final.stage is FlashStage.COMPLETE

    def test_missing_device(self, orchestrator, zero_stream):
        callback = RecordingCallback()

        final = orchestrator.run(_request(zero_stream(MIB), MIB), callback)

        assert final.stage is FlashStage.FAILED
        assert callback.errors == ["Target device not found: /dev/sdb"]

    def test_error_then_complete_order(self, orchestrator, zero_stream):
        callback = RecordingCallback()
        orchestrator.run(_request(zero_stream(MIB), MIB), callback)
        kinds = [e[0] for e in callback.events]
        assert kinds[-3:] == ["stage", "error", "complete"]
        assert callback.stages[-1] is FlashStage.FAILED

    def test_unmount_failure(self, fake_shell, settings, counting_device, zero_stream):
        class _BrokenUnmounter:
            def unmount(self, device_path):
                return UnmountResult(success=False, error_message="device busy")

        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        orchestrator = FlashOrchestrator(
            fake_shell, settings, unmounter=_BrokenUnmounter()  # type: ignore[arg-type]
        )
        callback = RecordingCallback()

        final = orchestrator.run(_request(zero_stream(MIB), MIB), callback)

        assert final.stage is FlashStage.FAILED
        assert callback.errors == ["Failed to unmount device /dev/sdb: device busy"]
        assert counting_device.write_calls == 0

    def test_corrupt_image(self, orchestrator, fake_shell, counting_device):
        data = gzip.compress(b"\x00" * (8 * MIB))
        stream = _ClosingBytesIO(data[: len(data) // 2])
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = RecordingCallback()

        final = orchestrator.run(
            _request(stream, 8 * MIB, compression=CompressionKind.GZIP), callback
        )

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, DecompressionError)
        assert callback.errors[0].startswith("Failed to decompress")
        assert stream.was_closed is True

    def test_write_error(self, orchestrator, fake_shell, zero_stream, scripted_device):
        def fail(device):
            raise OSError(5, "Input/output error")

        fake_shell.add_device(DEVICE, 1024 * MIB, scripted_device(fail))

        final = orchestrator.run(_request(zero_stream(8 * MIB), 8 * MIB))

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, FlashIOError)
        assert orchestrator.last_error.error_code == "FLASH_IO_ERROR"

    def test_failed_attempt_releases_orchestrator(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        orchestrator.run(_request(zero_stream(MIB), MIB))
        assert orchestrator.is_flashing is False

        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        final = orchestrator.run(_request(zero_stream(MIB), MIB))
        assert final.stage is FlashStage.COMPLETE
        assert orchestrator.last_error is None


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_after_three_chunks(
        self, orchestrator, fake_shell, zero_stream, scripted_device
    ):
        """Exactly the chunks written before the request reach the device."""

        def cancel_on_third(device):
            if device.write_calls == 3:
                orchestrator.cancel()

        device = scripted_device(cancel_on_third)
        fake_shell.add_device(DEVICE, 1024 * MIB, device)
        callback = RecordingCallback()

        final = orchestrator.run(_request(zero_stream(100 * MIB), 100 * MIB), callback)

        assert final.stage is FlashStage.CANCELLED
        assert device.write_calls == 3
        assert device.bytes_written == 12 * MIB
        assert callback.completes == [(False, CANCELLED_MESSAGE)]
        assert FlashStage.SYNCING not in callback.stages
        assert "sync" not in fake_shell.commands

    def test_double_cancel_single_outcome(
        self, orchestrator, fake_shell, zero_stream, scripted_device
    ):
        def cancel_twice(device):
            if device.write_calls == 2:
                orchestrator.cancel()
                orchestrator.cancel()

        fake_shell.add_device(DEVICE, 1024 * MIB, scripted_device(cancel_twice))
        callback = RecordingCallback()

        orchestrator.run(_request(zero_stream(100 * MIB), 100 * MIB), callback)

        assert callback.stages.count(FlashStage.CANCELLED) == 1
        assert len(callback.completes) == 1

    def test_cancel_when_idle_is_noop(self, orchestrator):
        orchestrator.cancel()
        assert orchestrator.stage is FlashStage.IDLE
        assert orchestrator.is_flashing is False

    def test_cancel_after_complete_is_noop(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        orchestrator.run(_request(zero_stream(MIB), MIB))
        orchestrator.cancel()
        assert orchestrator.stage is FlashStage.COMPLETE

    def test_observer_disconnect_cancels(
        self, orchestrator, fake_shell, fake_clock, counting_device, zero_stream
    ):
        class _GoneCallback(RecordingCallback):
            def on_progress(self, *args) -> None:
                raise ObserverDisconnectedError()

        fake_clock.step = 1.0
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = _GoneCallback()

        final = orchestrator.run(_request(zero_stream(100 * MIB), 100 * MIB), callback)

        assert final.stage is FlashStage.CANCELLED
        assert counting_device.write_calls == 1


class TestTargetValidation:
    """Only whole, non-system block devices are written."""

    def test_partition_rejected_before_unmount(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device("/dev/sdb", 1024 * MIB)
        fake_shell.add_device("/dev/sdb1", None, counting_device)
        callback = RecordingCallback()
        request = FlashRequest(
            device_path="/dev/sdb1",
            image_stream=zero_stream(MIB),
            total_size_estimate=100 * 1024 * MIB,
        )

        final = orchestrator.run(request, callback)

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, PartitionDeviceError)
        assert orchestrator.last_error.error_code == "PARTITION_NOT_ALLOWED"
        assert callback.stages == [FlashStage.PREPARING, FlashStage.FAILED]
        assert counting_device.write_calls == 0
        assert not any(c.startswith("umount") for c in fake_shell.commands)

    def test_mmc_partition_rejected(self, orchestrator, fake_shell, zero_stream):
        fake_shell.add_device("/dev/mmcblk0p2", None)
        request = FlashRequest(
            device_path="/dev/mmcblk0p2",
            image_stream=zero_stream(MIB),
            total_size_estimate=MIB,
        )

        final = orchestrator.run(request)

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, PartitionDeviceError)

    def test_not_block_device(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        fake_shell.set(f"test -b {DEVICE}", success=False)

        final = orchestrator.run(_request(zero_stream(MIB), MIB))

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, NotBlockDeviceError)
        assert orchestrator.last_error.message == f"Not a block device: {DEVICE}"
        assert counting_device.write_calls == 0

    def test_system_root_device(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        fake_shell.set("cat /proc/mounts", "/dev/sdb2 / ext4 rw 0 0")

        final = orchestrator.run(_request(zero_stream(MIB), MIB))

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, SystemDeviceError)
        assert orchestrator.last_error.error_code == "SYSTEM_DEVICE"
        assert counting_device.write_calls == 0

    def test_symlink_resolved_to_device(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        link = "/dev/disk/by-id/usb-Generic_SD_Card-0:0"
        fake_shell.set(f"readlink -f {link}", DEVICE)
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        request = FlashRequest(
            device_path=link, image_stream=zero_stream(MIB), total_size_estimate=MIB
        )

        final = orchestrator.run(request)

        assert final.stage is FlashStage.COMPLETE
        assert counting_device.bytes_written == MIB
        assert f"blockdev --flushbufs {DEVICE}" in fake_shell.commands

    def test_symlink_to_partition_rejected(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        link = "/dev/disk/by-label/boot"
        fake_shell.set(f"readlink -f {link}", "/dev/sdb1")
        fake_shell.add_device(link, None, counting_device)
        request = FlashRequest(
            device_path=link, image_stream=zero_stream(MIB), total_size_estimate=MIB
        )

        final = orchestrator.run(request)

        assert isinstance(orchestrator.last_error, PartitionDeviceError)
        assert counting_device.write_calls == 0


class _RaisingCallback(RecordingCallback):
    """Recording callback that raises ValueError on selected events."""

    def __init__(self, fail_on: set[str]) -> None:
        super().__init__()
        self.fail_on = fail_on

    def on_stage_changed(self, stage_code: int) -> None:
        super().on_stage_changed(stage_code)
        if "stage" in self.fail_on:
            raise ValueError("observer bug")

    def on_error(self, message: str) -> None:
        super().on_error(message)
        if "error" in self.fail_on:
            raise ValueError("observer bug")

    def on_complete(self, success: bool, message: str) -> None:
        super().on_complete(success, message)
        if "complete" in self.fail_on:
            raise ValueError("observer bug")


class TestFaultyObserver:
    """Observer exceptions never suppress the outcome events."""

    def test_stage_callback_error_fails_attempt(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = _RaisingCallback({"stage", "error", "complete"})

        final = orchestrator.run(_request(zero_stream(MIB), MIB), callback)

        assert final.stage is FlashStage.FAILED
        assert callback.stages == [FlashStage.PREPARING, FlashStage.FAILED]
        assert callback.errors == ["observer bug"]
        assert callback.completes == [(False, "observer bug")]
        assert counting_device.write_calls == 0
        assert orchestrator.is_flashing is False

    def test_complete_callback_error_keeps_success(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = _RaisingCallback({"complete"})

        final = orchestrator.run(_request(zero_stream(MIB), MIB), callback)

        assert final.stage is FlashStage.COMPLETE
        assert callback.stages[-1] is FlashStage.COMPLETE
        assert FlashStage.FAILED not in callback.stages
        assert callback.errors == []
        assert callback.completes == [(True, f"Successfully flashed {MIB} bytes")]

    def test_worker_thread_finishes(
        self, orchestrator, fake_shell, counting_device, zero_stream
    ):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)
        callback = _RaisingCallback({"stage", "error", "complete"})

        orchestrator.start(_request(zero_stream(MIB), MIB), callback)

        assert orchestrator.wait(10) is True
        assert orchestrator.is_flashing is False
        assert orchestrator.stage is FlashStage.FAILED
        assert callback.completes == [(False, "observer bug")]


class TestHandleWithoutDescriptor:
    """Handles without fileno() commit their data on close."""

    def test_close_error_fails_attempt(self, orchestrator, fake_shell, zero_stream):
        class _FailingCommit(io.RawIOBase):
            def writable(self):
                return True

            def write(self, data):
                return len(data)

            def close(self):
                if not self.closed:
                    super().close()
                    raise OSError(5, "dd exited with status 1")

        fake_shell.add_device(DEVICE, 1024 * MIB, _FailingCommit())
        callback = RecordingCallback()

        final = orchestrator.run(_request(zero_stream(MIB), MIB), callback)

        assert final.stage is FlashStage.FAILED
        assert isinstance(orchestrator.last_error, FlashIOError)
        assert callback.errors[0].startswith(f"Error syncing {DEVICE}")
        assert "sync" not in fake_shell.commands

    def test_closed_by_sync(self, orchestrator, fake_shell, counting_device, zero_stream):
        fake_shell.add_device(DEVICE, 1024 * MIB, counting_device)

        final = orchestrator.run(_request(zero_stream(MIB), MIB))

        assert final.stage is FlashStage.COMPLETE
        assert counting_device.closed is True
        assert counting_device.flushed is True


class TestConcurrency:
    """Tests for the single in-flight attempt rule."""

    def test_second_start_rejected(
        self, orchestrator, fake_shell, zero_stream, scripted_device
    ):
        entered = threading.Event()
        gate = threading.Event()

        def block(device):
            entered.set()
            gate.wait(5)

        fake_shell.add_device(DEVICE, 1024 * MIB, scripted_device(block))
        callback = RecordingCallback()

        worker = orchestrator.start(_request(zero_stream(8 * MIB), 8 * MIB), callback)
        assert entered.wait(5)
        assert worker.name == "sdflasher-flash"

        second = _ClosingBytesIO(b"\x00" * 16)
        with pytest.raises(AlreadyInProgressError) as exc_info:
            orchestrator.start(_request(second, 16))
        assert exc_info.value.error_code == "ALREADY_IN_PROGRESS"
        assert orchestrator.is_flashing is True
        assert orchestrator.stage is FlashStage.WRITING

        gate.set()
        assert orchestrator.wait(5)
        assert orchestrator.stage is FlashStage.COMPLETE
        assert callback.completes == [(True, "Successfully flashed 8388608 bytes")]

    def test_run_rejected_while_started(
        self, orchestrator, fake_shell, zero_stream, scripted_device
    ):
        gate = threading.Event()
        entered = threading.Event()

        def block(device):
            entered.set()
            gate.wait(5)

        fake_shell.add_device(DEVICE, 1024 * MIB, scripted_device(block))
        orchestrator.start(_request(zero_stream(4 * MIB), 4 * MIB))
        assert entered.wait(5)

        with pytest.raises(AlreadyInProgressError):
            orchestrator.run(_request(io.BytesIO(b""), 0))

        gate.set()
        orchestrator.wait(5)

    def test_cancel_from_another_thread(
        self, orchestrator, fake_shell, zero_stream, scripted_device
    ):
        started = threading.Event()
        resume = threading.Event()

        def pause_first_write(device):
            if device.write_calls == 1:
                started.set()
                resume.wait(5)

        device = scripted_device(pause_first_write)
        fake_shell.add_device(DEVICE, 1024 * MIB, device)
        callback = RecordingCallback()

        orchestrator.start(_request(zero_stream(1024 * MIB), 1024 * MIB), callback)
        assert started.wait(5)
        orchestrator.cancel()
        resume.set()
        assert orchestrator.wait(10)

        assert device.write_calls == 1

        assert orchestrator.stage is FlashStage.CANCELLED
        assert callback.completes == [(False, CANCELLED_MESSAGE)]
