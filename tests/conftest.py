"""Shared fixtures: a scriptable privileged shell and fake block devices."""

import io
import os
from pathlib import Path

import pytest

from sdflasher.config import MIB, Settings
from sdflasher.privileged.shell import CommandResult


class CountingDevice(io.RawIOBase):
    """Write-only device stand-in that counts writes without storing data."""

    def __init__(self) -> None:
        super().__init__()
        self.write_calls = 0
        self.bytes_written = 0
        self.flushed = False

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        n = len(data)
        self.write_calls += 1
        self.bytes_written += n
        return n

    def flush(self) -> None:
        self.flushed = True

    def fileno(self) -> int:
        raise io.UnsupportedOperation("fileno")


class ScriptedDevice(CountingDevice):
    """Counting device that runs a hook after every write."""

    def __init__(self, on_write=None) -> None:
        super().__init__()
        self.on_write = on_write

    def write(self, data) -> int:  # type: ignore[override]
        n = super().write(data)
        if self.on_write is not None:
            self.on_write(self)
        return n


class ZeroStream(io.RawIOBase):
    """Raw stream producing a fixed number of zero bytes."""

    def __init__(self, size: int) -> None:
        super().__init__()
        self.remaining = size

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        n = min(len(buffer), self.remaining)
        buffer[:n] = b"\x00" * n
        self.remaining -= n
        return n


class FakeShell:
    """Scriptable PrivilegedShell.

    Commands not scripted with set() succeed with no output. Devices
    registered with add_device() exist and open to their backing object.
    """

    def __init__(self, privileged: bool = True) -> None:
        self.privileged = privileged
        self.responses: dict[str, CommandResult] = {}
        self.commands: list[str] = []
        self.devices: dict[str, object] = {}

    def set(self, command: str, *lines: str, success: bool = True) -> None:
        self.responses[command] = CommandResult(
            success=success, stdout_lines=list(lines), exit_code=0 if success else 1
        )

    def add_device(
        self,
        path: str,
        size_bytes: int | None,
        backing: object | None = None,
        sys_block_dir: str = "/sys/block",
    ) -> None:
        """Register a device; backing is a file path or a device object."""
        name = path.rsplit("/", 1)[-1]
        self.devices[path] = backing if backing is not None else CountingDevice()
        if size_bytes is not None:
            self.set(f"cat {sys_block_dir}/{name}/size", str(size_bytes // 512))

    def exec(self, command: str) -> CommandResult:
        self.commands.append(command)
        return self.responses.get(command, CommandResult(success=True, exit_code=0))

    def open_raw(self, path: str):
        backing = self.devices[path]
        if isinstance(backing, (str, Path)):
            fd = os.open(backing, os.O_RDWR)
            return os.fdopen(fd, "r+b", buffering=0)
        return backing

    def exists(self, path: str) -> bool:
        return path in self.devices

    def is_privileged(self) -> bool:
        return self.privileged


class FakeClock:
    """Monotonic clock advancing by a fixed step on every reading."""

    def __init__(self, step: float = 0.0, start: float = 1000.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def fake_shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and the user's database."""
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'flash.db'}",
        chunk_size=4 * MIB,
        progress_interval=0.5,
        min_device_size=64 * MIB,
        sys_block_dir="/sys/block",
        dev_dir="/dev",
        mounts_path="/proc/mounts",
        strict_unmount=False,
        verify_after_flash=False,
        use_sudo=False,
    )


@pytest.fixture
def session_factory(settings):
    from sdflasher.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def privileged_session(fake_shell):
    """Install the fake shell as the process-wide privileged session."""
    from sdflasher.privileged.session import close_session, init_session

    close_session()
    init_session(shell=fake_shell)
    yield fake_shell
    close_session()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Clock that only moves when a test sets step or advances now."""
    return FakeClock()


@pytest.fixture
def counting_device() -> CountingDevice:
    return CountingDevice()


@pytest.fixture
def scripted_device():
    """Factory for devices calling on_write(device) after each write."""
    return ScriptedDevice


@pytest.fixture
def zero_stream():
    """Factory for raw streams of N zero bytes."""
    return ZeroStream
