"""Privileged execution capability.

The flash engine never touches the OS directly. Everything it needs is
expressed through two capabilities:
- exec: run a shell command, get its exit status and stdout lines
- open_raw: open a writable handle to a device path

LocalShell implements them for the current process using subprocess.
When it runs unprivileged with sudo enabled, device writes are streamed
into a 'sudo -n dd' process, since the node cannot be opened directly.
Any other transport (root daemon, RPC stub, test fake) can provide the
same interface without touching core logic.
"""

import errno
import io
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol, cast, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a privileged command.

    Attributes:
        success: Whether the command exited with status 0.
        stdout_lines: Standard output split into lines.
        exit_code: Raw exit status (None if the command never ran).
    """

    success: bool
    stdout_lines: list[str] = field(default_factory=list)
    exit_code: int | None = None

    @property
    def first_line(self) -> str | None:
        """First stdout line stripped, or None when there is no output."""
        for line in self.stdout_lines:
            return line.strip()
        return None


@runtime_checkable
class PrivilegedShell(Protocol):
    """Capability interface used by the device catalog, unmount and flash code."""

    def exec(self, command: str) -> CommandResult:
        """Run a shell command and return its result."""
        ...

    def open_raw(self, path: str) -> BinaryIO:
        """Open a raw writable handle to a device path."""
        ...

    def exists(self, path: str) -> bool:
        """Return True if the path exists."""
        ...

    def is_privileged(self) -> bool:
        """Return True if privileged access is available."""
        ...


class PipedDeviceWriter(io.RawIOBase):
    """Write-only device handle feeding a privileged dd process.

    Writes are strictly sequential. Data is committed when close() lets
    dd drain its input and fsync the device; a dd failure is raised as
    OSError from write() or close(), once.

    Args:
        path: Device path dd writes to.
        command: dd command line (including any sudo prefix).
    """

    def __init__(self, path: str, command: list[str]) -> None:
        super().__init__()
        self.path = path
        self._reported = False
        self._proc = subprocess.Popen(
            command,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        stdin = self._proc.stdin
        if stdin is None or stdin.closed:
            raise ValueError("write to closed device handle")
        try:
            stdin.write(data)
        except BrokenPipeError:
            raise self._failure() from None
        return len(data)

    def flush(self) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.closed:
            return
        try:
            stdin.flush()
        except BrokenPipeError:
            raise self._failure() from None

    def fileno(self) -> int:
        raise io.UnsupportedOperation("fileno")

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._proc.stdin is not None:
                try:
                    self._proc.stdin.close()
                except BrokenPipeError:
                    pass
            returncode = self._proc.wait()
        finally:
            super().close()
        if returncode != 0 and not self._reported:
            raise self._failure()
        if self._proc.stderr is not None:
            self._proc.stderr.close()

    def _failure(self) -> OSError:
        self._reported = True
        returncode = self._proc.wait()
        detail = ""
        if self._proc.stderr is not None:
            detail = self._proc.stderr.read().decode(errors="replace").strip()
            self._proc.stderr.close()
        return OSError(
            errno.EIO,
            f"dd exited with status {returncode}: {detail or 'no output'}",
            self.path,
        )


class LocalShell:
    """Run privileged operations in the current process.

    Commands are executed through /bin/sh so that globs, pipes and
    redirections behave as they would in an interactive root shell.
    When use_sudo is set, every command is prefixed with 'sudo -n'.
    """

    def __init__(self, *, use_sudo: bool = False, timeout: int = 30) -> None:
        self.use_sudo = use_sudo
        self.timeout = timeout

    def _compose(self, command: str) -> str:
        if self.use_sudo:
            return f"sudo -n sh -c {shlex.quote(command)}"
        return command

    def exec(self, command: str) -> CommandResult:
        """Run a shell command.

        Args:
            command: Shell command line.

        Returns:
            CommandResult with exit status and stdout lines. A command that
            cannot be started or times out is reported as unsuccessful.
        """
        full_command = self._compose(command)
        logger.debug("exec: %s", full_command)

        try:
            proc = subprocess.run(
                full_command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Command timed out after %ds: %s", self.timeout, command)
            return CommandResult(success=False)
        except OSError as e:
            logger.warning("Could not execute %s: %s", command, e)
            return CommandResult(success=False)

        if proc.returncode != 0 and proc.stderr:
            logger.debug("exec stderr (%d): %s", proc.returncode, proc.stderr.strip())

        return CommandResult(
            success=proc.returncode == 0,
            stdout_lines=proc.stdout.splitlines(),
            exit_code=proc.returncode,
        )

    def open_raw(self, path: str) -> BinaryIO:
        """Open a device (or regular file) for unbuffered writing.

        An unprivileged process with use_sudo cannot open the node itself,
        so the handle streams into 'sudo -n dd' instead.

        Args:
            path: Device path.

        Returns:
            Binary file object positioned at offset 0.

        Raises:
            OSError: The device (or the dd helper) could not be opened.
        """
        if self.use_sudo and os.geteuid() != 0:
            logger.debug("Opening %s through sudo dd", path)
            command = [
                "sudo",
                "-n",
                "dd",
                f"of={path}",
                "bs=4M",
                "conv=notrunc,fsync",
                "status=none",
            ]
            return cast(BinaryIO, PipedDeviceWriter(path, command))

        fd = os.open(path, os.O_RDWR)
        return os.fdopen(fd, "r+b", buffering=0)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_privileged(self) -> bool:
        """Check for root, or passwordless sudo when use_sudo is set."""
        if os.geteuid() == 0:
            return True
        if self.use_sudo:
            result = self.exec("true")
            return result.success
        return False


__all__ = ["CommandResult", "LocalShell", "PipedDeviceWriter", "PrivilegedShell"]
