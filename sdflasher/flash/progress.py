"""Progress accounting for the flash copy loop.

FlashProgress is an immutable snapshot; percentage and ETA are derived
from its counters on access so they can never drift from them.
ProgressAccountant turns the raw byte counter of the copy loop into
rate-limited progress events with a windowed throughput.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from sdflasher.types import FlashStage, format_bytes

# Minimum seconds between two progress events
DEFAULT_INTERVAL = 0.5


@dataclass(frozen=True)
class FlashProgress:
    """Snapshot of a flash attempt.

    Attributes:
        bytes_written: Bytes written to the device so far.
        total_bytes: Expected total (an estimate for compressed images).
        speed_bytes_per_sec: Throughput over the last reporting window.
        stage: Current stage.
    """

    bytes_written: int = 0
    total_bytes: int = 0
    speed_bytes_per_sec: int = 0
    stage: FlashStage = FlashStage.IDLE

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return (self.bytes_written / self.total_bytes) * 100.0

    @property
    def eta_seconds(self) -> int | None:
        """Remaining seconds at the current speed, None when unknown."""
        if self.speed_bytes_per_sec <= 0:
            return None
        remaining = max(self.total_bytes - self.bytes_written, 0)
        return remaining // self.speed_bytes_per_sec

    @property
    def eta_formatted(self) -> str:
        seconds = self.eta_seconds
        if seconds is None:
            return "Calculating..."
        if seconds < 60:
            return f"{seconds}s"
        if seconds < 3600:
            return f"{seconds // 60}m {seconds % 60}s"
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"

    @property
    def speed_formatted(self) -> str:
        return f"{format_bytes(self.speed_bytes_per_sec)}/s"

    def with_stage(self, stage: FlashStage) -> "FlashProgress":
        """Return a copy in another stage."""
        return replace(self, stage=stage)


class ProgressAccountant:
    """Rate-limited progress reporting from a cumulative byte counter.

    Speed is measured over the window since the previous event, not as a
    cumulative average, so slowdowns show up as they happen.

    Args:
        total_bytes: Expected total bytes.
        interval: Minimum seconds between events.
        clock: Monotonic clock returning seconds.
    """

    def __init__(
        self,
        total_bytes: int,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total_bytes = total_bytes
        self.interval = interval
        self._clock = clock
        self._last_time = clock()
        self._last_bytes = 0
        self._events = 0

    @property
    def events_emitted(self) -> int:
        return self._events

    def update(self, bytes_written: int) -> FlashProgress | None:
        """Account for written bytes and emit an event when one is due.

        Args:
            bytes_written: Cumulative bytes written.

        Returns:
            A WRITING progress snapshot, or None if the interval has not
            elapsed since the last event.
        """
        now = self._clock()
        elapsed = now - self._last_time
        if elapsed < self.interval:
            return None

        speed = int((bytes_written - self._last_bytes) / elapsed) if elapsed > 0 else 0
        self._last_time = now
        self._last_bytes = bytes_written
        self._events += 1
        return FlashProgress(
            bytes_written=bytes_written,
            total_bytes=self.total_bytes,
            speed_bytes_per_sec=speed,
            stage=FlashStage.WRITING,
        )

    def finish(self, bytes_written: int) -> FlashProgress | None:
        """Emit the final zero-speed event, if the rate limit allows it.

        Args:
            bytes_written: Final cumulative byte count.

        Returns:
            Final snapshot, or None if the previous event is too recent.
        """
        now = self._clock()
        if now - self._last_time < self.interval:
            return None

        self._last_time = now
        self._last_bytes = bytes_written
        self._events += 1
        return FlashProgress(
            bytes_written=bytes_written,
            total_bytes=self.total_bytes,
            speed_bytes_per_sec=0,
            stage=FlashStage.SYNCING,
        )


__all__ = ["DEFAULT_INTERVAL", "FlashProgress", "ProgressAccountant"]
