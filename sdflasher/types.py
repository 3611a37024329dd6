"""Shared type definitions for sdflasher.

This module contains the enums shared across subpackages to avoid
circular imports. Integer wire codes are defined by explicit tables rather
than by declaration order, so reordering members never changes the codes
that senders and receivers agree on.
"""

from enum import Enum


class FlashStage(str, Enum):
    """Stage of a single flash attempt."""

    IDLE = "idle"
    PREPARING = "preparing"
    UNMOUNTING = "unmounting"
    WRITING = "writing"
    SYNCING = "syncing"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether this stage ends an attempt."""
        return self in _TERMINAL_STAGES

    @property
    def is_active(self) -> bool:
        """Whether an attempt is in progress in this stage."""
        return self in _ACTIVE_STAGES

    @property
    def display_name(self) -> str:
        """Human-readable stage label."""
        return _STAGE_DISPLAY_NAMES[self]

    @property
    def code(self) -> int:
        """Stable integer code used on the callback wire."""
        return STAGE_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "FlashStage":
        """Decode a wire code, falling back to IDLE for unknown values."""
        return _STAGES_BY_CODE.get(code, cls.IDLE)


STAGE_CODES: dict[FlashStage, int] = {
    FlashStage.IDLE: 0,
    FlashStage.PREPARING: 1,
    FlashStage.UNMOUNTING: 2,
    FlashStage.WRITING: 3,
    FlashStage.SYNCING: 4,
    FlashStage.VERIFYING: 5,
    FlashStage.COMPLETE: 6,
    FlashStage.FAILED: 7,
    FlashStage.CANCELLED: 8,
}

_STAGES_BY_CODE = {code: stage for stage, code in STAGE_CODES.items()}

_TERMINAL_STAGES = frozenset(
    {FlashStage.COMPLETE, FlashStage.FAILED, FlashStage.CANCELLED}
)

_ACTIVE_STAGES = frozenset(
    {
        FlashStage.PREPARING,
        FlashStage.UNMOUNTING,
        FlashStage.WRITING,
        FlashStage.SYNCING,
        FlashStage.VERIFYING,
    }
)

_STAGE_DISPLAY_NAMES = {
    FlashStage.IDLE: "Ready",
    FlashStage.PREPARING: "Preparing...",
    FlashStage.UNMOUNTING: "Unmounting partitions...",
    FlashStage.WRITING: "Writing image...",
    FlashStage.SYNCING: "Syncing...",
    FlashStage.VERIFYING: "Verifying...",
    FlashStage.COMPLETE: "Complete",
    FlashStage.FAILED: "Failed",
    FlashStage.CANCELLED: "Cancelled",
}


class CompressionKind(str, Enum):
    """Container/compression format of a disk image."""

    NONE = "none"
    GZIP = "gzip"
    XZ = "xz"
    ZIP = "zip"

    @property
    def extension(self) -> str:
        """Typical filename extension for this kind."""
        return _COMPRESSION_EXTENSIONS[self]

    @property
    def display_name(self) -> str:
        """Human-readable format name."""
        return _COMPRESSION_DISPLAY_NAMES[self]

    @property
    def code(self) -> int:
        """Stable integer code used in flash requests."""
        return COMPRESSION_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "CompressionKind":
        """Decode a wire code, falling back to NONE for unknown values."""
        return _COMPRESSION_BY_CODE.get(code, cls.NONE)

    @classmethod
    def from_extension(cls, filename: str) -> "CompressionKind":
        """Classify a filename by its extension.

        Args:
            filename: File name or path (case-insensitive).

        Returns:
            The matching kind, or NONE when the extension is uninformative.
        """
        lower = filename.lower()
        if lower.endswith(".gz"):
            return cls.GZIP
        if lower.endswith(".xz"):
            return cls.XZ
        if lower.endswith(".zip"):
            return cls.ZIP
        return cls.NONE


COMPRESSION_CODES: dict[CompressionKind, int] = {
    CompressionKind.NONE: 0,
    CompressionKind.GZIP: 1,
    CompressionKind.XZ: 2,
    CompressionKind.ZIP: 3,
}

_COMPRESSION_BY_CODE = {code: kind for kind, code in COMPRESSION_CODES.items()}

_COMPRESSION_EXTENSIONS = {
    CompressionKind.NONE: "img",
    CompressionKind.GZIP: "gz",
    CompressionKind.XZ: "xz",
    CompressionKind.ZIP: "zip",
}

_COMPRESSION_DISPLAY_NAMES = {
    CompressionKind.NONE: "Raw Image",
    CompressionKind.GZIP: "GZip Compressed",
    CompressionKind.XZ: "XZ Compressed",
    CompressionKind.ZIP: "ZIP Archive",
}


class FlashStatus(str, Enum):
    """Status of a recorded flash attempt."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def format_bytes(num_bytes: int) -> str:
    """Format a byte count with binary units (e.g. '1.5 GB').

    Args:
        num_bytes: Number of bytes.

    Returns:
        Human-readable size string.
    """
    if num_bytes < 1024:
        return f"{num_bytes} B"
    units = ["KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    unit_index = -1
    while True:
        value /= 1024
        unit_index += 1
        if value < 1024 or unit_index >= len(units) - 1:
            break
    return f"{value:.1f} {units[unit_index]}"


__all__ = [
    "COMPRESSION_CODES",
    "STAGE_CODES",
    "CompressionKind",
    "FlashStage",
    "FlashStatus",
    "format_bytes",
]
