"""Compression detection for disk images.

Classifies a stream by the magic bytes at its start:
- gzip: 1F 8B
- xz:   FD 37 7A 58 5A 00
- zip:  50 4B 03 04 (local file header)

Detection never consumes the stream; it needs either peek() or a seekable
stream. Callers holding a plain pipe must buffer it first.
"""

import io
import logging
import os
from collections.abc import Callable
from typing import BinaryIO

from sdflasher.types import CompressionKind

logger = logging.getLogger(__name__)

# Number of bytes inspected at the start of the stream
LOOKAHEAD_SIZE = 16

GZIP_MAGIC = b"\x1f\x8b"
XZ_MAGIC = b"\xfd7zXZ\x00"
ZIP_MAGIC = b"PK\x03\x04"

# Checked in order, first match wins
_SIGNATURES = (
    (GZIP_MAGIC, CompressionKind.GZIP),
    (XZ_MAGIC, CompressionKind.XZ),
    (ZIP_MAGIC, CompressionKind.ZIP),
)


def detect_bytes(header: bytes) -> CompressionKind:
    """Classify a header by magic-byte signature.

    Args:
        header: Leading bytes of the image.

    Returns:
        Detected kind; NONE when nothing matches or fewer than 2 bytes
        are available.
    """
    if len(header) < 2:
        return CompressionKind.NONE

    for magic, kind in _SIGNATURES:
        if header.startswith(magic):
            return kind

    return CompressionKind.NONE


def _peek_header(stream: BinaryIO) -> bytes:
    peek = getattr(stream, "peek", None)
    if callable(peek):
        # peek() may return more than requested
        return bytes(peek(LOOKAHEAD_SIZE)[:LOOKAHEAD_SIZE])

    if stream.seekable():
        position = stream.tell()
        try:
            return stream.read(LOOKAHEAD_SIZE) or b""
        finally:
            stream.seek(position, os.SEEK_SET)

    raise ValueError(
        "Stream must support peek() or seek(); wrap it in io.BufferedReader first"
    )


def detect(stream: BinaryIO) -> CompressionKind:
    """Detect the compression of a stream without consuming it.

    Args:
        stream: Binary stream supporting peek() or seek().

    Returns:
        Detected compression kind.

    Raises:
        ValueError: The stream can neither peek nor seek.
    """
    kind = detect_bytes(_peek_header(stream))
    logger.debug("Detected compression: %s", kind.value)
    return kind


def resolve_compression(
    filename: str,
    opener: Callable[[], BinaryIO] | None = None,
) -> CompressionKind:
    """Resolve the compression of an image once.

    The filename extension wins; magic bytes are only inspected when the
    extension is uninformative and an opener is available.

    Args:
        filename: Image file name (hint).
        opener: Zero-argument callable returning a fresh binary stream.

    Returns:
        Resolved compression kind.
    """
    kind = CompressionKind.from_extension(filename)
    if kind is not CompressionKind.NONE or opener is None:
        return kind

    with opener() as raw:
        stream = raw
        if not hasattr(raw, "peek") and not raw.seekable():
            stream = io.BufferedReader(raw)  # type: ignore[arg-type]
        return detect(stream)


__all__ = [
    "GZIP_MAGIC",
    "LOOKAHEAD_SIZE",
    "XZ_MAGIC",
    "ZIP_MAGIC",
    "detect",
    "detect_bytes",
    "resolve_compression",
]
