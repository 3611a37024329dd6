"""Decompressing reader for disk images.

wrap() turns a raw image stream plus its compression kind into a uniform
stream of decompressed bytes:
- NONE: the raw stream, buffered
- GZIP / XZ: inflated transparently on every read()
- ZIP: the stream of one selected archive entry

Corrupt or truncated compressed input surfaces as DecompressionError.
Closing the returned stream also closes the raw stream.
"""

import gzip
import io
import logging
import lzma
import shutil
import tempfile
import zipfile
import zlib
from typing import BinaryIO

from sdflasher.images.compression import detect
from sdflasher.types import CompressionKind

logger = logging.getLogger(__name__)

# Read buffer put in front of unbuffered raw streams
RAW_BUFFER_SIZE = 64 * 1024

# Spool chunk size for non-seekable zip sources
_SPOOL_CHUNK_SIZE = 4 * 1024 * 1024

# Exceptions raised by the stdlib codecs on corrupt or truncated input
_CODEC_ERRORS = (
    EOFError,
    zlib.error,
    lzma.LZMAError,
    gzip.BadGzipFile,
    zipfile.BadZipFile,
)


class DecompressionError(Exception):
    """Compressed input is corrupt or truncated."""

    def __init__(self, kind: CompressionKind, detail: str) -> None:
        message = f"Failed to decompress {kind.display_name} image: {detail}"
        super().__init__(message)
        self.message = message
        self.error_code = "DECOMPRESSION_FAILED"
        self.kind = kind


class DecompressingStream(io.RawIOBase):
    """Read-only stream translating codec failures into DecompressionError.

    Args:
        inner: Decompressing file object to read from.
        kind: Compression kind (for error messages).
        resources: Objects closed, in order, after inner on close().
    """

    def __init__(
        self,
        inner: BinaryIO,
        kind: CompressionKind,
        resources: list[BinaryIO | zipfile.ZipFile] | None = None,
    ) -> None:
        super().__init__()
        self._inner = inner
        self.kind = kind
        self._resources = resources or []

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        try:
            return self._inner.read(size)
        except _CODEC_ERRORS as e:
            raise DecompressionError(self.kind, str(e) or type(e).__name__) from e

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        data = self.read(len(buffer))
        n = len(data)
        buffer[:n] = data
        return n

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._inner.close()
        finally:
            for resource in self._resources:
                resource.close()
            super().close()


def _buffered(raw: BinaryIO) -> BinaryIO:
    if isinstance(raw, io.BufferedIOBase):
        return raw
    return io.BufferedReader(raw, RAW_BUFFER_SIZE)  # type: ignore[arg-type]


def select_zip_entry(entries: list[zipfile.ZipInfo]) -> zipfile.ZipInfo | None:
    """Pick the disk image out of an archive listing.

    Entries are scanned in archive order. The first non-directory entry
    whose name ends in '.img' (case-insensitive) or has no '.' at all is
    chosen; otherwise the first file entry. This assumes one meaningful
    image per archive and can pick the wrong file in multi-image archives.

    Args:
        entries: Archive entries in archive order.

    Returns:
        Selected entry, or None if the archive holds no files.
    """
    files = [entry for entry in entries if not entry.is_dir()]
    for entry in files:
        name = entry.filename
        if name.lower().endswith(".img") or "." not in name:
            return entry
    return files[0] if files else None


def _wrap_zip(raw: BinaryIO) -> DecompressingStream:
    resources: list[BinaryIO | zipfile.ZipFile] = []
    source = raw

    if not raw.seekable():
        # zipfile needs random access to reach the central directory
        logger.warning(
            "Zip image is not seekable; spooling the whole archive to %s",
            tempfile.gettempdir(),
        )
        spool = tempfile.TemporaryFile(prefix="sdflasher_zip_")
        try:
            shutil.copyfileobj(raw, spool, _SPOOL_CHUNK_SIZE)
            spool.seek(0)
        except OSError as e:
            spool.close()
            raw.close()
            raise DecompressionError(
                CompressionKind.ZIP, f"could not spool archive to disk: {e}"
            ) from e
        resources.append(spool)
        source = spool  # type: ignore[assignment]
    resources.append(raw)

    try:
        archive = zipfile.ZipFile(source)
    except _CODEC_ERRORS as e:
        for resource in resources:
            resource.close()
        raise DecompressionError(CompressionKind.ZIP, str(e)) from e

    entry = select_zip_entry(archive.infolist())
    if entry is None:
        archive.close()
        for resource in resources:
            resource.close()
        raise DecompressionError(CompressionKind.ZIP, "archive contains no files")

    logger.info(
        "Using zip entry %s (%d bytes uncompressed)", entry.filename, entry.file_size
    )
    inner = archive.open(entry)
    return DecompressingStream(
        inner, CompressionKind.ZIP, resources=[archive, *resources]  # type: ignore[arg-type]
    )


def wrap(raw: BinaryIO, kind: CompressionKind) -> BinaryIO:
    """Wrap a raw image stream so that reads yield decompressed bytes.

    Zip archives need random access. A non-seekable zip source is first
    copied whole into a temporary file (under TMPDIR), so that location
    must have room for the complete archive.

    Args:
        raw: Raw (possibly compressed) binary stream.
        kind: Compression kind of the stream.

    Returns:
        Binary stream of decompressed image bytes.

    Raises:
        DecompressionError: A zip archive cannot be opened, spooled or is
            empty.
    """
    logger.debug("Wrapping image stream (compression=%s)", kind.value)

    if kind is CompressionKind.NONE:
        return _buffered(raw)

    if kind is CompressionKind.GZIP:
        buffered = _buffered(raw)
        inner = gzip.GzipFile(fileobj=buffered, mode="rb")
        return DecompressingStream(inner, kind, resources=[buffered])  # type: ignore[return-value]

    if kind is CompressionKind.XZ:
        buffered = _buffered(raw)
        inner = lzma.LZMAFile(buffered, mode="rb")
        return DecompressingStream(inner, kind, resources=[buffered])  # type: ignore[arg-type,return-value]

    return _wrap_zip(raw)  # type: ignore[return-value]


def wrap_auto_detect(raw: BinaryIO) -> tuple[BinaryIO, CompressionKind]:
    """Detect the compression of a raw stream and wrap it accordingly.

    Args:
        raw: Raw binary stream.

    Returns:
        Tuple of (decompressed stream, detected kind).
    """
    buffered = _buffered(raw)
    kind = detect(buffered)
    return wrap(buffered, kind), kind


__all__ = [
    "DecompressingStream",
    "DecompressionError",
    "RAW_BUFFER_SIZE",
    "select_zip_entry",
    "wrap",
    "wrap_auto_detect",
]
