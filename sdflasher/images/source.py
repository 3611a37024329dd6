"""Image sources for flashing.

An ImageFile is a snapshot of a user-chosen image: a byte-stream factory,
the size reported by whoever provided it (which may be the compressed
size), and a compression kind resolved once when the ImageFile is built.
"""

import logging
import os
import struct
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import BinaryIO

from sdflasher.images.compression import resolve_compression
from sdflasher.types import CompressionKind, format_bytes

logger = logging.getLogger(__name__)

# Gzip fallback when the size trailer cannot be read
GZIP_FALLBACK_RATIO = 3

# Typical compression ratio assumed for disk images in xz/zip containers
ESTIMATE_RATIO = 4


class ImageNotFoundError(Exception):
    """Image file does not exist."""

    def __init__(self, image_path: str) -> None:
        super().__init__(f"Image file not found: {image_path}")
        self.message = f"Image file not found: {image_path}"
        self.error_code = "IMAGE_NOT_FOUND"
        self.image_path = image_path


@dataclass(frozen=True)
class ImageFile:
    """An image selected for flashing.

    Attributes:
        name: File name hint (used for extension-based detection).
        declared_size_bytes: Size reported by the content provider.
        compression: Compression kind, resolved once.
        opener: Zero-argument callable returning a fresh binary stream.
        path: Filesystem path, when the image is a local file.
    """

    name: str
    declared_size_bytes: int
    compression: CompressionKind
    opener: Callable[[], BinaryIO]
    path: str | None = None

    def open(self) -> BinaryIO:
        """Open a fresh raw (still compressed) stream."""
        return self.opener()

    @property
    def display_name(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.declared_size_bytes)


def image_from_path(
    image_path: str | Path,
    compression: CompressionKind | None = None,
) -> ImageFile:
    """Build an ImageFile for a local file.

    Args:
        image_path: Path to the image.
        compression: Explicit compression kind; resolved from the file
            name and magic bytes when None.

    Returns:
        ImageFile snapshot.

    Raises:
        ImageNotFoundError: The file does not exist.
    """
    path = Path(image_path)
    if not path.is_file():
        raise ImageNotFoundError(str(path))

    opener = partial(open, path, "rb")
    if compression is None:
        compression = resolve_compression(path.name, opener)  # type: ignore[arg-type]

    image = ImageFile(
        name=path.name,
        declared_size_bytes=path.stat().st_size,
        compression=compression,
        opener=opener,  # type: ignore[arg-type]
        path=str(path),
    )
    logger.debug(
        "Image %s: %d bytes, compression=%s",
        image.name,
        image.declared_size_bytes,
        compression.value,
    )
    return image


def read_gzip_size_trailer(stream: BinaryIO) -> int | None:
    """Read the ISIZE trailer of a gzip stream.

    The trailer holds the uncompressed size modulo 2**32, so it is only
    exact for images smaller than 4 GiB.

    Args:
        stream: Seekable binary stream positioned anywhere.

    Returns:
        Little-endian trailer value, or None if the stream is too short
        or cannot seek.
    """
    if not stream.seekable():
        return None

    size = stream.seek(0, os.SEEK_END)
    if size <= 4:
        return None

    stream.seek(size - 4, os.SEEK_SET)
    trailer = stream.read(4)
    if len(trailer) != 4:
        return None
    value: int = struct.unpack("<I", trailer)[0]
    return value


def estimate_uncompressed_size(image: ImageFile) -> int:
    """Estimate how many bytes the decompressed image will produce.

    The result is advisory for compressed sources:
    - NONE: the declared size
    - GZIP: the size trailer (exact below 4 GiB), else declared * 3
    - XZ, ZIP: declared * 4

    Args:
        image: Image to estimate.

    Returns:
        Estimated uncompressed size in bytes.
    """
    if image.compression is CompressionKind.NONE:
        return image.declared_size_bytes

    if image.compression is CompressionKind.GZIP:
        try:
            with image.open() as stream:
                trailer = read_gzip_size_trailer(stream)
            if trailer is not None:
                return trailer
        except OSError as e:
            logger.warning("Could not read gzip size trailer of %s: %s", image.name, e)
        return image.declared_size_bytes * GZIP_FALLBACK_RATIO

    return image.declared_size_bytes * ESTIMATE_RATIO


__all__ = [
    "ESTIMATE_RATIO",
    "GZIP_FALLBACK_RATIO",
    "ImageFile",
    "ImageNotFoundError",
    "estimate_uncompressed_size",
    "image_from_path",
    "read_gzip_size_trailer",
]
