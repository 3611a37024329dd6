"""Disk image handling.

This module handles:
- Compression detection by extension and magic bytes
- Decompressing reads for gzip, xz and zip images
- Uncompressed size estimation
"""

from sdflasher.images.compression import detect, detect_bytes, resolve_compression
from sdflasher.images.reader import (
    DecompressionError,
    select_zip_entry,
    wrap,
    wrap_auto_detect,
)
from sdflasher.images.source import (
    ImageFile,
    ImageNotFoundError,
    estimate_uncompressed_size,
    image_from_path,
)

__all__ = [
    "DecompressionError",
    "ImageFile",
    "ImageNotFoundError",
    "detect",
    "detect_bytes",
    "estimate_uncompressed_size",
    "image_from_path",
    "resolve_compression",
    "select_zip_entry",
    "wrap",
    "wrap_auto_detect",
]
