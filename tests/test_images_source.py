"""Tests for images/source.py - image files and size estimation."""

import gzip
import io
import lzma
import struct
import zipfile

import pytest

from sdflasher.images.source import (
    ESTIMATE_RATIO,
    GZIP_FALLBACK_RATIO,
    ImageFile,
    ImageNotFoundError,
    estimate_uncompressed_size,
    image_from_path,
    read_gzip_size_trailer,
)
from sdflasher.types import CompressionKind


class _NonSeekable(io.BytesIO):
    def seekable(self) -> bool:
        return False


def _image(data: bytes, compression: CompressionKind, name: str = "image") -> ImageFile:
    return ImageFile(
        name=name,
        declared_size_bytes=len(data),
        compression=compression,
        opener=lambda: io.BytesIO(data),
    )


class TestImageFromPath:
    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ImageNotFoundError) as exc_info:
            image_from_path(tmp_path / "missing.img")
        assert exc_info.value.error_code == "IMAGE_NOT_FOUND"

    def test_raw_image(self, tmp_path) -> None:
        path = tmp_path / "disk.img"
        path.write_bytes(b"\x00" * 4096)

        image = image_from_path(path)

        assert image.name == "disk.img"
        assert image.path == str(path)
        assert image.declared_size_bytes == 4096
        assert image.compression is CompressionKind.NONE
        with image.open() as stream:
            assert stream.read() == b"\x00" * 4096

    def test_magic_bytes_used_for_unknown_extension(self, tmp_path) -> None:
        path = tmp_path / "download.bin"
        path.write_bytes(lzma.compress(b"payload"))
        assert image_from_path(path).compression is CompressionKind.XZ

    def test_explicit_compression(self, tmp_path) -> None:
        path = tmp_path / "download.bin"
        path.write_bytes(b"raw")
        image = image_from_path(path, CompressionKind.GZIP)
        assert image.compression is CompressionKind.GZIP

    def test_display_helpers(self, tmp_path) -> None:
        path = tmp_path / "disk.img"
        path.write_bytes(b"\x00" * 2048)
        image = image_from_path(path)
        assert image.display_name == "disk.img"
        assert image.size_formatted == "2.0 KB"


class TestReadGzipSizeTrailer:
    def test_reads_little_endian_trailer(self) -> None:
        data = b"\x1f\x8b" + b"\x00" * 10 + struct.pack("<I", 52_428_800)
        assert read_gzip_size_trailer(io.BytesIO(data)) == 52_428_800

    def test_too_short(self) -> None:
        assert read_gzip_size_trailer(io.BytesIO(b"\x1f\x8b\x00\x00")) is None

    def test_not_seekable(self) -> None:
        assert read_gzip_size_trailer(_NonSeekable(b"\x00" * 32)) is None


class TestEstimateUncompressedSize:
    def test_raw_is_declared_size(self) -> None:
        image = _image(b"\x00" * 1000, CompressionKind.NONE)
        assert estimate_uncompressed_size(image) == 1000

    def test_gzip_uses_trailer(self) -> None:
        """A 50 MiB image compresses to a few KiB but estimates exactly."""
        data = gzip.compress(b"\x00" * 52_428_800)
        image = _image(data, CompressionKind.GZIP)
        assert estimate_uncompressed_size(image) == 52_428_800

    def test_gzip_fallback_without_seek(self) -> None:
        data = gzip.compress(b"\x00" * 1000)
        image = ImageFile(
            name="image.gz",
            declared_size_bytes=len(data),
            compression=CompressionKind.GZIP,
            opener=lambda: _NonSeekable(data),
        )
        assert estimate_uncompressed_size(image) == len(data) * GZIP_FALLBACK_RATIO

    def test_xz_ratio(self) -> None:
        image = _image(b"\x00" * 1000, CompressionKind.XZ)
        assert estimate_uncompressed_size(image) == 1000 * ESTIMATE_RATIO

    def test_zip_ratio(self) -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("a.img", b"\x00" * 100)
        data = buffer.getvalue()
        image = _image(data, CompressionKind.ZIP)
        assert estimate_uncompressed_size(image) == len(data) * 4
