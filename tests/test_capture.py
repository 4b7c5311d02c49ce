from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from digitsnap.capture import FileCaptureSource, Orientation, RawImage, decode_capture
from digitsnap.errors import AppError, ErrorCode


def _jpeg_with_orientation(tag: int) -> bytes:
    img = Image.new("RGB", (40, 20), (255, 255, 255))
    exif = Image.Exif()
    exif[0x0112] = tag
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif)
    return buf.getvalue()


def test_decode_reads_exif_orientation() -> None:
    raw = decode_capture(_jpeg_with_orientation(6))
    assert raw.orientation is Orientation.RIGHT
    assert raw.size == (40, 20)


def test_missing_or_bogus_orientation_defaults_upright() -> None:
    assert RawImage.from_pil(Image.new("L", (3, 3))).orientation is Orientation.UP
    raw = decode_capture(_jpeg_with_orientation(42))
    assert raw.orientation is Orientation.UP


def test_decode_garbage_is_invalid_image() -> None:
    with pytest.raises(AppError) as ei:
        decode_capture(b"definitely not an image")
    assert ei.value.code is ErrorCode.invalid_image


def test_file_source_missing_file_yields_none(tmp_path: Path) -> None:
    fut = FileCaptureSource(tmp_path / "nope.png").capture()
    assert fut.result(timeout=1) is None


def test_file_source_reads_image(tmp_path: Path) -> None:
    p = tmp_path / "digit.png"
    Image.new("L", (10, 12), 255).save(p, format="PNG")
    raw = FileCaptureSource(p).capture().result(timeout=1)
    assert raw is not None
    assert raw.size == (10, 12)
    assert raw.orientation is Orientation.UP


def test_file_source_corrupt_file_sets_exception(tmp_path: Path) -> None:
    p = tmp_path / "digit.png"
    p.write_bytes(b"\x89PNG broken")
    fut = FileCaptureSource(p).capture()
    exc = fut.exception(timeout=1)
    assert isinstance(exc, AppError) and exc.code is ErrorCode.invalid_image
