from __future__ import annotations

import io
from concurrent.futures import Future
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Protocol

from PIL import ExifTags, Image, UnidentifiedImageError

from .errors import AppError, ErrorCode, app_error
from .logging import get_logger


class Orientation(IntEnum):
    """EXIF orientation tag values; ``UP`` means row 0 is the visual top."""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


@dataclass(frozen=True)
class RawImage:
    image: Image.Image
    orientation: Orientation = Orientation.UP

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    @staticmethod
    def from_pil(img: Image.Image) -> RawImage:
        tag = img.getexif().get(ExifTags.Base.Orientation, 1)
        try:
            orientation = Orientation(int(tag))
        except (TypeError, ValueError):
            orientation = Orientation.UP
        return RawImage(image=img, orientation=orientation)


class CaptureSource(Protocol):
    """Produces at most one image per user action.

    The future resolves to ``None`` when the user cancelled or no capture
    device is available.
    """

    def capture(self) -> Future[RawImage | None]: ...


class FileCaptureSource:
    """Capture source backed by an image file on disk."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def capture(self) -> Future[RawImage | None]:
        fut: Future[RawImage | None] = Future()
        if not self._path.is_file():
            get_logger().info("capture_unavailable path=%s", self._path.as_posix())
            fut.set_result(None)
            return fut
        try:
            fut.set_result(decode_capture(self._path.read_bytes()))
        except AppError as exc:
            fut.set_exception(exc)
        except OSError as exc:
            fut.set_exception(app_error(ErrorCode.invalid_image, f"Failed to read image: {exc}"))
        return fut


def decode_capture(raw: bytes) -> RawImage:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except OSError as exc:
        raise app_error(ErrorCode.invalid_image, f"Failed to decode image: {exc}") from None
    return RawImage.from_pil(img)
