from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

import torch
from PIL import Image, ImageOps

from .capture import Orientation, RawImage
from .config import PipelineConfig
from .errors import AppError, ErrorCode, app_error
from .inference.types import PreprocessOutput

_SIGNATURE_FMT: Final[str] = "v1/orient+gray+invbin+bicubic{size}+unit"
_SUPPORTED_MODES: Final[frozenset[str]] = frozenset(
    {"1", "L", "LA", "P", "PA", "RGB", "RGBA", "RGBX", "CMYK", "YCbCr"}
)
_ALPHA_MODES: Final[frozenset[str]] = frozenset({"LA", "PA", "RGBA"})
_VISUAL_SCALE: Final[int] = 4

# Transpose that turns a buffer stored with the given EXIF orientation upright
_UPRIGHT_TRANSPOSE: Final[dict[Orientation, Image.Transpose]] = {
    Orientation.UP_MIRRORED: Image.Transpose.FLIP_LEFT_RIGHT,
    Orientation.DOWN: Image.Transpose.ROTATE_180,
    Orientation.DOWN_MIRRORED: Image.Transpose.FLIP_TOP_BOTTOM,
    Orientation.LEFT_MIRRORED: Image.Transpose.TRANSPOSE,
    Orientation.RIGHT: Image.Transpose.ROTATE_270,
    Orientation.RIGHT_MIRRORED: Image.Transpose.TRANSVERSE,
    Orientation.LEFT: Image.Transpose.ROTATE_90,
}


@dataclass(frozen=True)
class PreprocessOptions:
    threshold: int = 128
    target_size: int = 28
    visualize: bool = False
    visualize_max_kb: int = 16

    @staticmethod
    def from_config(cfg: PipelineConfig, *, visualize: bool = False) -> PreprocessOptions:
        return PreprocessOptions(
            threshold=int(cfg.threshold),
            target_size=int(cfg.target_size),
            visualize=visualize,
            visualize_max_kb=int(cfg.visualize_max_kb),
        )


def run_preprocess(raw: RawImage, opts: PreprocessOptions) -> PreprocessOutput:
    """Turn a captured photo into the model input tensor and its 28x28 rendering.

    Stages run strictly in order: orientation fix, grayscale with inverted
    binarization, interpolating resize, tensor extraction. A failure at any
    stage raises ``AppError(preprocessing_failed)`` and nothing partial is
    returned.
    """
    try:
        upright = fix_orientation(raw)
        binary = to_inverted_binary(upright, opts.threshold)
        resized = resize_to_target(binary, opts.target_size)
        tensor = extract_tensor(resized)
        visual: bytes | None = None
        if opts.visualize:
            visual = _visualize_png(resized, opts.visualize_max_kb)
        return PreprocessOutput(tensor=tensor, display=resized, visual_png=visual)
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError, MemoryError) as exc:
        raise app_error(ErrorCode.preprocessing_failed, str(exc) or type(exc).__name__) from None


def preprocess_signature(opts: PreprocessOptions | None = None) -> str:
    o = opts if opts is not None else PreprocessOptions()
    return _SIGNATURE_FMT.format(size=o.target_size)


def fix_orientation(raw: RawImage) -> Image.Image:
    img = raw.image
    width, height = img.size
    if width < 1 or height < 1:
        raise app_error(ErrorCode.preprocessing_failed, "image has zero size")
    if raw.orientation is Orientation.UP:
        return img
    return img.transpose(_UPRIGHT_TRANSPOSE[raw.orientation])


def to_inverted_binary(img: Image.Image, threshold: int = 128) -> Image.Image:
    """Luminance threshold with inverted polarity.

    Pixels brighter than ``threshold`` become background (0); everything else,
    including pixels equal to the threshold, becomes stroke (255).
    """
    gray = _to_grayscale(img)
    lut = [0 if i > threshold else 255 for i in range(256)]
    return gray.point(lut)


def resize_to_target(img: Image.Image, size: int = 28) -> Image.Image:
    if size < 1:
        raise app_error(ErrorCode.preprocessing_failed, "target size must be >= 1")
    return img.resize((size, size), resample=Image.Resampling.BICUBIC)


def extract_tensor(img: Image.Image) -> torch.Tensor:
    if img.mode != "L":
        raise app_error(ErrorCode.preprocessing_failed, f"expected mode L, got {img.mode}")
    width, height = img.size
    buf: bytes = img.tobytes()
    if len(buf) != width * height:
        raise app_error(ErrorCode.preprocessing_failed, "unexpected buffer size")
    data: list[float] = [p / 255.0 for p in buf]
    return torch.tensor(data, dtype=torch.float32).reshape(1, 1, height, width)


def _to_grayscale(img: Image.Image) -> Image.Image:
    if img.mode not in _SUPPORTED_MODES:
        raise app_error(ErrorCode.preprocessing_failed, f"unsupported color space: {img.mode}")
    out = img
    if out.mode in _ALPHA_MODES or (out.mode == "P" and "transparency" in out.info):
        rgba = out.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        out = Image.alpha_composite(bg, rgba).convert("RGB")
    if out.mode in ("P", "CMYK", "YCbCr"):
        out = out.convert("RGB")
    if out.mode != "L":
        out = ImageOps.grayscale(out)
    return out


def _visualize_png(img: Image.Image, max_kb: int) -> bytes | None:
    vis = img.resize(
        (img.size[0] * _VISUAL_SCALE, img.size[1] * _VISUAL_SCALE),
        resample=Image.Resampling.NEAREST,
    )
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
