from __future__ import annotations

from dataclasses import dataclass

from PIL import Image
from torch import Tensor

# One score per class, index = digit; not necessarily normalized
ScoreVector = tuple[float, ...]


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # 1x1xNxN float32 in [0, 1]
    display: Image.Image  # NxN mode "L", the image the tensor was read from
    visual_png: bytes | None
