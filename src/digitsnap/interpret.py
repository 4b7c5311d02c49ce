from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final, Literal

from .config import PipelineConfig

PredictionStatus = Literal["digit", "not_a_digit", "no_prediction"]

NOT_A_DIGIT_LABEL: Final[str] = "The photo taken is probably not a handwritten digit."
NO_PREDICTION_LABEL: Final[str] = "No prediction available"


@dataclass(frozen=True)
class InterpretPolicy:
    reject_below_percent: float = 20.0
    decimals: int = 2

    @staticmethod
    def from_config(cfg: PipelineConfig) -> InterpretPolicy:
        return InterpretPolicy(
            reject_below_percent=float(cfg.reject_below_percent),
            decimals=int(cfg.confidence_decimals),
        )


@dataclass(frozen=True)
class Prediction:
    status: PredictionStatus
    digit: int | None
    confidence_percent: float | None
    label: str
    confidence_text: str


def interpret_scores(scores: Sequence[float], policy: InterpretPolicy) -> Prediction:
    """Map a model score vector to the user-facing decision.

    The winning class is the first maximum in index order. Its score times 100
    is the confidence; anything strictly below ``policy.reject_below_percent``
    is reported as not a digit. An empty or non-finite vector yields no
    prediction.
    """
    if len(scores) == 0 or not all(math.isfinite(float(s)) for s in scores):
        return Prediction(
            status="no_prediction",
            digit=None,
            confidence_percent=None,
            label=NO_PREDICTION_LABEL,
            confidence_text="",
        )
    top_idx = argmax_first(scores)
    pct = float(scores[top_idx]) * 100.0
    if pct < policy.reject_below_percent:
        return Prediction(
            status="not_a_digit",
            digit=None,
            confidence_percent=None,
            label=NOT_A_DIGIT_LABEL,
            confidence_text="",
        )
    return Prediction(
        status="digit",
        digit=top_idx,
        confidence_percent=pct,
        label=f"Predicted digit: {top_idx}",
        confidence_text=f"Confidence: {pct:.{policy.decimals}f}%",
    )


def argmax_first(values: Sequence[float]) -> int:
    if len(values) == 0:
        raise ValueError("argmax of empty sequence")
    top_idx = 0
    best = values[0]
    for i in range(1, len(values)):
        if values[i] > best:
            best = values[i]
            top_idx = i
    return top_idx
