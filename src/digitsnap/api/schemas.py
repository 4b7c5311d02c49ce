from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    status: str
    digit: int | None
    confidence_percent: float | None
    label: str
    confidence_text: str
    model_id: str | None
    preprocessed_png_b64: str | None
    latency_ms: int
