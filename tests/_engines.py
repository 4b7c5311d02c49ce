from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import torch

from digitsnap.config import Settings
from digitsnap.inference.engine import InferenceEngine
from digitsnap.inference.manifest import ModelManifest
from digitsnap.preprocess import preprocess_signature


class FixedModel:
    """Stands in for a network: always answers with the given probabilities."""

    def __init__(self, probs: Sequence[float]) -> None:
        self.logits = torch.log(torch.tensor([list(probs)], dtype=torch.float32))
        self.calls = 0
        self.last_input: torch.Tensor | None = None

    def eval(self) -> object:
        return self

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        self.calls += 1
        self.last_input = x
        return self.logits

    def load_state_dict(self, sd: dict[str, torch.Tensor]) -> object:
        return self


class BrokenModel(FixedModel):
    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        raise RuntimeError("backend exploded")


def make_manifest(model_id: str = "test_model") -> ModelManifest:
    return ModelManifest(
        schema_version="v1",
        model_id=model_id,
        arch="resnet18",
        n_classes=10,
        version="1.0.0",
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(),
        temperature=1.0,
    )


def make_ready_engine(settings: Settings, model: FixedModel) -> InferenceEngine:
    eng = InferenceEngine(settings)
    eng._manifest = make_manifest()
    eng._model = model
    return eng


def one_hot_probs(index: int, top: float) -> list[float]:
    rest = (1.0 - top) / 9.0
    return [top if i == index else rest for i in range(10)]
