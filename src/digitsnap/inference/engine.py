from __future__ import annotations

import math
import pickle
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..errors import ErrorCode, app_error
from ..logging import get_logger
from ..preprocess import PreprocessOptions, preprocess_signature
from .manifest import ModelManifest
from .types import ScoreVector

_SUPPORTED_ARCHS: Final[tuple[str, ...]] = ("resnet18",)
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


class InferenceEngine:
    """Runs the active digit model on a worker thread.

    The model is loaded once and never mutated afterwards; callers receive a
    single-shot future per prediction.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        self._side = int(settings.pipeline.target_size)
        torch.set_num_threads(1)

    @classmethod
    def load(cls, settings: Settings) -> InferenceEngine:
        """Build an engine and load the active model, raising if that fails."""
        engine = cls(settings)
        if not engine.try_load_active():
            engine.shutdown()
            raise app_error(
                ErrorCode.model_not_loaded,
                f"Model {settings.model.active_model!r} could not be loaded",
            )
        return engine

    @property
    def ready(self) -> bool:
        return self._model is not None and self._manifest is not None

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._manifest is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    def submit_predict(self, preprocessed: Tensor) -> Future[ScoreVector]:
        return self._pool.submit(self._predict_impl, preprocessed)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    def _predict_impl(self, preprocessed: Tensor) -> ScoreVector:
        man = self._manifest
        model_obj = self._model
        if man is None or model_obj is None:
            raise app_error(ErrorCode.model_not_loaded, "Model not loaded")

        expected = self._side * self._side
        if int(preprocessed.numel()) != expected:
            raise app_error(
                ErrorCode.inference_failed,
                f"input has {int(preprocessed.numel())} values, model expects {expected}",
            )
        batch = preprocessed.reshape(1, 1, self._side, self._side).to(dtype=torch.float32)
        try:
            model_obj.eval()
            with torch.no_grad():
                logits = model_obj(batch)
            scores = _softmax_scores(logits, float(man.temperature))
        except Exception as exc:
            self._logger.info("inference_failed error=%s", type(exc).__name__)
            raise app_error(ErrorCode.inference_failed, f"Prediction failed: {exc}") from exc
        if len(scores) != int(man.n_classes):
            raise app_error(
                ErrorCode.inference_failed,
                f"model returned {len(scores)} scores, expected {man.n_classes}",
            )
        if not all(math.isfinite(s) for s in scores):
            raise app_error(ErrorCode.inference_failed, "model returned non-finite scores")
        return scores

    def try_load_active(self) -> bool:
        active = self._settings.model.active_model
        model_dir = self._settings.model.model_dir / active
        manifest_path = model_dir / "manifest.json"
        model_path = model_dir / "model.pt"
        if not (manifest_path.exists() and model_path.exists()):
            self._logger.info("model_artifacts_missing dir=%s", model_dir.as_posix())
            return False
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError):
            self._logger.info("manifest_load_failed")
            return False
        expected_sig = preprocess_signature(PreprocessOptions.from_config(self._settings.pipeline))
        if manifest.preprocess_hash != expected_sig:
            self._logger.info(
                "preprocess_signature_mismatch manifest=%s expected=%s",
                manifest.preprocess_hash,
                expected_sig,
            )
            return False
        if manifest.arch not in _SUPPORTED_ARCHS:
            self._logger.info("unsupported_arch arch=%s", manifest.arch)
            return False
        try:
            sd = _load_state_dict_file(model_path)
        except _LOAD_ERRORS:
            self._logger.info("state_dict_load_failed")
            return False
        model = _build_model(arch=manifest.arch, n_classes=int(manifest.n_classes))
        try:
            _validate_state_dict(sd, manifest.arch, int(manifest.n_classes))
            model.load_state_dict(sd)
        except (ValueError, RuntimeError):
            self._logger.info("state_dict_invalid")
            return False
        model.eval()
        self._model = model
        self._manifest = manifest
        self._logger.info("model_loaded model_id=%s arch=%s", manifest.model_id, manifest.arch)
        return True


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    size = max(1, int(settings.app.threads))
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


if TYPE_CHECKING:

    def _build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def _build_model(arch: str, n_classes: int) -> TorchModel:
        import importlib

        import torch.nn as nn

        if arch not in _SUPPORTED_ARCHS:
            raise RuntimeError(f"unsupported arch: {arch}")
        tv_models = importlib.import_module("torchvision.models")
        fn_obj = getattr(tv_models, arch, None)
        if not callable(fn_obj):
            raise RuntimeError(f"torchvision.models.{arch} is not callable")
        inner = fn_obj(weights=None, num_classes=int(n_classes))
        # 1-channel CIFAR-style stem for 28x28 input
        inner.conv1 = nn.Conv2d(1, 64, kernel_size=3, stride=1, padding=1, bias=False)
        inner.maxpool = nn.Identity()
        return inner


if TYPE_CHECKING:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]: ...
else:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
        m = _build_model(arch=arch, n_classes=n_classes)
        out: dict[str, Tensor] = {}
        for k, v in m.state_dict().items():
            if not (isinstance(k, str) and torch.is_tensor(v)):
                raise RuntimeError("invalid state dict entry from model")
            out[k] = v
        return out


def _softmax_scores(logits: Tensor, temperature: float) -> ScoreVector:
    if logits.ndim == 1:
        logits = logits.unsqueeze(0)
    probs = torch.softmax(logits / temperature, dim=1)[0]
    return tuple(float(probs[i].item()) for i in range(int(probs.shape[0])))


if TYPE_CHECKING:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]: ...
else:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
        obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
        sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
        if not isinstance(sd_obj, dict):
            raise ValueError("state dict file did not contain a dict")
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if not (isinstance(k, str) and torch.is_tensor(v)):
                raise ValueError("invalid state dict entry")
            out[k] = v
        return out


def _validate_state_dict(sd: dict[str, Tensor], arch: str, n_classes: int) -> None:
    w = sd.get("fc.weight")
    b = sd.get("fc.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")
    # ResNet-18 feature width
    if int(w.shape[1]) != 512:
        raise ValueError("classifier head in_features does not match backbone")
    conv1 = sd.get("conv1.weight")
    if conv1 is None or conv1.ndim != 4:
        raise ValueError("missing or invalid conv1.weight")
    if int(conv1.shape[0]) != 64 or int(conv1.shape[1]) != 1:
        raise ValueError("unexpected conv1 shape for 1-channel stem")

