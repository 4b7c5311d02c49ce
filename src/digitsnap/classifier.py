from __future__ import annotations

import time
from dataclasses import dataclass

from PIL import Image

from .capture import CaptureSource, RawImage
from .config import Settings
from .errors import AppError, ErrorCode, app_error
from .inference.engine import InferenceEngine
from .interpret import InterpretPolicy, Prediction, interpret_scores
from .logging import get_logger, log_event
from .preprocess import PreprocessOptions, run_preprocess


@dataclass(frozen=True)
class ClassificationResult:
    prediction: Prediction
    display: Image.Image  # the 28x28 image the model saw
    visual_png: bytes | None
    scores: tuple[float, ...]
    model_id: str | None
    latency_ms: int


class DigitClassifier:
    """Capture -> preprocess -> infer -> interpret, one attempt at a time.

    Every attempt is independent: errors are raised as ``AppError`` for the
    caller to surface and nothing is kept between calls except the engine's
    loaded model.
    """

    def __init__(self, settings: Settings, engine: InferenceEngine) -> None:
        self._settings = settings
        self._engine = engine
        self._policy = InterpretPolicy.from_config(settings.pipeline)

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    def classify_capture(self, source: CaptureSource) -> ClassificationResult | None:
        raw = source.capture().result()
        if raw is None:
            get_logger().info("capture_empty")
            return None
        return self.classify(raw)

    def classify(self, raw: RawImage, *, visualize: bool = False) -> ClassificationResult:
        t0 = time.perf_counter()
        opts = PreprocessOptions.from_config(self._settings.pipeline, visualize=visualize)
        try:
            pre = run_preprocess(raw, opts)
        except AppError as exc:
            log_event("classify_failed", fields={"code": exc.code.value})
            raise

        if not self._engine.ready:
            log_event("classify_failed", fields={"code": ErrorCode.model_not_loaded.value})
            raise app_error(ErrorCode.model_not_loaded, "Model not loaded")

        fut = self._engine.submit_predict(pre.tensor)
        try:
            scores = fut.result(timeout=float(self._settings.model.predict_timeout_seconds))
        except TimeoutError:
            log_event("classify_failed", fields={"code": ErrorCode.timeout.value})
            raise app_error(ErrorCode.timeout, "Prediction timed out") from None
        except AppError as exc:
            log_event("classify_failed", fields={"code": exc.code.value})
            raise

        prediction = interpret_scores(scores, self._policy)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        fields: dict[str, object] = {
            "latency_ms": dt_ms,
            "status": prediction.status,
            "model_id": self._engine.model_id or "",
        }
        if prediction.digit is not None and prediction.confidence_percent is not None:
            fields["digit"] = prediction.digit
            fields["confidence"] = round(prediction.confidence_percent, 2)
        log_event("classify_finished", fields=fields)
        return ClassificationResult(
            prediction=prediction,
            display=pre.display,
            visual_png=pre.visual_png,
            scores=tuple(scores),
            model_id=self._engine.model_id,
            latency_ms=dt_ms,
        )
