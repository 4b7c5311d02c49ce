from __future__ import annotations

import argparse
import json
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path
from typing import Final

from .capture import FileCaptureSource
from .classifier import ClassificationResult, DigitClassifier
from .config import Settings
from .errors import AppError, ErrorCode
from .inference.engine import InferenceEngine
from .logging import get_logger, init_logging

EXIT_OK: Final[int] = 0
EXIT_NO_IMAGE: Final[int] = 1
EXIT_PREPROCESSING_FAILED: Final[int] = 2
EXIT_MODEL_NOT_LOADED: Final[int] = 3
EXIT_INFERENCE_FAILED: Final[int] = 4
EXIT_OUTPUT_FAILED: Final[int] = 5

_EXIT_FOR_CODE: Final[dict[ErrorCode, int]] = {
    ErrorCode.invalid_image: EXIT_PREPROCESSING_FAILED,
    ErrorCode.too_large: EXIT_PREPROCESSING_FAILED,
    ErrorCode.preprocessing_failed: EXIT_PREPROCESSING_FAILED,
    ErrorCode.model_not_loaded: EXIT_MODEL_NOT_LOADED,
}


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="digitsnap", description="Handwritten digit classifier")
    sub = ap.add_subparsers(dest="command", required=True)

    cl = sub.add_parser("classify", help="Classify a photo of a single handwritten digit")
    cl.add_argument("path", help="Image file (PNG or JPEG)")
    cl.add_argument("--save-preprocessed", default=None, help="Write the 28x28 input as PNG")
    cl.add_argument("--threshold", type=int, default=None, help="Binarization threshold 0-255")
    cl.add_argument("--json", action="store_true", help="Print the result as JSON")

    sv = sub.add_parser("serve", help="Run the HTTP API")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=None)
    return ap


def run_classify(
    settings: Settings,
    path: Path,
    *,
    save_preprocessed: Path | None = None,
    as_json: bool = False,
    engine: InferenceEngine | None = None,
) -> int:
    logger = get_logger()
    try:
        raw = FileCaptureSource(path).capture().result()
    except AppError as exc:
        logger.info("classify_error code=%s", exc.code.value)
        print(f"Error: {exc.message}")
        return _EXIT_FOR_CODE.get(exc.code, EXIT_PREPROCESSING_FAILED)
    if raw is None:
        print("No image captured")
        return EXIT_NO_IMAGE
    try:
        eng = engine if engine is not None else InferenceEngine.load(settings)
    except AppError as exc:
        print(f"Error: {exc.message}")
        return EXIT_MODEL_NOT_LOADED
    try:
        result = DigitClassifier(settings, eng).classify(raw)
    except AppError as exc:
        logger.info("classify_error code=%s", exc.code.value)
        print(f"Error: {exc.message}")
        return _EXIT_FOR_CODE.get(exc.code, EXIT_INFERENCE_FAILED)
    finally:
        if engine is None:
            eng.shutdown()
    print(_render(result, as_json))
    if save_preprocessed is not None:
        try:
            result.display.save(save_preprocessed, format="PNG")
        except OSError as exc:
            logger.info("save_preprocessed_failed path=%s", save_preprocessed.as_posix())
            print(f"Error: could not write {save_preprocessed}: {exc.strerror or exc}")
            return EXIT_OUTPUT_FAILED
    return EXIT_OK


def _render(result: ClassificationResult, as_json: bool) -> str:
    pred = result.prediction
    if as_json:
        return json.dumps(
            {
                "status": pred.status,
                "digit": pred.digit,
                "confidence_percent": pred.confidence_percent,
                "label": pred.label,
                "confidence_text": pred.confidence_text,
                "model_id": result.model_id,
            }
        )
    if pred.confidence_text:
        return f"{pred.label}\n{pred.confidence_text}"
    return pred.label


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "classify" and args.threshold is not None:
        if not (0 <= int(args.threshold) <= 255):
            parser.error("--threshold must be within 0-255")
    init_logging()
    settings = Settings.load()
    if args.command == "serve":  # pragma: no cover - process glue
        import uvicorn

        port = int(args.port) if args.port is not None else settings.app.port
        uvicorn.run("digitsnap.api.app:create_app", factory=True, host=args.host, port=port)
        return EXIT_OK
    if args.threshold is not None:
        settings = replace(
            settings, pipeline=replace(settings.pipeline, threshold=int(args.threshold))
        )
    save = Path(args.save_preprocessed) if args.save_preprocessed else None
    return run_classify(settings, Path(args.path), save_preprocessed=save, as_json=bool(args.json))


if __name__ == "__main__":
    raise SystemExit(main())
