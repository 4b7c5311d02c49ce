from __future__ import annotations

import base64
from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import ImageFile
from starlette.datastructures import FormData

from ..capture import RawImage, decode_capture
from ..classifier import ClassificationResult, DigitClassifier
from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, ErrorResponse, app_error, new_error
from ..inference.engine import InferenceEngine
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import encode_png
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ClassifyResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = ErrorResponse.for_error(exc, rid)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_exception error=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    engine.try_load_active()
    return engine


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready", "model_id": engine.model_id}
        return {"status": "not_ready", "model_loaded": False, "model_id": None}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    async def _model_active() -> dict[str, object]:
        man = engine.manifest
        if man is None:
            return {"model_loaded": False, "model_id": None}
        return {"model_loaded": True, **man.to_dict()}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])
    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise app_error(
            ErrorCode.malformed_multipart,
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in ("image/png", "image/jpeg", "image/jpg"):
        raise app_error(ErrorCode.unsupported_media_type, "Only PNG and JPEG are supported")


def _validate_capture(raw: RawImage, limits: Limits) -> None:
    w, h = raw.size
    if max(w, h) > limits.max_side_px:
        raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")


def _to_response(result: ClassificationResult, visualize: bool) -> ClassifyResponse:
    png_b64: str | None = None
    if visualize:
        png = result.visual_png if result.visual_png is not None else encode_png(result.display)
        png_b64 = base64.b64encode(png).decode("ascii")
    pred = result.prediction
    return ClassifyResponse(
        status=pred.status,
        digit=pred.digit,
        confidence_percent=pred.confidence_percent,
        label=pred.label,
        confidence_text=pred.confidence_text,
        model_id=result.model_id,
        preprocessed_png_b64=png_b64,
        latency_ms=result.latency_ms,
    )


def _register_classify(
    app: FastAPI,
    dep_api_key: DependsParamType,
    provide_classifier: Callable[[], DigitClassifier],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _classify(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        visualize: bool = True,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> ClassifyResponse:
        classifier = provide_classifier()
        limits = provide_limits()

        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None and content_length > limits.max_bytes:
            raise app_error(ErrorCode.too_large, "Request body too large")

        data = await file.read()
        if len(data) > limits.max_bytes:
            raise app_error(ErrorCode.too_large, "File exceeds size limit")
        raw = decode_capture(data)
        _validate_capture(raw, limits)

        result = classifier.classify(raw, visualize=visualize)
        return _to_response(result, visualize)

    app.add_api_route(
        "/v1/classify",
        _classify,
        methods=["POST"],
        response_model=ClassifyResponse,
        dependencies=[dep_api_key],
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Application factory.

    ``engine_provider`` replaces the default engine (one that loads the active
    model from ``settings.model.model_dir``), primarily for tests.
    """
    s = settings or Settings.load()
    init_logging()
    app = FastAPI(title="digitsnap", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)

    engine = engine_provider() if engine_provider is not None else _create_engine(s)
    classifier = DigitClassifier(s, engine)
    limits = Limits.from_settings(s)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_classifier() -> DigitClassifier:
        return classifier

    def _provide_limits() -> Limits:
        return limits

    app.state.provide_classifier = _provide_classifier
    app.state.provide_limits = _provide_limits

    _register_basic(app, engine)
    _register_classify(app, Depends(api_key_dependency(s)), _provide_classifier, _provide_limits)
    return app
