from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    # Upload and decode problems, raised before the pipeline runs
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    malformed_multipart = "malformed_multipart"
    # One classification attempt failed; the next attempt starts clean
    preprocessing_failed = "preprocessing_failed"
    model_not_loaded = "model_not_loaded"
    inference_failed = "inference_failed"
    timeout = "timeout"
    unauthorized = "unauthorized"
    internal_error = "internal_error"


_STATUS: Final[dict[ErrorCode, int]] = {
    ErrorCode.invalid_image: status.HTTP_400_BAD_REQUEST,
    ErrorCode.unsupported_media_type: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ErrorCode.bad_dimensions: status.HTTP_400_BAD_REQUEST,
    ErrorCode.too_large: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.malformed_multipart: status.HTTP_400_BAD_REQUEST,
    ErrorCode.preprocessing_failed: status.HTTP_400_BAD_REQUEST,
    ErrorCode.model_not_loaded: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.timeout: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.unauthorized: status.HTTP_401_UNAUTHORIZED,
}

_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.unsupported_media_type: "Only PNG and JPEG photos are accepted.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.malformed_multipart: "Expected exactly one 'file' part.",
    ErrorCode.preprocessing_failed: "Could not prepare the photo for classification.",
    ErrorCode.model_not_loaded: "No digit model is loaded.",
    ErrorCode.inference_failed: "The digit model failed to produce scores.",
    ErrorCode.timeout: "Prediction timed out.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.internal_error: "Internal server error.",
}


def status_for(code: ErrorCode) -> int:
    return _STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGE.get(code, "")


class AppError(Exception):
    """A typed failure of one request or classification attempt.

    ``http_status`` defaults to the status mapped for ``code``; the original
    exception, when there is one, is chained as ``__cause__``.
    """

    def __init__(self, code: ErrorCode, http_status: int | None = None, message: str = "") -> None:
        msg = message or default_message(code)
        super().__init__(msg)
        self.code = code
        self.http_status = http_status if http_status is not None else status_for(code)
        self.message = msg


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    return AppError(code, message=message or "")


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    @classmethod
    def for_error(cls, exc: AppError, request_id: str) -> ErrorResponse:
        return cls(code=exc.code, message=exc.message, request_id=request_id)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message, "request_id": self.request_id}


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    return ErrorResponse(code=code, message=message or default_message(code), request_id=request_id)
