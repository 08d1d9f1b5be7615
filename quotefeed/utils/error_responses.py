"""Builders for the structured error payloads returned by exception handlers.

Every payload carries the request id and a timezone-aware timestamp so a
failed like or feed fetch can be traced back to its log lines.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

from fastapi.responses import JSONResponse

from quotefeed.schemas.error import (
    ErrorResponse,
    ErrorType,
    ValidationErrorDetail,
    ValidationErrorResponse,
)
from quotefeed.utils.request_context import get_request_id

__all__ = [
    "build_error_response",
    "build_validation_error_response",
    "error_json_response",
]


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def build_validation_error_response(
    *,
    errors: Sequence[ValidationErrorDetail],
    message: str,
    detail: str,
    status_code: int,
    path: str,
    request_id: str | None = None,
) -> ValidationErrorResponse:
    return ValidationErrorResponse(
        error_type=ErrorType.VALIDATION_ERROR,
        message=message,
        detail=detail,
        status_code=status_code,
        timestamp=_current_timestamp(),
        request_id=request_id or get_request_id(),
        path=path,
        errors=list(errors),
    )


def build_error_response(
    *,
    error_type: ErrorType,
    message: str,
    detail: str,
    status_code: int,
    path: str,
    retry_after: int | None = None,
    request_id: str | None = None,
) -> ErrorResponse:
    """Construct an ``ErrorResponse``; ``retry_after`` is omitted for permanent errors."""

    return ErrorResponse(
        error_type=error_type,
        message=message,
        detail=detail,
        status_code=status_code,
        timestamp=_current_timestamp(),
        request_id=request_id or get_request_id(),
        path=path,
        retry_after=retry_after,
    )


def error_json_response(payload: ErrorResponse) -> JSONResponse:
    """Wrap ``payload`` in a ``JSONResponse`` using its own status code."""

    return JSONResponse(
        status_code=payload.status_code,
        content=payload.model_dump(mode="json"),
    )
