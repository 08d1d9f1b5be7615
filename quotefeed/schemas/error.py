"""JSON bodies returned by the API's exception handlers.

Every non-2xx response carries an :class:`ErrorResponse` so clients can
branch on ``error_type`` instead of parsing messages, and can quote
``request_id`` (also echoed in the ``X-Request-ID`` header) when reporting a
problem.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorType(str, Enum):
    """Machine-readable failure category; the wire value is the lowercase name."""

    VALIDATION_ERROR = "validation_error"
    AUTHENTICATION_ERROR = "authentication_error"
    NOT_FOUND = "not_found"
    ENGAGEMENT_UNAVAILABLE = "engagement_unavailable"
    DATABASE_ERROR = "database_error"
    TIMEOUT_ERROR = "timeout_error"
    INTERNAL_ERROR = "internal_error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorResponse(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_type": "engagement_unavailable",
                "message": "Like could not be recorded",
                "detail": "Redis is in cool-down and the quotes database refused the write.",
                "status_code": 500,
                "timestamp": "2024-01-01T12:00:00Z",
                "request_id": "req_5f0c9e7a2b2d4d1e9a4f3c2b1a0d9e8f",
                "path": "/feed/likes/4b6f0a2e-5d0c-4c53-9f61-0c1b1f8a9e10",
                "retry_after": 5,
            }
        }
    )

    error_type: ErrorType = Field(..., description="Failure category clients switch on")
    message: str = Field(..., description="Short summary safe to show an end user")
    detail: str | None = Field(None, description="Diagnostic text for the failing request")
    status_code: int = Field(..., description="Same value as the HTTP status line")
    timestamp: datetime = Field(default_factory=_utc_now, description="UTC time of the failure")
    request_id: str | None = Field(None, description="Matches the X-Request-ID response header")
    path: str | None = Field(None, description="URL path of the rejected request")
    retry_after: int | None = Field(
        None, description="Suggested wait in seconds when both engagement stores were down"
    )


class ValidationErrorDetail(BaseModel):
    """One rejected input, located as ``<source>.<name>`` (``query.limit``)."""

    field: str = Field(..., description="Dotted location of the rejected input")
    message: str = Field(..., description="Why the input was rejected")
    value: Any = Field(None, description="The rejected input as received")


class ValidationErrorResponse(ErrorResponse):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_type": "validation_error",
                "message": "Request validation failed",
                "detail": "1 validation error(s)",
                "status_code": 422,
                "timestamp": "2024-01-01T12:00:00Z",
                "request_id": "req_5f0c9e7a2b2d4d1e9a4f3c2b1a0d9e8f",
                "path": "/feed",
                "errors": [
                    {"field": "query.limit", "message": "Input should be at most 100", "value": 150},
                ],
            }
        }
    )

    error_type: ErrorType = Field(default=ErrorType.VALIDATION_ERROR)
    errors: list[ValidationErrorDetail] = Field(
        default_factory=list, description="Every rejected input, not just the first"
    )
