"""Typed application errors and the action result envelope."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from portal.logging import get_logger

T = TypeVar("T")

_logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Error codes surfaced to admin and user callers."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    RATE_LIMITED = "RATE_LIMITED"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.DEPENDENCY_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_status_for(code: ErrorCode | None) -> int:
    if code is None:
        return status.HTTP_200_OK
    return _HTTP_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


class AppError(Exception):
    """Base exception carrying a public message and an :class:`ErrorCode`."""

    __slots__ = ("message", "code", "http_status", "meta")

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        http_status: int | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status if http_status is not None else http_status_for(code)
        self.meta = dict(meta) if meta is not None else None


class ValidationAppError(AppError):
    def __init__(self, message: str = "Invalid input", *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION_ERROR, meta=meta)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, code=ErrorCode.UNAUTHORIZED)


class NotFoundError(AppError):
    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, code=ErrorCode.NOT_FOUND)


class InvalidStateError(AppError):
    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, code=ErrorCode.INVALID_STATE, meta=meta)


class RateLimitedError(AppError):
    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after_ms: int | None = None,
    ) -> None:
        meta = {"retry_after_ms": max(0, retry_after_ms)} if retry_after_ms is not None else None
        super().__init__(message, code=ErrorCode.RATE_LIMITED, meta=meta)


class DependencyError(AppError):
    """An upstream service is unreachable, unconfigured or rejected our credentials."""

    def __init__(self, message: str = "Upstream service is unavailable", *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, code=ErrorCode.DEPENDENCY_ERROR, meta=meta)


@dataclass(slots=True)
class ActionResult(Generic[T]):
    """Envelope returned by every admin and user action.

    Failures are values, never exceptions, so callers render ``error`` without
    having to know about the error hierarchy.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> ActionResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, message: str, code: ErrorCode = ErrorCode.INTERNAL_ERROR) -> ActionResult[T]:
        return cls(success=False, error=message, code=code)

    @classmethod
    def from_error(cls, exc: AppError) -> ActionResult[T]:
        return cls(success=False, error=exc.message, code=exc.code)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            if self.data is not None:
                payload["data"] = self.data
        else:
            payload["error"] = self.error
            if self.code is not None:
                payload["code"] = self.code.value
        return payload


def action_response(result: ActionResult[Any]) -> JSONResponse:
    """Serialise ``result`` with an HTTP status derived from its error code."""

    status_code = http_status_for(result.code) if not result.success else status.HTTP_200_OK
    if status_code >= 500:
        _logger.error(
            "Action failed",
            extra={"event": "api.error", "code": result.code.value if result.code else None},
        )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict()))


__all__ = [
    "ActionResult",
    "AppError",
    "DependencyError",
    "ErrorCode",
    "InvalidStateError",
    "NotFoundError",
    "RateLimitedError",
    "UnauthorizedError",
    "ValidationAppError",
    "action_response",
    "http_status_for",
]
