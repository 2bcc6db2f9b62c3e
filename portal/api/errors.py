"""Global exception handling for the portal API."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from portal.errors import ActionResult, AppError, ErrorCode, action_response
from portal.logging import get_logger

_logger = get_logger(__name__)


def _format_validation_field(raw_loc: list[Any]) -> str:
    location = [str(part) for part in raw_loc]
    if location and location[0] in {"body", "query", "path", "header", "cookie"}:
        location = location[1:]
    return ".".join(location)


async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    return action_response(ActionResult.from_error(exc))


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [_format_validation_field(list(err.get("loc", ()))) for err in exc.errors()]
    _logger.info(
        "Rejected request input",
        extra={"event": "api.validation", "path": request.url.path, "fields": fields},
    )
    return action_response(ActionResult.fail("Invalid input", ErrorCode.VALIDATION_ERROR))


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception(
        "Unhandled API error",
        extra={"event": "api.error", "path": request.url.path, "method": request.method},
    )
    return action_response(ActionResult.fail("An unexpected error occurred"))


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _handle_app_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _handle_unexpected_error)


__all__ = ["setup_exception_handlers"]
