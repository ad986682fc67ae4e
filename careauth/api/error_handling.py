from __future__ import annotations

from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from careauth.api.schemas import Envelope
from careauth.logging import get_logger, sanitize_error_message
from careauth.service.errors import ServiceError
from careauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    errors: Optional[List[str]] = None,
    data: Any = None,
) -> JSONResponse:
    envelope = Envelope(success=False, message=message, data=data, errors=errors or [])
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _validation_messages(exc: RequestValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        text = str(error.get("msg", "invalid value"))
        # pydantic prefixes custom validator messages
        text = text.removeprefix("Value error, ")
        messages.append(f"{location}: {text}" if location else text)
    return messages


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure in the shared response envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.errors, exc.data)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, "Request conflicts with existing data", [exc.message])

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        messages = _validation_messages(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(messages),
        )
        return _error_response(400, "Validation failed", messages)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, sanitize_error_message(message))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            500, "An unexpected error occurred", ["Please try again later."]
        )
