from __future__ import annotations

import math

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tablecode.api.schemas import Envelope, ErrorBody
from tablecode.config import get_settings
from tablecode.logging import get_correlation_id, get_logger, sanitize_error_message
from tablecode.service.assets import PathTraversalError
from tablecode.service.errors import RateLimitedError, ServiceError
from tablecode.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    503: "exhausted_retries",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render an error envelope; the request id follows the correlation id."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    request_id = get_correlation_id()
    if request_id:
        envelope = Envelope(status="error", error=error_body, request_id=request_id)
    else:
        envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append(
            {
                "field": ".".join(loc) or "body",
                "reason": error.get("msg", "invalid value"),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-rendering handlers for domain, storage and request errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000)))}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, str(exc), code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            exc.status_code, message, details, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        message = "internal server error"
        if get_settings().debug_errors:
            message = sanitize_error_message(str(exc)) or message
        return _error_response(500, message, code="server_error")
