from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kispha.api.schemas import Envelope, ErrorBody
from kispha.logging import get_logger
from kispha.service.errors import RejectedError, ServiceError

logger = get_logger(__name__)

# Every client-side failure is reported identically; the cause is only logged
_REJECTED_MESSAGE = "request rejected"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "rejected",
) -> JSONResponse:
    error_body = ErrorBody(code=code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that collapse failures into the uniform rejection envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        kind = exc.kind.value if isinstance(exc, RejectedError) else None
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            kind=kind,
            message=exc.message,
        )
        if exc.status_code >= 500:
            return _error_response(exc.status_code, "internal server error", code="server_error")
        return _error_response(400, _REJECTED_MESSAGE)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(exc.errors()),
        )
        return _error_response(400, _REJECTED_MESSAGE)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
            return _error_response(exc.status_code, "internal server error", code="server_error")
        logger.warning(
            "http_client_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
        )
        return _error_response(exc.status_code, _REJECTED_MESSAGE)

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
        return _error_response(500, "internal server error", code="server_error")
