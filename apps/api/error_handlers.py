"""Global exception handlers rendering one JSON error envelope."""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from services.errors import ServiceError

logger = logging.getLogger(__name__)

HTTP_ERROR_TYPES = {
    400: "bad_request",
    401: "unauthorized",
    402: "payment_required",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limit_exceeded",
    503: "service_unavailable",
}


def _request_id(request: Request) -> str:
    rid = request.headers.get("x-request-id") or getattr(request.state, "request_id", None)
    return str(rid) if rid else str(uuid.uuid4())


def error_response(request: Request, status: int, err_type: str, message: str, details=None, headers=None) -> JSONResponse:
    """Envelope: {"type": "error", "error": {"type", "message", ...details}, "request_id"}."""
    rid = _request_id(request)
    error = {"type": err_type, "message": message}
    if details:
        error.update(details)
    return JSONResponse(
        status_code=status,
        content={"type": "error", "error": error, "request_id": rid},
        headers={**(headers or {}), "X-Request-ID": rid},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
        else:
            logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
        return error_response(request, exc.status_code, exc.code, str(exc), exc.details())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        err_type = HTTP_ERROR_TYPES.get(exc.status_code, "api_error")
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return error_response(request, exc.status_code, err_type, detail or "Request failed", headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        return error_response(request, 422, "validation_error", "Invalid request payload", {"fields": fields})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return error_response(request, 500, "database_error", "An internal database error occurred.")
