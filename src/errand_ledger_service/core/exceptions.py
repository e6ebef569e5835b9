"""Exception handlers rendering every failure as ``{"error", "message", "details"}``."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from errand_ledger_service.exceptions import ServiceError
from errand_ledger_service.logging import get_logger
from errand_ledger_service.services.ledger_store import VersionConflictError

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = ["ServiceError", "register_exception_handlers"]

_ROUTING_ERRORS: dict[int, tuple[str, str]] = {
    404: ("NOT_FOUND", "Resource not found"),
    405: ("METHOD_NOT_ALLOWED", "Method not allowed"),
}


def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": details or {}},
    )


def _request_context(request: Request) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": request.url.path,
        "caller_id": request.headers.get("X-User-Id"),
    }


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Client mistakes are warnings; settings and gateway failures are errors."""
    logger = get_logger(__name__)
    level = "error" if exc.status_code >= 500 else "warning"
    getattr(logger, level)(
        exc.message,
        extra={"error_code": exc.error, "status_code": exc.status_code, **_request_context(request)},
    )
    return _error_response(exc.status_code, exc.error, exc.message, exc.details)


async def version_conflict_handler(request: Request, exc: VersionConflictError) -> JSONResponse:
    """A ledger write lost a race that the service layer did not absorb."""
    get_logger(__name__).warning(
        "Concurrent ledger write",
        extra={"conflict": str(exc), **_request_context(request)},
    )
    return _error_response(
        409,
        "CONCURRENT_MODIFICATION",
        "The record was modified by another request, try again",
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    get_logger(__name__).exception("Unhandled exception", extra=_request_context(request))
    return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Routing failures (unknown path, wrong method) in the service's error shape."""
    error, message = _ROUTING_ERRORS.get(exc.status_code, ("HTTP_ERROR", str(exc.detail)))
    return _error_response(exc.status_code, error, message)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(VersionConflictError, cast("ExceptionHandler", version_conflict_handler))
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)
