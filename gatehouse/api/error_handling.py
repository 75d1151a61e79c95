from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from gatehouse.logging import get_logger, sanitize_error_message
from gatehouse.service.csrf import CSRFError
from gatehouse.service.errors import INTERNAL_ERROR_MESSAGE, ServiceError, user_message
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.web.gates import GateRejected
from gatehouse.web.rendering import is_api_request, json_error, render

logger = get_logger(__name__)

_PAGE_TITLES = {
    400: "Bad request",
    401: "Sign in required",
    402: "Upgrade required",
    403: "Forbidden",
    404: "Page not found",
    405: "Method not allowed",
    409: "Conflict",
    410: "Gone",
    429: "Too many requests",
    500: "Something went wrong",
}


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> Response:
    """JSON envelope for API clients, the plain error page for browsers."""
    if is_api_request(request):
        return json_error(status_code, message, details, code=code)
    return render(
        request,
        "error.html",
        {
            "status_code": status_code,
            "title": _PAGE_TITLES.get(status_code, "Error"),
            "message": message,
        },
        status_code=status_code,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for gate refusals, CSRF failures, domain and storage errors."""

    @app.exception_handler(GateRejected)
    async def handle_gate_rejected(request: Request, exc: GateRejected):
        logger.info(
            "gate_rejected",
            path=request.url.path,
            method=request.method,
            reason=exc.reason,
            status_code=exc.response.status_code,
        )
        return exc.response

    @app.exception_handler(CSRFError)
    async def handle_csrf_error(request: Request, exc: CSRFError):
        return _error_response(request, exc.status_code, exc.message, code="csrf_failed")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(request, 409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.is_internal else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=sanitize_error_message(exc.message),
        )
        details = exc.fields or None
        return _error_response(
            request, exc.status_code, user_message(exc), details, code=exc.error_code
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
            message = INTERNAL_ERROR_MESSAGE
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _error_response(request, exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(request, 500, INTERNAL_ERROR_MESSAGE, code="server_error")
