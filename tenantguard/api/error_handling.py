from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantguard.api.schemas import Envelope, ErrorBody
from tenantguard.logging import get_logger
from tenantguard.service.errors import ServiceError
from tenantguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _render(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=dict(headers) if headers else None,
    )


def _log_failure(request: Request, event: str, status: int, **fields: Any) -> None:
    emit = logger.error if status >= 500 else logger.warning
    emit(event, path=request.url.path, method=request.method, **fields)


def _unwrap_http_detail(exc: HTTPException) -> tuple[str, Optional[str], Any]:
    """Pull message, code and details out of an ``HTTPException``.

    Routes raise exceptions whose detail is already an error envelope; plain
    FastAPI exceptions carry a string and get a code derived from the status.
    """
    detail = exc.detail
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error = detail["error"]
        return error.get("message", "http error"), error.get("code"), error.get("details")
    return str(detail), None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error ``Envelope`` with a stable code."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(request, "service_error", exc.status_code, **exc.log_fields())
        return _render(
            exc.status_code, exc.public_message, code=exc.error_code, details=exc.public_detail
        )

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _render(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(problems),
        )
        return _render(400, "invalid request", code="validation_error", details=problems)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unwrap_http_detail(exc)
        _log_failure(
            request, "http_error", exc.status_code, status_code=exc.status_code, error_code=code
        )
        return _render(exc.status_code, message, code=code, details=details, headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _render(500, "internal server error", code="server_error")
