from __future__ import annotations

from typing import Any, Dict, Optional

_MASKED_MESSAGE = "internal server error"


class ServiceError(Exception):
    """A failure the API layer can render without guessing.

    Subclasses pin an HTTP status and a stable ``error_code``; callers only
    choose the message and an optional ``detail`` mapping. Server-side
    failures (status >= 500) keep both for the log and expose neither.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def is_server_fault(self) -> bool:
        return self.status_code >= 500

    @property
    def public_message(self) -> str:
        return _MASKED_MESSAGE if self.is_server_fault else self.message

    @property
    def public_detail(self) -> Optional[Dict[str, Any]]:
        if self.is_server_fault:
            return None
        return self.detail or None

    def log_fields(self) -> Dict[str, Any]:
        return {
            "status_code": self.status_code,
            "error_code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(ServiceError):
    """Malformed input. Not a security event."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """The caller is known but lacks the permission involved."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class DependencyError(ServerError):
    """The store, cache or token codec could not do its job."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DependencyError",
]
