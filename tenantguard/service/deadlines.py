from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from tenantguard.logging import get_logger
from tenantguard.service.errors import DependencyError, ServiceError
from tenantguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")


class StoreTimeout(DependencyError):
    """A store call exceeded its deadline; the pending work was cancelled."""

    def __init__(self, operation: str) -> None:
        super().__init__("store call timed out", detail={"operation": operation})
        self.operation = operation


async def bounded(awaitable: Awaitable[T], *, operation: str, timeout: float) -> T:
    """Await a store call under a deadline.

    Constraint violations and service errors pass through untouched. Any
    other failure is logged with its cause and re-raised as a
    ``DependencyError`` whose message carries no internals.
    """

    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.error(
            "dependency_failure",
            operation=operation,
            error="timeout",
            timeout_seconds=timeout,
        )
        raise StoreTimeout(operation) from exc
    except (ConstraintViolation, ServiceError):
        raise
    except Exception as exc:
        logger.error(
            "dependency_failure",
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise DependencyError("store unavailable", detail={"operation": operation}) from exc


__all__ = ["StoreTimeout", "bounded"]
