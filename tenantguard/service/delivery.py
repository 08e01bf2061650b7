from __future__ import annotations

from datetime import datetime
from typing import Protocol

from tenantguard.logging import get_logger
from tenantguard.storage.models import User

logger = get_logger(__name__)


class TokenDelivery(Protocol):
    """Hands a freshly issued reset token to whatever reaches the user."""

    def send_password_reset(self, user: User, token: str, expires_at: datetime) -> None: ...


class LoggingTokenDelivery:
    """Default delivery when no mailer is wired in.

    Records that a reset link is due without writing the token itself, so a
    deployment can see the flow working before email is configured.
    """

    def send_password_reset(self, user: User, token: str, expires_at: datetime) -> None:
        logger.info(
            "password_reset_delivery_skipped",
            user_id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            expires_at=expires_at.isoformat(),
        )


__all__ = ["LoggingTokenDelivery", "TokenDelivery"]
