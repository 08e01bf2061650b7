from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditCategory, AuditEvent, AuditTrail
from tenantguard.service.authorization import AuthorizationResolver, EffectivePermissions
from tenantguard.service.deadlines import StoreTimeout, bounded
from tenantguard.service.sessions import ClientInfo, FailureReason, SessionManager
from tenantguard.service.tokens import TokenCodec, TokenPair
from tenantguard.storage.models import IssuedToken, Principal, TokenKind, User, UserStatus

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass(frozen=True)
class RequestCredentials:
    """Everything the HTTP layer extracts from a request for authentication."""

    caller_address: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def client(self) -> ClientInfo:
        return ClientInfo(caller_address=self.caller_address, user_agent=self.user_agent)


@dataclass(frozen=True)
class AuthenticationResult:
    principal: Optional[Principal] = None
    # Set when the access token was missing or stale and a refresh succeeded
    rotated_tokens: Optional[TokenPair] = None
    reason: Optional[FailureReason] = None

    @property
    def ok(self) -> bool:
        return self.principal is not None

    @property
    def rate_limited(self) -> bool:
        return self.reason is FailureReason.RATE_LIMITED


class RequestAuthenticator:
    """Per-request entry point: who is calling, and may they do this."""

    def __init__(
        self,
        store: PrincipalStore,
        codec: TokenCodec,
        sessions: SessionManager,
        authorization: AuthorizationResolver,
        audit: AuditTrail,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.authorization = authorization
        self.audit = audit
        self.store_timeout = store_timeout

    async def authenticate(self, credentials: RequestCredentials) -> AuthenticationResult:
        """Resolve the principal from the access token, else by silent refresh.

        The principal is re-read from the store so suspension, deletion and
        role edits apply immediately.
        """

        if credentials.access_token:
            verified = self.codec.verify(credentials.access_token, TokenKind.ACCESS)
            if verified.ok:
                return await self._from_access_claims(verified.claims, credentials)

        if credentials.refresh_token:
            outcome = await self.sessions.silent_refresh(
                credentials.refresh_token, credentials.client
            )
            if outcome.ok:
                return AuthenticationResult(
                    principal=outcome.principal, rotated_tokens=outcome.tokens
                )
            return AuthenticationResult(reason=outcome.reason)

        self._emit_failure(credentials, FailureReason.INVALID, None)
        return AuthenticationResult(reason=FailureReason.INVALID)

    async def _from_access_claims(
        self, claims: IssuedToken, credentials: RequestCredentials
    ) -> AuthenticationResult:
        try:
            user = await bounded(
                self.store.get_user(claims.subject),
                operation="get_user",
                timeout=self.store_timeout,
            )
        except StoreTimeout:
            self._emit_failure(credentials, FailureReason.DEPENDENCY_TIMEOUT, claims)
            return AuthenticationResult(reason=FailureReason.DEPENDENCY_TIMEOUT)

        if user is None or user.tenant_id != claims.tenant_id:
            reason = FailureReason.INVALID
        elif user.status is UserStatus.SUSPENDED:
            reason = FailureReason.SUSPENDED
        elif user.status is not UserStatus.ACTIVE:
            reason = FailureReason.INVALID
        else:
            return AuthenticationResult(principal=Principal.from_user(user))
        self._emit_failure(credentials, reason, claims)
        return AuthenticationResult(reason=reason)

    def _emit_failure(
        self,
        credentials: RequestCredentials,
        reason: FailureReason,
        claims: Optional[IssuedToken],
    ) -> None:
        self.audit.record(
            AuditEvent(
                event_type="authentication_failed",
                category=AuditCategory.AUTH,
                success=False,
                user_id=claims.subject if claims else None,
                tenant_id=claims.tenant_id if claims else None,
                ip_address=credentials.caller_address,
                user_agent=credentials.user_agent,
                error=reason.value,
                token_type=TokenKind.ACCESS.value if claims else None,
                token_id=claims.token_id if claims else None,
            )
        )

    async def effective_permissions(self, principal: Principal) -> EffectivePermissions:
        return await self.authorization.compute_effective_permissions(
            principal.user_id, principal.tenant_id
        )

    async def authorize(self, principal: Principal, resource: str, action: str) -> bool:
        allowed = await self.authorization.has_permission(
            principal.user_id, principal.tenant_id, resource, action
        )
        if not allowed:
            self.audit.record(
                AuditEvent(
                    event_type="access_denied",
                    category=AuditCategory.ACCESS,
                    success=False,
                    user_id=principal.user_id,
                    tenant_id=principal.tenant_id,
                    resource=resource,
                    action=action,
                    error="forbidden",
                )
            )
        return allowed


__all__ = ["AuthenticationResult", "RequestAuthenticator", "RequestCredentials"]
