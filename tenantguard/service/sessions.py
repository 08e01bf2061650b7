from __future__ import annotations

import hmac
import secrets
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditCategory, AuditEvent, AuditTrail
from tenantguard.service.deadlines import StoreTimeout, bounded
from tenantguard.service.delivery import LoggingTokenDelivery, TokenDelivery
from tenantguard.service.errors import (
    AuthenticationError,
    ConflictError,
    DependencyError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from tenantguard.service.permissions import PERMISSION_CATALOG
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.tokens import TokenCodec, TokenPair, VerifyFailure, hash_token
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import (
    Invitation,
    LegacyRole,
    PasswordResetToken,
    Principal,
    RefreshTokenRecord,
    Role,
    Tenant,
    TokenKind,
    User,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_DEVICE_INFO_LENGTH = 512


class SessionStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        legacy_role: LegacyRole = LegacyRole.EDITOR,
        status: UserStatus = UserStatus.ACTIVE,
        name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User: ...

    async def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    async def change_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> int: ...

    async def create_tenant_with_admin(
        self,
        tenant: Tenant,
        user: User,
        password_hash: str,
        password_algo: str,
        roles: Sequence[Role],
        admin_role_ids: Sequence[str],
        refresh_record: RefreshTokenRecord,
    ) -> None: ...

    async def put_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    async def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    async def revoke_refresh_token(self, token_id: str) -> bool: ...

    async def delete_refresh_tokens_for_user(self, user_id: str) -> int: ...

    async def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshTokenRecord
    ) -> bool: ...

    async def create_invitation(self, invitation: Invitation) -> Invitation: ...

    async def get_invitation(self, token_hash: str) -> Optional[Invitation]: ...

    async def accept_invitation(
        self,
        invitation_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        refresh_record: RefreshTokenRecord,
    ) -> bool: ...

    async def replace_invitation(self, invitation: Invitation) -> Invitation: ...

    async def replace_password_reset_token(self, reset: PasswordResetToken) -> None: ...

    async def get_password_reset_token(
        self, token_hash: str
    ) -> Optional[PasswordResetToken]: ...

    async def reset_password(
        self, reset_id: str, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[int]: ...


class FailureReason(str, Enum):
    """Why an auth flow failed. Internal only; clients see one generic 401."""

    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    REUSED = "reused"
    BAD_CREDENTIALS = "bad_credentials"
    PENDING_VERIFICATION = "pending_verification"
    SUSPENDED = "suspended"
    RATE_LIMITED = "rate_limited"
    DEPENDENCY_TIMEOUT = "dependency_timeout"


@dataclass(frozen=True)
class AuthOutcome:
    principal: Optional[Principal] = None
    tokens: Optional[TokenPair] = None
    reason: Optional[FailureReason] = None

    @property
    def ok(self) -> bool:
        return self.principal is not None and self.reason is None

    @property
    def rate_limited(self) -> bool:
        return self.reason is FailureReason.RATE_LIMITED

    @classmethod
    def success(cls, principal: Principal, tokens: Optional[TokenPair] = None) -> "AuthOutcome":
        return cls(principal=principal, tokens=tokens)

    @classmethod
    def failure(cls, reason: FailureReason) -> "AuthOutcome":
        return cls(reason=reason)


@dataclass(frozen=True)
class ClientInfo:
    """Caller details recorded on refresh tokens and audit events."""

    caller_address: str
    user_agent: Optional[str] = None


class SessionManager:
    """Login, silent refresh with rotation, logout and password change.

    Expected failures come back as ``AuthOutcome`` values; only validation
    problems and dependency failures raise.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        *,
        login_limiter: RateLimiter,
        refresh_limiter: RateLimiter,
        audit: AuditTrail,
        store_timeout: float = 5.0,
        cascade_revoke_on_reuse: bool = False,
        invitation_ttl_hours: int = 48,
        password_reset_ttl_minutes: int = 30,
        delivery: Optional[TokenDelivery] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.login_limiter = login_limiter
        self.refresh_limiter = refresh_limiter
        self.audit = audit
        self.store_timeout = store_timeout
        self.cascade_revoke_on_reuse = cascade_revoke_on_reuse
        self.invitation_ttl_hours = invitation_ttl_hours
        self.password_reset_ttl_minutes = password_reset_ttl_minutes
        self.delivery = delivery or LoggingTokenDelivery()
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        return await bounded(awaitable, operation=operation, timeout=self.store_timeout)

    def _emit(
        self,
        event_type: str,
        category: AuditCategory,
        client: ClientInfo,
        *,
        success: bool,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        error: Optional[str] = None,
        token_type: Optional[str] = None,
        token_id: Optional[str] = None,
    ) -> None:
        self.audit.record(
            AuditEvent(
                event_type=event_type,
                category=category,
                success=success,
                user_id=user_id,
                tenant_id=tenant_id,
                ip_address=client.caller_address,
                user_agent=client.user_agent,
                device_info=_device_info(client.user_agent),
                error=error,
                token_type=token_type,
                token_id=token_id,
            )
        )

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_password(self, record: Optional[tuple[str, str]], password: str) -> bool:
        stored_hash, algo = record if record else (self._dummy_hash, PASSWORD_ALGO)
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            stored_hash = self._dummy_hash
            record = None
        try:
            matched = self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        return bool(matched and record)

    @staticmethod
    def _validate_new_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _new_refresh_record(self, pair: TokenPair, client: ClientInfo) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_id=pair.refresh.token_id,
            owner_user_id=pair.refresh.subject,
            token_hash=hash_token(pair.refresh_token),
            issued_at=pair.refresh.issued_at,
            expires_at=pair.refresh.expires_at,
            device_info=_device_info(client.user_agent),
            ip_address=client.caller_address,
        )

    # login
    async def login(self, email: str, password: str, client: ClientInfo) -> AuthOutcome:
        if not await self.login_limiter.allow(f"login:{client.caller_address}"):
            self._emit(
                "login_rate_limited",
                AuditCategory.RATE_LIMIT,
                client,
                success=False,
                error=FailureReason.RATE_LIMITED.value,
            )
            return AuthOutcome.failure(FailureReason.RATE_LIMITED)

        user: Optional[User] = None
        try:
            user = await self._call(
                self.store.get_user_by_email((email or "").strip()), "get_user_by_email"
            )
            record = (
                await self._call(self.store.get_password_record(user.id), "get_password_record")
                if user
                else None
            )
            if not self._verify_password(record, password or "") or user is None:
                return self._login_failed(client, FailureReason.BAD_CREDENTIALS, user)
            if user.status is UserStatus.PENDING_VERIFICATION:
                return self._login_failed(client, FailureReason.PENDING_VERIFICATION, user)
            if user.status is UserStatus.SUSPENDED:
                return self._login_failed(client, FailureReason.SUSPENDED, user)

            pair = self.codec.issue_pair(user)
            await self._call(
                self.store.put_refresh_token(self._new_refresh_record(pair, client)),
                "put_refresh_token",
            )
        except StoreTimeout:
            return self._login_failed(client, FailureReason.DEPENDENCY_TIMEOUT, user)

        self._emit(
            "login_succeeded",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=user.id,
            tenant_id=user.tenant_id,
            token_type=TokenKind.REFRESH.value,
            token_id=pair.refresh.token_id,
        )
        return AuthOutcome.success(Principal.from_user(user), pair)

    def _login_failed(
        self, client: ClientInfo, reason: FailureReason, user: Optional[User]
    ) -> AuthOutcome:
        self._emit(
            "login_failed",
            AuditCategory.AUTH,
            client,
            success=False,
            user_id=user.id if user else None,
            tenant_id=user.tenant_id if user else None,
            error=reason.value,
        )
        return AuthOutcome.failure(reason)

    # refresh
    async def silent_refresh(self, refresh_token: str, client: ClientInfo) -> AuthOutcome:
        """Exchange a refresh token for a new pair exactly once."""

        if not await self.refresh_limiter.allow(f"refresh:{client.caller_address}"):
            self._emit(
                "refresh_rate_limited",
                AuditCategory.RATE_LIMIT,
                client,
                success=False,
                error=FailureReason.RATE_LIMITED.value,
            )
            return AuthOutcome.failure(FailureReason.RATE_LIMITED)

        verified = self.codec.verify(refresh_token or "", TokenKind.REFRESH)
        if not verified.ok:
            reason = (
                FailureReason.EXPIRED
                if verified.reason is VerifyFailure.EXPIRED
                else FailureReason.INVALID
            )
            return self._refresh_failed(client, reason, detail=verified.reason.value)
        claims = verified.claims

        try:
            record = await self._call(
                self.store.get_refresh_token(claims.token_id), "get_refresh_token"
            )
            if record is None:
                return self._refresh_failed(client, FailureReason.INVALID, claims=claims)
            if record.owner_user_id != claims.subject or not hmac.compare_digest(
                record.token_hash, hash_token(refresh_token)
            ):
                return self._refresh_failed(client, FailureReason.INVALID, claims=claims)
            if record.revoked_at is not None:
                return self._refresh_failed(client, FailureReason.REVOKED, claims=claims)
            if record.is_expired():
                return self._refresh_failed(client, FailureReason.EXPIRED, claims=claims)
            if record.last_used_at is not None:
                await self._handle_reuse(record, client)
                return self._refresh_failed(client, FailureReason.REUSED, claims=claims)

            user = await self._call(self.store.get_user(claims.subject), "get_user")
            if user is None or user.tenant_id != claims.tenant_id:
                return self._refresh_failed(client, FailureReason.INVALID, claims=claims)
            if user.status is not UserStatus.ACTIVE:
                reason = (
                    FailureReason.SUSPENDED
                    if user.status is UserStatus.SUSPENDED
                    else FailureReason.INVALID
                )
                return self._refresh_failed(client, reason, claims=claims)

            pair = self.codec.issue_pair(user)
            rotated = await self._call(
                self.store.rotate_refresh_token(
                    claims.token_id, self._new_refresh_record(pair, client)
                ),
                "rotate_refresh_token",
            )
            if not rotated:
                # Lost the race to a concurrent refresh of the same token
                await self._handle_reuse(record, client)
                return self._refresh_failed(client, FailureReason.REUSED, claims=claims)
        except StoreTimeout:
            return self._refresh_failed(
                client, FailureReason.DEPENDENCY_TIMEOUT, claims=claims
            )

        self._emit(
            "token_refreshed",
            AuditCategory.TOKEN_REFRESH,
            client,
            success=True,
            user_id=user.id,
            tenant_id=user.tenant_id,
            token_type=TokenKind.REFRESH.value,
            token_id=pair.refresh.token_id,
        )
        return AuthOutcome.success(Principal.from_user(user), pair)

    async def _handle_reuse(self, record: RefreshTokenRecord, client: ClientInfo) -> None:
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.owner_user_id,
            token_id=record.token_id,
            ip_address=client.caller_address,
        )
        if not self.cascade_revoke_on_reuse:
            return
        deleted = await self._call(
            self.store.delete_refresh_tokens_for_user(record.owner_user_id),
            "delete_refresh_tokens_for_user",
        )
        logger.warning(
            "refresh_reuse_cascade_revoked",
            user_id=record.owner_user_id,
            deleted=deleted,
        )

    def _refresh_failed(
        self,
        client: ClientInfo,
        reason: FailureReason,
        *,
        claims=None,
        detail: Optional[str] = None,
    ) -> AuthOutcome:
        error = reason.value if detail is None else f"{reason.value}:{detail}"
        self._emit(
            "token_refresh_failed",
            AuditCategory.TOKEN_REFRESH,
            client,
            success=False,
            user_id=claims.subject if claims else None,
            tenant_id=claims.tenant_id if claims else None,
            error=error,
            token_type=TokenKind.REFRESH.value,
            token_id=claims.token_id if claims else None,
        )
        return AuthOutcome.failure(reason)

    # logout
    async def logout(self, refresh_token: Optional[str], client: ClientInfo) -> None:
        """Revoke the presented refresh token if it verifies. Never fails."""

        user_id = None
        token_id = None
        try:
            verified = (
                self.codec.verify(refresh_token, TokenKind.REFRESH) if refresh_token else None
            )
            if verified is not None and verified.ok:
                user_id = verified.claims.subject
                token_id = verified.claims.token_id
                record = await self._call(
                    self.store.get_refresh_token(token_id), "get_refresh_token"
                )
                if (
                    record is not None
                    and record.owner_user_id == user_id
                    and hmac.compare_digest(record.token_hash, hash_token(refresh_token))
                ):
                    await self._call(
                        self.store.revoke_refresh_token(token_id), "revoke_refresh_token"
                    )
        except (DependencyError, ConstraintViolation) as exc:
            logger.warning("logout_revoke_failed", user_id=user_id, error=exc.message)
        self._emit(
            "logout",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=user_id,
            token_type=TokenKind.REFRESH.value if token_id else None,
            token_id=token_id,
        )

    # password change
    async def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        client: ClientInfo,
    ) -> int:
        """Set a new password and delete every refresh token of the user.

        Returns the number of refresh tokens removed. Access tokens already
        issued stay valid until they expire.
        """

        self._validate_new_password(new_password)
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        try:
            record = await self._call(
                self.store.get_password_record(principal.user_id), "get_password_record"
            )
            if not self._verify_password(record, current_password or ""):
                self._emit(
                    "password_change_failed",
                    AuditCategory.AUTH,
                    client,
                    success=False,
                    user_id=principal.user_id,
                    tenant_id=principal.tenant_id,
                    error=FailureReason.BAD_CREDENTIALS.value,
                )
                raise ValidationError(
                    "current password is incorrect",
                    detail={"field": "current_password"},
                )
            pwd_hash, algo = self._hash_password(new_password)
            deleted = await self._call(
                self.store.change_password(principal.user_id, pwd_hash, algo),
                "change_password",
            )
        except StoreTimeout as exc:
            raise AuthenticationError("unauthorized") from exc
        self._emit(
            "password_changed",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=principal.user_id,
            tenant_id=principal.tenant_id,
        )
        logger.info(
            "refresh_tokens_revoked_on_password_change",
            user_id=principal.user_id,
            deleted=deleted,
        )
        return deleted

    # invitations
    async def create_invitation(
        self,
        principal: Principal,
        email: str,
        legacy_role: LegacyRole | str = LegacyRole.EDITOR,
        name: Optional[str] = None,
    ) -> Tuple[User, str]:
        """Create a pending user in the caller's tenant.

        Returns the user and the plaintext invitation token; only its hash
        is stored. Delivering the token is up to the caller.
        """

        cleaned = _normalize_email(email)
        try:
            role = LegacyRole.parse(legacy_role)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "role"}) from exc
        existing = await self._call(self.store.get_user_by_email(cleaned), "get_user_by_email")
        if existing:
            raise ConflictError("email already exists", detail={"field": "email"})
        try:
            user = await self._call(
                self.store.create_user(
                    cleaned,
                    tenant_id=principal.tenant_id,
                    legacy_role=role,
                    status=UserStatus.PENDING_VERIFICATION,
                    name=name,
                ),
                "create_user",
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        token = secrets.token_urlsafe(32)
        await self._call(
            self.store.create_invitation(
                Invitation.new(
                    principal.tenant_id, user.id, hash_token(token), self.invitation_ttl_hours
                )
            ),
            "create_invitation",
        )
        logger.info(
            "invitation_created",
            tenant_id=principal.tenant_id,
            invited_user_id=user.id,
            actor_id=principal.user_id,
        )
        return user, token

    async def resend_invite(self, principal: Principal, user_id: str) -> Tuple[User, str]:
        """Issue a fresh invitation token for a pending user in the caller's tenant.

        Earlier tokens for that user stop working.
        """

        user = await self._call(self.store.get_user(user_id), "get_user")
        if user is None or user.tenant_id != principal.tenant_id:
            raise NotFoundError("user not found")
        if user.status is not UserStatus.PENDING_VERIFICATION:
            raise ConflictError("user has already accepted the invitation")
        token = secrets.token_urlsafe(32)
        await self._call(
            self.store.replace_invitation(
                Invitation.new(
                    principal.tenant_id, user.id, hash_token(token), self.invitation_ttl_hours
                )
            ),
            "replace_invitation",
        )
        logger.info(
            "invitation_resent",
            tenant_id=principal.tenant_id,
            invited_user_id=user.id,
            actor_id=principal.user_id,
        )
        return user, token

    async def accept_invite(self, token: str, password: str, client: ClientInfo) -> AuthOutcome:
        if not await self.login_limiter.allow(f"invite:{client.caller_address}"):
            self._emit(
                "accept_invite_rate_limited",
                AuditCategory.RATE_LIMIT,
                client,
                success=False,
                error=FailureReason.RATE_LIMITED.value,
            )
            return AuthOutcome.failure(FailureReason.RATE_LIMITED)
        self._validate_new_password(password)

        user: Optional[User] = None
        try:
            invitation = await self._call(
                self.store.get_invitation(hash_token(token or "")), "get_invitation"
            )
            if invitation is None or invitation.used_at is not None:
                return self._invite_failed(client, FailureReason.INVALID, None)
            if invitation.expires_at <= utcnow():
                return self._invite_failed(client, FailureReason.EXPIRED, None)
            user = await self._call(self.store.get_user(invitation.user_id), "get_user")
            if (
                user is None
                or user.tenant_id != invitation.tenant_id
                or user.status is not UserStatus.PENDING_VERIFICATION
            ):
                return self._invite_failed(client, FailureReason.INVALID, user)

            pwd_hash, algo = self._hash_password(password)
            activated = replace(user, status=UserStatus.ACTIVE)
            pair = self.codec.issue_pair(activated)
            accepted = await self._call(
                self.store.accept_invitation(
                    invitation.id,
                    user.id,
                    pwd_hash,
                    algo,
                    self._new_refresh_record(pair, client),
                ),
                "accept_invitation",
            )
            if not accepted:
                return self._invite_failed(client, FailureReason.INVALID, user)
        except StoreTimeout:
            return self._invite_failed(client, FailureReason.DEPENDENCY_TIMEOUT, user)

        self._emit(
            "invitation_accepted",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=activated.id,
            tenant_id=activated.tenant_id,
            token_type=TokenKind.REFRESH.value,
            token_id=pair.refresh.token_id,
        )
        return AuthOutcome.success(Principal.from_user(activated), pair)

    def _invite_failed(
        self, client: ClientInfo, reason: FailureReason, user: Optional[User]
    ) -> AuthOutcome:
        self._emit(
            "accept_invite_failed",
            AuditCategory.AUTH,
            client,
            success=False,
            user_id=user.id if user else None,
            error=reason.value,
        )
        return AuthOutcome.failure(reason)

    # password reset
    async def forgot_password(self, email: str, client: ClientInfo) -> None:
        """Send a reset token to a known address.

        Unknown addresses get the same silent return as known ones.
        """

        if not await self.login_limiter.allow(f"forgot:{client.caller_address}"):
            self._emit(
                "password_reset_rate_limited",
                AuditCategory.RATE_LIMIT,
                client,
                success=False,
                error=FailureReason.RATE_LIMITED.value,
            )
            raise RateLimitedError("too many attempts")
        cleaned = _normalize_email(email)
        try:
            user = await self._call(self.store.get_user_by_email(cleaned), "get_user_by_email")
            if user is None:
                logger.info("password_reset_unknown_email")
                return
            token = secrets.token_urlsafe(32)
            reset = PasswordResetToken.new(
                user.id, hash_token(token), self.password_reset_ttl_minutes
            )
            await self._call(
                self.store.replace_password_reset_token(reset), "replace_password_reset_token"
            )
        except StoreTimeout:
            logger.warning("password_reset_request_dropped", reason="store_timeout")
            return
        self.delivery.send_password_reset(user, token, reset.expires_at)
        self._emit(
            "password_reset_requested",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=user.id,
            tenant_id=user.tenant_id,
        )

    async def _usable_reset(self, token: str) -> PasswordResetToken:
        reset = await self._call(
            self.store.get_password_reset_token(hash_token(token or "")),
            "get_password_reset_token",
        )
        if reset is None or not reset.is_usable():
            raise ValidationError("invalid or expired reset token", detail={"field": "token"})
        return reset

    async def verify_reset_token(self, token: str) -> str:
        """Return the email the reset token was issued for."""

        reset = await self._usable_reset(token)
        user = await self._call(self.store.get_user(reset.user_id), "get_user")
        if user is None:
            raise ValidationError("invalid or expired reset token", detail={"field": "token"})
        return user.email

    async def reset_password(self, token: str, new_password: str, client: ClientInfo) -> int:
        """Set a new password with a reset token and end every session.

        The token is spent in the same store transaction that writes the
        password and deletes the refresh tokens. Returns how many refresh
        tokens were deleted.
        """

        if not await self.login_limiter.allow(f"reset:{client.caller_address}"):
            self._emit(
                "password_reset_rate_limited",
                AuditCategory.RATE_LIMIT,
                client,
                success=False,
                error=FailureReason.RATE_LIMITED.value,
            )
            raise RateLimitedError("too many attempts")
        self._validate_new_password(new_password)
        try:
            reset = await self._usable_reset(token)
        except ValidationError:
            self._emit(
                "password_reset_failed",
                AuditCategory.AUTH,
                client,
                success=False,
                error=FailureReason.INVALID.value,
            )
            raise
        pwd_hash, algo = self._hash_password(new_password)
        deleted = await self._call(
            self.store.reset_password(reset.id, reset.user_id, pwd_hash, algo), "reset_password"
        )
        if deleted is None:
            self._emit(
                "password_reset_failed",
                AuditCategory.AUTH,
                client,
                success=False,
                user_id=reset.user_id,
                error=FailureReason.INVALID.value,
            )
            raise ValidationError("invalid or expired reset token", detail={"field": "token"})
        self._emit(
            "password_reset_completed",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=reset.user_id,
        )
        logger.info(
            "refresh_tokens_revoked_on_password_reset", user_id=reset.user_id, deleted=deleted
        )
        return deleted

    # signup
    async def signup(
        self,
        tenant_name: str,
        email: str,
        password: str,
        client: ClientInfo,
        *,
        user_name: Optional[str] = None,
    ) -> AuthOutcome:
        """Create a tenant with RBAC off, its first admin and a session."""

        if not await self.login_limiter.allow(f"signup:{client.caller_address}"):
            self._emit(
                "signup_rate_limited",
                AuditCategory.RATE_LIMIT,
                client,
                success=False,
                error=FailureReason.RATE_LIMITED.value,
            )
            return AuthOutcome.failure(FailureReason.RATE_LIMITED)

        cleaned_tenant = (tenant_name or "").strip()
        if not cleaned_tenant:
            raise ValidationError("tenant name is required", detail={"field": "tenant_name"})
        cleaned_email = _normalize_email(email)
        self._validate_new_password(password)

        tenant = Tenant(id=str(uuid.uuid4()), name=cleaned_tenant)
        user = User(
            id=str(uuid.uuid4()),
            email=cleaned_email,
            tenant_id=tenant.id,
            legacy_role=LegacyRole.ADMIN,
            status=UserStatus.ACTIVE,
            name=(user_name or "").strip() or None,
        )
        roles = _seed_roles(tenant.id)
        admin_role_ids = [role.id for role in roles if not role.is_default]
        pair = self.codec.issue_pair(user)
        pwd_hash, algo = self._hash_password(password)
        try:
            await self._call(
                self.store.create_tenant_with_admin(
                    tenant,
                    user,
                    pwd_hash,
                    algo,
                    roles,
                    admin_role_ids,
                    self._new_refresh_record(pair, client),
                ),
                "create_tenant_with_admin",
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except StoreTimeout:
            return self._login_failed(client, FailureReason.DEPENDENCY_TIMEOUT, None)

        self._emit(
            "signup_succeeded",
            AuditCategory.AUTH,
            client,
            success=True,
            user_id=user.id,
            tenant_id=tenant.id,
            token_type=TokenKind.REFRESH.value,
            token_id=pair.refresh.token_id,
        )
        return AuthOutcome.success(Principal.from_user(user), pair)


def _seed_roles(tenant_id: str) -> List[Role]:
    """Roles every new tenant starts with: a default viewer and an owner."""

    viewer = Role(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        name="Viewer",
        description="Read-only access",
        is_default=True,
        permissions=[perm for perm in PERMISSION_CATALOG if perm.action == "view"],
    )
    owner = Role(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        name="Owner",
        description="Full access",
        permissions=list(PERMISSION_CATALOG),
    )
    return [viewer, owner]


def _normalize_email(email: str) -> str:
    cleaned = (email or "").strip().lower()
    local, _, domain = cleaned.partition("@")
    if not local or not domain or "." not in domain:
        raise ValidationError("a valid email is required", detail={"field": "email"})
    return cleaned


def _device_info(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return user_agent[:MAX_DEVICE_INFO_LENGTH]


__all__ = [
    "AuthOutcome",
    "ClientInfo",
    "FailureReason",
    "SessionManager",
    "SessionStore",
]
