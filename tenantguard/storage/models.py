from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LegacyRole(str, Enum):
    """Single-role field consulted when a tenant has RBAC disabled."""

    ADMIN = "admin"
    EDITOR = "editor"

    @classmethod
    def parse(cls, value: str | "LegacyRole") -> "LegacyRole":
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"unknown legacy role: {value!r}") from None


class UserStatus(str, Enum):
    ACTIVE = "active"
    PENDING_VERIFICATION = "pending_verification"
    SUSPENDED = "suspended"

    @classmethod
    def parse(cls, value: str | "UserStatus") -> "UserStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValueError(f"unknown user status: {value!r}") from None


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class User:
    id: str
    email: str
    tenant_id: str
    legacy_role: LegacyRole = LegacyRole.EDITOR
    status: UserStatus = UserStatus.ACTIVE
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity bound to one tenant for a single request."""

    user_id: str
    tenant_id: str
    legacy_role: LegacyRole
    status: UserStatus

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            user_id=user.id,
            tenant_id=user.tenant_id,
            legacy_role=user.legacy_role,
            status=user.status,
        )


@dataclass
class Tenant:
    id: str
    name: str
    plan: str = "free"
    rbac_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class IssuedToken:
    """Decoded claims of an access or refresh token."""

    subject: str
    tenant_id: str
    role: LegacyRole
    token_id: str
    issued_at: datetime
    expires_at: datetime
    kind: TokenKind


@dataclass
class RefreshTokenRecord:
    token_id: str
    owner_user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def is_spent(self) -> bool:
        return self.last_used_at is not None or self.revoked_at is not None


@dataclass(frozen=True)
class Permission:
    id: str
    resource: str
    action: str
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.resource}.{self.action}"


@dataclass
class Role:
    id: str
    tenant_id: str
    name: str
    description: str = ""
    is_default: bool = False
    permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def permission_keys(self) -> frozenset[str]:
        return frozenset(perm.key for perm in self.permissions)


@dataclass(frozen=True)
class UserRole:
    user_id: str
    role_id: str
    tenant_id: str


@dataclass
class Invitation:
    id: str
    tenant_id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, tenant_id: str, user_id: str, token_hash: str, ttl_hours: int
    ) -> "Invitation":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(hours=ttl_hours),
            created_at=now,
        )


@dataclass
class PasswordResetToken:
    """Single-use reset credential; only the SHA-256 of the token is kept."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl_minutes: int) -> "PasswordResetToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and self.expires_at > (now or utcnow())


__all__ = [
    "Invitation",
    "IssuedToken",
    "LegacyRole",
    "PasswordResetToken",
    "Permission",
    "Principal",
    "RefreshTokenRecord",
    "Role",
    "Tenant",
    "TokenKind",
    "User",
    "UserRole",
    "UserStatus",
    "utcnow",
]
