from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from tenantguard.config import MIN_SECRET_LENGTH, Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import DependencyError
from tenantguard.storage.models import IssuedToken, LegacyRole, TokenKind, User, utcnow

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class VerifyFailure(str, Enum):
    """Internal rejection causes; logged only, never surfaced to clients."""

    MALFORMED = "malformed"
    BAD_ALGORITHM = "bad_algorithm"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_ISSUER = "wrong_issuer"
    WRONG_AUDIENCE = "wrong_audience"
    WRONG_KIND = "wrong_kind"


@dataclass(frozen=True)
class VerifyResult:
    claims: Optional[IssuedToken] = None
    reason: Optional[VerifyFailure] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to bind a stored record to its token string."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _require_secret(secret: Optional[str]) -> bytes:
    if not secret or len(secret) < MIN_SECRET_LENGTH:
        raise DependencyError("token signing secret is missing or too short")
    return secret.encode("utf-8")


def _signature(signing_input: str, secret: bytes) -> str:
    return _encode_segment(
        hmac.new(secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
    )


def sign(claims: dict[str, Any], secret: str) -> str:
    key = _require_secret(secret)
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_signature(signing_input, key)}"


def verify(
    token: str,
    secret: str,
    *,
    kind: TokenKind,
    issuer: str,
    audience: str,
    now: Optional[datetime] = None,
) -> VerifyResult:
    """Check structure, algorithm, signature, expiry and binding claims.

    Fails closed: the first failing check decides the reason. Verification
    is read-only and returns identical claims for identical input.
    """

    key = _require_secret(secret)
    # Only base64url segments and dots are valid
    if not token or not token.isascii():
        return VerifyResult(reason=VerifyFailure.MALFORMED)
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        return VerifyResult(reason=VerifyFailure.MALFORMED)

    # Reject algorithm confusion before touching the signature
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        return VerifyResult(reason=VerifyFailure.MALFORMED)
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        return VerifyResult(reason=VerifyFailure.BAD_ALGORITHM)

    expected_sig = _signature(f"{header_b64}.{payload_b64}", key)
    if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
        return VerifyResult(reason=VerifyFailure.BAD_SIGNATURE)

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError):
        return VerifyResult(reason=VerifyFailure.MALFORMED)
    if not isinstance(payload, dict):
        return VerifyResult(reason=VerifyFailure.MALFORMED)

    try:
        exp_ts = float(payload["exp"])
        iat_ts = float(payload["iat"])
        subject = str(payload["sub"])
        tenant_id = str(payload["tenant_id"])
        token_id = str(payload["jti"])
        role = LegacyRole.parse(payload["role"])
        token_kind = TokenKind(payload.get("token_type"))
    except (KeyError, TypeError, ValueError):
        return VerifyResult(reason=VerifyFailure.MALFORMED)

    current = now or utcnow()
    if exp_ts <= current.timestamp():
        return VerifyResult(reason=VerifyFailure.EXPIRED)
    if payload.get("iss") != issuer:
        return VerifyResult(reason=VerifyFailure.WRONG_ISSUER)
    aud = payload.get("aud")
    if isinstance(aud, list):
        valid_aud = audience in aud
    else:
        valid_aud = aud == audience
    if not valid_aud:
        return VerifyResult(reason=VerifyFailure.WRONG_AUDIENCE)
    if token_kind != kind:
        return VerifyResult(reason=VerifyFailure.WRONG_KIND)

    return VerifyResult(
        claims=IssuedToken(
            subject=subject,
            tenant_id=tenant_id,
            role=role,
            token_id=token_id,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            kind=token_kind,
        )
    )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access: IssuedToken
    refresh: IssuedToken

    @property
    def access_max_age(self) -> int:
        return max(0, int((self.access.expires_at - self.access.issued_at).total_seconds()))

    @property
    def refresh_max_age(self) -> int:
        return max(0, int((self.refresh.expires_at - self.refresh.issued_at).total_seconds()))


class TokenCodec:
    """Signs and verifies access and refresh tokens with separate secrets."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secrets = {TokenKind.ACCESS: access_secret, TokenKind.REFRESH: refresh_secret}
        self.issuer = issuer
        self.audience = audience
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.REFRESH: refresh_ttl}
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_secret or "",
            refresh_secret=settings.refresh_secret(),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            clock=clock,
        )

    def issue(self, user: User, kind: TokenKind) -> tuple[str, IssuedToken]:
        now = self._clock().replace(microsecond=0)
        claims = IssuedToken(
            subject=user.id,
            tenant_id=user.tenant_id,
            role=user.legacy_role,
            token_id=str(uuid.uuid4()),
            issued_at=now,
            expires_at=now + self._ttls[kind],
            kind=kind,
        )
        return self.sign(claims), claims

    def issue_pair(self, user: User) -> TokenPair:
        access_token, access = self.issue(user, TokenKind.ACCESS)
        refresh_token, refresh = self.issue(user, TokenKind.REFRESH)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access=access,
            refresh=refresh,
        )

    def sign(self, claims: IssuedToken) -> str:
        payload = {
            "sub": claims.subject,
            "tenant_id": claims.tenant_id,
            "role": claims.role.value,
            "jti": claims.token_id,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
            "token_type": claims.kind.value,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return sign(payload, self._secrets[claims.kind])

    def verify(self, token: str, kind: TokenKind) -> VerifyResult:
        result = verify(
            token,
            self._secrets[kind],
            kind=kind,
            issuer=self.issuer,
            audience=self.audience,
            now=self._clock(),
        )
        if not result.ok:
            logger.info("token_rejected", kind=kind.value, reason=result.reason.value)
        return result


__all__ = [
    "TokenCodec",
    "TokenPair",
    "VerifyFailure",
    "VerifyResult",
    "hash_token",
    "sign",
    "verify",
]
