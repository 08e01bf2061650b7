from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantguard.logging import get_request_id
from tenantguard.service.roles import MAX_ROLE_NAME_LENGTH
from tenantguard.service.sessions import MIN_PASSWORD_LENGTH


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_request_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")


def _validate_email(value: str) -> str:
    normalized = (value or "").strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _validate_email(value)


class AcceptInviteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=512)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=512)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=512)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)


class InviteUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=320)
    role: str = Field(default="editor", pattern="^(admin|editor)$")
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _validate_email(value)


class RoleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=MAX_ROLE_NAME_LENGTH)
    description: str = Field(default="", max_length=1000)
    permission_ids: List[str] = Field(..., min_length=1)


class AssignRolesRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role_ids: List[str] = Field(default_factory=list)


class TenantSettingsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rbac_enabled: bool


class AuthResponse(BaseModel):
    user_id: str
    tenant_id: str
    role: str
    access_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class RefreshResponse(BaseModel):
    user_id: str
    tenant_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class UserResponse(BaseModel):
    id: str
    email: str
    tenant_id: str
    role: str
    status: str
    name: Optional[str] = None
    created_at: datetime


class InviteResponse(BaseModel):
    user: UserResponse
    invitation_token: str


class PermissionResponse(BaseModel):
    id: str
    resource: str
    action: str
    description: str = ""


class PermissionListResponse(BaseModel):
    items: List[PermissionResponse]


class EffectivePermissionsResponse(BaseModel):
    mode: str
    permissions: List[str]


class RoleResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str = ""
    is_default: bool
    permissions: List[PermissionResponse]
    created_at: datetime


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


class UserRolesResponse(BaseModel):
    user_id: str
    role_ids: List[str]


class PasswordChangeResponse(BaseModel):
    revoked_sessions: int


class VerifyResetResponse(BaseModel):
    email: str


class TenantResponse(BaseModel):
    id: str
    name: str
    plan: str
    rbac_enabled: bool
    created_at: datetime
