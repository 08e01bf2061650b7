from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from tenantguard.api.schemas import (
    AcceptInviteRequest,
    AssignRolesRequest,
    AuthResponse,
    EffectivePermissionsResponse,
    Envelope,
    ForgotPasswordRequest,
    InviteResponse,
    InviteUserRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PermissionListResponse,
    PermissionResponse,
    RefreshResponse,
    ResetPasswordRequest,
    ResetTokenRequest,
    RoleListResponse,
    RoleRequest,
    RoleResponse,
    SignupRequest,
    TenantResponse,
    TenantSettingsRequest,
    UserResponse,
    UserRolesResponse,
    VerifyResetResponse,
)
from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.authenticator import RequestCredentials
from tenantguard.service.deadlines import bounded
from tenantguard.service.permissions import permission_key
from tenantguard.service.runtime import get_runtime
from tenantguard.service.sessions import AuthOutcome, ClientInfo, FailureReason
from tenantguard.service.tokens import TokenPair
from tenantguard.storage.models import Permission, Principal, Role, Tenant, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _failure_error(reason: Optional[FailureReason]) -> HTTPException:
    # Clients only learn "rate limited", "pending verification" or "unauthorized"
    if reason is FailureReason.RATE_LIMITED:
        return _http_error("rate_limited", "too many attempts", status_code=429)
    if reason is FailureReason.PENDING_VERIFICATION:
        return _http_error("unauthorized", "account pending verification", status_code=401)
    return _http_error("unauthorized", "unauthorized", status_code=401)


def _caller_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        caller_address=_caller_address(request),
        user_agent=request.headers.get("user-agent"),
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _apply_auth_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=tokens.access_max_age,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_max_age_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite="strict",
        )


def _auth_response(outcome: AuthOutcome) -> AuthResponse:
    principal, tokens = outcome.principal, outcome.tokens
    return AuthResponse(
        user_id=principal.user_id,
        tenant_id=principal.tenant_id,
        role=principal.legacy_role.value,
        access_token=tokens.access_token,
        access_expires_at=tokens.access.expires_at,
        refresh_expires_at=tokens.refresh.expires_at,
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        tenant_id=user.tenant_id,
        role=user.legacy_role.value,
        status=user.status.value,
        name=user.name,
        created_at=user.created_at,
    )


def _permission_to_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        resource=permission.resource,
        action=permission.action,
        description=permission.description,
    )


def _role_to_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        tenant_id=role.tenant_id,
        name=role.name,
        description=role.description,
        is_default=role.is_default,
        permissions=[_permission_to_response(p) for p in role.permissions],
        created_at=role.created_at,
    )


def _tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        plan=tenant.plan,
        rbac_enabled=tenant.rbac_enabled,
        created_at=tenant.created_at,
    )


async def get_principal(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Principal:
    """Authenticate the caller, rotating cookies when a silent refresh happened."""

    runtime = get_runtime()
    credentials = RequestCredentials(
        caller_address=_caller_address(request),
        access_token=_bearer_token(authorization) or request.cookies.get(ACCESS_COOKIE),
        refresh_token=request.cookies.get(REFRESH_COOKIE),
        user_agent=request.headers.get("user-agent"),
    )
    result = await runtime.authenticator.authenticate(credentials)
    if result.rotated_tokens is not None:
        _apply_auth_cookies(response, result.rotated_tokens, runtime.settings)
    if not result.ok:
        raise _failure_error(result.reason)
    return result.principal


def require_permission(resource: str, action: str):
    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        runtime = get_runtime()
        if not await runtime.authenticator.authorize(principal, resource, action):
            raise _http_error(
                "forbidden",
                "forbidden",
                status_code=403,
                details={"permission": permission_key(resource, action)},
            )
        return principal

    return dependency


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access/refresh cookie pair.

    Raises:
        401: Credentials rejected or account not usable
        429: Too many attempts from this address
    """
    runtime = get_runtime()
    outcome = await runtime.sessions.login(body.email, body.password, _client_info(request))
    if not outcome.ok:
        raise _failure_error(outcome.reason)
    _apply_auth_cookies(response, outcome.tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    token = request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise _failure_error(FailureReason.INVALID)
    outcome = await runtime.sessions.silent_refresh(token, _client_info(request))
    if not outcome.ok:
        raise _failure_error(outcome.reason)
    _apply_auth_cookies(response, outcome.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            user_id=outcome.principal.user_id,
            tenant_id=outcome.principal.tenant_id,
            access_expires_at=outcome.tokens.access.expires_at,
            refresh_expires_at=outcome.tokens.refresh.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.sessions.logout(request.cookies.get(REFRESH_COOKIE), _client_info(request))
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create a tenant together with its first admin and sign them in."""
    runtime = get_runtime()
    outcome = await runtime.sessions.signup(
        body.tenant_name,
        body.email,
        body.password,
        _client_info(request),
        user_name=body.name,
    )
    if not outcome.ok:
        raise _failure_error(outcome.reason)
    _apply_auth_cookies(response, outcome.tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/accept-invite", response_model=Envelope, tags=["auth"])
async def accept_invite(body: AcceptInviteRequest, request: Request, response: Response):
    runtime = get_runtime()
    outcome = await runtime.sessions.accept_invite(
        body.token, body.password, _client_info(request)
    )
    if not outcome.ok:
        raise _failure_error(outcome.reason)
    _apply_auth_cookies(response, outcome.tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Always answers the same way whether or not the email is registered."""
    runtime = get_runtime()
    await runtime.sessions.forgot_password(body.email, _client_info(request))
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset-password/verify", response_model=Envelope, tags=["auth"])
async def verify_reset_token(body: ResetTokenRequest):
    runtime = get_runtime()
    email = await runtime.sessions.verify_reset_token(body.token)
    return Envelope(status="ok", data=VerifyResetResponse(email=email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    revoked = await runtime.sessions.reset_password(
        body.token, body.password, _client_info(request)
    )
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=PasswordChangeResponse(revoked_sessions=revoked))


# me


@router.get("/me", response_model=Envelope, tags=["me"])
async def get_me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    user = await bounded(
        runtime.store.get_user(principal.user_id),
        operation="get_user",
        timeout=runtime.settings.store_timeout_seconds,
    )
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/me/permissions", response_model=Envelope, tags=["me"])
async def get_my_permissions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    effective = await runtime.authenticator.effective_permissions(principal)
    return Envelope(
        status="ok",
        data=EffectivePermissionsResponse(
            mode=effective.mode.value, permissions=sorted(effective.permissions)
        ),
    )


@router.post("/me/password", response_model=Envelope, tags=["me"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Change the caller's password and end every session they hold."""
    runtime = get_runtime()
    revoked = await runtime.sessions.change_password(
        principal, body.current_password, body.new_password, _client_info(request)
    )
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=PasswordChangeResponse(revoked_sessions=revoked))


# permissions and roles


@router.get("/permissions", response_model=Envelope, tags=["roles"])
async def list_permissions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    permissions = await bounded(
        runtime.catalog.list_permissions(),
        operation="list_permissions",
        timeout=runtime.settings.store_timeout_seconds,
    )
    return Envelope(
        status="ok",
        data=PermissionListResponse(items=[_permission_to_response(p) for p in permissions]),
    )


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: Principal = Depends(require_permission("roles", "view"))):
    runtime = get_runtime()
    roles = await runtime.roles.list_roles(principal)
    return Envelope(
        status="ok", data=RoleListResponse(items=[_role_to_response(r) for r in roles])
    )


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleRequest,
    principal: Principal = Depends(require_permission("roles", "edit")),
):
    runtime = get_runtime()
    role = await runtime.roles.create_role(
        principal, body.name, body.description, body.permission_ids
    )
    return Envelope(status="ok", data=_role_to_response(role))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    body: RoleRequest,
    role_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission("roles", "edit")),
):
    runtime = get_runtime()
    role = await runtime.roles.update_role(
        principal, role_id, body.name, body.description, body.permission_ids
    )
    return Envelope(status="ok", data=_role_to_response(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission("roles", "edit")),
):
    runtime = get_runtime()
    await runtime.roles.delete_role(principal, role_id)
    return Envelope(status="ok", data={"deleted": True, "role_id": role_id})


# users


@router.put("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def assign_user_roles(
    body: AssignRolesRequest,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission("users", "edit")),
):
    runtime = get_runtime()
    assigned = await runtime.roles.assign_roles(principal, user_id, body.role_ids)
    return Envelope(
        status="ok",
        data=UserRolesResponse(user_id=user_id, role_ids=[ur.role_id for ur in assigned]),
    )


@router.post("/users/invite", response_model=Envelope, status_code=201, tags=["users"])
async def invite_user(
    body: InviteUserRequest,
    principal: Principal = Depends(require_permission("users", "edit")),
):
    runtime = get_runtime()
    user, token = await runtime.sessions.create_invitation(
        principal, body.email, body.role, body.name
    )
    return Envelope(
        status="ok",
        data=InviteResponse(user=_user_to_response(user), invitation_token=token),
    )


@router.post(
    "/users/{user_id}/resend-invite", response_model=Envelope, status_code=201, tags=["users"]
)
async def resend_invite(
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission("users", "edit")),
):
    runtime = get_runtime()
    user, token = await runtime.sessions.resend_invite(principal, user_id)
    return Envelope(
        status="ok",
        data=InviteResponse(user=_user_to_response(user), invitation_token=token),
    )


# tenant


@router.get("/tenant", response_model=Envelope, tags=["tenant"])
async def get_tenant(principal: Principal = Depends(require_permission("tenant", "view"))):
    runtime = get_runtime()
    tenant = await bounded(
        runtime.store.get_tenant(principal.tenant_id),
        operation="get_tenant",
        timeout=runtime.settings.store_timeout_seconds,
    )
    if not tenant:
        raise _http_error("not_found", "tenant not found", status_code=404)
    return Envelope(status="ok", data=_tenant_to_response(tenant))


@router.put("/tenant/settings", response_model=Envelope, tags=["tenant"])
async def update_tenant_settings(
    body: TenantSettingsRequest,
    principal: Principal = Depends(require_permission("tenant", "edit")),
):
    """Switch the tenant between legacy roles and RBAC; effective immediately."""
    runtime = get_runtime()
    tenant = await bounded(
        runtime.store.set_tenant_rbac(principal.tenant_id, body.rbac_enabled),
        operation="set_tenant_rbac",
        timeout=runtime.settings.store_timeout_seconds,
    )
    if not tenant:
        raise _http_error("not_found", "tenant not found", status_code=404)
    logger.info(
        "tenant_rbac_toggled",
        tenant_id=principal.tenant_id,
        rbac_enabled=body.rbac_enabled,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data=_tenant_to_response(tenant))
