from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.service.deadlines import bounded
from tenantguard.service.permissions import PermissionCatalog, permission_key
from tenantguard.service.roles import RoleResolver
from tenantguard.storage.models import LegacyRole, Permission, Tenant, User, UserStatus

logger = get_logger(__name__)


class AuthorizationStore(Protocol):
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def list_permissions(self) -> List[Permission]: ...


class AuthorizationMode(str, Enum):
    """Which strategy produced an effective permission set; chosen per tenant."""

    LEGACY = "legacy"
    RBAC = "rbac"


@dataclass(frozen=True)
class EffectivePermissions:
    mode: AuthorizationMode
    permissions: frozenset[str]

    def allows(self, resource: str, action: str) -> bool:
        return permission_key(resource, action) in self.permissions


class AuthorizationResolver:
    """Computes effective permissions from durable state on every call.

    Nothing is cached between calls so role and flag changes apply to the
    very next request.
    """

    def __init__(
        self,
        store: AuthorizationStore,
        role_resolver: RoleResolver,
        catalog: PermissionCatalog,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.role_resolver = role_resolver
        self.catalog = catalog
        self.store_timeout = store_timeout

    async def compute_effective_permissions(
        self, user_id: str, tenant_id: str
    ) -> EffectivePermissions:
        tenant = await bounded(
            self.store.get_tenant(tenant_id),
            operation="get_tenant",
            timeout=self.store_timeout,
        )
        if tenant is None:
            logger.warning("authorization_tenant_missing", tenant_id=tenant_id, user_id=user_id)
            return EffectivePermissions(AuthorizationMode.LEGACY, frozenset())
        mode = AuthorizationMode.RBAC if tenant.rbac_enabled else AuthorizationMode.LEGACY

        user = await bounded(
            self.store.get_user(user_id),
            operation="get_user",
            timeout=self.store_timeout,
        )
        if user is None or user.tenant_id != tenant_id or user.status != UserStatus.ACTIVE:
            return EffectivePermissions(mode, frozenset())

        if mode is AuthorizationMode.LEGACY:
            return EffectivePermissions(mode, await self._legacy_permissions(user))
        return EffectivePermissions(mode, await self._rbac_permissions(user_id, tenant_id))

    async def _legacy_permissions(self, user: User) -> frozenset[str]:
        # Editors get no fine-grained permissions; route-level gating covers them
        if user.legacy_role is not LegacyRole.ADMIN:
            return frozenset()
        return await bounded(
            self.catalog.all_keys(),
            operation="list_permissions",
            timeout=self.store_timeout,
        )

    async def _rbac_permissions(self, user_id: str, tenant_id: str) -> frozenset[str]:
        roles = await self.role_resolver.get_roles_for_user(user_id, tenant_id)
        keys: set[str] = set()
        for role in roles:
            if role.tenant_id != tenant_id:
                continue
            keys.update(role.permission_keys)
        return frozenset(keys)

    async def has_permission(
        self, user_id: str, tenant_id: str, resource: str, action: str
    ) -> bool:
        effective = await self.compute_effective_permissions(user_id, tenant_id)
        return effective.allows(resource, action)


__all__ = [
    "AuthorizationMode",
    "AuthorizationResolver",
    "AuthorizationStore",
    "EffectivePermissions",
]
