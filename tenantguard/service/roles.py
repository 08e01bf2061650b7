from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from tenantguard.logging import get_logger
from tenantguard.service.deadlines import bounded
from tenantguard.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantguard.service.permissions import PermissionCatalog
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import Permission, Principal, Role, User, UserRole

logger = get_logger(__name__)

MAX_ROLE_NAME_LENGTH = 100


class RoleStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def list_permissions(self) -> List[Permission]: ...

    async def get_roles_for_user(self, user_id: str, tenant_id: str) -> List[Role]: ...

    async def get_default_roles(self, tenant_id: str) -> List[Role]: ...

    async def get_role(self, role_id: str, tenant_id: str) -> Optional[Role]: ...

    async def list_roles(self, tenant_id: str) -> List[Role]: ...

    async def create_role(
        self,
        tenant_id: str,
        name: str,
        *,
        description: str = "",
        permission_ids: Sequence[str] = (),
        is_default: bool = False,
        role_id: Optional[str] = None,
    ) -> Role: ...

    async def update_role(
        self,
        role_id: str,
        tenant_id: str,
        *,
        name: str,
        description: str,
        permission_ids: Sequence[str],
    ) -> Optional[Role]: ...

    async def delete_role(self, role_id: str, tenant_id: str) -> bool: ...

    async def role_in_use(self, role_id: str, tenant_id: str) -> bool: ...

    async def role_name_exists(
        self, tenant_id: str, name: str, *, exclude_role_id: Optional[str] = None
    ) -> bool: ...

    async def set_user_roles(
        self, user_id: str, tenant_id: str, role_ids: Sequence[str]
    ) -> List[UserRole]: ...


class RoleResolver:
    """Maps a user to the tenant-scoped roles that apply to them."""

    def __init__(self, store: RoleStore, *, store_timeout: float = 5.0) -> None:
        self.store = store
        self.store_timeout = store_timeout

    async def get_roles_for_user(self, user_id: str, tenant_id: str) -> List[Role]:
        """Return assigned roles, or the tenant's default role when none are.

        Only roles whose ``tenant_id`` equals ``tenant_id`` are ever returned,
        whatever the store hands back.
        """

        assigned = await bounded(
            self.store.get_roles_for_user(user_id, tenant_id),
            operation="get_roles_for_user",
            timeout=self.store_timeout,
        )
        assigned = [role for role in assigned if role.tenant_id == tenant_id]
        if assigned:
            return assigned

        defaults = await bounded(
            self.store.get_default_roles(tenant_id),
            operation="get_default_roles",
            timeout=self.store_timeout,
        )
        defaults = sorted(
            (role for role in defaults if role.tenant_id == tenant_id and role.is_default),
            key=lambda role: role.id,
        )
        if not defaults:
            logger.info("default_role_missing", tenant_id=tenant_id, user_id=user_id)
            return []
        chosen = defaults[0]
        if len(defaults) > 1:
            logger.warning(
                "multiple_default_roles",
                tenant_id=tenant_id,
                role_ids=[role.id for role in defaults],
                chosen_role_id=chosen.id,
            )
        return [chosen]


class RoleService:
    """Tenant-scoped role administration for an explicit acting principal."""

    def __init__(
        self,
        store: RoleStore,
        catalog: PermissionCatalog,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.store_timeout = store_timeout

    async def _call(self, awaitable, operation: str):
        return await bounded(awaitable, operation=operation, timeout=self.store_timeout)

    async def list_roles(self, principal: Principal) -> List[Role]:
        return await self._call(self.store.list_roles(principal.tenant_id), "list_roles")

    async def get_role(self, principal: Principal, role_id: str) -> Role:
        role = await self._call(
            self.store.get_role(role_id, principal.tenant_id), "get_role"
        )
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    async def _validate_role_input(
        self, name: str, permission_ids: Sequence[str]
    ) -> tuple[str, List[str]]:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("role name is required", detail={"field": "name"})
        if len(cleaned) > MAX_ROLE_NAME_LENGTH:
            raise ValidationError(
                "role name is too long",
                detail={"field": "name", "max_length": MAX_ROLE_NAME_LENGTH},
            )
        unique_ids = list(dict.fromkeys(permission_ids or []))
        if not unique_ids:
            raise ValidationError(
                "at least one permission is required",
                detail={"field": "permission_ids"},
            )
        missing = await self._call(self.catalog.missing_ids(unique_ids), "list_permissions")
        if missing:
            raise ValidationError(
                "unknown permission ids",
                detail={"field": "permission_ids", "missing": missing},
            )
        return cleaned, unique_ids

    async def create_role(
        self,
        principal: Principal,
        name: str,
        description: str = "",
        permission_ids: Sequence[str] = (),
    ) -> Role:
        cleaned, unique_ids = await self._validate_role_input(name, permission_ids)
        if await self._call(
            self.store.role_name_exists(principal.tenant_id, cleaned), "role_name_exists"
        ):
            raise ConflictError("role name already exists", detail={"field": "name"})
        try:
            role = await self._call(
                self.store.create_role(
                    principal.tenant_id,
                    cleaned,
                    description=(description or "").strip(),
                    permission_ids=unique_ids,
                ),
                "create_role",
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "role_created",
            tenant_id=principal.tenant_id,
            role_id=role.id,
            actor_id=principal.user_id,
        )
        return role

    async def update_role(
        self,
        principal: Principal,
        role_id: str,
        name: str,
        description: str = "",
        permission_ids: Sequence[str] = (),
    ) -> Role:
        existing = await self.get_role(principal, role_id)
        if existing.is_default:
            raise ForbiddenError("default roles cannot be modified")
        cleaned, unique_ids = await self._validate_role_input(name, permission_ids)
        if await self._call(
            self.store.role_name_exists(
                principal.tenant_id, cleaned, exclude_role_id=role_id
            ),
            "role_name_exists",
        ):
            raise ConflictError("role name already exists", detail={"field": "name"})
        try:
            role = await self._call(
                self.store.update_role(
                    role_id,
                    principal.tenant_id,
                    name=cleaned,
                    description=(description or "").strip(),
                    permission_ids=unique_ids,
                ),
                "update_role",
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        logger.info(
            "role_updated",
            tenant_id=principal.tenant_id,
            role_id=role_id,
            actor_id=principal.user_id,
        )
        return role

    async def delete_role(self, principal: Principal, role_id: str) -> None:
        existing = await self.get_role(principal, role_id)
        if existing.is_default:
            raise ForbiddenError("default roles cannot be deleted")
        if await self._call(
            self.store.role_in_use(role_id, principal.tenant_id), "role_in_use"
        ):
            raise ConflictError("role is assigned to users", detail={"role_id": role_id})
        try:
            deleted = await self._call(
                self.store.delete_role(role_id, principal.tenant_id), "delete_role"
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not deleted:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        logger.info(
            "role_deleted",
            tenant_id=principal.tenant_id,
            role_id=role_id,
            actor_id=principal.user_id,
        )

    async def assign_roles(
        self, principal: Principal, target_user_id: str, role_ids: Sequence[str]
    ) -> List[UserRole]:
        if target_user_id == principal.user_id:
            raise ForbiddenError("cannot change your own roles")
        target = await self._call(self.store.get_user(target_user_id), "get_user")
        if not target or target.tenant_id != principal.tenant_id:
            raise NotFoundError("user not found", detail={"user_id": target_user_id})
        unique_ids = list(dict.fromkeys(role_ids or []))
        known = {
            role.id
            for role in await self._call(
                self.store.list_roles(principal.tenant_id), "list_roles"
            )
        }
        missing = [rid for rid in unique_ids if rid not in known]
        if missing:
            raise ValidationError(
                "unknown role ids", detail={"field": "role_ids", "missing": missing}
            )
        try:
            assigned = await self._call(
                self.store.set_user_roles(target_user_id, principal.tenant_id, unique_ids),
                "set_user_roles",
            )
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info(
            "user_roles_assigned",
            tenant_id=principal.tenant_id,
            target_user_id=target_user_id,
            role_ids=unique_ids,
            actor_id=principal.user_id,
        )
        return assigned


__all__ = ["RoleResolver", "RoleService", "RoleStore"]
