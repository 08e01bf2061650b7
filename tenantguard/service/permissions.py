from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List

from tenantguard.storage.models import Permission

if TYPE_CHECKING:
    from tenantguard.storage.memory import MemoryStore
    from tenantguard.storage.postgres import PostgresStore

RESOURCES = ("tenant", "users", "roles")
ACTIONS = ("view", "edit")

_DESCRIPTIONS = {
    ("tenant", "view"): "View tenant settings and plan",
    ("tenant", "edit"): "Change tenant settings and feature flags",
    ("users", "view"): "List users in the tenant",
    ("users", "edit"): "Invite users and change their roles",
    ("roles", "view"): "List roles and their permissions",
    ("roles", "edit"): "Create, update and delete roles",
}


def permission_key(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def _build_catalog() -> tuple[Permission, ...]:
    return tuple(
        Permission(
            id=f"perm_{resource}_{action}",
            resource=resource,
            action=action,
            description=_DESCRIPTIONS[(resource, action)],
        )
        for resource in RESOURCES
        for action in ACTIONS
    )


# Global, tenant-independent. Seeded into the store at startup.
PERMISSION_CATALOG: tuple[Permission, ...] = _build_catalog()


class PermissionCatalog:
    """Read-only view over the global permission list held by the store."""

    def __init__(self, store: "MemoryStore | PostgresStore") -> None:
        self.store = store

    async def list_permissions(self) -> List[Permission]:
        return await self.store.list_permissions()

    async def all_keys(self) -> frozenset[str]:
        return frozenset(perm.key for perm in await self.list_permissions())

    async def missing_ids(self, permission_ids: Iterable[str]) -> List[str]:
        known = {perm.id for perm in await self.list_permissions()}
        return sorted({pid for pid in permission_ids if pid not in known})


__all__ = [
    "ACTIONS",
    "PERMISSION_CATALOG",
    "PermissionCatalog",
    "RESOURCES",
    "permission_key",
]
