from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence

from tenantguard.logging import get_logger
from tenantguard.service.permissions import PERMISSION_CATALOG
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import (
    Invitation,
    LegacyRole,
    PasswordResetToken,
    Permission,
    RefreshTokenRecord,
    Role,
    Tenant,
    User,
    UserRole,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every method runs its body under one re-entrant lock without awaiting,
    so each call is atomic with respect to every other call.
    """

    def __init__(self, permissions: Optional[Iterable[Permission]] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.permissions: Dict[str, Permission] = {}
        # Roles are keyed by (tenant_id, role_id); joins always carry the tenant
        self.roles: Dict[tuple[str, str], Role] = {}
        self.role_permissions: Dict[tuple[str, str], set[str]] = {}
        self.user_roles: List[UserRole] = []
        self._data_lock = threading.RLock()
        for perm in permissions if permissions is not None else PERMISSION_CATALOG:
            self.permissions[perm.id] = perm

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # tenants
    async def create_tenant(
        self,
        name: str,
        *,
        plan: str = "free",
        rbac_enabled: bool = False,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        tenant = Tenant(
            id=tenant_id or str(uuid.uuid4()),
            name=name,
            plan=plan,
            rbac_enabled=rbac_enabled,
        )
        with self._data_lock:
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            self.tenants[tenant.id] = tenant
            return replace(tenant)

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    async def set_tenant_rbac(self, tenant_id: str, enabled: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.rbac_enabled = enabled
            return replace(tenant)

    # users
    def _insert_user(self, user: User) -> None:
        email_key = user.email.lower()
        if any(existing.email.lower() == email_key for existing in self.users.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})
        if user.tenant_id not in self.tenants:
            raise ConstraintViolation("tenant not found", {"field": "tenant_id"})
        self.users[user.id] = user

    async def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        legacy_role: LegacyRole = LegacyRole.EDITOR,
        status: UserStatus = UserStatus.ACTIVE,
        name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            tenant_id=tenant_id,
            legacy_role=LegacyRole.parse(legacy_role),
            status=UserStatus.parse(status),
            name=name,
        )
        with self._data_lock:
            self._insert_user(user)
            return replace(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        email_key = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == email_key:
                    return replace(user)
        return None

    async def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus.parse(status)
            return replace(user)

    async def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.user_roles = [ur for ur in self.user_roles if ur.user_id != user_id]
            self.password_resets = {
                key: reset
                for key, reset in self.password_resets.items()
                if reset.user_id != user_id
            }
            self._delete_user_tokens(user_id)
            return True

    async def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)

    async def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    async def change_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> int:
        """Replace the password and drop every refresh token of the user."""

        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            self.credentials[user_id] = (password_hash, password_algo)
            return self._delete_user_tokens(user_id)

    async def create_tenant_with_admin(
        self,
        tenant: Tenant,
        user: User,
        password_hash: str,
        password_algo: str,
        roles: Sequence[Role],
        admin_role_ids: Sequence[str],
        refresh_record: RefreshTokenRecord,
    ) -> None:
        """Create a tenant, its first admin, its seed roles and first session."""

        with self._data_lock:
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            email_key = user.email.lower()
            if any(existing.email.lower() == email_key for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.tenants[tenant.id] = replace(tenant)
            self.users[user.id] = replace(user)
            self.credentials[user.id] = (password_hash, password_algo)
            for role in roles:
                self._insert_role(role, [perm.id for perm in role.permissions])
            self.user_roles.extend(
                UserRole(user_id=user.id, role_id=rid, tenant_id=tenant.id)
                for rid in admin_role_ids
            )
            self.refresh_tokens[refresh_record.token_id] = replace(refresh_record)

    # refresh tokens
    async def put_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            if record.token_id in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_id"}
                )
            self.refresh_tokens[record.token_id] = replace(record)

    async def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    async def mark_refresh_token_used(self, token_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.last_used_at is not None:
                return False
            record.last_used_at = utcnow()
            return True

    async def revoke_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            return True

    def _delete_user_tokens(self, user_id: str) -> int:
        doomed = [
            token_id
            for token_id, record in self.refresh_tokens.items()
            if record.owner_user_id == user_id
        ]
        for token_id in doomed:
            del self.refresh_tokens[token_id]
        return len(doomed)

    async def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            return self._delete_user_tokens(user_id)

    async def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshTokenRecord
    ) -> bool:
        """Mark ``old_token_id`` used and insert ``new_record`` atomically.

        Returns False without inserting when the old record is missing or was
        already used or revoked.
        """

        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if old is None or old.is_spent:
                return False
            if new_record.token_id in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_id"}
                )
            old.last_used_at = utcnow()
            self.refresh_tokens[new_record.token_id] = replace(new_record)
            return True

    # invitations
    async def create_invitation(self, invitation: Invitation) -> Invitation:
        with self._data_lock:
            if invitation.token_hash in self.invitations:
                raise ConstraintViolation(
                    "invitation already exists", {"field": "token_hash"}
                )
            self.invitations[invitation.token_hash] = replace(invitation)
            return replace(invitation)

    async def get_invitation(self, token_hash: str) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(token_hash)
            return replace(invitation) if invitation else None

    async def accept_invitation(
        self,
        invitation_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        refresh_record: RefreshTokenRecord,
    ) -> bool:
        with self._data_lock:
            invitation = next(
                (inv for inv in self.invitations.values() if inv.id == invitation_id),
                None,
            )
            user = self.users.get(user_id)
            if (
                invitation is None
                or invitation.used_at is not None
                or invitation.user_id != user_id
                or user is None
                or user.status != UserStatus.PENDING_VERIFICATION
            ):
                return False
            invitation.used_at = utcnow()
            user.status = UserStatus.ACTIVE
            self.credentials[user_id] = (password_hash, password_algo)
            self.refresh_tokens[refresh_record.token_id] = replace(refresh_record)
            return True

    async def replace_invitation(self, invitation: Invitation) -> Invitation:
        """Drop the user's earlier invitations in the tenant, then store this one."""

        with self._data_lock:
            self.invitations = {
                token_hash: inv
                for token_hash, inv in self.invitations.items()
                if not (inv.user_id == invitation.user_id and inv.tenant_id == invitation.tenant_id)
            }
            self.invitations[invitation.token_hash] = replace(invitation)
            return replace(invitation)

    # password resets
    async def replace_password_reset_token(self, reset: PasswordResetToken) -> None:
        with self._data_lock:
            self.password_resets = {
                token_hash: existing
                for token_hash, existing in self.password_resets.items()
                if existing.user_id != reset.user_id
            }
            self.password_resets[reset.token_hash] = replace(reset)

    async def get_password_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            reset = self.password_resets.get(token_hash)
            return replace(reset) if reset else None

    async def reset_password(
        self, reset_id: str, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[int]:
        """Consume the reset token, set the password and drop every refresh token.

        Returns the number of refresh tokens removed, or None when the reset
        token was already used, has expired or belongs to someone else.
        """

        with self._data_lock:
            reset = next(
                (item for item in self.password_resets.values() if item.id == reset_id),
                None,
            )
            if reset is None or reset.user_id != user_id or not reset.is_usable():
                return None
            if user_id not in self.users:
                return None
            reset.used_at = utcnow()
            self.credentials[user_id] = (password_hash, password_algo)
            return self._delete_user_tokens(user_id)

    # permissions and roles
    async def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda perm: perm.id)

    def _resolved_role(self, role: Role) -> Role:
        perm_ids = self.role_permissions.get((role.tenant_id, role.id), set())
        perms = sorted(
            (self.permissions[pid] for pid in perm_ids if pid in self.permissions),
            key=lambda perm: perm.id,
        )
        return replace(role, permissions=perms)

    def _insert_role(self, role: Role, permission_ids: Sequence[str]) -> Role:
        key = (role.tenant_id, role.id)
        if key in self.roles:
            raise ConstraintViolation("role already exists", {"field": "id"})
        if self._name_taken(role.tenant_id, role.name, None):
            raise ConstraintViolation("role name already exists", {"field": "name"})
        missing = [pid for pid in permission_ids if pid not in self.permissions]
        if missing:
            raise ConstraintViolation(
                "unknown permission", {"field": "permission_ids", "missing": missing}
            )
        self.roles[key] = replace(role, permissions=[])
        self.role_permissions[key] = set(permission_ids)
        return self._resolved_role(self.roles[key])

    def _name_taken(self, tenant_id: str, name: str, exclude_role_id: Optional[str]) -> bool:
        lowered = name.strip().lower()
        return any(
            role.tenant_id == tenant_id
            and role.name.strip().lower() == lowered
            and role.id != exclude_role_id
            for role in self.roles.values()
        )

    async def create_role(
        self,
        tenant_id: str,
        name: str,
        *,
        description: str = "",
        permission_ids: Sequence[str] = (),
        is_default: bool = False,
        role_id: Optional[str] = None,
    ) -> Role:
        role = Role(
            id=role_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            description=description,
            is_default=is_default,
        )
        with self._data_lock:
            return self._insert_role(role, list(permission_ids))

    async def get_role(self, role_id: str, tenant_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get((tenant_id, role_id))
            return self._resolved_role(role) if role else None

    async def list_roles(self, tenant_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self._resolved_role(role)
                for (role_tenant, _), role in self.roles.items()
                if role_tenant == tenant_id
            ]
        return sorted(roles, key=lambda role: role.id)

    async def update_role(
        self,
        role_id: str,
        tenant_id: str,
        *,
        name: str,
        description: str,
        permission_ids: Sequence[str],
    ) -> Optional[Role]:
        key = (tenant_id, role_id)
        with self._data_lock:
            role = self.roles.get(key)
            if not role:
                return None
            if self._name_taken(tenant_id, name, role_id):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            missing = [pid for pid in permission_ids if pid not in self.permissions]
            if missing:
                raise ConstraintViolation(
                    "unknown permission", {"field": "permission_ids", "missing": missing}
                )
            role.name = name
            role.description = description
            self.role_permissions[key] = set(permission_ids)
            return self._resolved_role(role)

    async def delete_role(self, role_id: str, tenant_id: str) -> bool:
        key = (tenant_id, role_id)
        with self._data_lock:
            if key not in self.roles:
                return False
            if self._role_in_use(role_id, tenant_id):
                raise ConstraintViolation("role is assigned to users", {"field": "id"})
            del self.roles[key]
            self.role_permissions.pop(key, None)
            return True

    def _role_in_use(self, role_id: str, tenant_id: str) -> bool:
        return any(
            ur.role_id == role_id and ur.tenant_id == tenant_id for ur in self.user_roles
        )

    async def role_in_use(self, role_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            return self._role_in_use(role_id, tenant_id)

    async def role_name_exists(
        self, tenant_id: str, name: str, *, exclude_role_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            return self._name_taken(tenant_id, name, exclude_role_id)

    async def set_user_roles(
        self, user_id: str, tenant_id: str, role_ids: Sequence[str]
    ) -> List[UserRole]:
        with self._data_lock:
            unknown = [rid for rid in role_ids if (tenant_id, rid) not in self.roles]
            if unknown:
                raise ConstraintViolation(
                    "role not found in tenant", {"field": "role_ids", "missing": unknown}
                )
            self.user_roles = [
                ur
                for ur in self.user_roles
                if not (ur.user_id == user_id and ur.tenant_id == tenant_id)
            ]
            assigned = [
                UserRole(user_id=user_id, role_id=rid, tenant_id=tenant_id)
                for rid in dict.fromkeys(role_ids)
            ]
            self.user_roles.extend(assigned)
            return list(assigned)

    async def get_roles_for_user(self, user_id: str, tenant_id: str) -> List[Role]:
        with self._data_lock:
            roles = []
            for ur in self.user_roles:
                if ur.user_id != user_id or ur.tenant_id != tenant_id:
                    continue
                role = self.roles.get((ur.tenant_id, ur.role_id))
                if role is None or role.tenant_id != tenant_id:
                    continue
                roles.append(self._resolved_role(role))
        return sorted(roles, key=lambda role: role.id)

    async def get_default_roles(self, tenant_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self._resolved_role(role)
                for (role_tenant, _), role in self.roles.items()
                if role_tenant == tenant_id and role.is_default
            ]
        return sorted(roles, key=lambda role: role.id)


__all__ = ["MemoryStore"]
