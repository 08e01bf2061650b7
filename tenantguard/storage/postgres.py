from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from tenantguard.logging import get_logger
from tenantguard.service.permissions import PERMISSION_CATALOG
from tenantguard.storage.errors import ConstraintViolation, MissingSchemaError
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

REQUIRED_TABLES = (
    "tenant",
    "app_user",
    "user_auth_credential",
    "refresh_token",
    "invitation",
    "password_reset_token",
    "permission",
    "role",
    "role_permission",
    "user_role",
)


class _RollbackRequested(Exception):
    """Leaves a transaction block so that its writes are discarded."""


class PostgresStore:
    """Postgres-backed store for principals, refresh tokens and RBAC data.

    Multi-statement writes run inside ``conn.transaction()``; leaving the block
    through an exception or task cancellation rolls the whole unit back.
    """

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 5000) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.statement_timeout_ms = statement_timeout_ms
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        await self._verify_required_schema()
        await self._ensure_permission_catalog()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[Any]:
        async with self._connect() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (str(self.statement_timeout_ms),),
                )
                yield conn

    async def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        async with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise MissingSchemaError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    async def _ensure_permission_catalog(self) -> None:
        async with self._transaction() as conn:
            for perm in PERMISSION_CATALOG:
                await conn.execute(
                    """
                    INSERT INTO permission (id, resource, action, description)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (perm.id, perm.resource, perm.action, perm.description),
                )

    # row mapping
    @staticmethod
    def _row_to_tenant(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            plan=row.get("plan") or "free",
            rbac_enabled=bool(row.get("rbac_enabled", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=str(row["tenant_id"]),
            legacy_role=LegacyRole.parse(row.get("legacy_role") or "editor"),
            status=UserStatus.parse(row.get("status") or "active"),
            name=row.get("name"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshTokenRecord:
        ip_value = row.get("ip_address")
        return RefreshTokenRecord(
            token_id=str(row["token_id"]),
            owner_user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_address=str(ip_value) if ip_value is not None else None,
            last_used_at=row.get("last_used_at"),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _row_to_permission(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            resource=row["resource"],
            action=row["action"],
            description=row.get("description") or "",
        )

    @staticmethod
    def _row_to_role(row: Dict[str, Any], permissions: Optional[List[Permission]] = None) -> Role:
        return Role(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            name=row["name"],
            description=row.get("description") or "",
            is_default=bool(row.get("is_default", False)),
            permissions=list(permissions or []),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_invitation(row: Dict[str, Any]) -> Invitation:
        return Invitation(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_password_reset(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # tenants
    async def create_tenant(
        self,
        name: str,
        *,
        plan: str = "free",
        rbac_enabled: bool = False,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        try:
            async with self._transaction() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO tenant (id, name, plan, rbac_enabled)
                    VALUES (COALESCE(%s, gen_random_uuid()::text), %s, %s, %s)
                    RETURNING *
                    """,
                    (tenant_id, name, plan, rbac_enabled),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"field": "id"})
        return self._row_to_tenant(row)

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,))
            row = await cur.fetchone()
        return self._row_to_tenant(row) if row else None

    async def set_tenant_rbac(self, tenant_id: str, enabled: bool) -> Optional[Tenant]:
        async with self._transaction() as conn:
            cur = await conn.execute(
                "UPDATE tenant SET rbac_enabled = %s WHERE id = %s RETURNING *",
                (enabled, tenant_id),
            )
            row = await cur.fetchone()
        return self._row_to_tenant(row) if row else None

    # users
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
        try:
            async with self._transaction() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO app_user (id, email, tenant_id, legacy_role, status, name)
                    VALUES (COALESCE(%s, gen_random_uuid()::text), %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        tenant_id,
                        LegacyRole.parse(legacy_role).value,
                        UserStatus.parse(status).value,
                        name,
                    ),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant not found", {"field": "tenant_id"})
        return self._row_to_user(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email.strip(),)
            )
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        async with self._transaction() as conn:
            cur = await conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (UserStatus.parse(status).value, user_id),
            )
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def delete_user(self, user_id: str) -> bool:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            await conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            await conn.execute(
                "DELETE FROM user_auth_credential WHERE user_id = %s", (user_id,)
            )
            cur = await conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount == 1

    async def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        async with self._transaction() as conn:
            await self._upsert_password(conn, user_id, password_hash, password_algo)

    @staticmethod
    async def _upsert_password(
        conn: Any, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        await conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )

    async def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    async def change_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> int:
        async with self._transaction() as conn:
            await self._upsert_password(conn, user_id, password_hash, password_algo)
            cur = await conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

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
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    "INSERT INTO tenant (id, name, plan, rbac_enabled) VALUES (%s, %s, %s, %s)",
                    (tenant.id, tenant.name, tenant.plan, tenant.rbac_enabled),
                )
                await conn.execute(
                    """
                    INSERT INTO app_user (id, email, tenant_id, legacy_role, status, name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.tenant_id,
                        user.legacy_role.value,
                        user.status.value,
                        user.name,
                    ),
                )
                await self._upsert_password(conn, user.id, password_hash, password_algo)
                for role in roles:
                    await self._insert_role(
                        conn, role, [perm.id for perm in role.permissions]
                    )
                for rid in dict.fromkeys(admin_role_ids):
                    await conn.execute(
                        "INSERT INTO user_role (user_id, role_id, tenant_id) VALUES (%s, %s, %s)",
                        (user.id, rid, tenant.id),
                    )
                await self._insert_refresh_token(conn, refresh_record)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    # refresh tokens
    @staticmethod
    async def _insert_refresh_token(conn: Any, record: RefreshTokenRecord) -> None:
        await conn.execute(
            """
            INSERT INTO refresh_token (
                token_id, user_id, token_hash, device_info, ip_address,
                issued_at, expires_at, last_used_at, revoked_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.token_id,
                record.owner_user_id,
                record.token_hash,
                record.device_info,
                record.ip_address,
                record.issued_at,
                record.expires_at,
                record.last_used_at,
                record.revoked_at,
            ),
        )

    async def put_refresh_token(self, record: RefreshTokenRecord) -> None:
        try:
            async with self._transaction() as conn:
                await self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token_id"})

    async def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM refresh_token WHERE token_id = %s", (token_id,)
            )
            row = await cur.fetchone()
        return self._row_to_refresh_token(row) if row else None

    async def mark_refresh_token_used(self, token_id: str) -> bool:
        async with self._transaction() as conn:
            cur = await conn.execute(
                "UPDATE refresh_token SET last_used_at = now() WHERE token_id = %s AND last_used_at IS NULL",
                (token_id,),
            )
            return cur.rowcount == 1

    async def revoke_refresh_token(self, token_id: str) -> bool:
        async with self._transaction() as conn:
            cur = await conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE token_id = %s AND revoked_at IS NULL",
                (token_id,),
            )
            return cur.rowcount == 1

    async def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        async with self._transaction() as conn:
            cur = await conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    async def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshTokenRecord
    ) -> bool:
        """Exchange ``old_token_id`` for ``new_record`` in one transaction.

        The conditional update is the arbiter between concurrent refreshes of
        the same token: only the caller whose UPDATE touches the row inserts.
        """

        async with self._transaction() as conn:
            cur = await conn.execute(
                """
                UPDATE refresh_token
                SET last_used_at = now()
                WHERE token_id = %s AND last_used_at IS NULL AND revoked_at IS NULL
                """,
                (old_token_id,),
            )
            if cur.rowcount == 0:
                return False
            await self._insert_refresh_token(conn, new_record)
        return True

    # invitations
    async def create_invitation(self, invitation: Invitation) -> Invitation:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO invitation (id, tenant_id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invitation.id,
                        invitation.tenant_id,
                        invitation.user_id,
                        invitation.token_hash,
                        invitation.expires_at,
                        invitation.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation already exists", {"field": "token_hash"})
        return invitation

    async def get_invitation(self, token_hash: str) -> Optional[Invitation]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM invitation WHERE token_hash = %s", (token_hash,)
            )
            row = await cur.fetchone()
        return self._row_to_invitation(row) if row else None

    async def accept_invitation(
        self,
        invitation_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        refresh_record: RefreshTokenRecord,
    ) -> bool:
        try:
            async with self._transaction() as conn:
                cur = await conn.execute(
                    "UPDATE invitation SET used_at = now() WHERE id = %s AND user_id = %s AND used_at IS NULL",
                    (invitation_id, user_id),
                )
                if cur.rowcount == 0:
                    raise _RollbackRequested()
                cur = await conn.execute(
                    "UPDATE app_user SET status = 'active' WHERE id = %s AND status = 'pending_verification'",
                    (user_id,),
                )
                if cur.rowcount == 0:
                    raise _RollbackRequested()
                await self._upsert_password(conn, user_id, password_hash, password_algo)
                await self._insert_refresh_token(conn, refresh_record)
        except _RollbackRequested:
            return False
        return True

    async def replace_invitation(self, invitation: Invitation) -> Invitation:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM invitation WHERE user_id = %s AND tenant_id = %s",
                (invitation.user_id, invitation.tenant_id),
            )
            await conn.execute(
                """
                INSERT INTO invitation (id, tenant_id, user_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    invitation.id,
                    invitation.tenant_id,
                    invitation.user_id,
                    invitation.token_hash,
                    invitation.expires_at,
                    invitation.created_at,
                ),
            )
        return invitation

    # password resets
    async def replace_password_reset_token(self, reset: PasswordResetToken) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM password_reset_token WHERE user_id = %s", (reset.user_id,)
            )
            await conn.execute(
                """
                INSERT INTO password_reset_token (id, user_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (reset.id, reset.user_id, reset.token_hash, reset.expires_at, reset.created_at),
            )

    async def get_password_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            )
            row = await cur.fetchone()
        return self._row_to_password_reset(row) if row else None

    async def reset_password(
        self, reset_id: str, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[int]:
        """Consume the reset token, set the password and drop refresh tokens.

        All three writes share one transaction; a token that is used, expired
        or owned by another user leaves everything untouched.
        """

        try:
            async with self._transaction() as conn:
                cur = await conn.execute(
                    """
                    UPDATE password_reset_token SET used_at = now()
                    WHERE id = %s AND user_id = %s AND used_at IS NULL AND expires_at > now()
                    """,
                    (reset_id, user_id),
                )
                if cur.rowcount == 0:
                    raise _RollbackRequested()
                await self._upsert_password(conn, user_id, password_hash, password_algo)
                cur = await conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
                )
                return cur.rowcount
        except _RollbackRequested:
            return None

    # permissions and roles
    async def list_permissions(self) -> List[Permission]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM permission ORDER BY id")
            rows = await cur.fetchall()
        return [self._row_to_permission(row) for row in rows]

    async def _permissions_for_roles(
        self, conn: Any, role_ids: Sequence[str], tenant_id: str
    ) -> Dict[str, List[Permission]]:
        if not role_ids:
            return {}
        cur = await conn.execute(
            """
            SELECT rp.role_id, p.*
            FROM role_permission rp
            JOIN role r ON r.id = rp.role_id AND r.tenant_id = %s
            JOIN permission p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s)
            ORDER BY p.id
            """,
            (tenant_id, list(role_ids)),
        )
        rows = await cur.fetchall()
        resolved: Dict[str, List[Permission]] = {str(rid): [] for rid in role_ids}
        for row in rows:
            resolved.setdefault(str(row["role_id"]), []).append(
                self._row_to_permission(row)
            )
        return resolved

    async def _roles_with_permissions(
        self, conn: Any, rows: List[Dict[str, Any]], tenant_id: str
    ) -> List[Role]:
        role_ids = [str(row["id"]) for row in rows]
        perms = await self._permissions_for_roles(conn, role_ids, tenant_id)
        return [self._row_to_role(row, perms.get(str(row["id"]))) for row in rows]

    async def get_roles_for_user(self, user_id: str, tenant_id: str) -> List[Role]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT r.*
                FROM user_role ur
                JOIN role r ON r.id = ur.role_id AND r.tenant_id = ur.tenant_id
                WHERE ur.user_id = %s AND ur.tenant_id = %s
                ORDER BY r.id
                """,
                (user_id, tenant_id),
            )
            rows = await cur.fetchall()
            return await self._roles_with_permissions(conn, rows, tenant_id)

    async def get_default_roles(self, tenant_id: str) -> List[Role]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM role WHERE tenant_id = %s AND is_default ORDER BY id",
                (tenant_id,),
            )
            rows = await cur.fetchall()
            return await self._roles_with_permissions(conn, rows, tenant_id)

    async def get_role(self, role_id: str, tenant_id: str) -> Optional[Role]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM role WHERE id = %s AND tenant_id = %s", (role_id, tenant_id)
            )
            row = await cur.fetchone()
            if not row:
                return None
            roles = await self._roles_with_permissions(conn, [row], tenant_id)
        return roles[0]

    async def list_roles(self, tenant_id: str) -> List[Role]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM role WHERE tenant_id = %s ORDER BY id", (tenant_id,)
            )
            rows = await cur.fetchall()
            return await self._roles_with_permissions(conn, rows, tenant_id)

    @staticmethod
    async def _insert_role(conn: Any, role: Role, permission_ids: Sequence[str]) -> None:
        await conn.execute(
            """
            INSERT INTO role (id, tenant_id, name, description, is_default)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (role.id, role.tenant_id, role.name, role.description, role.is_default),
        )
        for pid in dict.fromkeys(permission_ids):
            await conn.execute(
                "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                (role.id, pid),
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
        try:
            async with self._transaction() as conn:
                await self._insert_role(conn, role, permission_ids)
                roles = await self._roles_with_permissions(
                    conn,
                    [
                        {
                            "id": role.id,
                            "tenant_id": tenant_id,
                            "name": name,
                            "description": description,
                            "is_default": is_default,
                            "created_at": role.created_at,
                        }
                    ],
                    tenant_id,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown permission", {"field": "permission_ids"})
        return roles[0]

    async def update_role(
        self,
        role_id: str,
        tenant_id: str,
        *,
        name: str,
        description: str,
        permission_ids: Sequence[str],
    ) -> Optional[Role]:
        try:
            async with self._transaction() as conn:
                cur = await conn.execute(
                    """
                    UPDATE role SET name = %s, description = %s
                    WHERE id = %s AND tenant_id = %s
                    RETURNING *
                    """,
                    (name, description, role_id, tenant_id),
                )
                row = await cur.fetchone()
                if not row:
                    return None
                await conn.execute(
                    "DELETE FROM role_permission WHERE role_id = %s", (role_id,)
                )
                for pid in dict.fromkeys(permission_ids):
                    await conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, pid),
                    )
                roles = await self._roles_with_permissions(conn, [row], tenant_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown permission", {"field": "permission_ids"})
        return roles[0]

    async def delete_role(self, role_id: str, tenant_id: str) -> bool:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    DELETE FROM role_permission
                    WHERE role_id IN (SELECT id FROM role WHERE id = %s AND tenant_id = %s)
                    """,
                    (role_id, tenant_id),
                )
                cur = await conn.execute(
                    "DELETE FROM role WHERE id = %s AND tenant_id = %s",
                    (role_id, tenant_id),
                )
                return cur.rowcount == 1
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role is assigned to users", {"field": "id"})

    async def role_in_use(self, role_id: str, tenant_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT 1 FROM user_role WHERE role_id = %s AND tenant_id = %s LIMIT 1",
                (role_id, tenant_id),
            )
            return await cur.fetchone() is not None

    async def role_name_exists(
        self, tenant_id: str, name: str, *, exclude_role_id: Optional[str] = None
    ) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT 1 FROM role
                WHERE tenant_id = %s AND lower(name) = lower(%s)
                  AND (%s::text IS NULL OR id <> %s)
                LIMIT 1
                """,
                (tenant_id, name.strip(), exclude_role_id, exclude_role_id),
            )
            return await cur.fetchone() is not None

    async def set_user_roles(
        self, user_id: str, tenant_id: str, role_ids: Sequence[str]
    ) -> List[UserRole]:
        unique_ids = list(dict.fromkeys(role_ids))
        async with self._transaction() as conn:
            if unique_ids:
                cur = await conn.execute(
                    "SELECT id FROM role WHERE tenant_id = %s AND id = ANY(%s)",
                    (tenant_id, unique_ids),
                )
                found = {str(row["id"]) for row in await cur.fetchall()}
                missing = [rid for rid in unique_ids if rid not in found]
                if missing:
                    raise ConstraintViolation(
                        "role not found in tenant",
                        {"field": "role_ids", "missing": missing},
                    )
            await conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            )
            for rid in unique_ids:
                await conn.execute(
                    "INSERT INTO user_role (user_id, role_id, tenant_id) VALUES (%s, %s, %s)",
                    (user_id, rid, tenant_id),
                )
        return [
            UserRole(user_id=user_id, role_id=rid, tenant_id=tenant_id)
            for rid in unique_ids
        ]


__all__ = ["PostgresStore", "REQUIRED_TABLES"]
