"""Effective permission computation in legacy and RBAC modes."""

import pytest

import tenantguard.service.roles as roles_module
from tenantguard.service.authorization import AuthorizationMode, EffectivePermissions
from tenantguard.service.roles import RoleResolver
from tenantguard.storage.models import LegacyRole, Role, UserStatus

ALL_KEYS = {
    "tenant.view",
    "tenant.edit",
    "users.view",
    "users.edit",
    "roles.view",
    "roles.edit",
}


class RecordingLogger:
    def __init__(self):
        self.records = []

    def _log(self, level, event, **fields):
        self.records.append((level, event, fields))

    def info(self, event, **fields):
        self._log("info", event, **fields)

    def warning(self, event, **fields):
        self._log("warning", event, **fields)

    def events(self, level):
        return [(event, fields) for lvl, event, fields in self.records if lvl == level]


@pytest.fixture
def role_logger(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(roles_module, "logger", recorder)
    return recorder


class TestLegacyMode:
    async def test_admin_gets_whole_catalog(self, authorization, make_tenant, make_user):
        tenant = await make_tenant()
        admin = await make_user(tenant, legacy_role=LegacyRole.ADMIN)

        effective = await authorization.compute_effective_permissions(admin.id, tenant.id)

        assert effective.mode is AuthorizationMode.LEGACY
        assert effective.permissions == ALL_KEYS

    async def test_editor_gets_nothing(self, authorization, store, make_tenant, make_user):
        tenant = await make_tenant()
        editor = await make_user(tenant, legacy_role=LegacyRole.EDITOR)
        # Roles are ignored while RBAC is off
        role = await store.create_role(
            tenant.id, "Power", permission_ids=["perm_roles_edit"], is_default=True
        )
        await store.set_user_roles(editor.id, tenant.id, [role.id])

        effective = await authorization.compute_effective_permissions(editor.id, tenant.id)

        assert effective == EffectivePermissions(AuthorizationMode.LEGACY, frozenset())


class TestRbacMode:
    async def test_union_of_assigned_roles(self, authorization, store, make_tenant, make_user):
        tenant = await make_tenant(rbac_enabled=True)
        user = await make_user(tenant)
        viewer = await store.create_role(
            tenant.id, "Viewer", permission_ids=["perm_users_view", "perm_roles_view"]
        )
        editor = await store.create_role(
            tenant.id, "Role Editor", permission_ids=["perm_roles_view", "perm_roles_edit"]
        )
        await store.set_user_roles(user.id, tenant.id, [viewer.id, editor.id])

        effective = await authorization.compute_effective_permissions(user.id, tenant.id)

        assert effective.mode is AuthorizationMode.RBAC
        assert effective.permissions == {"users.view", "roles.view", "roles.edit"}
        assert effective.allows("roles", "edit")
        assert not effective.allows("tenant", "edit")

    async def test_legacy_admin_flag_is_ignored(
        self, authorization, make_tenant, make_user
    ):
        tenant = await make_tenant(rbac_enabled=True)
        admin = await make_user(tenant, legacy_role=LegacyRole.ADMIN)

        effective = await authorization.compute_effective_permissions(admin.id, tenant.id)

        assert effective.permissions == frozenset()

    async def test_default_role_applies_without_assignments(
        self, authorization, store, make_tenant, make_user
    ):
        tenant = await make_tenant(rbac_enabled=True)
        user = await make_user(tenant)
        await store.create_role(
            tenant.id, "Viewer", permission_ids=["perm_tenant_view"], is_default=True
        )

        effective = await authorization.compute_effective_permissions(user.id, tenant.id)

        assert effective.permissions == {"tenant.view"}

    async def test_assigned_roles_replace_default(
        self, authorization, store, make_tenant, make_user
    ):
        tenant = await make_tenant(rbac_enabled=True)
        user = await make_user(tenant)
        await store.create_role(
            tenant.id, "Viewer", permission_ids=["perm_tenant_view"], is_default=True
        )
        admin_role = await store.create_role(
            tenant.id, "Users", permission_ids=["perm_users_edit"]
        )
        await store.set_user_roles(user.id, tenant.id, [admin_role.id])

        effective = await authorization.compute_effective_permissions(user.id, tenant.id)

        assert effective.permissions == {"users.edit"}

    async def test_no_roles_and_no_default(
        self, authorization, make_tenant, make_user, role_logger
    ):
        tenant = await make_tenant(rbac_enabled=True)
        user = await make_user(tenant)

        effective = await authorization.compute_effective_permissions(user.id, tenant.id)

        assert effective.permissions == frozenset()
        assert [event for event, _ in role_logger.events("info")] == ["default_role_missing"]

    async def test_role_edits_apply_on_next_call(
        self, authorization, store, make_tenant, make_user
    ):
        tenant = await make_tenant(rbac_enabled=True)
        user = await make_user(tenant)
        role = await store.create_role(tenant.id, "Ops", permission_ids=["perm_users_view"])
        await store.set_user_roles(user.id, tenant.id, [role.id])
        assert await authorization.has_permission(user.id, tenant.id, "users", "view")

        await store.update_role(
            role.id, tenant.id, name="Ops", description="", permission_ids=["perm_tenant_view"]
        )

        assert not await authorization.has_permission(user.id, tenant.id, "users", "view")
        assert await authorization.has_permission(user.id, tenant.id, "tenant", "view")


class TestTenantIsolation:
    async def test_colliding_role_ids_across_tenants(
        self, authorization, store, make_tenant, make_user
    ):
        tenant_a = await make_tenant("A", rbac_enabled=True)
        tenant_b = await make_tenant("B", rbac_enabled=True)
        await store.create_role(
            tenant_a.id, "Owner", permission_ids=["perm_users_edit"], role_id="shared-id"
        )
        await store.create_role(
            tenant_b.id, "Reader", permission_ids=["perm_tenant_view"], role_id="shared-id"
        )
        user_b = await make_user(tenant_b, "bob@b.test")
        await store.set_user_roles(user_b.id, tenant_b.id, ["shared-id"])

        effective = await authorization.compute_effective_permissions(user_b.id, tenant_b.id)

        assert effective.permissions == {"tenant.view"}

    async def test_wrong_tenant_yields_nothing(
        self, authorization, make_tenant, make_user
    ):
        tenant_a = await make_tenant("A")
        tenant_b = await make_tenant("B")
        admin_a = await make_user(tenant_a, legacy_role=LegacyRole.ADMIN)

        effective = await authorization.compute_effective_permissions(admin_a.id, tenant_b.id)

        assert effective.permissions == frozenset()

    async def test_unknown_tenant_yields_empty_legacy(self, authorization):
        effective = await authorization.compute_effective_permissions("nobody", "nowhere")

        assert effective == EffectivePermissions(AuthorizationMode.LEGACY, frozenset())

    @pytest.mark.parametrize(
        "status", [UserStatus.SUSPENDED, UserStatus.PENDING_VERIFICATION]
    )
    async def test_inactive_users_yield_nothing(
        self, authorization, make_tenant, make_user, status
    ):
        tenant = await make_tenant()
        admin = await make_user(tenant, legacy_role=LegacyRole.ADMIN, status=status)

        effective = await authorization.compute_effective_permissions(admin.id, tenant.id)

        assert effective.permissions == frozenset()


async def test_rbac_toggle_takes_effect_immediately(
    authorization, store, make_tenant, make_user
):
    tenant = await make_tenant()
    admin = await make_user(tenant, legacy_role=LegacyRole.ADMIN)
    await store.create_role(
        tenant.id, "Viewer", permission_ids=["perm_roles_view"], is_default=True
    )
    before = await authorization.compute_effective_permissions(admin.id, tenant.id)

    await store.set_tenant_rbac(tenant.id, True)
    during = await authorization.compute_effective_permissions(admin.id, tenant.id)
    await store.set_tenant_rbac(tenant.id, False)
    after = await authorization.compute_effective_permissions(admin.id, tenant.id)

    assert before.permissions == ALL_KEYS
    assert during.mode is AuthorizationMode.RBAC
    assert during.permissions == {"roles.view"}
    assert after.permissions == ALL_KEYS


class TestRoleResolver:
    async def test_multiple_defaults_pick_lowest_id_and_warn(
        self, role_resolver, store, make_tenant, make_user, role_logger
    ):
        tenant = await make_tenant(rbac_enabled=True)
        user = await make_user(tenant)
        await store.create_role(
            tenant.id, "Later", permission_ids=["perm_users_view"], is_default=True, role_id="b-role"
        )
        await store.create_role(
            tenant.id, "Earlier", permission_ids=["perm_tenant_view"], is_default=True, role_id="a-role"
        )

        roles = await role_resolver.get_roles_for_user(user.id, tenant.id)

        assert [role.id for role in roles] == ["a-role"]
        [(event, fields)] = role_logger.events("warning")
        assert event == "multiple_default_roles"
        assert fields["chosen_role_id"] == "a-role"
        assert fields["role_ids"] == ["a-role", "b-role"]

    async def test_filters_roles_from_other_tenants(self):
        foreign = Role(id="r1", tenant_id="other", name="Foreign", is_default=True)
        own_default = Role(id="r2", tenant_id="mine", name="Default", is_default=True)

        class LeakyStore:
            async def get_roles_for_user(self, user_id, tenant_id):
                return [foreign]

            async def get_default_roles(self, tenant_id):
                return [foreign, own_default]

        resolver = RoleResolver(LeakyStore())

        roles = await resolver.get_roles_for_user("u1", "mine")

        assert roles == [own_default]
