import asyncio

from conftest import PASSWORD
from tenantguard.service.audit import AuditCategory
from tenantguard.service.authenticator import RequestAuthenticator, RequestCredentials
from tenantguard.service.sessions import FailureReason
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.models import LegacyRole, TokenKind, UserStatus


def _credentials(access=None, refresh=None):
    return RequestCredentials(
        caller_address="198.51.100.20",
        access_token=access,
        refresh_token=refresh,
        user_agent="pytest-agent/1.0",
    )


async def _session(sessions, make_tenant, make_user, client_info, **user_kwargs):
    tenant = await make_tenant()
    user = await make_user(tenant, **user_kwargs)
    outcome = await sessions.login(user.email, PASSWORD, client_info)
    return tenant, user, outcome.tokens


async def test_valid_access_token(authenticator, sessions, make_tenant, make_user, client_info):
    tenant, user, tokens = await _session(sessions, make_tenant, make_user, client_info)

    result = await authenticator.authenticate(_credentials(access=tokens.access_token))

    assert result.ok
    assert result.principal.user_id == user.id
    assert result.principal.tenant_id == tenant.id
    assert result.rotated_tokens is None


async def test_falls_back_to_silent_refresh(
    authenticator, sessions, make_tenant, make_user, client_info
):
    _, user, tokens = await _session(sessions, make_tenant, make_user, client_info)

    result = await authenticator.authenticate(
        _credentials(access="expired.or.garbage", refresh=tokens.refresh_token)
    )

    assert result.ok
    assert result.principal.user_id == user.id
    assert result.rotated_tokens is not None
    assert result.rotated_tokens.refresh.token_id != tokens.refresh.token_id


async def test_missing_credentials(authenticator, audit_sink):
    result = await authenticator.authenticate(_credentials())

    assert not result.ok
    assert result.reason is FailureReason.INVALID
    [event] = audit_sink.of_type("authentication_failed")
    assert event.ip_address == "198.51.100.20"


async def test_failed_refresh_reports_reason(
    authenticator, sessions, make_tenant, make_user, client_info
):
    _, _, tokens = await _session(sessions, make_tenant, make_user, client_info)
    await sessions.silent_refresh(tokens.refresh_token, client_info)

    result = await authenticator.authenticate(_credentials(refresh=tokens.refresh_token))

    assert result.reason is FailureReason.REUSED


async def test_suspension_applies_to_live_access_tokens(
    authenticator, sessions, store, make_tenant, make_user, client_info
):
    _, user, tokens = await _session(sessions, make_tenant, make_user, client_info)
    await store.set_user_status(user.id, UserStatus.SUSPENDED)

    result = await authenticator.authenticate(
        _credentials(access=tokens.access_token, refresh=tokens.refresh_token)
    )

    assert result.reason is FailureReason.SUSPENDED
    # No refresh fallback once the access token itself was valid
    assert (await store.get_refresh_token(tokens.refresh.token_id)).last_used_at is None


async def test_deleted_user_is_invalid(
    authenticator, sessions, store, make_tenant, make_user, client_info
):
    _, user, tokens = await _session(sessions, make_tenant, make_user, client_info)
    await store.delete_user(user.id)

    result = await authenticator.authenticate(_credentials(access=tokens.access_token))

    assert result.reason is FailureReason.INVALID


async def test_access_token_for_moved_user_is_invalid(
    authenticator, sessions, store, make_tenant, make_user, client_info
):
    _, user, tokens = await _session(sessions, make_tenant, make_user, client_info)
    other = await make_tenant("Other")
    store.users[user.id].tenant_id = other.id

    result = await authenticator.authenticate(_credentials(access=tokens.access_token))

    assert result.reason is FailureReason.INVALID


async def test_authorize_records_denials(
    authenticator, sessions, make_tenant, make_user, client_info, audit_sink
):
    _, _, tokens = await _session(
        sessions, make_tenant, make_user, client_info, legacy_role=LegacyRole.EDITOR
    )
    result = await authenticator.authenticate(_credentials(access=tokens.access_token))
    principal = result.principal

    allowed = await authenticator.authorize(principal, "roles", "edit")

    assert allowed is False
    [event] = audit_sink.of_type("access_denied")
    assert event.category is AuditCategory.ACCESS
    assert (event.resource, event.action) == ("roles", "edit")


async def test_authorize_admin_in_legacy_mode(
    authenticator, sessions, make_tenant, make_user, client_info, audit_sink
):
    _, _, tokens = await _session(
        sessions, make_tenant, make_user, client_info, legacy_role=LegacyRole.ADMIN
    )
    result = await authenticator.authenticate(_credentials(access=tokens.access_token))
    principal = result.principal

    assert await authenticator.authorize(principal, "tenant", "edit")
    effective = await authenticator.effective_permissions(principal)
    assert effective.allows("users", "edit")
    assert not audit_sink.of_type("access_denied")


class SlowUserStore(MemoryStore):
    async def get_user(self, user_id):
        await asyncio.sleep(0.5)
        return await super().get_user(user_id)


async def test_store_timeout_is_reported(codec, sessions, authorization, audit):
    slow = SlowUserStore()
    tenant = await slow.create_tenant("Acme")
    user = await slow.create_user("slow@acme.test", tenant_id=tenant.id)
    access_token, _ = codec.issue(user, TokenKind.ACCESS)
    authenticator = RequestAuthenticator(
        slow, codec, sessions, authorization, audit, store_timeout=0.05
    )

    result = await authenticator.authenticate(_credentials(access=access_token))

    assert result.reason is FailureReason.DEPENDENCY_TIMEOUT
