"""End-to-end tests of the HTTP surface over the in-memory runtime."""

import asyncio

from fastapi.testclient import TestClient

from tenantguard.app import app
from tenantguard.service.runtime import get_runtime
from tenantguard.storage.models import UserStatus

PASSWORD = "owner-password-123"


def _signup(client, email="owner@acme.test", tenant_name="Acme"):
    resp = client.post(
        "/v1/auth/signup",
        json={"tenant_name": tenant_name, "email": email, "password": PASSWORD},
    )
    assert resp.status_code == 201, resp.text
    return resp


def _set_cookie_headers(resp, name):
    return [
        header
        for header in resp.headers.get_list("set-cookie")
        if header.startswith(f"{name}=")
    ]


def _client_with(**cookies):
    client = TestClient(app)
    for name, value in cookies.items():
        client.cookies.set(name, value)
    return client


def _invite_and_accept(admin_client, email="member@acme.test", role="editor"):
    resp = admin_client.post("/v1/users/invite", json={"email": email, "role": role})
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    member = TestClient(app)
    accepted = member.post(
        "/v1/auth/accept-invite",
        json={"token": data["invitation_token"], "password": "member-password"},
    )
    assert accepted.status_code == 200, accepted.text
    return member, data["user"]["id"]


class TestCookies:
    def test_signup_sets_hardened_cookies(self):
        client = TestClient(app)

        resp = _signup(client)

        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["role"] == "admin"
        [access] = _set_cookie_headers(resp, "access_token")
        [refresh] = _set_cookie_headers(resp, "refresh_token")
        for header in (access, refresh):
            lowered = header.lower()
            assert "httponly" in lowered
            assert "samesite=strict" in lowered
            assert "path=/" in lowered
        assert "max-age=900" in access.lower()
        assert "max-age=604800" in refresh.lower()

    def test_secure_flag_outside_local(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        from tenantguard.service.runtime import reset_runtime_for_tests

        reset_runtime_for_tests()
        client = TestClient(app, base_url="https://testserver")

        resp = _signup(client)

        [refresh] = _set_cookie_headers(resp, "refresh_token")
        assert "; secure" in refresh.lower()

    def test_local_env_omits_secure(self):
        resp = _signup(TestClient(app))

        [refresh] = _set_cookie_headers(resp, "refresh_token")
        assert "; secure" not in refresh.lower()


class TestLogin:
    def test_login_and_me(self):
        _signup(TestClient(app))
        client = TestClient(app)

        resp = client.post(
            "/v1/auth/login", json={"email": "OWNER@acme.test", "password": PASSWORD}
        )
        me = client.get("/v1/me")

        assert resp.status_code == 200
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "owner@acme.test"

    def test_bearer_header_accepted(self):
        resp = _signup(TestClient(app))
        token = resp.json()["data"]["access_token"]

        me = TestClient(app).get("/v1/me", headers={"Authorization": f"Bearer {token}"})

        assert me.status_code == 200

    def test_non_ascii_bearer_signature_is_401(self):
        token = _signup(TestClient(app)).json()["data"]["access_token"]
        head, body, _ = token.split(".")

        resp = TestClient(app).get(
            "/v1/me", headers={"Authorization": f"Bearer {head}.{body}.ébc".encode("utf-8")}
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_bad_credentials_are_generic(self):
        _signup(TestClient(app))
        client = TestClient(app)

        wrong = client.post("/v1/auth/login", json={"email": "owner@acme.test", "password": "nope"})
        unknown = client.post("/v1/auth/login", json={"email": "x@acme.test", "password": "nope"})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "unauthorized"

    def test_pending_verification_message(self):
        runtime = get_runtime()

        async def seed():
            tenant = await runtime.store.create_tenant("Acme")
            user = await runtime.store.create_user(
                "pending@acme.test",
                tenant_id=tenant.id,
                status=UserStatus.PENDING_VERIFICATION,
            )
            await runtime.store.save_password(
                user.id, *runtime.sessions._hash_password(PASSWORD)
            )

        asyncio.run(seed())

        resp = TestClient(app).post(
            "/v1/auth/login", json={"email": "pending@acme.test", "password": PASSWORD}
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "account pending verification"

    def test_rate_limited(self):
        client = TestClient(app)
        limit = get_runtime().settings.login_rate_limit_max

        statuses = [
            client.post(
                "/v1/auth/login", json={"email": "x@acme.test", "password": "nope"}
            ).status_code
            for _ in range(limit + 1)
        ]

        assert statuses[:limit] == [401] * limit
        assert statuses[-1] == 429

    def test_unauthenticated_request(self):
        resp = TestClient(app).get("/v1/me")

        assert resp.status_code == 401
        assert resp.json()["status"] == "error"


class TestRefresh:
    def test_refresh_rotates_and_old_token_is_dead(self):
        client = TestClient(app)
        first = _signup(client).cookies.get("refresh_token")

        resp = client.post("/v1/auth/refresh")
        second = resp.cookies.get("refresh_token")

        assert resp.status_code == 200
        assert second and second != first
        replay = _client_with(refresh_token=first).post("/v1/auth/refresh")
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "unauthorized"

    def test_refresh_without_cookie(self):
        resp = TestClient(app).post("/v1/auth/refresh")

        assert resp.status_code == 401

    def test_non_ascii_refresh_cookie_is_rejected(self):
        refresh = _signup(TestClient(app)).cookies.get("refresh_token")
        cookie = f"refresh_token={refresh[:-3]}ébc".encode("utf-8")

        refreshed = TestClient(app).post("/v1/auth/refresh", headers={"Cookie": cookie})
        logged_out = TestClient(app).post("/v1/auth/logout", headers={"Cookie": cookie})

        assert refreshed.status_code == 401
        assert logged_out.status_code == 200

    def test_silent_refresh_on_protected_route(self):
        refresh = _signup(TestClient(app)).cookies.get("refresh_token")
        client = _client_with(refresh_token=refresh)

        resp = client.get("/v1/me")

        assert resp.status_code == 200
        assert _set_cookie_headers(resp, "access_token")
        [rotated] = _set_cookie_headers(resp, "refresh_token")
        assert refresh not in rotated


class TestLogout:
    def test_logout_clears_cookies_and_revokes(self):
        client = TestClient(app)
        refresh = _signup(client).cookies.get("refresh_token")

        resp = client.post("/v1/auth/logout")

        assert resp.status_code == 200
        for name in ("access_token", "refresh_token"):
            [header] = _set_cookie_headers(resp, name)
            assert "max-age=0" in header.lower()
        assert _client_with(refresh_token=refresh).post("/v1/auth/refresh").status_code == 401

    def test_logout_without_session_succeeds(self):
        assert TestClient(app).post("/v1/auth/logout").status_code == 200


class TestPasswordChange:
    def test_change_password_ends_sessions(self):
        client = TestClient(app)
        refresh = _signup(client).cookies.get("refresh_token")

        resp = client.post(
            "/v1/me/password",
            json={"current_password": PASSWORD, "new_password": "a-new-password-456"},
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["revoked_sessions"] == 1
        assert _client_with(refresh_token=refresh).post("/v1/auth/refresh").status_code == 401

    def test_issued_bearer_token_survives_password_change(self):
        client = TestClient(app)
        access = _signup(client).json()["data"]["access_token"]

        changed = client.post(
            "/v1/me/password",
            json={"current_password": PASSWORD, "new_password": "a-new-password-456"},
        )
        me = TestClient(app).get("/v1/me", headers={"Authorization": f"Bearer {access}"})

        assert changed.status_code == 200
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "owner@acme.test"

    def test_wrong_current_password(self):
        client = TestClient(app)
        _signup(client)

        resp = client.post(
            "/v1/me/password",
            json={"current_password": "wrong-password", "new_password": "a-new-password-456"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestAuthorization:
    def test_legacy_admin_and_editor(self):
        admin = TestClient(app)
        _signup(admin)
        member, _ = _invite_and_accept(admin)

        assert admin.get("/v1/roles").status_code == 200
        denied = member.get("/v1/roles")
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"
        perms = member.get("/v1/me/permissions").json()["data"]
        assert perms == {"mode": "legacy", "permissions": []}

    def test_rbac_default_role_applies_to_members(self):
        admin = TestClient(app)
        _signup(admin)
        member, _ = _invite_and_accept(admin)

        toggled = admin.put("/v1/tenant/settings", json={"rbac_enabled": True})

        assert toggled.status_code == 200
        assert toggled.json()["data"]["rbac_enabled"] is True
        assert member.get("/v1/roles").status_code == 200
        assert (
            member.post(
                "/v1/roles", json={"name": "Sneaky", "permission_ids": ["perm_roles_edit"]}
            ).status_code
            == 403
        )
        # The owner role keeps the admin in control after the switch
        assert admin.get("/v1/tenant").status_code == 200

    def test_role_lifecycle_and_assignment(self):
        admin = TestClient(app)
        _signup(admin)
        member, member_id = _invite_and_accept(admin)
        admin.put("/v1/tenant/settings", json={"rbac_enabled": True})

        created = admin.post(
            "/v1/roles",
            json={"name": "Support", "permission_ids": ["perm_users_view", "perm_users_edit"]},
        )
        assert created.status_code == 201
        role_id = created.json()["data"]["id"]

        assigned = admin.put(f"/v1/users/{member_id}/roles", json={"role_ids": [role_id]})
        assert assigned.status_code == 200
        perms = member.get("/v1/me/permissions").json()["data"]
        assert perms == {"mode": "rbac", "permissions": ["users.edit", "users.view"]}

        assert admin.delete(f"/v1/roles/{role_id}").status_code == 409
        admin.put(f"/v1/users/{member_id}/roles", json={"role_ids": []})
        updated = admin.put(
            f"/v1/roles/{role_id}",
            json={"name": "Support", "permission_ids": ["perm_users_view"]},
        )
        assert updated.status_code == 200
        assert admin.delete(f"/v1/roles/{role_id}").status_code == 200
        assert admin.delete(f"/v1/roles/{role_id}").status_code == 404

    def test_self_assignment_forbidden(self):
        admin = TestClient(app)
        admin_id = _signup(admin).json()["data"]["user_id"]

        resp = admin.put(f"/v1/users/{admin_id}/roles", json={"role_ids": []})

        assert resp.status_code == 403

    def test_cross_tenant_user_not_found(self):
        acme = TestClient(app)
        _signup(acme)
        globex = TestClient(app)
        globex_id = _signup(globex, "owner@globex.test", "Globex").json()["data"]["user_id"]

        resp = acme.put(f"/v1/users/{globex_id}/roles", json={"role_ids": []})

        assert resp.status_code == 404

    def test_permission_catalog(self):
        client = TestClient(app)
        _signup(client)

        items = client.get("/v1/permissions").json()["data"]["items"]

        assert len(items) == 6
        by_id = {item["id"]: item for item in items}
        assert (by_id["perm_roles_edit"]["resource"], by_id["perm_roles_edit"]["action"]) == (
            "roles",
            "edit",
        )


class RecordingDelivery:
    def __init__(self):
        self.tokens = []

    def send_password_reset(self, user, token, expires_at):
        self.tokens.append(token)


class TestPasswordReset:
    def test_reset_flow_end_to_end(self):
        refresh = _signup(TestClient(app)).cookies.get("refresh_token")
        delivery = RecordingDelivery()
        get_runtime().sessions.delivery = delivery
        client = TestClient(app)

        known = client.post("/v1/auth/forgot-password", json={"email": "owner@acme.test"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@acme.test"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}
        [token] = delivery.tokens

        verified = client.post("/v1/auth/reset-password/verify", json={"token": token})
        assert verified.json()["data"] == {"email": "owner@acme.test"}

        reset = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "reset-password-789"}
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["revoked_sessions"] == 1
        [cleared] = _set_cookie_headers(reset, "refresh_token")
        assert "max-age=0" in cleared.lower()
        assert _client_with(refresh_token=refresh).post("/v1/auth/refresh").status_code == 401
        login = client.post(
            "/v1/auth/login", json={"email": "owner@acme.test", "password": "reset-password-789"}
        )
        assert login.status_code == 200

        reused = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "another-password-1"}
        )
        assert reused.status_code == 400
        assert reused.json()["error"]["details"] == {"field": "token"}

    def test_unknown_token_is_400(self):
        resp = TestClient(app).post(
            "/v1/auth/reset-password/verify", json={"token": "not-a-real-token"}
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestResendInvite:
    def test_resend_replaces_invitation_token(self):
        admin = TestClient(app)
        _signup(admin)
        invited = admin.post("/v1/users/invite", json={"email": "late@acme.test"}).json()["data"]
        user_id = invited["user"]["id"]

        resent = admin.post(f"/v1/users/{user_id}/resend-invite")

        assert resent.status_code == 201
        fresh = resent.json()["data"]["invitation_token"]
        assert fresh != invited["invitation_token"]
        stale = TestClient(app).post(
            "/v1/auth/accept-invite",
            json={"token": invited["invitation_token"], "password": "member-password"},
        )
        assert stale.status_code == 401
        accepted = TestClient(app).post(
            "/v1/auth/accept-invite", json={"token": fresh, "password": "member-password"}
        )
        assert accepted.status_code == 200

    def test_resend_rejects_active_and_unknown_users(self):
        admin = TestClient(app)
        owner_id = _signup(admin).json()["data"]["user_id"]

        active = admin.post(f"/v1/users/{owner_id}/resend-invite")
        missing = admin.post("/v1/users/no-such-user/resend-invite")

        assert active.status_code == 409
        assert missing.status_code == 404


def test_request_id_is_echoed_and_errors_use_envelope():
    resp = TestClient(app).get("/v1/me", headers={"X-Request-ID": "req-123"})

    assert resp.headers["x-request-id"] == "req-123"
    body = resp.json()
    assert body["request_id"] == "req-123"
    assert body["status"] == "error"
    assert set(body["error"]) >= {"code", "message"}
    assert resp.headers["cache-control"] == "no-store"


def test_validation_errors_are_400():
    client = TestClient(app)
    _signup(client)

    resp = client.post("/v1/roles", json={"name": "Empty", "permission_ids": []})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_healthz():
    resp = TestClient(app).get("/healthz")

    assert resp.status_code == 200
    assert resp.json()["store"] == "memory"
