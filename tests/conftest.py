import asyncio
import inspect
import os

# Set before any tenantguard import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "local")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from tenantguard.logging import request_id_var  # noqa: E402
from tenantguard.service.audit import AuditTrail  # noqa: E402
from tenantguard.service.authenticator import RequestAuthenticator  # noqa: E402
from tenantguard.service.authorization import AuthorizationResolver  # noqa: E402
from tenantguard.service.permissions import PermissionCatalog  # noqa: E402
from tenantguard.service.rate_limit import SlidingWindowRateLimiter  # noqa: E402
from tenantguard.service.roles import RoleResolver, RoleService  # noqa: E402
from tenantguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantguard.service.sessions import ClientInfo, SessionManager  # noqa: E402
from tenantguard.service.tokens import TokenCodec  # noqa: E402
from tenantguard.storage.memory import MemoryStore  # noqa: E402
from tenantguard.storage.models import LegacyRole, UserStatus  # noqa: E402

ACCESS_SECRET = "access-secret-for-unit-tests-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-unit-tests-0123456789abcdef"
PASSWORD = "correct horse battery"


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if event.event_type == event_type]


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    request_id_var.set(None)
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def audit(audit_sink):
    return AuditTrail(audit_sink)


@pytest.fixture
def codec():
    return TokenCodec(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        issuer="tenantguard",
        audience="tenantguard-clients",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture
def password_hasher():
    # Cheap parameters keep the suite fast; the algorithm is unchanged
    return PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def login_limiter():
    return SlidingWindowRateLimiter("login", max_attempts=5, window_seconds=60)


@pytest.fixture
def refresh_limiter():
    return SlidingWindowRateLimiter("refresh", max_attempts=100, window_seconds=60)


@pytest.fixture
def sessions(store, codec, audit, login_limiter, refresh_limiter, password_hasher):
    return SessionManager(
        store,
        codec,
        login_limiter=login_limiter,
        refresh_limiter=refresh_limiter,
        audit=audit,
        store_timeout=1.0,
        password_hasher=password_hasher,
    )


@pytest.fixture
def catalog(store):
    return PermissionCatalog(store)


@pytest.fixture
def role_resolver(store):
    return RoleResolver(store, store_timeout=1.0)


@pytest.fixture
def role_service(store, catalog):
    return RoleService(store, catalog, store_timeout=1.0)


@pytest.fixture
def authorization(store, role_resolver, catalog):
    return AuthorizationResolver(store, role_resolver, catalog, store_timeout=1.0)


@pytest.fixture
def authenticator(store, codec, sessions, authorization, audit):
    return RequestAuthenticator(store, codec, sessions, authorization, audit, store_timeout=1.0)


@pytest.fixture
def client_info():
    return ClientInfo(caller_address="203.0.113.7", user_agent="pytest-agent/1.0")


@pytest.fixture
def make_tenant(store):
    async def _make(name="Acme", *, rbac_enabled=False, tenant_id=None):
        return await store.create_tenant(name, rbac_enabled=rbac_enabled, tenant_id=tenant_id)

    return _make


@pytest.fixture
def make_user(store, sessions):
    async def _make(
        tenant,
        email="alice@acme.test",
        *,
        legacy_role=LegacyRole.EDITOR,
        status=UserStatus.ACTIVE,
        password=PASSWORD,
    ):
        user = await store.create_user(
            email, tenant_id=tenant.id, legacy_role=legacy_role, status=status
        )
        pwd_hash, algo = sessions._hash_password(password)
        await store.save_password(user.id, pwd_hash, algo)
        return user

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
