from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tenantguard.config import Settings, get_settings, reset_settings_cache
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditTrail, StructlogAuditSink
from tenantguard.service.authenticator import RequestAuthenticator
from tenantguard.service.authorization import AuthorizationResolver
from tenantguard.service.delivery import LoggingTokenDelivery
from tenantguard.service.permissions import PermissionCatalog
from tenantguard.service.rate_limit import (
    RateLimiter,
    RedisRateLimiter,
    SlidingWindowRateLimiter,
)
from tenantguard.service.roles import RoleResolver, RoleService
from tenantguard.service.sessions import SessionManager
from tenantguard.service.tokens import TokenCodec
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _connect_redis(settings: Settings) -> Optional[aioredis.Redis]:
    if not settings.redis_url:
        return None
    # Probe with a short-lived sync client so the async client is not bound
    # to a temporary event loop during startup
    probe = Redis.from_url(settings.redis_url, socket_connect_timeout=2.0)
    try:
        probe.ping()
    except RedisError as exc:
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(exc),
            message="Using in-process rate limiters; limits are per instance",
        )
        return None
    finally:
        probe.close()
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.store_timeout_seconds,
        socket_connect_timeout=settings.store_timeout_seconds,
    )


def _build_limiters(
    settings: Settings, client: Optional[aioredis.Redis]
) -> tuple[RateLimiter, RateLimiter]:
    if client is not None:
        return (
            RedisRateLimiter(
                "login",
                client,
                max_attempts=settings.login_rate_limit_max,
                window_seconds=settings.login_rate_limit_window_seconds,
            ),
            RedisRateLimiter(
                "refresh",
                client,
                max_attempts=settings.refresh_rate_limit_max,
                window_seconds=settings.refresh_rate_limit_window_seconds,
            ),
        )
    return (
        SlidingWindowRateLimiter(
            "login",
            max_attempts=settings.login_rate_limit_max,
            window_seconds=settings.login_rate_limit_window_seconds,
        ),
        SlidingWindowRateLimiter(
            "refresh",
            max_attempts=settings.refresh_rate_limit_max,
            window_seconds=settings.refresh_rate_limit_window_seconds,
        ),
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )
        timeout = self.settings.store_timeout_seconds

        self.store = (
            MemoryStore()
            if self.settings.use_memory_store
            else PostgresStore(
                self.settings.database_url,
                statement_timeout_ms=int(timeout * 1000),
            )
        )
        self.redis = _connect_redis(self.settings)
        self.login_limiter, self.refresh_limiter = _build_limiters(self.settings, self.redis)

        self.audit = AuditTrail(StructlogAuditSink())
        self.codec = TokenCodec.from_settings(self.settings)
        self.catalog = PermissionCatalog(self.store)
        self.role_resolver = RoleResolver(self.store, store_timeout=timeout)
        self.roles = RoleService(self.store, self.catalog, store_timeout=timeout)
        self.authorization = AuthorizationResolver(
            self.store, self.role_resolver, self.catalog, store_timeout=timeout
        )
        self.sessions = SessionManager(
            self.store,
            self.codec,
            login_limiter=self.login_limiter,
            refresh_limiter=self.refresh_limiter,
            audit=self.audit,
            store_timeout=timeout,
            cascade_revoke_on_reuse=self.settings.cascade_revoke_on_reuse,
            invitation_ttl_hours=self.settings.invitation_ttl_hours,
            password_reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            delivery=LoggingTokenDelivery(),
        )
        self.authenticator = RequestAuthenticator(
            self.store,
            self.codec,
            self.sessions,
            self.authorization,
            self.audit,
            store_timeout=timeout,
        )
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.redis is not None,
            cascade_revoke_on_reuse=self.settings.cascade_revoke_on_reuse,
        )

    async def startup(self) -> None:
        try:
            await self.store.open()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=type(self.store).__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    async def shutdown(self) -> None:
        await self.store.close()
        if self.redis is not None:
            await self.redis.aclose()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton under double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
