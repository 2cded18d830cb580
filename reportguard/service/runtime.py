from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from reportguard.config import get_settings, reset_settings_cache
from reportguard.logging import get_logger
from reportguard.service.audit import AuditSink, LoggingAuditSink, SecurityAuditor
from reportguard.service.auth import AuthService
from reportguard.service.cleanup_worker import CleanupWorker
from reportguard.service.clock import Clock, SystemClock
from reportguard.service.crypto import SecretCipher
from reportguard.service.geo import IpGeolocator
from reportguard.service.mfa import TotpMfaManager
from reportguard.service.passwords import PasswordHasher
from reportguard.service.permissions import PermissionResolver
from reportguard.service.sessions import SessionManager
from reportguard.service.tokens import TokenService
from reportguard.storage.memory import MemoryStore
from reportguard.storage.postgres import PostgresStore
from reportguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances built from Settings."""

    def __init__(self, *, audit_sink: Optional[AuditSink] = None, clock: Optional[Clock] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the access-token denylist and cleanup locking; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; access tokens cannot be "
                    "denylisted before expiry and cleanup is not coordinated across processes."
                ),
                mode=fallback_mode,
            )

        self.clock = clock or SystemClock()
        self.auditor = SecurityAuditor(audit_sink or LoggingAuditSink())
        self.cipher = SecretCipher(self.settings.mfa_secret_key or self.settings.jwt_secret)
        self.hasher = PasswordHasher.from_settings(self.settings)
        self.geolocator = IpGeolocator(
            self.settings.geoip_url, timeout_seconds=self.settings.geoip_timeout_seconds
        )

        self.mfa = TotpMfaManager(
            self.store,
            self.settings,
            cipher=self.cipher,
            hasher=self.hasher,
            auditor=self.auditor,
            clock=self.clock,
        )
        self.tokens = TokenService(
            self.store, self.settings, cache=self.cache, auditor=self.auditor, clock=self.clock
        )
        self.sessions = SessionManager(
            self.store,
            self.settings,
            tokens=self.tokens,
            auditor=self.auditor,
            clock=self.clock,
            geolocator=self.geolocator,
        )
        self.permissions = PermissionResolver(self.store, auditor=self.auditor, clock=self.clock)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            mfa=self.mfa,
            tokens=self.tokens,
            sessions=self.sessions,
            permissions=self.permissions,
            auditor=self.auditor,
            clock=self.clock,
        )
        self.cleanup_worker = CleanupWorker(
            self.sessions,
            self.tokens,
            interval_seconds=self.settings.cleanup_interval_seconds,
            cache=self.cache,
        )
        logger.info("runtime_init_completed", store_type=store_type, redis=bool(self.cache))

    async def close(self) -> None:
        await self.cleanup_worker.stop()
        await self.auditor.drain(timeout=self.auditor.timeout_seconds)
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Rebuild the runtime singleton for isolated test runs (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(runtime.cache.close())
                else:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**kwargs)
        return runtime
