from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.audit import AuditLogger, AuditSink
from warden.service.auth import AuthService
from warden.service.cleanup_worker import SessionCleanupWorker
from warden.service.clock import Clock, utc_now
from warden.service.credentials import Argon2PasswordHasher, CredentialStore
from warden.service.lockout import LockoutPolicy
from warden.service.rbac import AuthorizationResolver, PermissionGraph
from warden.service.sessions import build_session_ledger
from warden.service.tokens import TokenIssuer
from warden.service.two_factor import TwoFactorService
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Clock = utc_now,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the session cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run store-only."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; sessions resolve from the store only.",
                mode=fallback_mode,
            )

        self.audit = AuditLogger(audit_sink, clock=clock)
        self.lockout = LockoutPolicy(clock=clock)
        self.hasher = Argon2PasswordHasher.from_settings(self.settings)
        self.credentials = CredentialStore(
            self.store, self.hasher, self.lockout, self.settings, clock=clock
        )
        self.tokens = TokenIssuer.from_settings(self.settings, clock=clock)
        self.sessions = build_session_ledger(self.store, self.cache, self.settings, clock=clock)
        self.resolver = AuthorizationResolver(self.store, self.audit, clock=clock)
        self.graph = PermissionGraph(self.store, self.audit, clock=clock)
        self.two_factor = TwoFactorService(self.settings, clock=clock)
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.tokens,
            self.sessions,
            self.resolver,
            self.two_factor,
            self.audit,
            self.settings,
            clock=clock,
        )
        self.graph.seed_defaults()
        self.cleanup_worker = SessionCleanupWorker(
            self.sessions, interval=self.settings.session_cleanup_interval_seconds
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            session_cleanup_enabled=self.settings.session_cleanup_enabled,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
        )


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
