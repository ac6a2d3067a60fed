from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from communitypulse.config import get_settings, reset_settings_cache
from communitypulse.logging import get_logger
from communitypulse.service.auth import AuthService
from communitypulse.service.credentials import CredentialIssuer, CredentialVerifier
from communitypulse.service.issues import IssueService
from communitypulse.service.notifications import NotificationService
from communitypulse.service.realtime import ConnectionRegistry, JoinPolicy
from communitypulse.service.tenancy import TenantResolver
from communitypulse.storage.memory import MemoryStore
from communitypulse.storage.postgres import PostgresStore
from communitypulse.storage.redis_cache import RedisCache, SyncRedisCache
from communitypulse.storage.revocation import MemoryRevocationBackend, RevocationStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for credential revocation shared across nodes; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked credentials "
                    "are tracked in this process only."
                ),
                mode=fallback_mode,
            )

        self.revocations = RevocationStore(
            self.cache if self.cache is not None else MemoryRevocationBackend(),
            timeout=self.settings.revocation_timeout_seconds,
        )
        self.issuer = CredentialIssuer(
            self.settings.jwt_secret, ttl_days=self.settings.credential_ttl_days
        )
        self.verifier = CredentialVerifier(self.settings.jwt_secret)
        self.auth = AuthService(
            self.store,
            self.settings,
            issuer=self.issuer,
            verifier=self.verifier,
            revocations=self.revocations,
        )
        self.tenancy = TenantResolver(self.store)
        # The registry is owned here and passed by reference to every publisher
        self.realtime = ConnectionRegistry()
        self.join_policy = JoinPolicy(self.store)
        self.notifications = NotificationService(
            self.store,
            self.realtime,
            page_size=self.settings.notification_page_size,
        )
        self.issues = IssueService(self.store, self.realtime, self.notifications)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            credential_ttl_days=self.settings.credential_ttl_days,
            revocation_timeout_seconds=self.settings.revocation_timeout_seconds,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    asyncio.run(runtime.cache.close())
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
        runtime = Runtime()
        return runtime
