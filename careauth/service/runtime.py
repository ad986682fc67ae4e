from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from careauth.config import get_settings, reset_settings_cache
from careauth.logging import get_logger
from careauth.service.auth import AuthService
from careauth.service.email import EmailNotifier
from careauth.service.passwords import CredentialStore
from careauth.service.roles import StoreRoleResolver
from careauth.service.sessions import SessionManager
from careauth.service.tokens import (
    InMemoryRevocationStore,
    RedisRevocationStore,
    RevocationStore,
    TokenIssuer,
)
from careauth.service.two_factor import TwoFactorAuthenticator
from careauth.service.verification import VerificationTokenLedger
from careauth.storage.memory import MemoryStore
from careauth.storage.postgres import PostgresStore
from careauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if self.cache is None:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "REDIS_URL is configured but Redis is unreachable; start Redis, unset "
                        "REDIS_URL for a single instance, or set ALLOW_REDIS_FALLBACK_DEV=true."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    message="Access-token revocations are held in-process only.",
                )

        self.revocations: RevocationStore = (
            RedisRevocationStore(self.cache) if self.cache else InMemoryRevocationStore()
        )
        self.credentials = CredentialStore(self.store, self.settings)
        self.ledger = VerificationTokenLedger(self.store, self.settings)
        self.two_factor = TwoFactorAuthenticator(
            self.store, self.ledger, self.credentials, self.settings
        )
        self.sessions = SessionManager(self.store, self.settings)
        self.tokens = TokenIssuer(self.settings, self.revocations)
        self.roles = StoreRoleResolver(self.store)
        self.email = EmailNotifier.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.ledger,
            self.two_factor,
            self.sessions,
            self.tokens,
            self.roles,
            self.settings,
            email=self.email,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            password_hash_algorithm=self.settings.password_hash_algorithm.value,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
