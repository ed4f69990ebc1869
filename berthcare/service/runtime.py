from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from berthcare.config import get_settings, reset_settings_cache
from berthcare.logging import get_logger
from berthcare.service.auth import AuthService
from berthcare.service.passwords import CredentialHasher
from berthcare.service.rate_limit import AdmissionGuard
from berthcare.service.tokens import TokenCodec
from berthcare.storage.memory import MemoryCache, MemoryStore
from berthcare.storage.postgres import PostgresStore
from berthcare.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout=self.settings.store_timeout_seconds,
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

        cache: Optional[Union[RedisCache, MemoryCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                candidate = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.cache_timeout_seconds,
                )
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token blacklist and login rate limits; "
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
                    f"Running without Redis under {fallback_mode}; the blacklist and rate "
                    "counters live in this process only."
                ),
                mode=fallback_mode,
            )
            cache = MemoryCache()
        self.cache = cache

        self.hasher = CredentialHasher.from_settings(self.settings)
        self.codec = TokenCodec.from_settings(self.settings)
        self.admission = AdmissionGuard.from_settings(self.cache, self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            hasher=self.hasher,
            codec=self.codec,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            open_registration=self.settings.open_registration,
            signing_kid=self.codec.signing_kid,
        )

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
