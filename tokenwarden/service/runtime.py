from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from tokenwarden.config import Settings, get_settings, reset_settings_cache
from tokenwarden.logging import get_logger
from tokenwarden.service.auth import AuthService
from tokenwarden.service.hashing import SecretHasher
from tokenwarden.service.registration import RegistrationService
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.postgres import PostgresStore
from tokenwarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` so it can be logged.

    ``redis://:hunter2@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        return "***url_parse_error***"
    if not password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username or ''}:***@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class LocalRateLimiter:
    """Per-process token bucket used when Redis is not configured.

    Guarded by a thread lock; requests may arrive from different event loops.
    """

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int, window_seconds: int, cost: int) -> Tuple[bool, int, int]:
        now = time.monotonic()
        refill_rate = limit / window_seconds
        with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + (now - last) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        reset_after = 0 if allowed else int((cost - tokens) / refill_rate)
        return allowed, int(tokens), reset_after


class Runtime:
    """Process-wide services behind the HTTP routes."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._build_store()
        self.cache = self._connect_cache()
        self.local_rate_limiter = LocalRateLimiter()
        self.hasher = SecretHasher.from_settings(self.settings)
        self.auth = AuthService(self.store, self.hasher, self.settings)
        self.registration = RegistrationService(
            self.store, max_retries=self.settings.recovery_max_retries
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            hash_workers=self.hasher.workers,
            recovery_max_attempts=self.settings.recovery_max_attempts,
        )

    def _build_store(self):
        try:
            if self.settings.use_memory_store:
                return MemoryStore(fs_root=self.settings.shared_fs_root)
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                use_memory_store=self.settings.use_memory_store,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _connect_cache(self) -> Optional[RedisCache]:
        """Connect to Redis, or fall back to per-process limits where allowed."""
        failure: Optional[Exception] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is required for request rate limits; start Redis or set "
                "TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true to use the "
                "per-process fallback."
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(failure) if failure else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def shutdown(self) -> None:
        self.hasher.shutdown(wait=True)
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_shutdown")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment. TEST_MODE only."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous, runtime = runtime, None
        if previous is not None:
            previous.hasher.shutdown(wait=False)
            if previous.cache is not None:
                try:
                    asyncio.get_running_loop().create_task(previous.cache.close())
                except RuntimeError:
                    asyncio.run(previous.cache.close())
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Take ``cost`` tokens from the bucket for ``key``.

    Uses the shared Redis bucket when one is connected, otherwise the
    per-process bucket. A non-positive ``limit`` disables the check.

    Returns:
        ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
        ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    allowed, remaining, reset_after = runtime.local_rate_limiter.take(
        key, limit, window_seconds, cost
    )
    return (allowed, remaining, reset_after) if return_remaining else allowed
