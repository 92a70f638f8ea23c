from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings
from authcore.logging import get_logger
from authcore.service.abuse import AbuseControl
from authcore.service.auth import AuthService
from authcore.service.email import EmailService, Notifier
from authcore.service.passwords import CredentialHasher
from authcore.service.retention import TokenRetentionSweeper
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenCodec
from authcore.storage.memory import MemoryStore
from authcore.storage.models import utcnow
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the store, cache and auth services for one application instance."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        cache=None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                store = (
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
        self.store = store

        self.cache = cache
        if self.cache is None:
            self.cache = self._connect_cache()

        self.email = EmailService.from_settings(self.settings)
        self.hasher = CredentialHasher.from_settings(self.settings)
        self.codec = TokenCodec(self.settings, self.clock)
        self.abuse = AbuseControl(self.settings, cache=self.cache, clock=self.clock)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            codec=self.codec,
            throttle=self.abuse,
            notifier=notifier if notifier is not None else self.email,
            clock=self.clock,
        )
        self.sessions = SessionManager(
            self.store,
            page_size=self.settings.session_page_size,
            admin_page_size=self.settings.admin_session_page_size,
            clock=self.clock,
        )
        self.sweeper = TokenRetentionSweeper(
            self.store,
            interval_seconds=self.settings.token_sweep_interval_seconds,
            retention=timedelta(days=self.settings.token_retention_days),
            clock=self.clock,
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def _connect_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits and login lockout; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; rate limits and lockouts are per-process.",
            mode=fallback_mode,
        )
        return None

    async def close(self) -> None:
        await self.sweeper.stop()
        self.auth.close()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")
