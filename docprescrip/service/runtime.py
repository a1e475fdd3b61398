from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from docprescrip.config import get_settings, reset_settings_cache
from docprescrip.logging import get_logger
from docprescrip.service.auth import AuthService
from docprescrip.service.email import EmailService
from docprescrip.service.pin_gate import PinGate
from docprescrip.service.rate_limit import RateLimiter, policies_from_settings
from docprescrip.service.session import SessionResolver
from docprescrip.service.tokens import TokenIssuer
from docprescrip.storage.memory import MemoryStore
from docprescrip.storage.memory_cache import MemoryCache
from docprescrip.storage.postgres import PostgresStore
from docprescrip.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url, password=self.settings.redis_token)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for lockouts, refresh tokens and the PIN gate; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; lockouts, refresh "
                    "markers and security events are in-memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.tokens = TokenIssuer(self.settings, self.cache)
        self.limiter = RateLimiter(self.cache, policies_from_settings(self.settings))
        self.pin_gate = PinGate(self.settings, self.cache, self.limiter)
        self.sessions = SessionResolver.default(self.tokens)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            limiter=self.limiter,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
            pin_configured=bool(self.settings.site_pin),
            google_configured=bool(self.settings.oauth_google_client_id),
        )

    async def close(self) -> None:
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
