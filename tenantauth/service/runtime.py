from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tenantauth.config import get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.email import EmailService
from tenantauth.service.flows import AuthFlows, TokenLifetimes
from tenantauth.service.sessions import SessionIssuer
from tenantauth.service.tokens import TokenStore
from tenantauth.service.validator import CredentialValidator
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

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
                MemoryStore(fs_root=self.settings.memory_store_path)
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

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        retention_seconds = self.settings.expired_token_retention_minutes * 60
        if self.settings.redis_url:
            try:
                # Sync client in test mode: every test runs its own event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url, retention_seconds=retention_seconds
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, retention_seconds=retention_seconds
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                self.settings.redis_url
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is configured for ephemeral tokens but unreachable; "
                    "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true to keep tokens in the primary store."
                ) from redis_error
            if self.settings.redis_url:
                fallback_mode = (
                    "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
                )
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_unreachable",
                    message=f"Running without Redis under {fallback_mode}; ephemeral tokens live in the {store_type} store.",
                    mode=fallback_mode,
                )
            else:
                logger.info("token_backend_primary_store", store_type=store_type)

        self.tokens = TokenStore(self.store, self.cache)
        self.issuer = SessionIssuer(
            self.tokens,
            issuer=self.settings.jwt_issuer,
            leeway_seconds=self.settings.clock_skew_leeway_seconds,
            track_refresh=self.settings.track_refresh_tokens,
        )
        self.validator = CredentialValidator(self.store, self.tokens, self.issuer)
        self.email_service = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.auth_base_url,
            max_queue=self.settings.email_queue_size,
        )
        self.flows = AuthFlows(
            self.store,
            self.tokens,
            self.issuer,
            self.validator,
            self.email_service,
            owner=self.settings.owner_bootstrap(),
            lifetimes=TokenLifetimes.from_settings(self.settings),
            default_access_ttl_minutes=self.settings.default_access_token_ttl_minutes,
            default_refresh_ttl_minutes=self.settings.default_refresh_token_ttl_minutes,
        )
        logger.info(
            "runtime_init_completed",
            token_backend="redis" if self.cache else store_type,
            email_configured=self.email_service.is_configured,
            track_refresh_tokens=self.settings.track_refresh_tokens,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building a runtime concurrently.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Union[RedisCache, SyncRedisCache]) -> None:
    try:
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(cache.close())
        except RuntimeError:
            asyncio.run(cache.close())
    except Exception as exc:
        # Connection may already be closed
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if runtime.cache is not None:
                _close_cache(runtime.cache)
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
