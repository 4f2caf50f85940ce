from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tablecode.config import get_settings, reset_settings_cache
from tablecode.logging import get_logger
from tablecode.service.assets import LocalAssetStorage
from tablecode.service.auth import AuthService
from tablecode.service.credentials import CredentialStore
from tablecode.service.email import EmailService
from tablecode.service.forgot_pin import (
    ForgotPinFlow,
    MemoryPinResetStore,
    RedisPinResetStore,
)
from tablecode.service.rate_limit import (
    MemoryRateLimitBackend,
    RateLimiters,
    RedisRateLimitBackend,
)
from tablecode.service.sessions import AdminSessionIssuer, OwnerSessionIssuer
from tablecode.service.slugs import SlugGenerator
from tablecode.service.tenants import TenantLifecycle
from tablecode.storage.memory import MemoryStore
from tablecode.storage.postgres import PostgresStore
from tablecode.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
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
            environment=self.settings.environment.value,
        )

        if self.settings.is_production:
            missing = self.settings.missing_production_secrets()
            if missing:
                raise RuntimeError(
                    "production requires explicit secrets: " + ", ".join(missing)
                )

        self.store: Union[MemoryStore, PostgresStore]
        try:
            if self.settings.use_memory_store:
                # Test runs keep state in-process only
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.collaborator_timeout_seconds,
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

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
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
                    "Redis is required for shared rate limits and pending PIN resets; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "pending PIN resets are per-process only."
                ),
                mode=fallback_mode,
            )

        backend = RedisRateLimitBackend(self.cache) if self.cache else MemoryRateLimitBackend()
        self.limiters = RateLimiters.from_settings(self.settings, backend)
        pending = RedisPinResetStore(self.cache) if self.cache else MemoryPinResetStore()

        self.credentials = CredentialStore.from_settings(self.settings)
        self.slugs = SlugGenerator(self.store, max_attempts=self.settings.slug_max_attempts)
        self.owner_sessions = OwnerSessionIssuer(
            self.store,
            secret=self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            ttl=timedelta(hours=self.settings.owner_token_ttl_hours),
        )
        self.admin_sessions = AdminSessionIssuer(
            self.credentials,
            production=self.settings.is_production,
            cookie_domain=self.settings.cookie_domain,
        )
        self.email = EmailService.from_settings(self.settings)
        self.assets = LocalAssetStorage(
            str(Path(self.settings.shared_fs_root) / "assets"),
            public_url=self.settings.asset_public_url,
        )
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.owner_sessions,
            self.admin_sessions,
            self.limiters,
            admin_failure_delay=(0.0, 0.0) if self.settings.test_mode else (0.5, 1.0),
        )
        self.tenants = TenantLifecycle(
            self.store,
            self.store,
            self.credentials,
            self.slugs,
            self.assets,
            app_base_url=self.settings.app_base_url,
            asset_timeout=self.settings.collaborator_timeout_seconds,
        )
        self.forgot_pin = ForgotPinFlow(
            self.store,
            self.store,
            self.credentials,
            pending,
            self.email,
            request_limiter=self.limiters.forgot_pin,
            verify_limiter=self.limiters.forgot_pin_verify,
            otp_ttl=timedelta(minutes=self.settings.otp_ttl_minutes),
            reset_token_ttl=timedelta(minutes=self.settings.reset_token_ttl_minutes),
            max_attempts=self.settings.otp_max_attempts,
            notify_timeout=self.settings.collaborator_timeout_seconds,
        )
        logger.info("runtime_init_completed", redis=self.cache is not None)

    async def close(self) -> None:
        """Release pooled connections held by the runtime."""
        if self.cache:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
