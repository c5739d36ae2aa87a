from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import get_settings, reset_settings_cache
from warden.logging import Observability
from warden.service.accounts import AccountService
from warden.service.credentials import PasswordHasher
from warden.service.email import EmailService
from warden.service.rate_limits import RateLimiter, RedisBuckets
from warden.service.sessions import SessionIssuer
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

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
        self.observability = Observability(
            log_level=self.settings.log_level,
            json_output=self.settings.log_json,
            development_mode=self.settings.log_dev_mode,
        ).init()
        log = self.observability.logger(__name__)
        log.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root
                    if self.settings.memory_store_persist
                    else None
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            log.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        log.info("runtime_store_initialized", store_type=store_type)

        redis_buckets: Optional[RedisBuckets] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                redis_buckets = RedisBuckets(self.settings.redis_url)
                redis_buckets.ping()
            except Exception as exc:
                redis_error = exc
                redis_buckets = None

        if redis_buckets is None:
            if (
                self.settings.is_production
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for shared rate limits in production; "
                    "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for in-process limits."
                ) from redis_error
            log.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Rate limits are enforced per process only",
            )

        self.hasher = PasswordHasher()
        self.sessions = SessionIssuer(
            self.store, self.settings, logger=self.observability.logger("warden.sessions")
        )
        self.email = EmailService.from_settings(
            self.settings, logger=self.observability.logger("warden.email")
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.sessions,
            self.email,
            self.settings,
            logger=self.observability.logger("warden.accounts"),
        )
        self.rate_limiter = RateLimiter(self.settings, redis=redis_buckets)

        log.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.rate_limiter.shared,
            email_configured=self.email.is_configured,
            require_otp=self.settings.require_otp,
        )

    async def start(self) -> None:
        """Open pooled resources; called from the application lifespan."""
        if isinstance(self.store, PostgresStore):
            await self.store.open()

    async def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.close()
        await self.rate_limiter.close()
        self.observability.shutdown()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
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
        if runtime is not None and runtime.rate_limiter.shared:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.rate_limiter.close())
            except RuntimeError:
                asyncio.run(runtime.rate_limiter.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

