from __future__ import annotations

import asyncio
import inspect
import os
import signal
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from warden.api.error_handling import _error_response, register_exception_handlers
from warden.api.routes import client_ip, router
from warden.config import Settings, get_settings
from warden.logging import get_logger, set_correlation_id
from warden.service.runtime import get_runtime

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _fatal_async_error_handler(*, terminate: bool):
    """Loop-level handler for exceptions nothing awaited.

    Such errors leave the process in an unknown state, so it is signalled to
    stop and the supervisor restarts it.
    """

    def _handle(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.critical(
            "fatal_async_error",
            message=context.get("message"),
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
            terminating=terminate,
        )
        if terminate:
            os.kill(os.getpid(), signal.SIGTERM)

    return _handle


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    runtime = get_runtime()
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(
        _fatal_async_error_handler(terminate=not runtime.settings.test_mode)
    )
    await runtime.start()
    logger.info("application_started", environment=runtime.settings.environment.value)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))
    finally:
        loop.set_exception_handler(None)


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Warden", version=settings.version, lifespan=lifespan)

    @app.middleware("http")
    async def enforce_api_rate_limit(request: Request, call_next):
        """Per-IP request budget across every ``/api`` route."""
        if not request.url.path.startswith("/api/"):
            return await call_next(request)
        limiter = get_runtime().rate_limiter
        decision = await limiter.hit(limiter.api, client_ip(request))
        if decision is None:
            return await call_next(request)
        if not decision.allowed:
            return _error_response(
                429,
                limiter.api.message,
                code="rate_limited",
                headers={"Retry-After": str(decision.retry_after)},
            )
        response = await call_next(request)
        decision.apply_headers(response)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag each request with an ``X-Request-ID`` for log correlation.

        A client-supplied ID is reused; otherwise a new UUID is generated.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["system"])
    async def health() -> Dict[str, Any]:
        """Liveness plus dependency checks for the store and Redis."""
        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                if inspect.iscoroutinefunction(func):
                    await asyncio.wait_for(func(), HEALTH_CHECK_TIMEOUT_SECONDS)
                else:
                    await asyncio.wait_for(
                        asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                    )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        store_type = "memory" if runtime.settings.use_memory_store else "postgres"
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": store_type}

        if runtime.rate_limiter.redis is not None:
            redis_ok = await _run_bounded("redis", runtime.rate_limiter.redis.ping)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        else:
            redis_ok = True
            checks["redis"] = {"status": "not_configured"}

        healthy = db_ok and redis_ok
        return {
            "success": healthy,
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": runtime.settings.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
