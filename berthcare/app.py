from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from berthcare.api.error_handling import register_exception_handlers
from berthcare.api.routes import router
from berthcare.config import Settings
from berthcare.logging import get_logger, set_correlation_id
from berthcare.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_prune_task: asyncio.Task | None = None


async def _run_refresh_pruning(interval_seconds: int) -> None:
    """Periodically delete refresh records that are long revoked or expired."""
    from berthcare.service.runtime import get_runtime

    while True:
        try:
            runtime = get_runtime()
            await runtime.auth.prune_refresh_records()
        except StoreUnavailable as exc:
            logger.warning("refresh_prune_store_unavailable", error=exc.message)
        except Exception as exc:
            logger.error("refresh_prune_failed", error=str(exc))
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _prune_task
    from berthcare.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.refresh_prune_interval_seconds > 0:
            _prune_task = asyncio.create_task(
                _run_refresh_pruning(runtime.settings.refresh_prune_interval_seconds)
            )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="BerthCare Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8081",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation id.

    Taken from ``X-Request-ID`` when the client supplies one, generated
    otherwise, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token-bearing responses must never land in a shared cache
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and cache reachability plus build info."""
    from berthcare.service.runtime import get_runtime
    from berthcare.storage.memory import MemoryCache, MemoryStore

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    if isinstance(runtime.store, MemoryStore):
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    if isinstance(runtime.cache, MemoryCache):
        cache_ok = True
        checks["cache"] = {"status": "healthy", "type": "memory"}
    else:
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}

    return {
        "status": "healthy" if db_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
