from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatguard.api.error_handling import register_exception_handlers
from chatguard.api.routes import router
from chatguard.config import Settings
from chatguard.logging import get_logger, set_request_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeps on startup and stop them on shutdown."""
    global _sweep_task
    from chatguard.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_expiry_sweeps(runtime, runtime.settings.sweep_interval_seconds)
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    if runtime.cache is not None:
        try:
            await runtime.cache.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="chatguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Tag logs for this request with X-Request-ID (or a fresh UUID) and echo it back."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report Redis reachability and whether the runtime came up."""
    from chatguard.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    runtime = get_runtime()
    checks["store"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            redis_ok = True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout",
                component="redis",
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            redis_ok = False
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            redis_ok = False
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_expiry_sweeps(runtime, interval_seconds: int) -> None:
    """Background loop removing expired captchas, failure records and blocks."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await runtime.sweep_expired()
                if removed:
                    logger.info("expiry_sweep_complete", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expiry_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("expiry_sweep_task_cancelled")
        raise


def create_app() -> FastAPI:
    return app
