from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from backoffice_auth.api.error_handling import register_exception_handlers
from backoffice_auth.api.routes import router
from backoffice_auth.config import Settings
from backoffice_auth.logging import clear_request_context, get_logger, set_correlation_id
from backoffice_auth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Purge expired auth state on a fixed interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            get_runtime().run_maintenance()
        except Exception as exc:
            # Keep the loop alive; the next pass retries
            logger.error(
                "maintenance_failed", error_type=type(exc).__name__, error=str(exc)
            )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _maintenance_task
    runtime = get_runtime()
    _maintenance_task = asyncio.create_task(
        _run_maintenance(runtime.settings.maintenance_interval_seconds)
    )
    logger.info("app_started", version=__version__)

    yield

    if _maintenance_task:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Backoffice Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Avoid a wildcard when credentials are enabled
    return list(_settings.webauthn_origins)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh UUID) to the request's log context."""
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health(runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    """Liveness plus a Redis ping when Redis backs the rate limits."""
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    if runtime.cache is None:
        checks["redis"] = {"status": "disabled"}
    else:
        try:
            await asyncio.to_thread(runtime.cache.verify_connection)
            checks["redis"] = {"status": "ok"}
        except (RedisError, OSError) as exc:
            healthy = False
            checks["redis"] = {"status": "error", "error": type(exc).__name__}
    body = {"status": "ok" if healthy else "degraded", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
