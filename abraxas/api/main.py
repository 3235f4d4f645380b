"""FastAPI application for the Abraxas API.

Provides the main application instance with routers and exception
handlers configured. Authenticated routes live under /api/v1; sandbox
webhooks are mounted at /api/webhooks and authenticate by signature.
"""

import logging
import os
import sys
import time as _time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("abraxas").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from abraxas.api.dependencies import get_sandbox_provider, get_settings, reset_dependencies
from abraxas.api.routes import manifests, projects, tasks, webhooks
from abraxas.db.connection import init_db
from abraxas.errors import DomainError, ErrorKind, to_failure

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"
LOGIN_PATH = "/login"

_startup_time: float = 0.0


def _parse_allowed_origins() -> list[str]:
    """Parse comma-separated CORS allowlist from ALLOWED_ORIGINS env var."""
    raw = os.environ.get("ALLOWED_ORIGINS", "").strip()
    if not raw:
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _drain_destroy_queue_on_startup() -> None:
    """Retry sandbox destroys left over from a previous run."""
    from abraxas.db.connection import get_db_context
    from abraxas.services.sandbox_manager import drain_destroy_queue

    settings = get_settings()
    if not settings.sprites_token:
        logger.info("Sprites token not configured; skipping destroy queue drain")
        return
    provider = get_sandbox_provider(settings)
    with get_db_context() as db:
        result = drain_destroy_queue(db, provider, settings.destroy_max_retries)
    logger.info(
        "Destroy queue drained: destroyed=%d failed=%d dead_letter=%d",
        result["destroyed"], result["failed"], result["dead_letter"],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: schema setup and destroy retries on startup."""
    global _startup_time

    # --- Startup ---
    _startup_time = _time.time()
    logging.getLogger("abraxas").setLevel(get_settings().log_level)
    init_db()

    # Non-blocking: failures are logged, not propagated
    try:
        _drain_destroy_queue_on_startup()
    except Exception as e:
        logger.error("Destroy queue drain failed (non-blocking): %s", e)

    yield

    # --- Shutdown ---
    reset_dependencies()


app = FastAPI(
    title="Abraxas API",
    description="Runs coding-agent tasks in remote sandboxes",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS allowlist is env-driven. If unset, CORS is disabled (same-origin only).
allowed_origins = _parse_allowed_origins()
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    """Map domain errors to the JSON error envelope.

    Unauthenticated callers are redirected to the login page instead.
    """
    if exc.kind == ErrorKind.UNAUTHENTICATED:
        return RedirectResponse(LOGIN_PATH, status_code=303)
    failure = to_failure(exc)
    if failure.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, failure)
    return JSONResponse(status_code=failure.status_code, content=failure.to_envelope())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Report anything unexpected as an internal failure."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    failure = to_failure(exc, f"{request.method} {request.url.path}")
    return JSONResponse(status_code=failure.status_code, content=failure.to_envelope())


# Include routers
app.include_router(projects.router, prefix="/api/v1")
app.include_router(tasks.router, prefix="/api/v1")
app.include_router(manifests.router, prefix="/api/v1")
app.include_router(webhooks.router)


@app.get("/health")
def health_check() -> dict[str, Any]:
    """Liveness check with version and uptime."""
    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    return {"status": "ok", "version": APP_VERSION, "uptime_seconds": uptime}


@app.get("/readyz")
def readiness_check():
    """Readiness check that gates on database connectivity."""
    from sqlalchemy import text

    from abraxas.db.connection import get_db_context

    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": {"database": {"ok": False}}},
        )
    return {"status": "ready", "checks": {"database": {"ok": True}}}


@app.get("/api")
def api_root() -> dict:
    """API root with links to docs."""
    return {
        "name": "Abraxas API",
        "version": APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
