"""FastAPI application entry point.

Start with:
    uvicorn app.main:app --reload

The app skeleton:
- Lifespan events for DB + Redis initialization and the job watchdog
- CORS middleware configured for the dashboard
- Error handlers that render FixRelayError as {"error", "message", "action"}
- Router includes for webhooks, health, admin, auth, installations, tokens, fix jobs
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlsplit

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.core.cache import close_redis, init_redis
from app.core.exceptions import FixRelayError
from app.models.database import close_db, init_db
from app.services.watchdog import run_watchdog

assert sys.version_info >= (3, 12), "FixRelay requires Python 3.12+"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Lifespan: startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize and tear down shared resources."""
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("FixRelay starting up")

    await init_db(settings)
    await init_redis(settings)
    watchdog = asyncio.create_task(run_watchdog(settings), name="job-watchdog")

    yield

    # Shutdown
    logger.info("FixRelay shutting down")
    watchdog.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await watchdog
    await close_redis()
    await close_db()


# ---------------------------------------------------------------------------
#  FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FixRelay",
    description="GitHub App that turns bug reports into AI-generated pull requests",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

_dashboard = urlsplit(get_settings().dashboard_url)

# Cookies travel cross-origin from the dashboard, so origins must be explicit.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"{_dashboard.scheme}://{_dashboard.netloc}"],
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
#  Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(FixRelayError)
async def fixrelay_error_handler(request: Request, exc: FixRelayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "action": exc.action},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": "Internal server error", "action": None},
    )


# ---------------------------------------------------------------------------
#  Router Registration
# ---------------------------------------------------------------------------

# Import routers lazily to avoid circular-import issues.
from app.api.webhooks import router as webhook_router  # noqa: E402
from app.api.health import router as health_router  # noqa: E402
from app.api.admin import router as admin_router  # noqa: E402
from app.api.auth import router as auth_router  # noqa: E402
from app.api.installations import router as installations_router  # noqa: E402
from app.api.tokens import router as tokens_router  # noqa: E402
from app.api.jobs import router as jobs_router  # noqa: E402

app.include_router(webhook_router, prefix="/api/webhooks")
app.include_router(health_router)
app.include_router(admin_router, prefix="/admin")
app.include_router(auth_router, prefix="/api/auth")
app.include_router(installations_router, prefix="/api/installations")
app.include_router(tokens_router, prefix="/api/tokens")
app.include_router(jobs_router, prefix="/api/fix")
