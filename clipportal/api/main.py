"""
clipportal.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn clipportal.api.main:app --reload --port 3000

Every error leaves the API in one shape::

    {"success": false, "error": "<message>"}
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.staticfiles import StaticFiles

load_dotenv()

from clipportal.api.auth import router as auth_router  # noqa: E402
from clipportal.api.deps import get_config, get_services  # noqa: E402
from clipportal.api.realtime import router as realtime_router  # noqa: E402
from clipportal.api.routes.admin import router as admin_router  # noqa: E402
from clipportal.api.routes.clips import router as clips_router  # noqa: E402
from clipportal.api.routes.friends import router as friends_router  # noqa: E402
from clipportal.api.routes.messages import router as messages_router  # noqa: E402
from clipportal.api.routes.users import router as users_router  # noqa: E402
from clipportal.database.engine import init_db, run_db  # noqa: E402
from clipportal.errors import ClipPortalError, Forbidden, RateLimited  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — schema, bootstrap admin, media, backups."""
    services = get_services()
    await run_db(init_db, services.engine)
    services.media.ensure_dirs()

    promoted = await run_db(services.users.ensure_admin)
    if promoted:
        logger.info("No admin found; promoted %s", promoted)
    await run_db(services.users.encrypt_plain_emails)
    await run_db(services.auth.purge_expired_sessions)
    await run_db(services.clips.ensure_thumbnails)

    services.scheduler.start()
    logger.info("Clip Portal API started — engine ready (%s)", services.engine.url.database)
    yield
    services.scheduler.stop()
    logger.info("Clip Portal API shutting down")


app = FastAPI(
    title="Clip Portal API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
def _envelope(status_code: int, message: str, headers: dict | None = None, **extra) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code, headers=headers)


@app.exception_handler(ClipPortalError)
async def clipportal_error_handler(request: Request, exc: ClipPortalError):
    if isinstance(exc, RateLimited):
        return _envelope(exc.status_code, exc.message, headers={"Retry-After": str(exc.retry_after)})
    if isinstance(exc, Forbidden) and exc.needs_verification:
        return _envelope(exc.status_code, exc.message, needsVerification=True)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _envelope(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
    return _envelope(exc.status_code, message, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _envelope(400, message)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(auth_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(friends_router, prefix="/api")
app.include_router(messages_router, prefix="/api")
app.include_router(clips_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(realtime_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"success": True, "status": "ok"}


# Serve stored media; directories are created on startup
_media_root = get_config().media_path
for _area in ("uploads", "thumbnails", "profiles"):
    app.mount(
        f"/{_area}",
        StaticFiles(directory=str(_media_root / _area), check_dir=False),
        name=_area,
    )
