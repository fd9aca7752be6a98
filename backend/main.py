# main.py — Huddle API Gateway
# Features:
# - Request correlation IDs
# - Security headers
# - Uniform {"error": ...} error bodies
# - Health check with DB verification
# - All routers registered

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from database import init_db, close_db, get_db_session
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("huddle")

API_VERSION = "1.0.0"


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    if config.JWT_SECRET_IS_EPHEMERAL or len(config.JWT_SECRET_KEY) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or too short; tokens will not survive a restart")

    if config.AUTH_STRATEGY not in ("token", "session"):
        warnings.append(f"⚠️  AUTH_STRATEGY={config.AUTH_STRATEGY!r} is not recognised; use 'token' or 'session'")
    else:
        logger.info(f"🔐 Credential strategy: {config.AUTH_STRATEGY}")

    llm_keys = {
        "GROQ_API_KEY": config.llm_api_key("GROQ_API_KEY"),
        "OPENAI_API_KEY": config.llm_api_key("OPENAI_API_KEY"),
        "ANTHROPIC_API_KEY": config.llm_api_key("ANTHROPIC_API_KEY"),
    }
    active_providers = [k for k, v in llm_keys.items() if v]
    if active_providers:
        logger.info(f"🤖 LLM providers configured: {', '.join(active_providers)}")
    else:
        warnings.append("⚠️  No LLM API keys configured; AI endpoints will use stub responses")

    if config.ENVIRONMENT == "production" and not config.COOKIE_SECURE:
        warnings.append("⚠️  COOKIE_SECURE is off in production")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Huddle API v{API_VERSION}...")
    await init_db()
    _check_startup_config()
    # No-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app, service_version=API_VERSION, environment=config.ENVIRONMENT)
    yield
    logger.info("🛑 Shutting down Huddle API...")
    await close_db()


app = FastAPI(
    title="Huddle",
    description="Team collaboration API: workspaces, channels, documents, tasks, meetings and more",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    body = {"error": message, "request_id": getattr(request.state, "request_id", None)}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail, default=str)
    response = _error_response(request, exc.status_code, detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        errors.append(clean_err)
    return _error_response(request, 400, "Invalid input", details=errors)


@app.exception_handler(IntegrityError)
async def integrity_exception_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity conflict on {request.url.path}: {exc.orig}")
    return _error_response(request, 409, "Conflicts with existing data")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, "Internal server error")


# ============================================================
# ROUTERS
# ============================================================

from routers import (
    auth, workspaces, channels, messages, direct_messages, documents, tasks,
    meetings, calendar, analytics, security, integrations, approvals,
    projects, notifications, files, search, ai, knowledge, workflows, meeting_rooms, realtime,
)

app.include_router(auth.router)
app.include_router(workspaces.router)
app.include_router(channels.router)
app.include_router(messages.router)
app.include_router(direct_messages.router)
app.include_router(documents.router)
app.include_router(tasks.router)
app.include_router(meetings.router)
app.include_router(calendar.router)
app.include_router(analytics.router)
app.include_router(security.router)
app.include_router(integrations.router)
app.include_router(approvals.router)
app.include_router(projects.router)
app.include_router(notifications.router)
app.include_router(files.router)
app.include_router(search.router)
app.include_router(ai.router)
app.include_router(knowledge.router)
app.include_router(workflows.router)
app.include_router(meeting_rooms.router)
app.include_router(realtime.router)

# Uploaded files are served straight from disk
os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount(config.UPLOAD_URL_PREFIX, StaticFiles(directory=config.UPLOAD_DIR), name="uploads")


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": API_VERSION,
        "environment": config.ENVIRONMENT,
        "database": db_status,
        "auth_strategy": config.AUTH_STRATEGY,
    }


@app.get("/")
async def root():
    return {
        "name": "Huddle",
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=config.PORT,
        reload=config.ENVIRONMENT != "production",
        workers=config.WORKERS,
    )
