"""FastAPI application factory for the Security Manager console API."""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from security_manager.api import agents, auth, organizations, servers
from security_manager.config import get_settings
from security_manager.db import engine as _db_engine_mod
from security_manager.db.models import Base
from security_manager.exceptions import SecurityManagerError
from security_manager.middleware.auth import AuthMiddleware
from security_manager.middleware.cors_preflight import CORSPreflightMiddleware
from security_manager.middleware.rate_limit import RateLimitMiddleware

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


async def _ensure_schema() -> None:
    """Create any missing tables."""
    _engine = _db_engine_mod.engine  # Use module attribute (overridable by tests)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables + connect Redis. Shutdown: cleanup."""
    settings = get_settings()

    if settings.debug and not (settings.clerk_jwks_url or settings.clerk_publishable_key):
        logger.warning("DEBUG is on without Clerk JWKS: session tokens are NOT verified")

    await _ensure_schema()

    try:
        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        await app.state.redis.ping()
        logger.info("Redis connected at %s", settings.redis_url)
    except (RedisError, OSError):
        logger.warning("Redis not available; agent rate limiting disabled")
        app.state.redis = None

    yield

    if app.state.redis:
        await app.state.redis.aclose()
    await _db_engine_mod.engine.dispose()


def _error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"error": {"code", "message"}}``."""

    @app.exception_handler(SecurityManagerError)
    async def handle_domain_error(request: Request, exc: SecurityManagerError):
        if exc.status_code >= 500:
            logger.error(
                "%s %s failed: %s", request.method, request.url.path, exc.message,
                exc_info=exc,
            )
        return JSONResponse(_error_body(exc.code, exc.message), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            _error_body("validation_error", details or "Invalid request"),
            status_code=400,
        )

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return JSONResponse(
            _error_body("internal_error", "An unexpected error occurred"),
            status_code=500,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(
            "Unhandled error on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse(
            _error_body("internal_error", "An unexpected error occurred"),
            status_code=500,
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title="Security Manager API",
        version=API_VERSION,
        description="Organization provisioning, install credentials and agent registry.",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS: last added runs first. Preflight handles OPTIONS with 200; CORSMiddleware adds headers to other responses.
    origins = settings.get_cors_origins()
    allow_credentials = True
    if origins == ["*"]:
        allow_credentials = False  # Browser forbids * with credentials
        logger.warning("CORS_ORIGINS=* disables credentials; use exact origins in production")
    logger.info("CORS allow_origins=%s allow_credentials=%s", origins, allow_credentials)

    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(AuthMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        CORSPreflightMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
    )

    register_exception_handlers(app)

    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(organizations.router, tags=["organizations"])
    app.include_router(servers.router, prefix="/servers", tags=["servers"])
    app.include_router(agents.router, prefix="/agents", tags=["agents"])

    @app.get("/health")
    async def health():
        redis_ok = False
        redis = getattr(app.state, "redis", None)
        if redis:
            try:
                await redis.ping()
                redis_ok = True
            except (RedisError, OSError):
                logger.warning("Redis ping failed")

        return {
            "status": "ok",
            "version": API_VERSION,
            "redis": "connected" if redis_ok else "unavailable",
        }

    return app


app = create_app()
