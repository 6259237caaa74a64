"""Authentication middleware — Clerk JWT (dashboard) and organization API key (agents).

Rules:
1. Public paths skip auth entirely: /health, /docs, /openapi.json, /redoc
2. ``Bearer ey...`` is a Clerk JWT: verify it, map the claims to an identity
   and materialize a session (user upsert + organization binding) on
   ``request.state.session``
3. ``Bearer sm_...`` is an install key: look it up among active keys, stamp
   ``last_used_at`` and attach ``org_id`` / ``api_key_id``. Keys only reach
   the agent self-registration paths (/agents/*)
4. Anything else is rejected with a 401 in the ``{"error": {...}}`` shape
"""

import base64
import binascii
import logging
from typing import Optional

import jwt
from fastapi import Request
from fastapi.responses import JSONResponse
from jwt import PyJWKClient
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from security_manager.config import get_settings
from security_manager.db import engine as db_engine
from security_manager.db.models import ApiKey, utcnow
from security_manager.exceptions import AuthenticationError
from security_manager.services.credentials import KEY_PREFIX
from security_manager.services.sessions import identity_from_claims, materialize_session

logger = logging.getLogger(__name__)

# Clerk JWKS client, cached. Fetches the public keys that verify JWT signatures.
_jwks_client: Optional[PyJWKClient] = None

PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
)

AGENT_PATH_PREFIX = "/agents/"


def _jwks_url_from_publishable_key(publishable_key: str) -> Optional[str]:
    """pk_test_<base64 domain$> / pk_live_<...> encode the Clerk frontend API domain."""
    encoded = publishable_key.split("_", 2)[-1]
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        domain = base64.b64decode(padded).decode("utf-8").rstrip("$")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Could not derive JWKS URL from publishable key")
        return None
    return f"https://{domain}/.well-known/jwks.json" if domain else None


def _get_jwks_client() -> Optional[PyJWKClient]:
    """Lazily initialise the JWKS client from settings."""
    global _jwks_client
    if _jwks_client is not None:
        return _jwks_client
    settings = get_settings()
    jwks_url = settings.clerk_jwks_url
    if not jwks_url and settings.clerk_publishable_key:
        jwks_url = _jwks_url_from_publishable_key(settings.clerk_publishable_key)
    if not jwks_url:
        return None
    _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
    logger.info("JWKS client initialised: %s", jwks_url)
    return _jwks_client


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"error": {"code": code, "message": message}}, status_code=status_code)


def decode_token(token: str) -> dict:
    """Verify a Clerk session token and return its claims.

    Raises jwt.PyJWTError when the token is invalid, and also when no JWKS is
    configured outside debug mode.
    """
    jwks = _get_jwks_client()
    if jwks is not None:
        signing_key = jwks.get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={"verify_aud": False},
        )
    if not get_settings().debug:
        raise jwt.InvalidTokenError("JWKS not configured")
    # No JWKS configured: decode without verification (dev only)
    logger.warning("JWKS not configured; skipping JWT signature verification")
    return jwt.decode(token, options={"verify_signature": False})


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate requests via Clerk JWT or organization API key."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path == "/" or any(path.startswith(p) for p in PUBLIC_PATH_PREFIXES):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")

        if auth_header.startswith(f"Bearer {KEY_PREFIX}"):
            return await self._auth_api_key(auth_header, request, call_next)
        elif auth_header.startswith("Bearer ey"):
            return await self._auth_jwt(auth_header, request, call_next)
        elif not auth_header:
            return _error(401, "auth_required", "Authentication required")
        else:
            return _error(401, "invalid_auth", "Invalid authorization header")

    async def _auth_api_key(
        self, auth_header: str, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Authenticate an installed agent by its organization's install key."""
        raw_key = auth_header.removeprefix("Bearer ").strip()

        if not request.url.path.startswith(AGENT_PATH_PREFIX):
            return _error(
                403,
                "insufficient_scope",
                f"API keys cannot access {request.url.path}",
            )

        try:
            async with db_engine.async_session_factory() as session:
                result = await session.execute(
                    select(ApiKey).where(
                        ApiKey.key == raw_key,
                        ApiKey.is_active.is_(True),
                    )
                )
                api_key = result.scalar_one_or_none()
                if api_key is None:
                    return _error(401, "invalid_api_key", "Invalid or revoked API key")

                api_key.last_used_at = utcnow()
                request.state.org_id = str(api_key.organization_id)
                request.state.api_key_id = str(api_key.id)
                request.state.auth_type = "api_key"
                await session.commit()
        except SQLAlchemyError:
            logger.exception("API key lookup failed")
            return _error(500, "internal_error", "An unexpected error occurred")

        return await call_next(request)

    async def _auth_jwt(
        self, auth_header: str, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Authenticate a dashboard user and materialize their session."""
        token = auth_header.removeprefix("Bearer ").strip()

        try:
            claims = decode_token(token)
            identity = identity_from_claims(claims)
        except jwt.PyJWTError as e:
            logger.warning("JWT verification failed: %s", e)
            return _error(401, "invalid_token", "Invalid or expired token")
        except AuthenticationError as e:
            return _error(401, "invalid_token", e.message)

        try:
            async with db_engine.async_session_factory() as session:
                user_session = await materialize_session(session, identity)
        except SQLAlchemyError:
            logger.exception("Session materialization failed for user %s", identity.subject)
            return _error(500, "internal_error", "An unexpected error occurred")

        request.state.session = user_session
        request.state.user_id = user_session.user_id
        request.state.org_id = (
            str(user_session.organization_id) if user_session.is_provisioned else None
        )
        request.state.auth_type = "jwt"

        return await call_next(request)
