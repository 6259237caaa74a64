"""Redis-based sliding window rate limiter.

Uses sorted sets (ZSET) for a precise sliding window counter.
Only agent self-registration traffic is limited, per organization.
"""

import logging
import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from security_manager.config import get_settings

logger = logging.getLogger(__name__)

RATE_LIMITED_PREFIX = "/agents/"
WINDOW_SECONDS = 60


def rate_limit_key(org_id: str) -> str:
    return f"sm:rate:{org_id}:minute"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter using Redis ZSETs."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not request.url.path.startswith(RATE_LIMITED_PREFIX):
            return await call_next(request)

        org_id = getattr(request.state, "org_id", None)
        if not org_id:
            return await call_next(request)

        redis = getattr(request.app.state, "redis", None)
        if not redis:
            # No Redis connection: allow the request
            logger.debug("Redis not available for rate limiting")
            return await call_next(request)

        limit = get_settings().rate_limit_requests_per_minute
        key = rate_limit_key(org_id)
        now = time.time()
        window_start = now - WINDOW_SECONDS

        try:
            pipe = redis.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            # Unique member so concurrent requests in the same instant all count
            pipe.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
            pipe.expire(key, WINDOW_SECONDS + 1)
            results = await pipe.execute()
        except RedisError:
            logger.warning("Rate limit check failed; allowing request", exc_info=True)
            return await call_next(request)

        current_count = results[1]

        if current_count >= limit:
            return JSONResponse(
                {
                    "error": {
                        "code": "rate_limit_exceeded",
                        "message": "Rate limit exceeded. Please retry after a moment.",
                    }
                },
                status_code=429,
                headers={"Retry-After": str(WINDOW_SECONDS)},
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - current_count - 1))
        response.headers["X-RateLimit-Reset"] = str(int(now + WINDOW_SECONDS))

        return response
