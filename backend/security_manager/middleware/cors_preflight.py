"""Answer CORS preflight (OPTIONS) requests before auth runs.

Browsers send preflights without the Authorization header, so they must be
answered here rather than reach AuthMiddleware and come back as 401.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS"


def resolve_allow_origin(origin: str, allow_origins: set[str]) -> str:
    """Echo an allowed origin back; ``*`` when every origin is allowed."""
    if not allow_origins or "*" in allow_origins:
        return "*"
    if origin in allow_origins:
        return origin
    return sorted(allow_origins)[0]


class CORSPreflightMiddleware(BaseHTTPMiddleware):
    """Respond to OPTIONS with 200 and CORS headers. Runs first (add last)."""

    def __init__(self, app, allow_origins: list[str], allow_credentials: bool = False):
        super().__init__(app)
        self._allow_origins = {o for o in allow_origins if o}
        self._allow_credentials = allow_credentials

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.method != "OPTIONS":
            return await call_next(request)

        origin = (request.headers.get("origin") or "").strip()
        allow_origin = resolve_allow_origin(origin, self._allow_origins)

        headers = {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": "Authorization, Content-Type",
            "Access-Control-Max-Age": "600",
        }
        if allow_origin != "*":
            headers["Vary"] = "Origin"
            if self._allow_credentials:
                headers["Access-Control-Allow-Credentials"] = "true"
        return Response(status_code=200, headers=headers)
