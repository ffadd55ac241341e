import logging
from typing import Iterable, Optional
from portkeeper.local import app_globals
from starlette.types import ASGIApp
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

log = logging.getLogger(__name__)


class LoopbackOnlyMiddleware(BaseHTTPMiddleware):
    """Rejects requests from non-local clients; the API can launch arbitrary commands."""

    def __init__(self, app: ASGIApp, allowed_hosts: Optional[Iterable[str]] = None) -> None:
        super().__init__(app)
        self.allowed_hosts = set(allowed_hosts or app_globals.ALLOWED_CLIENT_HOSTS)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        host = request.client.host if request.client else None
        if host not in self.allowed_hosts:
            log.warning(f"Blocked request from non-local client {host}: {request.method} {request.url.path}")
            return JSONResponse({"error": "Forbidden"}, status_code=403)
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security-related HTTP headers to every response."""
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        return response
