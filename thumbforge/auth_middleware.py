"""
Shared-secret check for traffic coming through the app gateway.

The gateway authenticates the end user, then forwards the request with
X-User-Id / X-User-Email and an X-Gateway-Secret header matching
GATEWAY_SHARED_SECRET.  Requests without the right secret never reach
the credit or generation routes.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import config


class GatewayAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests that did not come through the gateway."""

    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        secret = config.GATEWAY_SHARED_SECRET
        if not secret:
            # Local development without a secret: let everything through
            if config.ENVIRONMENT == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "GATEWAY_SHARED_SECRET not configured"})

        provided = request.headers.get("X-Gateway-Secret", "")
        if not secrets.compare_digest(provided, secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing gateway secret"})

        return await call_next(request)
