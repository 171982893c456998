"""HTTP edge middleware for the OAuth proxy.

- OAuthBoundaryMiddleware enforces the cross-origin boundary and sets
  no-store cache headers on OAuth and MCP responses.
- McpEndpoint validates Bearer tokens for the /mcp protocol endpoint and
  hands authorized requests to the session registry.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import Receive, Scope, Send

from oauth.cors import ALLOWED_CORS_PATHS, is_cors_allowed_path, matches_allowed_path_boundary
from oauth.errors import InvalidTokenError
from oauth.provider import OAuthServerProvider

logger = logging.getLogger(__name__)

NO_CACHE_VALUE = "no-store, no-cache, must-revalidate, private"
NO_CACHE_PATHS = ALLOWED_CORS_PATHS + ("/mcp",)

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type, MCP-Protocol-Version",
    "Access-Control-Max-Age": "86400",
}


def needs_no_cache(path: str) -> bool:
    return any(matches_allowed_path_boundary(path, allowed) for allowed in NO_CACHE_PATHS)


class OAuthBoundaryMiddleware(BaseHTTPMiddleware):
    """CORS allowlist and cache-control for the OAuth and MCP surfaces."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        origin = request.headers.get("origin")

        if origin:
            if not is_cors_allowed_path(path):
                logger.info(f"[CORS] Blocked cross-origin {request.method} {path}")
                response = JSONResponse(
                    {"error": "forbidden", "error_description": "Cross-origin requests are not allowed for this endpoint"},
                    status_code=403,
                )
                return self._finish(path, response)

            if request.method == "OPTIONS":
                return self._finish(path, Response(status_code=204, headers=CORS_PREFLIGHT_HEADERS))

        response = await call_next(request)
        if origin:
            response.headers["Access-Control-Allow-Origin"] = "*"
        return self._finish(path, response)

    @staticmethod
    def _finish(path: str, response: Response) -> Response:
        if needs_no_cache(path):
            response.headers["Cache-Control"] = NO_CACHE_VALUE
        return response


class McpEndpoint:
    """ASGI endpoint for /mcp guarded by Bearer authentication.

    On success the verified AuthInfo is placed in ``scope["auth"]`` so tool
    handlers can recover the upstream Microsoft token.
    """

    def __init__(self, provider: OAuthServerProvider, registry, resource_metadata_url: str):
        self.provider = provider
        self.registry = registry
        self.resource_metadata_url = resource_metadata_url

    def _unauthorized(self, description: str) -> JSONResponse:
        return JSONResponse(
            {"error": "invalid_token", "error_description": description},
            status_code=401,
            headers={
                "WWW-Authenticate": (
                    f'Bearer error="invalid_token", error_description="{description}", '
                    f'resource_metadata="{self.resource_metadata_url}"'
                ),
                "Cache-Control": NO_CACHE_VALUE,
            },
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope)
        auth_header = request.headers.get("authorization", "")

        if not auth_header.lower().startswith("bearer "):
            logger.info("[AUTH] Request rejected: no Bearer token")
            await self._unauthorized("Missing or invalid Authorization header")(scope, receive, send)
            return

        token = auth_header[7:].strip()
        try:
            auth_info = await self.provider.verify_access_token(token)
        except InvalidTokenError as e:
            logger.info("[AUTH] Request rejected: invalid or expired token")
            await self._unauthorized(e.description)(scope, receive, send)
            return

        scope["auth"] = auth_info
        await self.registry.handle_request(scope, receive, send)
