"""OneNote MCP Server - HTTP application.

The server is an OAuth 2.1 authorization server that proxies sign-in to the
Microsoft identity platform, plus the MCP protocol endpoint it protects.
It handles:
- MCP tools via tools.py
- MCP protocol endpoints via Streamable HTTP (/mcp), one transport per session
- OAuth flow for MCP clients (oauth/), backed by Microsoft
"""
import contextlib
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from config import ServerConfig
from oauth.endpoints import init_oauth_routes, oauth_error_handler, router as oauth_router
from oauth.errors import OAuthError
from oauth.middleware import McpEndpoint, OAuthBoundaryMiddleware
from oauth.provider import ProxyOAuthProvider
from oauth.stores import ServerTokenStore
from sessions import SessionRegistry, default_transport_factory

# Load environment: .env in the working directory (local override)
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

VERSION = "1.0.0"

# Forced-exit bound for graceful shutdown
SHUTDOWN_TIMEOUT_SECONDS = 5

logger = logging.getLogger(__name__)


def _default_server_factory():
    # MCP tools imported from tools.py; one low-level server serves every session
    from tools import mcp
    return mcp._mcp_server


def create_app(
    config: ServerConfig,
    token_store: Optional[ServerTokenStore] = None,
    provider: Optional[ProxyOAuthProvider] = None,
    server_factory: Optional[Callable[[], Any]] = None,
    transport_factory: Callable[[str], Any] = default_transport_factory,
    registry: Optional[SessionRegistry] = None,
) -> FastAPI:
    """Build the FastAPI app. The token store and registry live as long as the app."""
    token_store = token_store or ServerTokenStore()
    provider = provider or ProxyOAuthProvider(config, token_store)
    registry = registry or SessionRegistry(
        server_factory or _default_server_factory,
        transport_factory=transport_factory,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        async with registry.run():
            logger.info(f"[STARTUP] OneNote MCP server ready at {config.issuer_url}")
            try:
                yield
            finally:
                logger.info("[SHUTDOWN] Shutting down")
        token_store.dispose()

    app = FastAPI(
        title="OneNote MCP Server",
        description="MCP server with an OAuth 2.1 proxy to Microsoft identity",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.token_store = token_store
    app.state.provider = provider
    app.state.registry = registry

    app.add_middleware(OAuthBoundaryMiddleware)
    app.add_exception_handler(OAuthError, oauth_error_handler)

    # ============== Include Routers ==============

    init_oauth_routes(provider, config)
    app.include_router(oauth_router)

    # Exact-path route; a mount would redirect /mcp to /mcp/
    mcp_endpoint = McpEndpoint(
        provider,
        registry,
        resource_metadata_url=f"{config.issuer_url}/.well-known/oauth-protected-resource",
    )
    app.router.add_route("/mcp", mcp_endpoint, methods=["GET", "POST", "DELETE"])

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "onenote-mcp", "sessions": len(registry)}

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        return {
            "name": "OneNote MCP Server",
            "version": VERSION,
            "transport": "streamable-http",
            "endpoints": {
                "streamable_http": "/mcp",
            },
            "oauth": {
                "protected_resource": f"{config.issuer_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{config.issuer_url}/.well-known/oauth-authorization-server",
            },
        }

    return app


def run_server(config: ServerConfig):
    """Run the HTTP server until SIGINT/SIGTERM."""
    app = create_app(config)
    logger.info(f"[STARTUP] Listening on {config.host}:{config.port}")
    logger.info("[STARTUP] Streamable HTTP endpoint: /mcp")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        timeout_graceful_shutdown=SHUTDOWN_TIMEOUT_SECONDS,
    )
