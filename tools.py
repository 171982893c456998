"""MCP tools for the OneNote MCP server.

Tools never see the wrapped tokens this server issues. Over HTTP they get
the Microsoft access token recovered by the bearer check for the current
request; over stdio they fall back to the token cache the HTTP server
writes after each successful sign-in.
"""

import logging
from typing import Optional

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_REQUEST, ErrorData

from oauth.provider import AuthInfo
from token_cache import load_tokens

logger = logging.getLogger(__name__)

# Create the FastMCP server instance
mcp = FastMCP("onenote-mcp")


def _auth_error(message: str) -> McpError:
    # A protocol error rather than a tool result, so the client re-authenticates
    return McpError(ErrorData(code=INVALID_REQUEST, message=message))


def current_auth_info() -> Optional[AuthInfo]:
    """AuthInfo for the HTTP request being served, or None outside HTTP."""
    try:
        request = get_http_request()
    except RuntimeError:
        return None
    auth = request.scope.get("auth")
    if not isinstance(auth, AuthInfo):
        raise _auth_error("Request is not authenticated")
    return auth


def get_upstream_token() -> str:
    """Microsoft access token for the current caller.

    Raises McpError when no token is available.
    """
    auth = current_auth_info()
    if auth is not None:
        if not auth.upstream_token:
            raise _auth_error("No Microsoft token in auth context; please re-authenticate")
        return auth.upstream_token

    tokens = load_tokens()
    if tokens is None:
        raise _auth_error("Not authenticated. Sign in through the HTTP server first.")
    return tokens.access_token


def describe_auth_status() -> dict:
    auth = current_auth_info()
    if auth is not None:
        return {
            "transport": "http",
            "authenticated": True,
            "client_id": auth.client_id,
            "scopes": auth.scopes,
            "expires_at": auth.expires_at,
        }

    tokens = load_tokens()
    return {
        "transport": "stdio",
        "authenticated": tokens is not None,
        "expires_at": tokens.expires_at if tokens else None,
    }


@mcp.tool()
def auth_status() -> dict:
    """Report who is connected and when their authorization expires.

    Returns:
        The transport, client id, granted scopes and token expiry. Never the token itself.
    """
    logger.info("[TOOL] auth_status invoked")
    return describe_auth_status()
