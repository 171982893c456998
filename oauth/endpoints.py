"""OAuth 2.1 endpoints for the Microsoft proxy.

This module contains the OAuth surface MCP clients talk to:
- Discovery metadata (/.well-known/*)
- Dynamic client registration (/register)
- Authorization (/authorize) and the Microsoft callback (/oauth/callback)
- Token issuance (/token) and revocation (/revoke)
"""

import hmac
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from config import ServerConfig
from oauth.callback import handle_microsoft_oauth_callback
from oauth.errors import (
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    OAuthError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from oauth.middleware import NO_CACHE_VALUE
from oauth.pkce import verify_pkce_challenge
from oauth.provider import AuthorizationParams, ProxyOAuthProvider
from oauth.templates import render_callback_error

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

# Only S256 is accepted at /authorize, so every stored challenge uses it
PKCE_METHOD = "S256"

DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
SUPPORTED_AUTH_METHODS = ("client_secret_post", "none")

# These will be set by init_oauth_routes()
_provider: Optional[ProxyOAuthProvider] = None
_issuer_url: str = ""
_scopes: list[str] = []


def init_oauth_routes(provider: ProxyOAuthProvider, config: ServerConfig):
    """Initialize OAuth routes with the provider and server config.

    Must be called before including the router in the app.
    """
    global _provider, _issuer_url, _scopes
    _provider = provider
    _issuer_url = config.issuer_url
    _scopes = list(config.scopes)


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    """Render an OAuthError as an RFC 6749 error response."""
    return JSONResponse(
        exc.to_response_dict(),
        status_code=exc.status_code,
        headers={"Cache-Control": NO_CACHE_VALUE},
    )


async def _read_params(request: Request) -> dict:
    """Token and revocation parameters from a form or JSON body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError as e:
            raise InvalidRequestError("Malformed JSON body") from e
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        for key, value in data.items():
            if not isinstance(value, str):
                raise InvalidRequestError(f"Parameter {key} must be a string")
        return data

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _authenticate_client(params: dict) -> dict:
    client_id = params.get("client_id")
    if not client_id:
        raise InvalidClientError("client_id is required")

    client = _provider.clients_store.get_client(client_id)
    if client is None:
        raise InvalidClientError("Invalid client_id")

    expected_secret = client.get("client_secret")
    if expected_secret:
        provided = params.get("client_secret") or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected_secret.encode("utf-8")):
            logger.info(f"[TOKEN] Client secret mismatch for client {client_id}")
            raise InvalidClientError("Invalid client_secret")

    return client


# ============== OAuth 2.1 Discovery Endpoints ==============

@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return {
        "resource": f"{_issuer_url}/mcp",
        "authorization_servers": [_issuer_url],
        "scopes_supported": _scopes,
        "bearer_methods_supported": ["header"],
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return {
        "issuer": _issuer_url,
        "authorization_endpoint": f"{_issuer_url}/authorize",
        "token_endpoint": f"{_issuer_url}/token",
        "registration_endpoint": f"{_issuer_url}/register",
        "revocation_endpoint": f"{_issuer_url}/revoke",
        "scopes_supported": _scopes,
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": DEFAULT_GRANT_TYPES,
        "token_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
        "revocation_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
        "code_challenge_methods_supported": [PKCE_METHOD],
    }


# ============== Client Registration ==============

@router.post("/register")
async def register_client(request: Request):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    try:
        data = await request.json()
    except ValueError as e:
        raise InvalidClientMetadataError("Request body must be JSON") from e
    if not isinstance(data, dict):
        raise InvalidClientMetadataError("Request body must be a JSON object")

    redirect_uris = data.get("redirect_uris")
    if (
        not isinstance(redirect_uris, list)
        or not redirect_uris
        or not all(isinstance(uri, str) and uri for uri in redirect_uris)
    ):
        raise InvalidClientMetadataError("redirect_uris must be a non-empty list of strings")

    auth_method = data.get("token_endpoint_auth_method", "client_secret_post")
    if auth_method not in SUPPORTED_AUTH_METHODS:
        raise InvalidClientMetadataError(f"Unsupported token_endpoint_auth_method: {auth_method}")

    metadata = {
        "redirect_uris": redirect_uris,
        "grant_types": data.get("grant_types", DEFAULT_GRANT_TYPES),
        "response_types": data.get("response_types", ["code"]),
        "token_endpoint_auth_method": auth_method,
    }
    for key in ("client_name", "client_uri", "scope"):
        if isinstance(data.get(key), str):
            metadata[key] = data[key]

    # Public clients get no secret
    if auth_method != "none":
        metadata["client_secret"] = secrets.token_urlsafe(32)
        metadata["client_secret_expires_at"] = 0

    client = _provider.clients_store.register_client(metadata)
    logger.info(f"[REGISTER] Registered client {client['client_id']} ({auth_method})")
    return JSONResponse(client, status_code=201)


# ============== Authorization Flow ==============

@router.get("/authorize")
async def authorize(
    response_type: str = "",
    client_id: str = "",
    redirect_uri: str = "",
    scope: str = "",
    state: str = "",
    code_challenge: str = "",
    code_challenge_method: str = PKCE_METHOD,
):
    """OAuth 2.0 Authorization Endpoint - redirects to Microsoft."""
    client = _provider.clients_store.get_client(client_id) if client_id else None
    if client is None:
        raise InvalidClientError("Unknown client_id")

    if response_type != "code":
        raise UnsupportedResponseTypeError("Only response_type=code is supported")

    if not redirect_uri:
        # Unambiguous only when the client registered a single URI
        registered = client.get("redirect_uris", [])
        if len(registered) != 1:
            raise InvalidRequestError("redirect_uri is required")
        redirect_uri = registered[0]

    if not code_challenge:
        raise InvalidRequestError("code_challenge is required")
    if code_challenge_method != PKCE_METHOD:
        raise InvalidRequestError("code_challenge_method must be S256")

    upstream_url = await _provider.authorize(client, AuthorizationParams(
        redirect_uri=redirect_uri,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        state=state or None,
        scopes=scope.split() or None,
    ))
    return RedirectResponse(url=upstream_url, status_code=302)


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """Microsoft redirects here after the user signs in."""
    try:
        result = await handle_microsoft_oauth_callback(
            _provider.upstream,
            _provider.token_store,
            code,
            state,
            error=error,
            error_description=error_description,
            persist_tokens=_provider.persist_tokens,
        )
    except OAuthError as e:
        logger.error(f"[CALLBACK] Callback handling failed: {e.error}")
        return HTMLResponse(render_callback_error(e.error, e.description), status_code=400)

    if not result.ok:
        return HTMLResponse(
            render_callback_error(result.error, result.error_description),
            status_code=400,
        )
    return RedirectResponse(url=result.redirect_url, status_code=302)


# ============== Token Endpoint ==============

@router.post("/token")
async def token(request: Request):
    """OAuth 2.0 Token Endpoint."""
    params = await _read_params(request)
    grant_type = params.get("grant_type")
    client = _authenticate_client(params)

    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client['client_id']}")

    if grant_type not in DEFAULT_GRANT_TYPES:
        raise UnsupportedGrantTypeError(f"Unsupported grant_type: {grant_type}")
    if grant_type not in client.get("grant_types", DEFAULT_GRANT_TYPES):
        raise UnauthorizedClientError(f"Client is not allowed to use grant_type {grant_type}")

    if grant_type == "authorization_code":
        code = params.get("code")
        code_verifier = params.get("code_verifier")
        if not code or not code_verifier:
            raise InvalidRequestError("code and code_verifier are required")

        # Check PKCE before consuming so a bad verifier leaves the code intact
        challenge = await _provider.challenge_for_authorization_code(client, code)
        if not verify_pkce_challenge(code_verifier, challenge, PKCE_METHOD):
            logger.info(f"[TOKEN] PKCE verification failed for client {client['client_id']}")
            raise InvalidGrantError("code_verifier does not match the challenge")

        tokens = await _provider.exchange_authorization_code(client, code, params.get("redirect_uri"))
    else:
        refresh_token = params.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("refresh_token is required")
        tokens = await _provider.exchange_refresh_token(client, refresh_token)

    return JSONResponse(tokens.to_dict(), headers={"Pragma": "no-cache"})


@router.post("/revoke")
async def revoke(request: Request):
    """OAuth 2.0 Token Revocation (RFC 7009)."""
    params = await _read_params(request)
    client = _authenticate_client(params)

    token_value = params.get("token")
    if not token_value:
        raise InvalidRequestError("token is required")

    await _provider.revoke_token(client, token_value, params.get("token_type_hint"))
    # Unknown tokens are not an error
    return JSONResponse({})
