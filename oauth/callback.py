"""Microsoft OAuth callback handling.

Completes the upstream leg of the flow and bridges it back to the MCP client:
consume the pending request, exchange the Microsoft code, mint our own
authorization code and build the redirect to the client's redirect_uri.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from oauth.errors import CapacityExceededError, ServerError
from oauth.stores import AuthCodeEntry, ServerTokenStore
from oauth.upstream import MicrosoftIdentityClient, UpstreamHTTPError
from token_cache import TokenData, save_tokens

logger = logging.getLogger(__name__)


@dataclass
class CallbackResult:
    """Either ``redirect_url`` or ``error``/``error_description`` is set."""

    redirect_url: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.redirect_url is not None


def _with_query_params(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


async def handle_microsoft_oauth_callback(
    upstream: MicrosoftIdentityClient,
    token_store: ServerTokenStore,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    persist_tokens: Callable[[TokenData], None] = save_tokens,
) -> CallbackResult:
    """Handle the redirect from Microsoft back to /oauth/callback."""
    if error:
        # User denied consent or Microsoft rejected the request
        logger.info(f"[CALLBACK] Microsoft returned error: {error}")
        return CallbackResult(
            error=error,
            error_description=error_description or "Authorization failed",
        )

    if not code or not state:
        return CallbackResult(
            error="invalid_request",
            error_description="Missing code or state parameter",
        )

    pending = token_store.consume_pending_request(state)
    if pending is None:
        logger.info("[CALLBACK] Unknown or expired state")
        return CallbackResult(
            error="invalid_request",
            error_description="Invalid or expired state parameter",
        )

    try:
        upstream_tokens = await upstream.exchange_code(code)
    except UpstreamHTTPError:
        # Status and truncated body were logged by the upstream client
        return CallbackResult(
            error="server_error",
            error_description="Failed to exchange authorization code with Microsoft",
        )
    except ServerError:
        return CallbackResult(
            error="server_error",
            error_description="Failed to communicate with Microsoft",
        )

    try:
        our_code = token_store.store_auth_code(AuthCodeEntry(
            client_id=pending.client_id,
            code_challenge=pending.code_challenge,
            code_challenge_method=pending.code_challenge_method,
            redirect_uri=pending.redirect_uri,
            upstream_access_token=upstream_tokens.access_token,
            upstream_refresh_token=upstream_tokens.refresh_token,
            scope=pending.scope,
        ))
    except CapacityExceededError as e:
        return CallbackResult(error=e.error, error_description=e.description)

    # Non-fatal: stdio mode loses its fallback but HTTP mode continues
    try:
        persist_tokens(upstream_tokens.to_token_data())
    except OSError as e:
        logger.error(f"[CALLBACK] Failed to persist tokens to disk: {e}")

    # Echo the client's own state when it sent one, otherwise ours
    redirect_url = _with_query_params(pending.redirect_uri, {
        "code": our_code,
        "state": pending.client_state or state,
    })
    logger.info(f"[CALLBACK] Authorization code issued for client {pending.client_id}")
    return CallbackResult(redirect_url=redirect_url)
