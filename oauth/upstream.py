"""Microsoft identity platform client.

Builds the upstream authorize URL and performs the two token endpoint calls
the proxy needs: authorization code exchange and refresh. Every call is
bounded by a timeout; httpx aborts the in-flight request when it fires.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote, urlencode

import httpx

from config import ServerConfig
from oauth.errors import ServerError, UpstreamTimeoutError
from token_cache import TokenData

logger = logging.getLogger(__name__)

# Timeout for Microsoft token endpoint requests
FETCH_TIMEOUT_SECONDS = 30.0

# Upstream error bodies are truncated to this many characters in logs
ERROR_PREVIEW_LENGTH = 200


class UpstreamHTTPError(ServerError):
    """Microsoft answered with a non-2xx status."""

    def __init__(self, status: int, body_preview: str):
        super().__init__("Microsoft token endpoint returned an error")
        self.status = status
        self.body_preview = body_preview


@dataclass
class UpstreamTokens:
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_in: Optional[int] = None

    def to_token_data(self) -> TokenData:
        """Shape these tokens for the stdio-mode disk cache."""
        expires_at = None
        if self.expires_in is not None:
            expires_at = (
                datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)
            ).isoformat()
        return TokenData(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=expires_at,
        )


class MicrosoftIdentityClient:
    """Talks to the Microsoft OAuth 2.0 v2 endpoints for the configured tenant."""

    def __init__(self, config: ServerConfig, timeout: float = FETCH_TIMEOUT_SECONDS):
        self.config = config
        self.timeout = timeout

    def _endpoint(self, name: str) -> str:
        base = self.config.authority_base_url.rstrip("/")
        return f"{base}/{quote(self.config.tenant, safe='')}/oauth2/v2.0/{name}"

    @property
    def authorize_endpoint(self) -> str:
        return self._endpoint("authorize")

    @property
    def token_endpoint(self) -> str:
        return self._endpoint("token")

    def build_authorize_url(self, state: str) -> str:
        """Upstream authorize URL using the server's own client id and redirect URI."""
        params = {
            "client_id": self.config.microsoft_client_id,
            "response_type": "code",
            "redirect_uri": self.config.microsoft_redirect_uri,
            "response_mode": "query",
            "scope": self.config.scope_string,
            "state": state,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> UpstreamTokens:
        # Microsoft requires redirect_uri and scope on the code exchange
        return await self._request_tokens({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.config.microsoft_client_id,
            "client_secret": self.config.microsoft_client_secret,
            "redirect_uri": self.config.microsoft_redirect_uri,
            "scope": self.config.scope_string,
        })

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        # Microsoft requires scope on refresh
        return await self._request_tokens({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.microsoft_client_id,
            "client_secret": self.config.microsoft_client_secret,
            "scope": self.config.scope_string,
        })

    async def _request_tokens(self, form: dict) -> UpstreamTokens:
        grant_type = form["grant_type"]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            logger.error(f"[UPSTREAM] Microsoft token request timed out ({grant_type})")
            raise UpstreamTimeoutError("Timed out communicating with Microsoft") from e
        except httpx.HTTPError as e:
            logger.error(f"[UPSTREAM] Microsoft token request failed ({grant_type}): {type(e).__name__}")
            raise ServerError("Failed to communicate with Microsoft") from e

        if not response.is_success:
            preview = response.text[:ERROR_PREVIEW_LENGTH]
            logger.error(
                f"[UPSTREAM] Microsoft token endpoint returned {response.status_code} "
                f"({grant_type}): {preview}"
            )
            raise UpstreamHTTPError(response.status_code, preview)

        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = payload.get("expires_in")
            if expires_in is not None:
                expires_in = int(expires_in)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"[UPSTREAM] Malformed Microsoft token response ({grant_type})")
            raise ServerError("Malformed token response from Microsoft") from e

        return UpstreamTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=expires_in,
        )
