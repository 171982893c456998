"""Proxy OAuth provider for Microsoft identity.

MCP clients run a standard OAuth 2.1 authorization code + PKCE flow against
this server. The server drives the real Microsoft flow with its own client
credentials and hands out wrapped tokens that only resolve, server-side, to
the Microsoft tokens.

Flow:
1. MCP client calls /authorize with its PKCE code_challenge
2. We store the PKCE params and redirect the browser to Microsoft
3. Microsoft redirects back to /oauth/callback (see oauth/callback.py)
4. The callback exchanges the Microsoft code and mints our authorization code
5. MCP client exchanges our code + code_verifier at /token
6. We issue an access token (and refresh token) wrapping the Microsoft tokens
"""

import abc
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from config import ServerConfig
from oauth.errors import (
    CapacityExceededError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    ServerError,
    UnauthorizedClientError,
    UpstreamTimeoutError,
)
from oauth.stores import (
    PendingAuthRequest,
    RefreshTokenEntry,
    RegisteredClientsStore,
    ServerTokenStore,
    TokenEntry,
)
from oauth.upstream import MicrosoftIdentityClient, UpstreamTokens
from token_cache import TokenData, save_tokens

logger = logging.getLogger(__name__)

# Key under AuthInfo.extra holding the recovered Microsoft access token
UPSTREAM_TOKEN_KEY = "microsoft_token"


@dataclass
class AuthorizationParams:
    """Validated parameters of an /authorize request."""

    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    state: Optional[str] = None
    scopes: Optional[list[str]] = None


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"

    def to_dict(self) -> dict:
        data = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.scope is not None:
            data["scope"] = self.scope
        if self.refresh_token is not None:
            data["refresh_token"] = self.refresh_token
        return data


@dataclass
class AuthInfo:
    """Authorization context for a verified bearer token."""

    token: str = field(repr=False)
    client_id: str
    scopes: list[str]
    expires_at: int
    extra: dict = field(default_factory=dict, repr=False)

    @property
    def upstream_token(self) -> Optional[str]:
        return self.extra.get(UPSTREAM_TOKEN_KEY)


class OAuthServerProvider(abc.ABC):
    """The operations the OAuth endpoints need from an authorization server."""

    clients_store: RegisteredClientsStore

    @abc.abstractmethod
    async def authorize(self, client: dict, params: AuthorizationParams) -> str:
        """Start authorization; returns the URL to redirect the user agent to."""

    @abc.abstractmethod
    async def challenge_for_authorization_code(self, client: dict, authorization_code: str) -> str:
        ...

    @abc.abstractmethod
    async def exchange_authorization_code(
        self, client: dict, authorization_code: str, redirect_uri: Optional[str] = None
    ) -> TokenResponse:
        ...

    @abc.abstractmethod
    async def exchange_refresh_token(self, client: dict, refresh_token: str) -> TokenResponse:
        ...

    @abc.abstractmethod
    async def verify_access_token(self, token: str) -> AuthInfo:
        ...

    @abc.abstractmethod
    async def revoke_token(self, client: dict, token: str, token_type_hint: Optional[str] = None) -> None:
        ...


class ProxyOAuthProvider(OAuthServerProvider):
    """OAuth provider that proxies authorization to the Microsoft identity platform.

    Microsoft supports PKCE natively, but the proxy is still needed: MCP
    clients register dynamically with this server, this server owns the
    Microsoft client secret, and the wrapped tokens let the bearer check run
    locally.
    """

    def __init__(
        self,
        config: ServerConfig,
        token_store: ServerTokenStore,
        upstream: Optional[MicrosoftIdentityClient] = None,
        clients_store: Optional[RegisteredClientsStore] = None,
        persist_tokens: Callable[[TokenData], None] = save_tokens,
    ):
        self.config = config
        self.token_store = token_store
        self.upstream = upstream or MicrosoftIdentityClient(config)
        self.clients_store = clients_store or RegisteredClientsStore()
        self.persist_tokens = persist_tokens

    async def authorize(self, client: dict, params: AuthorizationParams) -> str:
        if params.redirect_uri not in client.get("redirect_uris", []):
            logger.info(f"[AUTHORIZE] Rejected unregistered redirect_uri for client {client['client_id']}")
            raise InvalidRequestError("Invalid redirect_uri")

        # Our own state goes upstream; the client's state is kept for the final redirect.
        pending = PendingAuthRequest(
            client_id=client["client_id"],
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
            redirect_uri=params.redirect_uri,
            client_state=params.state or None,
            scope=" ".join(params.scopes) if params.scopes else None,
        )
        microsoft_state = self.token_store.store_pending_request(pending)

        logger.info(f"[AUTHORIZE] Redirecting client {client['client_id']} to Microsoft")
        return self.upstream.build_authorize_url(microsoft_state)

    async def challenge_for_authorization_code(self, client: dict, authorization_code: str) -> str:
        entry = self.token_store.get_auth_code(authorization_code)
        if entry is None:
            raise InvalidGrantError("Invalid authorization code")
        return entry.code_challenge

    async def exchange_authorization_code(
        self, client: dict, authorization_code: str, redirect_uri: Optional[str] = None
    ) -> TokenResponse:
        # PKCE is verified by the token endpoint before this is called.
        code_entry = self.token_store.consume_auth_code(authorization_code)
        if code_entry is None:
            raise InvalidGrantError("Invalid or expired authorization code")

        if code_entry.client_id != client["client_id"]:
            logger.warning(f"[TOKEN] Authorization code presented by wrong client {client['client_id']}")
            raise UnauthorizedClientError("Authorization code was not issued to this client")

        if redirect_uri and code_entry.redirect_uri != redirect_uri:
            raise InvalidRequestError("redirect_uri mismatch")

        access_token, expires_in = self.token_store.store_access_token(TokenEntry(
            upstream_access_token=code_entry.upstream_access_token,
            upstream_refresh_token=code_entry.upstream_refresh_token,
            client_id=client["client_id"],
            scope=code_entry.scope,
        ))

        refresh_token = None
        if code_entry.upstream_refresh_token:
            refresh_token = self.token_store.store_refresh_token(RefreshTokenEntry(
                upstream_refresh_token=code_entry.upstream_refresh_token,
                client_id=client["client_id"],
                scope=code_entry.scope,
            ))

        logger.info(f"[TOKEN] Access token issued for client {client['client_id']}")
        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            scope=code_entry.scope,
            refresh_token=refresh_token,
        )

    async def exchange_refresh_token(self, client: dict, refresh_token: str) -> TokenResponse:
        refresh_entry = self.token_store.get_refresh_token(refresh_token)
        if refresh_entry is None:
            raise InvalidGrantError("Invalid refresh token")

        if refresh_entry.client_id != client["client_id"]:
            logger.warning(f"[TOKEN] Refresh token presented by wrong client {client['client_id']}")
            raise UnauthorizedClientError("Refresh token was not issued to this client")

        try:
            upstream_tokens = await self.upstream.refresh(refresh_entry.upstream_refresh_token)
        except UpstreamTimeoutError:
            raise
        except ServerError as e:
            raise ServerError("Failed to refresh token with Microsoft") from e

        access_token, expires_in = self.token_store.store_access_token(TokenEntry(
            upstream_access_token=upstream_tokens.access_token,
            upstream_refresh_token=upstream_tokens.refresh_token,
            client_id=client["client_id"],
            scope=refresh_entry.scope,
        ))

        # Microsoft may omit a new refresh token; the client then has to re-authorize later.
        new_refresh_token = None
        if upstream_tokens.refresh_token:
            try:
                new_refresh_token = self.token_store.store_refresh_token(RefreshTokenEntry(
                    upstream_refresh_token=upstream_tokens.refresh_token,
                    client_id=client["client_id"],
                    scope=refresh_entry.scope,
                ))
            except CapacityExceededError:
                self.token_store.revoke_access_token(access_token)
                raise

        # The presented refresh token stays valid until its replacements are stored
        self.token_store.revoke_refresh_token(refresh_token)
        self._persist(upstream_tokens)
        logger.info(f"[TOKEN] Tokens refreshed for client {client['client_id']}")
        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            scope=refresh_entry.scope,
            refresh_token=new_refresh_token,
        )

    async def verify_access_token(self, token: str) -> AuthInfo:
        entry = self.token_store.get_access_token(token)
        if entry is None:
            raise InvalidTokenError("Invalid or expired token")

        return AuthInfo(
            token=token,
            client_id=entry.client_id,
            scopes=entry.scope.split(" ") if entry.scope else [],
            expires_at=int(entry.expires_at),
            extra={UPSTREAM_TOKEN_KEY: entry.upstream_access_token},
        )

    async def revoke_token(self, client: dict, token: str, token_type_hint: Optional[str] = None) -> None:
        if token_type_hint == "refresh_token":
            self.token_store.revoke_refresh_token(token)
            return
        # Without a hint the token could be either kind
        self.token_store.revoke_access_token(token)
        self.token_store.revoke_refresh_token(token)

    def _persist(self, upstream_tokens: UpstreamTokens) -> None:
        """Write refreshed Microsoft tokens to the stdio fallback cache."""
        try:
            self.persist_tokens(upstream_tokens.to_token_data())
        except OSError as e:
            logger.error(f"[TOKEN] Failed to persist refreshed tokens to disk: {e}")
