"""In-memory stores for the OAuth proxy.

ServerTokenStore keeps four independent expiring maps:
- pending authorization requests, keyed by the internal upstream state
- authorization codes issued after the Microsoft callback
- access tokens that wrap a Microsoft access token
- refresh tokens that wrap a Microsoft refresh token

Expiry is checked lazily on every read and eagerly by a background cleanup
thread. Each map is capped; inserting past the cap raises
CapacityExceededError instead of evicting anything.

RegisteredClientsStore holds dynamically registered OAuth clients.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from oauth.errors import CapacityExceededError

logger = logging.getLogger(__name__)

# Lifetimes (seconds)
PENDING_REQUEST_EXPIRY_SECONDS = 600  # 10 minutes
AUTH_CODE_EXPIRY_SECONDS = 600  # 10 minutes
ACCESS_TOKEN_EXPIRY_SECONDS = 3600  # 1 hour
REFRESH_TOKEN_EXPIRY_SECONDS = 30 * 24 * 60 * 60  # 30 days

CLEANUP_INTERVAL_SECONDS = 5 * 60

# Per-map entry caps
MAX_PENDING_REQUESTS = 10_000
MAX_AUTH_CODES = 10_000
MAX_ACCESS_TOKENS = 10_000
MAX_REFRESH_TOKENS = 10_000


@dataclass
class PendingAuthRequest:
    """MCP client authorization parameters held while the user is at Microsoft."""

    client_id: str
    code_challenge: str
    code_challenge_method: str
    redirect_uri: str
    client_state: Optional[str] = None
    scope: Optional[str] = None
    created_at: float = 0.0


@dataclass
class AuthCodeEntry:
    client_id: str
    code_challenge: str
    code_challenge_method: str
    redirect_uri: str
    upstream_access_token: str = field(repr=False)
    upstream_refresh_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None
    created_at: float = 0.0
    expires_at: float = 0.0


@dataclass
class TokenEntry:
    upstream_access_token: str = field(repr=False)
    upstream_refresh_token: Optional[str] = field(default=None, repr=False)
    client_id: str = ""
    scope: Optional[str] = None
    created_at: float = 0.0
    expires_at: float = 0.0


@dataclass
class RefreshTokenEntry:
    upstream_refresh_token: str = field(repr=False)
    client_id: str = ""
    scope: Optional[str] = None
    created_at: float = 0.0
    expires_at: float = 0.0


def _generate_identifier() -> str:
    return secrets.token_urlsafe(32)


class ServerTokenStore:
    """Token and request store for the OAuth proxy server.

    All operations take a single lock for the duration of one map access, so
    consume operations are atomic get-and-delete even while the cleanup
    thread is running.
    """

    def __init__(
        self,
        cleanup_interval: Optional[float] = CLEANUP_INTERVAL_SECONDS,
        max_pending_requests: int = MAX_PENDING_REQUESTS,
        max_auth_codes: int = MAX_AUTH_CODES,
        max_access_tokens: int = MAX_ACCESS_TOKENS,
        max_refresh_tokens: int = MAX_REFRESH_TOKENS,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._lock = threading.Lock()

        self._pending_requests: dict[str, PendingAuthRequest] = {}
        self._auth_codes: dict[str, AuthCodeEntry] = {}
        self._access_tokens: dict[str, TokenEntry] = {}
        self._refresh_tokens: dict[str, RefreshTokenEntry] = {}

        self.max_pending_requests = max_pending_requests
        self.max_auth_codes = max_auth_codes
        self.max_access_tokens = max_access_tokens
        self.max_refresh_tokens = max_refresh_tokens

        self.cleanup_interval = cleanup_interval
        self._shutdown = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None
        if cleanup_interval:
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_worker, name="token-store-cleanup", daemon=True
            )
            self._cleanup_thread.start()

    # ============== Pending Authorization Requests ==============

    def store_pending_request(self, request: PendingAuthRequest) -> str:
        """Store a pending request and return the internal upstream state."""
        with self._lock:
            if len(self._pending_requests) >= self.max_pending_requests:
                logger.warning("[STORE] Pending request cap reached")
                raise CapacityExceededError("Too many pending authorization requests")
            state = _generate_identifier()
            self._pending_requests[state] = replace(request, created_at=self._clock())
        return state

    def consume_pending_request(self, state: str) -> Optional[PendingAuthRequest]:
        """Remove and return the pending request for ``state``.

        The entry is deleted even when it turns out to be expired.
        """
        with self._lock:
            request = self._pending_requests.pop(state, None)
        if request is None:
            return None
        if self._clock() > request.created_at + PENDING_REQUEST_EXPIRY_SECONDS:
            return None
        return request

    # ============== Authorization Codes ==============

    def store_auth_code(self, entry: AuthCodeEntry) -> str:
        with self._lock:
            if len(self._auth_codes) >= self.max_auth_codes:
                logger.warning("[STORE] Authorization code cap reached")
                raise CapacityExceededError("Too many authorization codes")
            code = _generate_identifier()
            now = self._clock()
            self._auth_codes[code] = replace(
                entry, created_at=now, expires_at=now + AUTH_CODE_EXPIRY_SECONDS
            )
        return code

    def get_auth_code(self, code: str) -> Optional[AuthCodeEntry]:
        """Return the code entry without consuming it (used for PKCE lookup)."""
        with self._lock:
            return self._get_live(self._auth_codes, code)

    def consume_auth_code(self, code: str) -> Optional[AuthCodeEntry]:
        with self._lock:
            entry = self._get_live(self._auth_codes, code)
            if entry is not None:
                del self._auth_codes[code]
            return entry

    # ============== Access Tokens ==============

    def store_access_token(self, entry: TokenEntry) -> tuple[str, int]:
        """Store an access token entry. Returns ``(token, expires_in)``."""
        with self._lock:
            if len(self._access_tokens) >= self.max_access_tokens:
                logger.warning("[STORE] Access token cap reached")
                raise CapacityExceededError("Too many access tokens")
            token = _generate_identifier()
            now = self._clock()
            self._access_tokens[token] = replace(
                entry, created_at=now, expires_at=now + ACCESS_TOKEN_EXPIRY_SECONDS
            )
        return token, ACCESS_TOKEN_EXPIRY_SECONDS

    def get_access_token(self, token: str) -> Optional[TokenEntry]:
        with self._lock:
            return self._get_live(self._access_tokens, token)

    def revoke_access_token(self, token: str) -> bool:
        with self._lock:
            return self._access_tokens.pop(token, None) is not None

    # ============== Refresh Tokens ==============

    def store_refresh_token(self, entry: RefreshTokenEntry) -> str:
        with self._lock:
            if len(self._refresh_tokens) >= self.max_refresh_tokens:
                logger.warning("[STORE] Refresh token cap reached")
                raise CapacityExceededError("Too many refresh tokens")
            token = _generate_identifier()
            now = self._clock()
            self._refresh_tokens[token] = replace(
                entry, created_at=now, expires_at=now + REFRESH_TOKEN_EXPIRY_SECONDS
            )
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenEntry]:
        with self._lock:
            return self._get_live(self._refresh_tokens, token)

    def revoke_refresh_token(self, token: str) -> bool:
        with self._lock:
            return self._refresh_tokens.pop(token, None) is not None

    # ============== Maintenance ==============

    def _get_live(self, entries: dict, key: str):
        # Caller holds the lock.
        entry = entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del entries[key]
            return None
        return entry

    def cleanup(self) -> int:
        """Delete every expired entry from all four maps.

        Returns the number of entries removed. Safe to call at any time.
        """
        removed = 0
        with self._lock:
            now = self._clock()
            expired_states = [
                state
                for state, request in self._pending_requests.items()
                if now > request.created_at + PENDING_REQUEST_EXPIRY_SECONDS
            ]
            for state in expired_states:
                del self._pending_requests[state]
            removed += len(expired_states)

            for entries in (self._auth_codes, self._access_tokens, self._refresh_tokens):
                expired = [key for key, entry in entries.items() if now > entry.expires_at]
                for key in expired:
                    del entries[key]
                removed += len(expired)

        if removed:
            logger.info(f"[STORE] Cleanup removed {removed} expired entries")
        return removed

    def stats(self) -> dict[str, int]:
        """Current entry counts per map, including not-yet-swept expired entries."""
        with self._lock:
            return {
                "pending_requests": len(self._pending_requests),
                "auth_codes": len(self._auth_codes),
                "access_tokens": len(self._access_tokens),
                "refresh_tokens": len(self._refresh_tokens),
            }

    def _cleanup_worker(self):
        """Background thread that sweeps expired entries periodically."""
        while not self._shutdown.wait(self.cleanup_interval):
            try:
                self.cleanup()
            except Exception:
                logger.exception("[STORE] Cleanup sweep failed")

    def dispose(self):
        """Stop the cleanup thread. Idempotent."""
        self._shutdown.set()
        thread = self._cleanup_thread
        self._cleanup_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)


class RegisteredClientsStore:
    """Dynamically registered OAuth clients (RFC 7591), kept in memory."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clients: dict[str, dict] = {}
        self._clock = clock

    def get_client(self, client_id: str) -> Optional[dict]:
        return self._clients.get(client_id)

    def register_client(self, metadata: dict) -> dict:
        client = dict(metadata)
        client["client_id"] = _generate_identifier()
        client["client_id_issued_at"] = int(self._clock())
        self._clients[client["client_id"]] = client
        return client
