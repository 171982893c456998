"""HTTP server configuration for the OAuth proxy.

Values come from the environment (after .env is loaded by the entry point).
"""
import ipaddress
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlparse

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 3001
DEFAULT_TENANT = "common"
DEFAULT_OAUTH_SCOPES = ["offline_access", "openid", "profile", "User.Read", "Notes.ReadWrite"]
MICROSOFT_IDENTITY_BASE_URL = "https://login.microsoftonline.com"

ALLOWED_AUTHORITY_HOSTNAMES = {
    "login.microsoftonline.com",
    "login.microsoftonline.us",  # US Government
    "login.chinacloudapi.cn",  # China
    "login.microsoftonline.de",  # Germany (legacy)
}


class ConfigError(ValueError):
    """Raised when the server configuration is unusable."""


@dataclass(frozen=True)
class ServerConfig:
    """Configuration container for the HTTP transport."""

    host: str
    port: int
    issuer_url: str
    microsoft_client_id: str
    microsoft_client_secret: str = field(repr=False)
    microsoft_redirect_uri: str = ""
    tenant: str = DEFAULT_TENANT
    scopes: tuple[str, ...] = tuple(DEFAULT_OAUTH_SCOPES)
    authority_base_url: str = MICROSOFT_IDENTITY_BASE_URL

    @property
    def scope_string(self) -> str:
        return " ".join(self.scopes)


def is_localhost(url: str) -> bool:
    """Check whether a URL points at a loopback host."""
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if hostname == "localhost":
        return True
    try:
        return ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return False


def validate_authority_url(url: str, environ: Optional[Mapping[str, str]] = None) -> None:
    """Reject authority URLs that are not a known Microsoft identity host.

    MCP_ENV=development or MCP_ENV=test disables the check.
    """
    env = os.environ if environ is None else environ
    if env.get("MCP_ENV") in ("development", "test"):
        return

    try:
        parsed = urlparse(url)
        hostname = (parsed.hostname or "").lower()
    except ValueError as e:
        raise ConfigError(f"Invalid authority base URL: {url}") from e

    if not parsed.scheme or not hostname:
        raise ConfigError(f"Invalid authority base URL: {url}")
    if hostname not in ALLOWED_AUTHORITY_HOSTNAMES:
        allowed = ", ".join(sorted(ALLOWED_AUTHORITY_HOSTNAMES))
        raise ConfigError(
            f'Authority base URL hostname "{hostname}" is not in the allowed list. '
            f"Allowed: {allowed}. Set MCP_ENV=development to bypass this check."
        )


def load_server_config(environ: Optional[Mapping[str, str]] = None) -> Optional[ServerConfig]:
    """Load server config from environment variables.

    Returns None if the Microsoft client credentials are not set. Raises
    ConfigError for an insecure issuer URL or an unknown authority host.
    """
    env = os.environ if environ is None else environ

    client_id = env.get("ONENOTE_OAUTH_CLIENT_ID")
    client_secret = env.get("ONENOTE_OAUTH_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None

    host = env.get("MCP_SERVER_HOST", DEFAULT_SERVER_HOST)
    try:
        port = int(env.get("MCP_SERVER_PORT", str(DEFAULT_SERVER_PORT)))
    except ValueError as e:
        raise ConfigError("MCP_SERVER_PORT must be an integer") from e

    # localhost rather than 127.0.0.1: OAuth clients treat them as different origins
    issuer_url = env.get("MCP_ISSUER_URL", f"http://localhost:{port}").rstrip("/")
    redirect_uri = env.get("ONENOTE_OAUTH_REDIRECT_URI", f"{issuer_url}/oauth/callback")
    tenant = env.get("ONENOTE_OAUTH_TENANT", DEFAULT_TENANT)
    scopes = tuple(env.get("ONENOTE_OAUTH_SCOPES", " ".join(DEFAULT_OAUTH_SCOPES)).split())
    authority_base_url = env.get("ONENOTE_OAUTH_AUTHORITY_BASE_URL", MICROSOFT_IDENTITY_BASE_URL)

    validate_authority_url(authority_base_url, env)

    if not is_localhost(issuer_url) and not issuer_url.startswith("https://"):
        raise ConfigError(
            "MCP_ISSUER_URL is using HTTP for a non-localhost address. "
            "This may expose OAuth tokens to man-in-the-middle attacks; "
            "configure HTTPS with MCP_ISSUER_URL=https://..."
        )

    return ServerConfig(
        host=host,
        port=port,
        issuer_url=issuer_url,
        microsoft_client_id=client_id,
        microsoft_client_secret=client_secret,
        microsoft_redirect_uri=redirect_uri,
        tenant=tenant,
        scopes=scopes,
        authority_base_url=authority_base_url,
    )
