"""Disk token cache for the stdio transport.

The HTTP proxy writes the most recent Microsoft tokens here so that the
single-user stdio mode can reuse them without running its own OAuth flow.
"""
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

APP_DIR_NAME = "onenote-mcp"


@dataclass
class TokenData:
    """Upstream tokens as persisted on disk."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None  # ISO 8601, UTC

    def to_dict(self) -> dict:
        data = {"accessToken": self.access_token}
        if self.refresh_token is not None:
            data["refreshToken"] = self.refresh_token
        if self.expires_at is not None:
            data["expiresAt"] = self.expires_at
        return data


def get_default_store_dir() -> Path:
    """Platform configuration directory for the token cache."""
    if sys.platform == "win32":
        app_data = os.getenv("APPDATA")
        if app_data:
            return Path(app_data) / APP_DIR_NAME
        return Path.home() / "AppData" / "Roaming" / APP_DIR_NAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME

    xdg_config = os.getenv("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_DIR_NAME
    return Path.home() / ".config" / APP_DIR_NAME


def get_token_store_path() -> Path:
    env_path = os.getenv("ONENOTE_TOKEN_STORE_PATH")
    if env_path:
        return Path(env_path)
    return get_default_store_dir() / "tokens.json"


def load_tokens() -> Optional[TokenData]:
    """Load tokens from disk. Returns None if missing or malformed."""
    path = get_token_store_path()
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.error(f"[TOKENS] Failed to load token store: {e}")
        return None

    if not isinstance(data, dict) or not isinstance(data.get("accessToken"), str):
        logger.error("[TOKENS] Token store file has invalid structure")
        return None

    return TokenData(
        access_token=data["accessToken"],
        refresh_token=data.get("refreshToken"),
        expires_at=data.get("expiresAt"),
    )


def save_tokens(tokens: TokenData) -> None:
    """Write tokens to disk with owner-only permissions.

    Raises OSError on failure; callers decide whether that is fatal.
    """
    path = get_token_store_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(tokens.to_dict(), f, indent=2)
        # Owner read/write only
        os.chmod(path, 0o600)
    except OSError as e:
        logger.error(f"[TOKENS] Failed to save token store: {e}")
        raise


def clear_tokens() -> None:
    path = get_token_store_path()
    if path.exists():
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"[TOKENS] Failed to clear token store: {e}")
