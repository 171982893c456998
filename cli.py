"""CLI entry point for onenote-mcp.

Runs the OneNote MCP server over HTTP (OAuth proxy to Microsoft) or stdio
(single user, reusing tokens cached by a previous HTTP sign-in).
"""
import argparse
import os
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv

from config import DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT, ConfigError, load_server_config
from logging_config import setup_logging
from token_cache import clear_tokens, get_token_store_path, load_tokens

# Load environment: .env in the working directory (local override)
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

VERSION = "1.0.0"
PROG = "onenote-mcp"

HEALTH_TIMEOUT_SECONDS = 3


# ============== Helper Functions ==============

def get_local_server_url() -> str:
    host = os.getenv("MCP_SERVER_HOST", DEFAULT_SERVER_HOST)
    port = os.getenv("MCP_SERVER_PORT", str(DEFAULT_SERVER_PORT))
    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{port}"


def probe_health(base_url: str) -> dict | None:
    """Return the /health payload, or None if the server is not reachable."""
    try:
        response = requests.get(f"{base_url}/health", timeout=HEALTH_TIMEOUT_SECONDS)
    except requests.RequestException:
        return None
    if response.status_code != 200:
        return None
    try:
        return response.json()
    except ValueError:
        return None


# ============== Commands ==============

def cmd_start():
    """Start the MCP server in the foreground."""
    setup_logging()
    transport = os.getenv("MCP_TRANSPORT", "http").lower()

    if transport == "stdio":
        from tools import mcp
        if load_tokens() is None:
            print(
                "[WARNING] No cached Microsoft tokens. Sign in through the HTTP server first.",
                file=sys.stderr,
            )
        mcp.run(transport="stdio")
        return

    if transport != "http":
        print(f"[ERROR] Unknown MCP_TRANSPORT: {transport} (expected 'http' or 'stdio')", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_server_config()
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    if config is None:
        print(
            "[ERROR] ONENOTE_OAUTH_CLIENT_ID and ONENOTE_OAUTH_CLIENT_SECRET must be set "
            "to run the HTTP server.",
            file=sys.stderr,
        )
        sys.exit(1)

    from main import run_server

    print("\n" + "=" * 60, file=sys.stderr)
    print("  OneNote MCP Server - Started", file=sys.stderr)
    print("=" * 60, file=sys.stderr)
    print(f"  MCP endpoint:  {config.issuer_url}/mcp", file=sys.stderr)
    print(f"  Callback URL:  {config.microsoft_redirect_uri}", file=sys.stderr)
    print(f"  Tenant:        {config.tenant}", file=sys.stderr)
    print("=" * 60 + "\n", file=sys.stderr)

    run_server(config)


def cmd_status():
    """Show current status."""
    base_url = get_local_server_url()

    print("\n" + "=" * 50)
    print("  OneNote MCP Server Status")
    print("=" * 50)

    print("\n[Server]")
    health = probe_health(base_url)
    if health:
        print(f"  Status:   Running at {base_url}")
        print(f"  Sessions: {health.get('sessions', 0)}")
    else:
        print(f"  Status:   Not running at {base_url}")

    print("\n[Tokens]")
    path = get_token_store_path()
    print(f"  File:     {path}")
    tokens = load_tokens()
    if tokens:
        print("  Status:   Cached")
        print(f"  Expires:  {tokens.expires_at or 'unknown'}")
        print(f"  Refresh:  {'yes' if tokens.refresh_token else 'no'}")
    else:
        print("  Status:   Not cached")

    print("\n" + "=" * 50 + "\n")


def cmd_logout():
    """Clear cached Microsoft tokens."""
    path = get_token_store_path()
    if not path.exists():
        print("No cached tokens.")
        return
    clear_tokens()
    print(f"Tokens removed: {path}")


def cmd_version():
    """Show version information."""
    print(f"{PROG} v{VERSION}")


def cmd_help():
    """Show detailed help."""
    print(f"""
OneNote MCP Server - MCP server with OAuth sign-in through Microsoft

USAGE:
    {PROG} <command>

COMMANDS:
    start       Start the MCP server (default)
    status      Show server and token cache status
    logout      Remove cached Microsoft tokens
    version     Show version information
    help        Show this help message

ENVIRONMENT:
    ONENOTE_OAUTH_CLIENT_ID       Microsoft app (client) id (required for HTTP)
    ONENOTE_OAUTH_CLIENT_SECRET   Microsoft client secret (required for HTTP)
    MCP_TRANSPORT                 'http' (default) or 'stdio'
    MCP_SERVER_HOST / MCP_SERVER_PORT
    MCP_ISSUER_URL                Public URL of this server
    ONENOTE_TOKEN_STORE_PATH      Token cache file location
""")


# ============== Main Entry Point ==============

def main():
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="OneNote MCP Server - MCP server with OAuth sign-in through Microsoft",
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="start",
        choices=["start", "status", "logout", "version", "help"],
        help="Command to run (default: start)"
    )
    parser.add_argument("--version", "-v", action="store_true", help=argparse.SUPPRESS)

    args = parser.parse_args()

    if args.version:
        cmd_version()
    elif args.command == "start":
        cmd_start()
    elif args.command == "status":
        cmd_status()
    elif args.command == "logout":
        cmd_logout()
    elif args.command == "version":
        cmd_version()
    elif args.command == "help":
        cmd_help()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
