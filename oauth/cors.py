"""Cross-origin boundary for the OAuth endpoints.

Only the OAuth discovery, authorization, token, registration, revocation and
callback endpoints may be called cross-origin. Matching is boundary-aware:
``/authorize`` covers ``/authorize/...`` but not ``/authorize-admin``.
"""

ALLOWED_CORS_PATHS = (
    "/.well-known/oauth-authorization-server",
    "/.well-known/oauth-protected-resource",
    "/authorize",
    "/token",
    "/register",
    "/revoke",
    "/oauth/callback",
)


def get_allowed_cors_paths() -> list[str]:
    return list(ALLOWED_CORS_PATHS)


def matches_allowed_path_boundary(request_path: str, allowed_path: str) -> bool:
    """True if ``request_path`` equals ``allowed_path`` or is a ``/``-delimited descendant."""
    base = allowed_path.rstrip("/")
    if request_path == base or request_path == allowed_path:
        return True
    return request_path.startswith(base + "/")


def is_cors_allowed_path(path: str) -> bool:
    return any(matches_allowed_path_boundary(path, allowed) for allowed in ALLOWED_CORS_PATHS)
