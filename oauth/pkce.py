"""PKCE (RFC 7636) challenge verification."""

import base64
import hashlib
import hmac

SUPPORTED_METHODS = ("S256", "plain")


def compute_s256_challenge(code_verifier: str) -> str:
    """Return base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _constant_time_equals(a: str, b: str) -> bool:
    left = a.encode("utf-8")
    right = b.encode("utf-8")
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


def verify_pkce_challenge(code_verifier: str, code_challenge: str, method: str) -> bool:
    """Verify a PKCE code verifier against a stored code challenge.

    For ``S256`` the verifier is hashed and base64url-encoded before the
    comparison; for ``plain`` it is compared directly. Both comparisons are
    constant-time. Unknown methods never verify.
    """
    if method == "plain":
        return _constant_time_equals(code_verifier, code_challenge)
    if method == "S256":
        return _constant_time_equals(compute_s256_challenge(code_verifier), code_challenge)
    return False
