import base64
import hashlib
import secrets

import pytest

from oauth.pkce import compute_s256_challenge, verify_pkce_challenge


def test_rfc7636_appendix_b_vector():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert compute_s256_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


@pytest.mark.parametrize("length", [43, 64, 128])
def test_s256_accepts_matching_verifier(length):
    verifier = secrets.token_urlsafe(96)[:length]
    challenge = base64.urlsafe_b64encode(
        hashlib.sha256(verifier.encode()).digest()
    ).rstrip(b"=").decode()

    assert verify_pkce_challenge(verifier, challenge, "S256")


def test_s256_rejects_single_character_mutation():
    verifier = secrets.token_urlsafe(48)
    challenge = compute_s256_challenge(verifier)

    for i in range(len(challenge)):
        replacement = "A" if challenge[i] != "A" else "B"
        mutated = challenge[:i] + replacement + challenge[i + 1:]
        assert not verify_pkce_challenge(verifier, mutated, "S256")


def test_s256_rejects_wrong_verifier():
    challenge = compute_s256_challenge("correct-verifier-" + "x" * 30)
    assert not verify_pkce_challenge("wrong-verifier-" + "x" * 32, challenge, "S256")


def test_s256_rejects_truncated_challenge():
    verifier = secrets.token_urlsafe(48)
    assert not verify_pkce_challenge(verifier, compute_s256_challenge(verifier)[:-1], "S256")


def test_plain_method_compares_directly():
    assert verify_pkce_challenge("same-value", "same-value", "plain")
    assert not verify_pkce_challenge("same-value", "other-value", "plain")


def test_unknown_method_never_verifies():
    verifier = secrets.token_urlsafe(48)
    assert not verify_pkce_challenge(verifier, compute_s256_challenge(verifier), "S512")
