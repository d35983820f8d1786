"""
PKCE and OAuth state tokens.

Proof Key for Code Exchange (RFC 7636, S256 only) and anti-CSRF state
generation and verification for OAuth redirects.
"""

from __future__ import annotations

import re
from typing import Optional

from warden.crypto.utils import constant_time_equals, random_token, sha256_b64url
from warden.types import PKCEPair

PKCE_METHOD_S256 = "S256"

# 32 random bytes encode to a 43 character verifier
VERIFIER_BYTES = 32
STATE_BYTES = 32

_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# base64url SHA-256 digest without padding
_CHALLENGE_PATTERN = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def generate_code_verifier() -> str:
    return random_token(VERIFIER_BYTES)


def code_challenge_for(code_verifier: str) -> str:
    """S256 transform: base64url(SHA-256(verifier))."""
    return sha256_b64url(code_verifier.encode("ascii"))


def generate_pkce_pair() -> PKCEPair:
    verifier = generate_code_verifier()
    return PKCEPair(
        code_verifier=verifier,
        code_challenge=code_challenge_for(verifier),
        method=PKCE_METHOD_S256,
    )


def generate_state() -> str:
    """Opaque state value binding a redirect to the attempt that started it."""
    return random_token(STATE_BYTES)


def is_valid_code_verifier(code_verifier: Optional[str]) -> bool:
    return bool(code_verifier) and _VERIFIER_PATTERN.match(code_verifier) is not None


def is_valid_code_challenge(code_challenge: Optional[str]) -> bool:
    """True for a well-formed S256 challenge."""
    return bool(code_challenge) and _CHALLENGE_PATTERN.match(code_challenge) is not None


def verify_code_challenge(
    code_verifier: Optional[str],
    code_challenge: str,
    method: str = PKCE_METHOD_S256,
) -> bool:
    """Recompute the challenge from the verifier and compare in constant time."""
    if method != PKCE_METHOD_S256:
        return False
    if not is_valid_code_verifier(code_verifier) or not code_challenge:
        return False
    return constant_time_equals(code_challenge_for(code_verifier), code_challenge)


def verify_state(received: Optional[str], stored: Optional[str]) -> bool:
    """Compare a returned state value against the stored one in constant time."""
    if not received or not stored:
        return False
    return constant_time_equals(received, stored)
