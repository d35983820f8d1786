"""
Secret and key utilities.

Random token generation, SHA-256 hashing, base64url codecs and
constant-time comparison shared by every other component.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Union

BytesOrStr = Union[bytes, str]


def _to_bytes(value: BytesOrStr) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def b64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """Decode base64url, tolerating missing padding."""
    padding = -len(data) % 4
    return base64.urlsafe_b64decode(data + "=" * padding)


def random_bytes(length: int = 32) -> bytes:
    return secrets.token_bytes(length)


def random_token(length: int = 32) -> str:
    """Generate a base64url token from `length` random bytes."""
    return b64url_encode(secrets.token_bytes(length))


def random_id() -> str:
    """Generate an opaque identifier for stored records."""
    return secrets.token_hex(16)


def sha256_digest(value: BytesOrStr) -> bytes:
    return hashlib.sha256(_to_bytes(value)).digest()


def sha256_hex(value: BytesOrStr) -> str:
    return hashlib.sha256(_to_bytes(value)).hexdigest()


def sha256_b64url(value: BytesOrStr) -> str:
    """base64url(SHA-256(value)), the PKCE S256 transform."""
    return b64url_encode(sha256_digest(value))


def constant_time_equals(a: BytesOrStr, b: BytesOrStr) -> bool:
    """
    Compare two secrets without leaking the position of the first mismatch.

    Lengths are compared first (a length difference is not secret for the
    values we compare); the content comparison always scans the full input.
    """
    a_bytes = _to_bytes(a)
    b_bytes = _to_bytes(b)
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)
