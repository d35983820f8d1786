"""Secret and key utilities."""

from warden.crypto.utils import (
    b64url_decode,
    b64url_encode,
    constant_time_equals,
    random_bytes,
    random_id,
    random_token,
    sha256_b64url,
    sha256_digest,
    sha256_hex,
)

__all__ = [
    "b64url_decode",
    "b64url_encode",
    "constant_time_equals",
    "random_bytes",
    "random_id",
    "random_token",
    "sha256_b64url",
    "sha256_digest",
    "sha256_hex",
]
