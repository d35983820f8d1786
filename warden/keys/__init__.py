"""Token signing keys."""

from warden.keys.manager import KeyManager, KeySet, jwk_thumbprint
from warden.keys.signing import TokenSigner

__all__ = [
    "KeyManager",
    "KeySet",
    "TokenSigner",
    "jwk_thumbprint",
]
