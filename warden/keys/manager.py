"""
Warden Signing Key Manager

Generates, persists and rotates the RSA keypair used to sign tokens, and
publishes the matching JWKS.

- The keyset document is stored in the shared key/value store with the
  private key as a JWK, so it survives restarts and is shared by instances.
- Key ids are RFC 7638 thumbprints of the public key.
- The previous public key stays in the published set for a grace window so
  tokens signed just before a rotation still verify.
- The current keyset is swapped as a single reference; readers never see a
  partially built keyset.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import InvalidKeyError

from warden.core.config import KeySettings
from warden.crypto.utils import b64url_encode, sha256_digest
from warden.errors import KeyRotationError, UpstreamUnavailable
from warden.storage.kv import KeyValueStore

logger = structlog.get_logger(__name__)


SECONDS_PER_DAY = 86400


def jwk_thumbprint(public_jwk: Dict[str, Any]) -> str:
    """RFC 7638 SHA-256 thumbprint of an RSA public JWK."""
    canonical = json.dumps(
        {"e": public_jwk["e"], "kty": "RSA", "n": public_jwk["n"]},
        separators=(",", ":"),
        sort_keys=True,
    )
    return b64url_encode(sha256_digest(canonical))


def public_jwk_for(private_key: rsa.RSAPrivateKey, algorithm: str = "RS256") -> Dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    public = {"kty": "RSA", "n": jwk["n"], "e": jwk["e"]}
    public["kid"] = jwk_thumbprint(public)
    public["use"] = "sig"
    public["alg"] = algorithm
    return public


@dataclass(frozen=True)
class KeySet:
    """The active signing key and the public keys published with it."""
    kid: str
    private_key: rsa.RSAPrivateKey
    public_jwk: Dict[str, Any]
    created_at: float
    expires_at: float
    retired_keys: Tuple[Dict[str, Any], ...] = ()

    @property
    def keys(self) -> List[Dict[str, Any]]:
        return [self.public_jwk]

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def published(self) -> List[Dict[str, Any]]:
        return [self.public_jwk, *self.retired_keys]

    def to_document(self) -> Dict[str, Any]:
        return {
            "keys": self.keys,
            "private_key_jwk": json.loads(RSAAlgorithm.to_jwk(self.private_key)),
            "retired_keys": list(self.retired_keys),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


class KeyManager:
    """
    Maintains the current signing keyset.

    `get_current()` serves the cached keyset while it is valid and re-reads
    the shared store every `cache_seconds` so rotations made by another
    instance are picked up.
    """

    def __init__(
        self,
        store: KeyValueStore,
        rotation_interval_days: int = 30,
        key_size: int = 2048,
        algorithm: str = "RS256",
        storage_key: str = "oidc:jwks:current",
        grace_keys: int = 1,
        cache_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.rotation_interval = rotation_interval_days * SECONDS_PER_DAY
        self.key_size = key_size
        self.algorithm = algorithm
        self.storage_key = storage_key
        self.grace_keys = grace_keys
        self.cache_seconds = cache_seconds
        self._clock = clock

        self._current: Optional[KeySet] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="key_manager")

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: KeySettings) -> "KeyManager":
        return cls(
            store,
            rotation_interval_days=settings.rotation_interval_days,
            key_size=settings.rsa_key_size,
            algorithm=settings.algorithm,
            storage_key=settings.storage_key,
            grace_keys=settings.grace_keys,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_current(self) -> KeySet:
        """Return the active keyset, generating one if absent or expired."""
        current = self._current
        if current is not None and self._is_fresh(current):
            return current

        async with self._lock:
            current = self._current
            if current is not None and self._is_fresh(current):
                return current

            now = self._clock()
            try:
                stored = await self._load()
            except UpstreamUnavailable as e:
                self._logger.error("Key store unavailable", error=str(e))
                if current is not None and not current.is_expired(now):
                    self._loaded_at = now
                    return current
                stored = None

            if stored is not None and not stored.is_expired(now):
                keyset = stored
            else:
                keyset = await self._generate(previous=stored or current)
                try:
                    await self._persist(keyset)
                except UpstreamUnavailable as e:
                    self._logger.error(
                        "Key store unavailable; using process-local signing key",
                        kid=keyset.kid,
                        error=str(e),
                    )

            self._current = keyset
            self._loaded_at = now
            return keyset

    async def rotate(self) -> KeySet:
        """Generate a new keyset and make it current immediately."""
        async with self._lock:
            try:
                previous = self._current or await self._load()
                keyset = await self._generate(previous=previous)
                await self._persist(keyset)
            except UpstreamUnavailable as e:
                raise KeyRotationError(f"Rotated keyset could not be persisted: {e}") from e

            self._current = keyset
            self._loaded_at = self._clock()

        self._logger.info(
            "Signing key rotated",
            kid=keyset.kid,
            previous_kid=previous.kid if previous else None,
        )
        return keyset

    async def public_jwks(self) -> Dict[str, Any]:
        """The JWKS document for token verifiers."""
        keyset = await self.get_current()
        return {"keys": keyset.published()}

    @staticmethod
    def validate_keypair(keyset: KeySet) -> bool:
        """Check that the private key signs what the published key verifies."""
        message = b"warden-keypair-check"
        signature = keyset.private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
        public_key = RSAAlgorithm.from_jwk(json.dumps(keyset.public_jwk))
        try:
            public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _is_fresh(self, keyset: KeySet) -> bool:
        now = self._clock()
        return not keyset.is_expired(now) and now - self._loaded_at < self.cache_seconds

    async def _generate(self, previous: Optional[KeySet] = None) -> KeySet:
        private_key = await asyncio.to_thread(
            rsa.generate_private_key,
            public_exponent=65537,
            key_size=self.key_size,
        )
        public_jwk = public_jwk_for(private_key, self.algorithm)

        retired: List[Dict[str, Any]] = []
        if previous is not None and self.grace_keys > 0:
            retired = [previous.public_jwk, *previous.retired_keys][: self.grace_keys]

        now = self._clock()
        keyset = KeySet(
            kid=public_jwk["kid"],
            private_key=private_key,
            public_jwk=public_jwk,
            created_at=now,
            expires_at=now + self.rotation_interval,
            retired_keys=tuple(retired),
        )
        self._logger.info("Signing keyset generated", kid=keyset.kid, retired=len(retired))
        return keyset

    async def _persist(self, keyset: KeySet) -> None:
        # Kept past expiry so the retired key can still be published
        ttl = int(keyset.expires_at - keyset.created_at) + self.rotation_interval
        await self._store.set(self.storage_key, json.dumps(keyset.to_document()), ex=ttl)

    async def _load(self) -> Optional[KeySet]:
        """Read the persisted keyset; None if absent or not importable."""
        raw = await self._store.get(self.storage_key)
        if raw is None:
            return None

        try:
            document = json.loads(raw)
            private_key = RSAAlgorithm.from_jwk(document["private_key_jwk"])
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise InvalidKeyError("Stored key is not an RSA private key")
            public_jwk = public_jwk_for(private_key, self.algorithm)
            return KeySet(
                kid=public_jwk["kid"],
                private_key=private_key,
                public_jwk=public_jwk,
                created_at=float(document["created_at"]),
                expires_at=float(document["expires_at"]),
                retired_keys=tuple(document.get("retired_keys", [])),
            )
        except (ValueError, KeyError, TypeError, InvalidKeyError) as e:
            self._logger.warning("Stored keyset could not be imported; regenerating", error=str(e))
            return None
