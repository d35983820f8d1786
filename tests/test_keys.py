"""
Warden Signing Key Tests

Tests for keyset generation, persistence, rotation and JWT signing.
"""

import asyncio
import json

import jwt
import pytest

from warden.errors import KeyRotationError, UpstreamUnavailable
from warden.keys.manager import KeyManager, jwk_thumbprint
from warden.keys.signing import TokenSigner
from warden.storage.kv import InMemoryKeyValueStore

THIRTY_DAYS = 30 * 86400
ISSUER = "https://auth.example.com"


@pytest.fixture
def key_manager(store, clock):
    """Key manager on the shared in-memory store."""
    return KeyManager(store, clock=clock)


@pytest.fixture
def signer(key_manager):
    return TokenSigner(key_manager, ISSUER)


class TestKeyManager:
    """Tests for keyset lifecycle."""

    @pytest.mark.asyncio
    async def test_fresh_keyset(self, key_manager, clock):
        """Test the first keyset is valid for thirty days and reused."""
        keyset = await key_manager.get_current()

        assert keyset.expires_at == clock.now + THIRTY_DAYS
        assert keyset.private_key.key_size == 2048
        assert keyset.public_jwk["kty"] == "RSA"
        assert keyset.public_jwk["alg"] == "RS256"
        assert keyset.public_jwk["use"] == "sig"
        assert keyset.kid == jwk_thumbprint(keyset.public_jwk)
        assert "d" not in keyset.public_jwk

        again = await key_manager.get_current()
        assert again.kid == keyset.kid

    @pytest.mark.asyncio
    async def test_keypair_is_consistent(self, key_manager):
        """Test the published key verifies what the private key signs."""
        keyset = await key_manager.get_current()
        assert KeyManager.validate_keypair(keyset)

    @pytest.mark.asyncio
    async def test_survives_restart(self, key_manager, store, clock):
        """Test another instance on the same store loads the same keyset."""
        keyset = await key_manager.get_current()

        other = KeyManager(store, clock=clock)
        loaded = await other.get_current()

        assert loaded.kid == keyset.kid
        assert loaded.expires_at == keyset.expires_at

    @pytest.mark.asyncio
    async def test_corrupt_document_regenerates(self, store, clock):
        """Test an unimportable stored keyset is replaced instead of failing."""
        await store.set("oidc:jwks:current", json.dumps({"keys": [], "private_key_jwk": {"kty": "RSA"}}))
        manager = KeyManager(store, clock=clock)

        keyset = await manager.get_current()

        assert KeyManager.validate_keypair(keyset)
        stored = json.loads(await store.get("oidc:jwks:current"))
        assert stored["keys"][0]["kid"] == keyset.kid

    @pytest.mark.asyncio
    async def test_expired_keyset_rotates(self, key_manager, clock):
        """Test an expired keyset is replaced and kept in the published set."""
        old = await key_manager.get_current()
        clock.advance(THIRTY_DAYS + 1)

        new = await key_manager.get_current()

        assert new.kid != old.kid
        published = [k["kid"] for k in (await key_manager.public_jwks())["keys"]]
        assert published == [new.kid, old.kid]

    @pytest.mark.asyncio
    async def test_rotate(self, key_manager):
        """Test explicit rotation keeps one grace key."""
        first = await key_manager.get_current()
        second = await key_manager.rotate()
        third = await key_manager.rotate()

        assert len({first.kid, second.kid, third.kid}) == 3
        published = [k["kid"] for k in (await key_manager.public_jwks())["keys"]]
        assert published == [third.kid, second.kid]

    @pytest.mark.asyncio
    async def test_rotate_without_store_fails(self, unavailable_store):
        """Test a rotation that cannot be persisted raises."""
        manager = KeyManager(unavailable_store)

        with pytest.raises(KeyRotationError):
            await manager.rotate()

    @pytest.mark.asyncio
    async def test_store_unavailable_uses_local_key(self, unavailable_store):
        """Test signing keeps working when the store is down."""
        manager = KeyManager(unavailable_store)

        keyset = await manager.get_current()

        assert KeyManager.validate_keypair(keyset)

    @pytest.mark.asyncio
    async def test_outage_keeps_current_key(self, store, clock):
        """Test a store outage after startup keeps the cached key."""
        manager = KeyManager(store, cache_seconds=1, clock=clock)
        keyset = await manager.get_current()

        async def down(key):
            raise UpstreamUnavailable("redis")

        store.get = down
        clock.advance(10)

        assert (await manager.get_current()).kid == keyset.kid

    @pytest.mark.asyncio
    async def test_concurrent_first_use(self, store, clock):
        """Test concurrent callers share one generated keyset."""
        manager = KeyManager(store, clock=clock)

        keysets = await asyncio.gather(*(manager.get_current() for _ in range(5)))

        assert len({k.kid for k in keysets}) == 1

    @pytest.mark.asyncio
    async def test_picks_up_rotation_by_other_instance(self, store, clock):
        """Test a cached keyset is refreshed from the shared store."""
        first = KeyManager(store, cache_seconds=60, clock=clock)
        second = KeyManager(store, cache_seconds=60, clock=clock)
        await first.get_current()
        await second.get_current()

        rotated = await second.rotate()
        clock.advance(61)

        assert (await first.get_current()).kid == rotated.kid


class TestTokenSigner:
    """Tests for JWT signing and verification."""

    @pytest.mark.asyncio
    async def test_sign_and_verify(self, signer, key_manager):
        """Test a signed token verifies and names its key."""
        token = await signer.sign({"sub": "user_123", "aud": "warden-ios-app"})

        header = jwt.get_unverified_header(token)
        assert header["alg"] == "RS256"
        assert header["kid"] == (await key_manager.get_current()).kid

        claims, error = await signer.verify(token, audience="warden-ios-app")
        assert error is None
        assert claims["sub"] == "user_123"
        assert claims["iss"] == ISSUER

    @pytest.mark.asyncio
    async def test_verifies_across_rotation(self, signer, key_manager):
        """Test a token signed before rotation verifies during the grace window."""
        token = await signer.sign({"sub": "user_123"})
        await key_manager.rotate()

        claims, error = await signer.verify(token)

        assert error is None
        assert claims["sub"] == "user_123"

    @pytest.mark.asyncio
    async def test_key_outside_grace_window(self, signer, key_manager):
        """Test a token from a key two rotations old is rejected."""
        token = await signer.sign({"sub": "user_123"})
        await key_manager.rotate()
        await key_manager.rotate()

        claims, error = await signer.verify(token)

        assert claims is None
        assert error == "Unknown signing key"

    @pytest.mark.asyncio
    async def test_expired_token(self, signer):
        """Test expired tokens are rejected."""
        token = await signer.sign({"sub": "user_123"}, expires_in=-10)

        claims, error = await signer.verify(token)

        assert claims is None
        assert error == "Token expired"

    @pytest.mark.asyncio
    async def test_wrong_audience(self, signer):
        """Test the audience is enforced when requested."""
        token = await signer.sign({"sub": "user_123", "aud": "warden-ios-app"})

        claims, error = await signer.verify(token, audience="another-app")

        assert claims is None
        assert error.startswith("Invalid token")

    @pytest.mark.asyncio
    async def test_foreign_key(self, signer):
        """Test a token signed by another keyset is rejected."""
        foreign = TokenSigner(KeyManager(InMemoryKeyValueStore()), ISSUER)
        token = await foreign.sign({"sub": "user_123"})

        claims, error = await signer.verify(token)

        assert claims is None
        assert error == "Unknown signing key"

    @pytest.mark.asyncio
    async def test_malformed(self, signer):
        """Test garbage input is reported as malformed."""
        assert await signer.verify("not-a-jwt") == (None, "Malformed token")
