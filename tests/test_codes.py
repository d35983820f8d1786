"""
Warden Authorization Code Tests
"""

import asyncio
import json

import pytest

from warden.oauth.codes import AuthorizationCodeStore
from warden.oauth.pkce import generate_pkce_pair
from warden.types import AuthorizationGrant


REDIRECT_URI = "warden://auth/callback"


@pytest.fixture
def codes(store, clock):
    """Code store on the fake clock."""
    return AuthorizationCodeStore(store, ttl_seconds=600, clock=clock)


@pytest.fixture
def pkce():
    return generate_pkce_pair()


@pytest.fixture
def grant(pkce):
    """A PKCE-protected grant for the native client."""
    return AuthorizationGrant(
        client_id="warden-ios-app",
        user_id="user_123",
        redirect_uri=REDIRECT_URI,
        scope="openid profile",
        code_challenge=pkce.code_challenge,
        code_challenge_method="S256",
        nonce="n-0S6_WzA2Mj",
    )


class TestAuthorizationCodes:
    """Tests for issuing and redeeming authorization codes."""

    @pytest.mark.asyncio
    async def test_redeem(self, codes, grant, pkce):
        """Test a code redeems once with matching parameters."""
        code = await codes.create(grant)

        redeemed = await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI, pkce.code_verifier)

        assert redeemed == grant

    @pytest.mark.asyncio
    async def test_single_use(self, codes, grant, pkce):
        """Test a code cannot be redeemed twice."""
        code = await codes.create(grant)

        assert await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI, pkce.code_verifier)
        assert await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI, pkce.code_verifier) is None

    @pytest.mark.asyncio
    async def test_redirect_mismatch_burns_code(self, codes, grant, pkce):
        """Test a wrong redirect URI fails and the code is gone afterwards."""
        code = await codes.create(grant)

        assert await codes.validate_and_consume(
            code, "warden-ios-app", "warden://evil", pkce.code_verifier
        ) is None
        assert await codes.validate_and_consume(
            code, "warden-ios-app", REDIRECT_URI, pkce.code_verifier
        ) is None

    @pytest.mark.asyncio
    async def test_client_mismatch(self, codes, grant, pkce):
        """Test a code issued to one client is useless to another."""
        code = await codes.create(grant)

        assert await codes.validate_and_consume(code, "other-client", REDIRECT_URI, pkce.code_verifier) is None

    @pytest.mark.asyncio
    async def test_wrong_verifier(self, codes, grant):
        """Test a verifier that does not reproduce the challenge fails."""
        code = await codes.create(grant)
        other = generate_pkce_pair()

        assert await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI, other.code_verifier) is None

    @pytest.mark.asyncio
    async def test_missing_verifier(self, codes, grant):
        """Test a PKCE-bound code needs a verifier."""
        code = await codes.create(grant)

        assert await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_expired(self, codes, grant, pkce, clock):
        """Test codes expire after ten minutes."""
        code = await codes.create(grant)
        clock.advance(601)

        assert await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI, pkce.code_verifier) is None

    @pytest.mark.asyncio
    async def test_code_without_pkce(self, codes):
        """Test a confidential-client grant without PKCE redeems."""
        grant = AuthorizationGrant(
            client_id="web-app",
            user_id="user_123",
            redirect_uri="https://app.example.com/cb",
            scope="openid",
        )
        code = await codes.create(grant)

        assert await codes.validate_and_consume(code, "web-app", "https://app.example.com/cb") == grant

    @pytest.mark.asyncio
    async def test_empty_challenge_still_requires_verifier(self, codes):
        """Test a recorded but empty challenge is enforced, not skipped."""
        grant = AuthorizationGrant(
            client_id="warden-ios-app",
            user_id="user_123",
            redirect_uri=REDIRECT_URI,
            scope="openid",
            code_challenge="",
            code_challenge_method="S256",
        )
        code = await codes.create(grant)

        assert await codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_concurrent_redemption(self, codes, grant, pkce):
        """Test concurrent exchanges of one code yield one success."""
        code = await codes.create(grant)

        results = await asyncio.gather(
            *(
                codes.validate_and_consume(code, "warden-ios-app", REDIRECT_URI, pkce.code_verifier)
                for _ in range(10)
            )
        )

        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_code_is_not_stored_in_clear(self, codes, grant, store):
        """Test the store key is derived from a hash of the code."""
        code = await codes.create(grant)

        keys = list(store._data)
        assert len(keys) == 1
        assert code not in keys[0]
        assert json.loads(store._data[keys[0]])["grant"]["user_id"] == "user_123"

    @pytest.mark.asyncio
    async def test_store_unavailable_fails_closed(self, unavailable_store):
        """Test an unreachable store never redeems a code."""
        codes = AuthorizationCodeStore(unavailable_store)

        assert await codes.validate_and_consume("code", "warden-ios-app", REDIRECT_URI, "v" * 43) is None

    @pytest.mark.asyncio
    async def test_create_purges_expired(self, codes, grant, store, clock):
        """Test issuing a code removes expired codes."""
        await codes.create(grant)
        clock.advance(601)
        await codes.create(grant)

        assert len(store) == 1
