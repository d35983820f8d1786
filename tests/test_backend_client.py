"""
Persistence Service Client Tests

Runs the client against an in-process aiohttp server that mimics the
backend API.
"""

from datetime import datetime, timezone

import pytest
from aiohttp import test_utils, web

from warden.backend.client import BackendClient
from warden.backend.models import CredentialRecord
from warden.errors import BackendError, UpstreamUnavailable

API_KEY = "internal-key"

USER = {
    "id": "user_123",
    "email": "ada@example.com",
    "name": "Ada Lovelace",
    "unexpected_field": "ignored",
}

CREDENTIAL = {
    "id": "Y3JlZGVudGlhbC0x",
    "user_id": "user_123",
    "public_key": "cHVibGlj",
    "counter": 4,
    "transports": ["internal"],
}


def build_app(received):
    """Backend API double recording the requests it receives."""

    def authorized(request):
        return request.headers.get("Authorization") == f"Bearer {API_KEY}"

    async def get_user(request):
        if not authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)
        if request.match_info["user_id"] != USER["id"]:
            return web.json_response({"error": "User not found"}, status=404)
        return web.json_response({"success": True, "user": USER})

    async def create_user(request):
        return web.json_response({"error": "Email already registered with another provider"}, status=409)

    async def list_credentials(request):
        return web.json_response({"credentials": [CREDENTIAL]})

    async def get_credential(request):
        if request.match_info["credential_id"] != CREDENTIAL["id"]:
            return web.json_response({"error": "Credential not found"}, status=404)
        return web.json_response({"credential": CREDENTIAL})

    async def store_credential(request):
        received["store"] = await request.json()
        return web.json_response({"success": True}, status=201)

    async def update_counter(request):
        received["counter"] = await request.json()
        return web.json_response({"success": True})

    async def validate_session(request):
        body = await request.json()
        if body["session_token"] == "malformed":
            return web.json_response(
                {
                    "valid": True,
                    "user": {"id": "user_123"},
                    "session": {"id": "sess_1", "user_id": "user_123", "expires_at": "soon"},
                }
            )
        if body["session_token"] != "good":
            return web.json_response({"error": "Invalid session"}, status=401)
        return web.json_response(
            {
                "valid": True,
                "user": USER,
                "session": {"id": "sess_1", "user_id": "user_123", "expires_at": "2030-01-01T00:00:00Z"},
            }
        )

    async def validate_token(request):
        return web.json_response({"error": "Invalid token"}, status=404)

    async def create_tokens(request):
        received["tokens"] = await request.json()
        return web.json_response({"access_token": "opaque", "refresh_token": "r", "expires_in": 3600})

    async def broken(request):
        return web.Response(status=500, text="Internal Server Error")

    app = web.Application()
    app.router.add_get("/api/users/{user_id}", get_user)
    app.router.add_post("/api/internal/users", create_user)
    app.router.add_get("/api/webauthn/users/{user_id}/credentials", list_credentials)
    app.router.add_get("/api/webauthn/credentials/{credential_id}", get_credential)
    app.router.add_post("/api/webauthn/credentials", store_credential)
    app.router.add_patch("/api/webauthn/credentials/{credential_id}/counter", update_counter)
    app.router.add_post("/api/internal/sessions/validate", validate_session)
    app.router.add_post("/api/internal/tokens/validate", validate_token)
    app.router.add_post("/api/internal/tokens", create_tokens)
    app.router.add_post("/api/internal/sessions", broken)
    return app


@pytest.fixture
def received():
    return {}


@pytest.fixture
async def backend_client(received):
    """Client connected to a running backend double."""
    server = test_utils.TestServer(build_app(received))
    await server.start_server()
    client = BackendClient(str(server.make_url("")), api_key=API_KEY, timeout=5)
    await client.initialize()
    yield client
    await client.shutdown()
    await server.close()


class TestBackendClient:
    """Tests for the persistence service client."""

    @pytest.mark.asyncio
    async def test_get_user(self, backend_client):
        """Test users are parsed and unknown fields ignored."""
        user = await backend_client.get_user_by_id("user_123")

        assert user.id == "user_123"
        assert user.email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_missing_user(self, backend_client):
        """Test a 404 lookup returns None."""
        assert await backend_client.get_user_by_id("ghost") is None

    @pytest.mark.asyncio
    async def test_api_key_required(self, received):
        """Test requests carry the internal API key."""
        server = test_utils.TestServer(build_app(received))
        await server.start_server()
        client = BackendClient(str(server.make_url("")), api_key="wrong")
        try:
            with pytest.raises(BackendError) as exc_info:
                await client.get_user_by_id("user_123")
        finally:
            await client.shutdown()
            await server.close()

        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_error_message(self, backend_client):
        """Test backend error messages are surfaced."""
        with pytest.raises(BackendError) as exc_info:
            await backend_client.create_user("ada@example.com")

        assert exc_info.value.status == 409
        assert exc_info.value.message == "Email already registered with another provider"

    @pytest.mark.asyncio
    async def test_non_json_error(self, backend_client):
        """Test plain-text error bodies still raise BackendError."""
        with pytest.raises(BackendError) as exc_info:
            await backend_client.create_session("user_123")

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_credentials(self, backend_client):
        """Test credential listing and lookup."""
        credentials = await backend_client.list_credentials("user_123")
        assert [c.id for c in credentials] == [CREDENTIAL["id"]]
        assert credentials[0].counter == 4

        assert (await backend_client.get_credential(CREDENTIAL["id"])).user_id == "user_123"
        assert await backend_client.get_credential("unknown") is None

    @pytest.mark.asyncio
    async def test_store_credential(self, backend_client, received):
        """Test credentials are posted as JSON."""
        await backend_client.store_credential(CredentialRecord(**CREDENTIAL))

        assert received["store"]["id"] == CREDENTIAL["id"]
        assert received["store"]["counter"] == 4

    @pytest.mark.asyncio
    async def test_update_counter(self, backend_client, received):
        """Test counter updates send the new value and last-use time."""
        when = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

        await backend_client.update_credential_counter(CREDENTIAL["id"], 5, when)

        assert received["counter"] == {"counter": 5, "last_used": when.isoformat()}

    @pytest.mark.asyncio
    async def test_validate_session(self, backend_client):
        """Test session validation results."""
        valid = await backend_client.validate_session("good")
        assert valid.valid
        assert valid.user.id == "user_123"
        assert valid.session.expires_at.year == 2030

        invalid = await backend_client.validate_session("bad")
        assert not invalid.valid

    @pytest.mark.asyncio
    async def test_validate_token_not_found(self, backend_client):
        """Test an unknown token is invalid rather than an error."""
        assert not (await backend_client.validate_access_token("tok")).valid

    @pytest.mark.asyncio
    async def test_create_tokens(self, backend_client, received):
        """Test token minting requests."""
        grant = await backend_client.create_tokens("user_123", "warden-ios-app", "openid")

        assert grant.access_token == "opaque"
        assert received["tokens"]["client_id"] == "warden-ios-app"

    @pytest.mark.asyncio
    async def test_unreachable(self):
        """Test connection failures raise UpstreamUnavailable."""
        client = BackendClient("http://127.0.0.1:1", timeout=2)
        try:
            with pytest.raises(UpstreamUnavailable) as exc_info:
                await client.get_user_by_id("user_123")
        finally:
            await client.shutdown()

        assert exc_info.value.service == "backend"

    @pytest.mark.asyncio
    async def test_malformed_response(self, backend_client):
        """Test a response that does not match the expected shape raises BackendError."""
        with pytest.raises(BackendError) as exc_info:
            await backend_client.validate_session("malformed")

        assert exc_info.value.status == 502
        assert "SessionValidation" in exc_info.value.message
