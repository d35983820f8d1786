"""
Shared fixtures for the Warden test suite.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from warden.backend.client import BackendClient
from warden.backend.models import ApiUser, CredentialRecord
from warden.crypto.utils import b64url_encode
from warden.errors import UpstreamUnavailable
from warden.storage.kv import InMemoryKeyValueStore


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class UnavailableStore(InMemoryKeyValueStore):
    """A store whose every operation fails as if Redis were down."""

    async def get(self, key):
        raise UpstreamUnavailable("redis", "connection refused")

    async def set(self, key, value, ex=None):
        raise UpstreamUnavailable("redis", "connection refused")

    async def pop(self, key):
        raise UpstreamUnavailable("redis", "connection refused")

    async def delete(self, key):
        raise UpstreamUnavailable("redis", "connection refused")

    async def incr_with_ttl(self, key, ttl_seconds):
        raise UpstreamUnavailable("redis", "connection refused")


@pytest.fixture
def clock():
    """Fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store driven by the fake clock."""
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def unavailable_store():
    """Store that raises UpstreamUnavailable on every call."""
    return UnavailableStore()


@pytest.fixture
def user():
    """A backend user."""
    return ApiUser(
        id="user_123",
        email="ada@example.com",
        name="Ada Lovelace",
        picture="https://example.com/ada.png",
        email_verified=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def backend(user):
    """Backend client double with async methods."""
    mock = AsyncMock(spec=BackendClient)
    mock.get_user_by_id.return_value = user
    mock.get_user_by_email.return_value = user
    mock.list_credentials.return_value = []
    mock.get_credential.return_value = None
    return mock


@pytest.fixture
def make_credential(user):
    """Factory for stored credential records."""

    def _make(credential_id: Optional[str] = None, user_id: Optional[str] = None, counter: int = 0):
        return CredentialRecord(
            id=credential_id or b64url_encode(b"credential-1"),
            user_id=user_id or user.id,
            public_key=b64url_encode(b"cose-public-key"),
            counter=counter,
            transports=["internal", "hybrid"],
        )

    return _make


@pytest.fixture
def client_data():
    """Factory for base64url clientDataJSON payloads."""

    def _make(origin: str, ceremony: str = "webauthn.create", challenge: str = "unused") -> str:
        payload = {"type": ceremony, "challenge": challenge, "origin": origin}
        return b64url_encode(json.dumps(payload).encode("utf-8"))

    return _make


@pytest.fixture
def utcnow():
    """Current aware UTC time, truncated to seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def later(utcnow):
    """Factory for aware datetimes relative to now."""

    def _later(**kwargs) -> datetime:
        return utcnow + timedelta(**kwargs)

    return _later
