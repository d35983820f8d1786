"""Client for the persistence service."""

from warden.backend.client import BackendClient
from warden.backend.models import (
    ApiUser,
    CreatedSession,
    CredentialRecord,
    SessionInfo,
    SessionValidation,
    TokenGrant,
    TokenInfo,
    TokenValidation,
)

__all__ = [
    "ApiUser",
    "BackendClient",
    "CreatedSession",
    "CredentialRecord",
    "SessionInfo",
    "SessionValidation",
    "TokenGrant",
    "TokenInfo",
    "TokenValidation",
]
