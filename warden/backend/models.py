"""
Persistence service wire models.

The backend API owns users, passkey credentials, sessions and opaque access
tokens. These models mirror its JSON payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiUser(BaseModel):
    """A user as returned by the backend."""
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: Optional[datetime] = None
    auth_method: Optional[str] = None
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    created_at: Optional[datetime] = None


class CredentialRecord(BaseModel):
    """A stored passkey credential."""
    model_config = ConfigDict(extra="ignore")

    id: str  # base64url credential id
    user_id: str
    public_key: str  # base64url COSE public key
    counter: int = 0
    transports: List[str] = Field(default_factory=list)
    aaguid: Optional[str] = None
    credential_type: str = "public-key"
    user_verified: bool = False
    credential_device_type: Optional[str] = None
    credential_backed_up: bool = False
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None


class SessionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    expires_at: datetime


class SessionValidation(BaseModel):
    """Result of validating a session cookie token."""
    model_config = ConfigDict(extra="ignore")

    valid: bool = False
    user: Optional[ApiUser] = None
    session: Optional[SessionInfo] = None


class CreatedSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str
    session: SessionInfo


class TokenInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    expires_at: datetime


class TokenValidation(BaseModel):
    """Result of validating an opaque bearer token."""
    model_config = ConfigDict(extra="ignore")

    valid: bool = False
    user: Optional[ApiUser] = None
    token: Optional[TokenInfo] = None


class TokenGrant(BaseModel):
    """Opaque tokens minted by the backend for a client."""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    token_type: str = "Bearer"
