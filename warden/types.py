"""
Warden Shared Types

Ceremony and grant state that is written to the key/value store and read
back on consumption. Timestamps are UNIX epoch seconds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ChallengeKind(str, Enum):
    """WebAuthn ceremony type a challenge was issued for."""
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class Challenge:
    """Single-use WebAuthn ceremony challenge."""
    id: str
    value: str  # base64url of the raw challenge bytes
    kind: ChallengeKind
    created_at: float
    expires_at: float
    bound_user_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Challenge":
        return cls(
            id=data["id"],
            value=data["value"],
            kind=ChallengeKind(data["kind"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            bound_user_id=data.get("bound_user_id"),
        )


@dataclass(frozen=True)
class PKCEPair:
    """Proof key for code exchange (RFC 7636)."""
    code_verifier: str
    code_challenge: str
    method: str = "S256"


@dataclass(frozen=True)
class AuthorizationGrant:
    """What a user approved for a client at the authorization endpoint."""
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationCode:
    """A stored one-time authorization code and its grant."""
    code: str
    grant: AuthorizationGrant
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "grant": asdict(self.grant),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationCode":
        return cls(
            code=data["code"],
            grant=AuthorizationGrant(**data["grant"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )
