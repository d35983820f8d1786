"""
Warden Error Taxonomy

Exceptions are reserved for collaborator failures (persistence service,
key/value store). Protocol failures (expired state, replay, mismatch) are
returned as AuthFailure results so the HTTP layer can pick between a JSON
body and a login redirect.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class WardenError(Exception):
    """Base class for Warden exceptions."""


class UpstreamUnavailable(WardenError):
    """The persistence service or key/value store could not be reached."""

    def __init__(self, service: str, message: str = "") -> None:
        self.service = service
        super().__init__(f"{service} unavailable: {message}" if message else f"{service} unavailable")


class BackendError(WardenError):
    """The persistence service answered with a non-success status."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"Backend error {status}: {message}")


class KeyRotationError(WardenError):
    """A signing key rotation could not be persisted."""


class FailureKind(str, Enum):
    """Classes of protocol failure."""
    EXPIRED_STATE = "expired_state"
    REPLAY_DETECTED = "replay_detected"
    MISMATCH = "mismatch"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    VERIFICATION_FAILED = "verification_failed"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"


# Failures a security reviewer wants to see separately from user error
SECURITY_FAILURES = frozenset({FailureKind.MISMATCH, FailureKind.REPLAY_DETECTED})


@dataclass(frozen=True)
class AuthFailure:
    """A structured, presentable authentication failure."""
    kind: FailureKind
    code: str
    description: str

    @property
    def is_security_event(self) -> bool:
        return self.kind in SECURITY_FAILURES

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "error_description": self.description}


# =============================================================================
# OAuth 2.0 error codes (RFC 6749 section 5.2 and 4.1.2.1)
# =============================================================================


class OAuthErrorCode(str, Enum):
    """Standard OAuth error codes."""
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    ACCESS_DENIED = "access_denied"
    # RFC 7591 dynamic client registration
    INVALID_REDIRECT_URI = "invalid_redirect_uri"
    INVALID_CLIENT_METADATA = "invalid_client_metadata"


OAUTH_ERROR_STATUS: Dict[OAuthErrorCode, int] = {
    OAuthErrorCode.INVALID_REQUEST: 400,
    OAuthErrorCode.INVALID_CLIENT: 401,
    OAuthErrorCode.INVALID_GRANT: 400,
    OAuthErrorCode.UNAUTHORIZED_CLIENT: 400,
    OAuthErrorCode.UNSUPPORTED_GRANT_TYPE: 400,
    OAuthErrorCode.INVALID_SCOPE: 400,
    OAuthErrorCode.SERVER_ERROR: 500,
    OAuthErrorCode.TEMPORARILY_UNAVAILABLE: 503,
    OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE: 400,
    OAuthErrorCode.ACCESS_DENIED: 403,
    OAuthErrorCode.INVALID_REDIRECT_URI: 400,
    OAuthErrorCode.INVALID_CLIENT_METADATA: 400,
}


@dataclass(frozen=True)
class OAuthError:
    """An OAuth protocol error ready for a JSON response or redirect."""
    code: OAuthErrorCode
    description: str = ""
    state: Optional[str] = None

    @property
    def status_code(self) -> int:
        return OAUTH_ERROR_STATUS.get(self.code, 400)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code.value}
        if self.description:
            body["error_description"] = self.description
        if self.state:
            body["state"] = self.state
        return body
