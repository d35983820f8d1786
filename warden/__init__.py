"""
Warden Authentication Control Plane

Credential-ceremony and token-lifecycle engine:
- Passkey (WebAuthn) registration and authentication ceremonies
- OAuth 2.0 / OIDC authorization code flow with PKCE and state
- One-time authorization codes
- RS256 signing keys with rotation and JWKS publication
- Fixed-window rate limiting
- Bearer token and session cookie request authentication
"""

from warden.core.config import WardenConfig, get_config, set_config
from warden.errors import (
    AuthFailure,
    BackendError,
    FailureKind,
    KeyRotationError,
    OAuthError,
    OAuthErrorCode,
    UpstreamUnavailable,
    WardenError,
)
from warden.manager import WardenManager, get_manager, set_manager

__version__ = "0.1.0"

__all__ = [
    "AuthFailure",
    "BackendError",
    "FailureKind",
    "KeyRotationError",
    "OAuthError",
    "OAuthErrorCode",
    "UpstreamUnavailable",
    "WardenConfig",
    "WardenError",
    "WardenManager",
    "get_config",
    "get_manager",
    "set_config",
    "set_manager",
]
