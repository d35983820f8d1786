"""Request authentication."""

from warden.resolver.resolver import (
    AuthenticationResult,
    AuthMethod,
    AuthOutcome,
    AuthResolver,
    ClientKind,
    SessionAuthenticated,
    TokenAuthenticated,
    Unauthenticated,
    classify_request,
    extract_bearer_token,
    needs_refresh,
)
from warden.resolver.session import (
    SESSION_COOKIE_NAME,
    delete_session_cookie,
    generate_session_token,
    session_id_from_token,
    set_session_cookie,
)

__all__ = [
    "SESSION_COOKIE_NAME",
    "AuthenticationResult",
    "AuthMethod",
    "AuthOutcome",
    "AuthResolver",
    "ClientKind",
    "SessionAuthenticated",
    "TokenAuthenticated",
    "Unauthenticated",
    "classify_request",
    "delete_session_cookie",
    "extract_bearer_token",
    "generate_session_token",
    "needs_refresh",
    "session_id_from_token",
    "set_session_cookie",
]
