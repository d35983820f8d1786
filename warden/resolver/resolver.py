"""
Warden Auth Resolver

Determines who is making a request. Credentials are tried in order:

1. `Authorization: Bearer <token>`, validated by the token validator
2. The session cookie, validated by the session validator

The outcome is one of TokenAuthenticated, SessionAuthenticated or
Unauthenticated. The resolver never raises for bad credentials; the HTTP
layer decides between a JSON error and a login redirect.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Union

import structlog
from pydantic import ValidationError
from starlette.requests import Request

from warden.backend.models import (
    ApiUser,
    SessionInfo,
    SessionValidation,
    TokenInfo,
    TokenValidation,
)
from warden.errors import BackendError, UpstreamUnavailable
from warden.resolver.session import SESSION_COOKIE_NAME

logger = structlog.get_logger(__name__)


class AuthMethod(str, Enum):
    """How a request was authenticated."""
    TOKEN = "token"
    SESSION = "session"


class ClientKind(str, Enum):
    """Presentation class of a caller."""
    API = "api"
    BROWSER = "browser"


@dataclass(frozen=True)
class AuthenticationResult:
    """Identity resolved for one request."""
    user: ApiUser
    method: AuthMethod
    expires_at: datetime
    needs_refresh: bool


@dataclass(frozen=True)
class TokenAuthenticated:
    result: AuthenticationResult
    token: str
    token_info: TokenInfo


@dataclass(frozen=True)
class SessionAuthenticated:
    result: AuthenticationResult
    session: SessionInfo


@dataclass(frozen=True)
class Unauthenticated:
    reason: str
    clear_session_cookie: bool = False


AuthOutcome = Union[TokenAuthenticated, SessionAuthenticated, Unauthenticated]


class TokenValidator(Protocol):
    async def validate_access_token(self, token: str) -> TokenValidation:
        ...


class SessionValidator(Protocol):
    async def validate_session(self, session_token: str) -> SessionValidation:
        ...


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the token from an `Authorization: Bearer` header value."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def needs_refresh(expires_at: datetime, threshold: timedelta, now: datetime) -> bool:
    """True when the credential is still valid but expires within `threshold`."""
    remaining = expires_at - now
    return timedelta(0) < remaining < threshold


def classify_request(request: Request, api_path_prefixes: Iterable[str] = ("/api/", "/oidc/")) -> ClientKind:
    """Decide whether a caller is a program (JSON errors) or a browser (redirects)."""
    path = request.url.path
    if any(path.startswith(prefix) for prefix in api_path_prefixes):
        return ClientKind.API

    if request.headers.get("authorization"):
        return ClientKind.API

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        return ClientKind.API

    accept = request.headers.get("accept", "")
    if "application/json" in accept and "text/html" not in accept:
        return ClientKind.API

    return ClientKind.BROWSER


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthResolver:
    """Resolves request identity from a bearer token or session cookie."""

    def __init__(
        self,
        token_validator: TokenValidator,
        session_validator: SessionValidator,
        cookie_name: str = SESSION_COOKIE_NAME,
        refresh_threshold_seconds: int = 900,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.token_validator = token_validator
        self.session_validator = session_validator
        self.cookie_name = cookie_name
        self.refresh_threshold = timedelta(seconds=refresh_threshold_seconds)
        self._clock = clock
        self._logger = logger.bind(component="auth_resolver")

    async def resolve(self, request: Request) -> AuthOutcome:
        token = extract_bearer_token(request.headers.get("authorization"))
        if token:
            outcome = await self.resolve_token(token)
            if outcome is not None:
                return outcome

        session_token = request.cookies.get(self.cookie_name)
        if session_token:
            return await self.resolve_session(session_token)

        return Unauthenticated(reason="invalid_token" if token else "missing_credentials")

    async def resolve_token(self, token: str) -> Optional[TokenAuthenticated]:
        """Validate a bearer token; None means fall through to the session."""
        try:
            validation = await self.token_validator.validate_access_token(token)
        except (UpstreamUnavailable, BackendError, ValidationError) as e:
            self._logger.error("Token validation failed", error=str(e))
            return None

        if not validation.valid or validation.user is None or validation.token is None:
            self._logger.debug("Bearer token rejected")
            return None

        now = self._clock()
        expires_at = _aware(validation.token.expires_at)
        if expires_at <= now:
            self._logger.debug("Bearer token expired", token_id=validation.token.id)
            return None

        result = AuthenticationResult(
            user=validation.user,
            method=AuthMethod.TOKEN,
            expires_at=expires_at,
            needs_refresh=needs_refresh(expires_at, self.refresh_threshold, now),
        )
        return TokenAuthenticated(result=result, token=token, token_info=validation.token)

    async def resolve_session(self, session_token: str) -> Union[SessionAuthenticated, Unauthenticated]:
        """Validate a session cookie; any failure asks for the cookie to be cleared."""
        try:
            validation = await self.session_validator.validate_session(session_token)
        except (UpstreamUnavailable, BackendError, ValidationError) as e:
            self._logger.error("Session validation failed", error=str(e))
            return Unauthenticated(reason="session_validation_error", clear_session_cookie=True)

        if not validation.valid or validation.user is None or validation.session is None:
            return Unauthenticated(reason="invalid_session", clear_session_cookie=True)

        now = self._clock()
        expires_at = _aware(validation.session.expires_at)
        if expires_at <= now:
            return Unauthenticated(reason="session_expired", clear_session_cookie=True)

        result = AuthenticationResult(
            user=validation.user,
            method=AuthMethod.SESSION,
            expires_at=expires_at,
            needs_refresh=needs_refresh(expires_at, self.refresh_threshold, now),
        )
        return SessionAuthenticated(result=result, session=validation.session)
