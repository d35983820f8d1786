"""
Warden Security Middleware

FastAPI/Starlette integration for request authentication, rate limiting,
security headers and error presentation.

Programmatic callers receive JSON errors with a stable `error` code; browser
page loads are redirected to the login page with the code in the query.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from warden.core.config import RateLimitSettings, SessionSettings
from warden.errors import AuthFailure, FailureKind, OAuthError
from warden.ratelimit.limiter import FixedWindowRateLimiter, rate_limit_rule_for
from warden.resolver.resolver import (
    AuthenticationResult,
    AuthOutcome,
    AuthResolver,
    ClientKind,
    SessionAuthenticated,
    TokenAuthenticated,
    Unauthenticated,
    classify_request,
)
from warden.resolver.session import delete_session_cookie

logger = structlog.get_logger(__name__)


FAILURE_STATUS: Dict[FailureKind, int] = {
    FailureKind.EXPIRED_STATE: 400,
    FailureKind.REPLAY_DETECTED: 401,
    FailureKind.MISMATCH: 400,
    FailureKind.UPSTREAM_UNAVAILABLE: 503,
    FailureKind.VERIFICATION_FAILED: 401,
    FailureKind.NOT_FOUND: 404,
    FailureKind.INVALID_REQUEST: 400,
}

DEFAULT_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'; base-uri 'self'",
}

REFRESH_HEADER = "X-Auth-Refresh-Needed"


class AuthenticationRequired(Exception):
    """Raised by `require_auth`; carries the prepared 401 or redirect."""

    def __init__(self, response: Response):
        self.response = response
        super().__init__("Authentication required")


# =============================================================================
# Request Helpers
# =============================================================================


def client_ip(request: Request) -> str:
    """Client address, preferring proxy-supplied headers."""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"


def client_identifier(request: Request) -> str:
    return f"{request.url.path}:{client_ip(request)}"


# =============================================================================
# Error Presentation
# =============================================================================


def error_response(
    request: Request,
    code: str,
    description: str,
    status_code: int,
    settings: Optional[SessionSettings] = None,
) -> Response:
    """JSON error for API callers, login redirect for browsers."""
    settings = settings or SessionSettings()
    if classify_request(request, settings.api_path_prefixes) == ClientKind.API:
        return JSONResponse(
            {"error": code, "error_description": description},
            status_code=status_code,
        )
    return RedirectResponse(
        f"{settings.login_path}?{urlencode({'error': code})}",
        status_code=302,
    )


def failure_response(
    request: Request,
    failure: AuthFailure,
    settings: Optional[SessionSettings] = None,
) -> Response:
    return error_response(
        request,
        failure.code,
        failure.description,
        FAILURE_STATUS.get(failure.kind, 400),
        settings,
    )


def oauth_error_response(error: OAuthError) -> JSONResponse:
    return JSONResponse(
        error.to_dict(),
        status_code=error.status_code,
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


def unauthenticated_response(
    request: Request,
    outcome: Unauthenticated,
    settings: Optional[SessionSettings] = None,
) -> Response:
    settings = settings or SessionSettings()
    response = error_response(
        request,
        "unauthorized",
        "Authentication required",
        401,
        settings,
    )
    if isinstance(response, JSONResponse):
        response.headers["WWW-Authenticate"] = "Bearer"
    if outcome.clear_session_cookie:
        delete_session_cookie(response, settings.cookie_name)
    return response


# =============================================================================
# Middleware
# =============================================================================


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """
    Resolves the caller's identity for every request.

    The outcome is stored on `request.state.auth_outcome`; route dependencies
    decide whether authentication is required. Invalid session cookies are
    cleared on the response.
    """

    def __init__(
        self,
        app,
        resolver: AuthResolver,
        settings: Optional[SessionSettings] = None,
        exclude_paths: Optional[List[str]] = None,
    ):
        super().__init__(app)
        self.resolver = resolver
        self.settings = settings or SessionSettings()
        self.exclude_paths = exclude_paths or ["/health", "/oidc/jwks", "/.well-known/"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.session_settings = self.settings

        if self._is_excluded(request.url.path):
            request.state.auth_outcome = Unauthenticated(reason="excluded")
            return await call_next(request)

        outcome = await self.resolver.resolve(request)
        request.state.auth_outcome = outcome

        response = await call_next(request)

        if isinstance(outcome, Unauthenticated) and outcome.clear_session_cookie:
            delete_session_cookie(response, self.settings.cookie_name)
        elif isinstance(outcome, (TokenAuthenticated, SessionAuthenticated)):
            if outcome.result.needs_refresh:
                response.headers[REFRESH_HEADER] = "true"

        return response

    def _is_excluded(self, path: str) -> bool:
        return any(path.startswith(excluded) for excluded in self.exclude_paths)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window limits per endpoint and client address."""

    def __init__(
        self,
        app,
        limiter: FixedWindowRateLimiter,
        settings: Optional[RateLimitSettings] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.settings = settings or RateLimitSettings()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.settings.enabled:
            return await call_next(request)

        rule = rate_limit_rule_for(request.url.path, self.settings)
        result = await self.limiter.check(
            client_identifier(request),
            rule.window_ms,
            rule.max_requests,
        )

        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(math.ceil(result.reset_time / 1000)),
        }

        if not result.allowed:
            retry_after = result.retry_after or 1
            return JSONResponse(
                {
                    "error": "rate_limit_exceeded",
                    "error_description": "Too many requests. Please try again later.",
                    "retry_after": retry_after,
                },
                status_code=429,
                headers={"Retry-After": str(retry_after), **headers},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers to every response."""

    def __init__(self, app, headers: Optional[Dict[str, str]] = None):
        super().__init__(app)
        self.headers = headers or dict(DEFAULT_SECURITY_HEADERS)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        return response


# =============================================================================
# Dependency Injection Helpers
# =============================================================================


def get_auth_outcome(request: Request) -> AuthOutcome:
    return getattr(request.state, "auth_outcome", None) or Unauthenticated(reason="missing_credentials")


async def optional_auth(request: Request) -> Optional[AuthenticationResult]:
    """The caller's identity, or None."""
    outcome = get_auth_outcome(request)
    if isinstance(outcome, (TokenAuthenticated, SessionAuthenticated)):
        return outcome.result
    return None


async def require_auth(request: Request) -> AuthenticationResult:
    """Require an authenticated caller."""
    outcome = get_auth_outcome(request)
    if isinstance(outcome, (TokenAuthenticated, SessionAuthenticated)):
        return outcome.result

    settings = getattr(request.state, "session_settings", None)
    logger.debug("Unauthenticated request", path=request.url.path, reason=outcome.reason)
    raise AuthenticationRequired(unauthenticated_response(request, outcome, settings))


def install_error_handlers(app: FastAPI) -> None:
    """Register handlers that turn Warden exceptions into responses."""

    async def handle_authentication_required(request: Request, exc: AuthenticationRequired) -> Response:
        return exc.response

    app.add_exception_handler(AuthenticationRequired, handle_authentication_required)
