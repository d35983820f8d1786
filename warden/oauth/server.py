"""
Warden Authorization Server

Authorization endpoint and token endpoint logic for first-party clients
(the native apps). Codes are issued through the authorization code store,
access tokens are minted by the backend and ID tokens are signed with the
managed RS256 key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from pydantic import ValidationError

from warden.backend.client import BackendClient
from warden.errors import BackendError, OAuthError, OAuthErrorCode, UpstreamUnavailable
from warden.keys.manager import KeyManager
from warden.keys.signing import TokenSigner
from warden.oauth.clients import ClientRegistration, ClientRegistrationError, ClientRegistry
from warden.oauth.codes import AuthorizationCodeStore
from warden.oauth.pkce import PKCE_METHOD_S256, is_valid_code_challenge
from warden.types import AuthorizationGrant

logger = structlog.get_logger(__name__)


@dataclass
class AuthorizationResponse:
    """
    Outcome of an authorization request.

    Either `redirect_url` is set (success, or an error the client may see)
    or `error` is set for failures that must not redirect, such as an
    unknown client or an unregistered redirect URI.
    """
    redirect_url: Optional[str] = None
    error: Optional[OAuthError] = None


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: str = ""
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.id_token:
            body["id_token"] = self.id_token
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body


def append_query(url: str, params: Mapping[str, Optional[str]]) -> str:
    """Add parameters to a URL, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class AuthorizationServer:
    """OAuth 2.0 / OIDC authorization code flow with PKCE."""

    def __init__(
        self,
        clients: ClientRegistry,
        codes: AuthorizationCodeStore,
        backend: BackendClient,
        key_manager: KeyManager,
        signer: TokenSigner,
        issuer: str,
        supported_scopes: Optional[list[str]] = None,
        id_token_ttl_seconds: int = 3600,
    ):
        self.clients = clients
        self.codes = codes
        self.backend = backend
        self.key_manager = key_manager
        self.signer = signer
        self.issuer = issuer.rstrip("/")
        self.supported_scopes = supported_scopes or ["openid", "profile", "email"]
        self.id_token_ttl_seconds = id_token_ttl_seconds
        self._logger = logger.bind(component="authorization_server")

    # =========================================================================
    # Authorization Endpoint
    # =========================================================================

    async def authorize(self, params: Mapping[str, str], user_id: str) -> AuthorizationResponse:
        """Issue a code for an authenticated user's authorization request."""
        client = self.clients.get(params.get("client_id"))
        if client is None:
            return AuthorizationResponse(
                error=OAuthError(OAuthErrorCode.INVALID_CLIENT, "Unknown client")
            )

        redirect_uri = params.get("redirect_uri") or ""
        if not client.has_redirect_uri(redirect_uri):
            self._logger.warning(
                "Unregistered redirect URI",
                client_id=client.client_id,
                redirect_uri=redirect_uri,
                security_event=True,
            )
            return AuthorizationResponse(
                error=OAuthError(OAuthErrorCode.INVALID_REQUEST, "Unregistered redirect_uri")
            )

        state = params.get("state")

        def redirect_error(code: OAuthErrorCode, description: str) -> AuthorizationResponse:
            error = OAuthError(code, description, state)
            return AuthorizationResponse(redirect_url=append_query(redirect_uri, error.to_dict()))

        if params.get("response_type") != "code":
            return redirect_error(
                OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE, "Only response_type=code is supported"
            )

        scopes = (params.get("scope") or "openid").split()
        allowed = set(self.supported_scopes) & set(client.scopes)
        if "openid" not in scopes or not set(scopes) <= allowed:
            return redirect_error(OAuthErrorCode.INVALID_SCOPE, "Requested scope is not allowed")

        code_challenge = params.get("code_challenge")
        method = params.get("code_challenge_method") or "plain"
        if not code_challenge and client.public:
            return redirect_error(OAuthErrorCode.INVALID_REQUEST, "PKCE is required for public clients")
        if code_challenge is not None:
            if method != PKCE_METHOD_S256:
                return redirect_error(OAuthErrorCode.INVALID_REQUEST, "code_challenge_method must be S256")
            if not is_valid_code_challenge(code_challenge):
                return redirect_error(OAuthErrorCode.INVALID_REQUEST, "Malformed code_challenge")

        grant = AuthorizationGrant(
            client_id=client.client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=" ".join(scopes),
            code_challenge=code_challenge,
            code_challenge_method=method if code_challenge else None,
            nonce=params.get("nonce"),
        )

        try:
            code = await self.codes.create(grant)
        except UpstreamUnavailable as e:
            self._logger.error("Authorization code could not be stored", error=str(e))
            return redirect_error(OAuthErrorCode.TEMPORARILY_UNAVAILABLE, "Try again later")

        return AuthorizationResponse(redirect_url=append_query(redirect_uri, {"code": code, "state": state}))

    # =========================================================================
    # Token Endpoint
    # =========================================================================

    async def exchange(self, params: Mapping[str, str]) -> Union[TokenResponse, OAuthError]:
        """Redeem an authorization code for tokens."""
        if params.get("grant_type") != "authorization_code":
            return OAuthError(OAuthErrorCode.UNSUPPORTED_GRANT_TYPE, "Only authorization_code is supported")

        client = self.clients.get(params.get("client_id"))
        if client is None or not client.verify_secret(params.get("client_secret")):
            return OAuthError(OAuthErrorCode.INVALID_CLIENT, "Client authentication failed")

        code = params.get("code")
        redirect_uri = params.get("redirect_uri")
        if not code or not redirect_uri:
            return OAuthError(OAuthErrorCode.INVALID_REQUEST, "code and redirect_uri are required")

        grant = await self.codes.validate_and_consume(
            code,
            client.client_id,
            redirect_uri,
            params.get("code_verifier"),
        )
        if grant is None:
            return OAuthError(OAuthErrorCode.INVALID_GRANT, "Invalid, expired or already used code")

        try:
            tokens = await self.backend.create_tokens(grant.user_id, client.client_id, grant.scope)
            id_token = await self._id_token(grant)
        except UpstreamUnavailable as e:
            self._logger.error("Token issuance failed", client_id=client.client_id, error=str(e))
            return OAuthError(OAuthErrorCode.TEMPORARILY_UNAVAILABLE, "Try again later")
        except BackendError as e:
            self._logger.error("Token issuance rejected", client_id=client.client_id, error=str(e))
            return OAuthError(OAuthErrorCode.SERVER_ERROR, "Token issuance failed")

        self._logger.info("Tokens issued", client_id=client.client_id, user_id=grant.user_id)
        return TokenResponse(
            access_token=tokens.access_token,
            expires_in=tokens.expires_in,
            token_type=tokens.token_type,
            scope=grant.scope,
            id_token=id_token,
            refresh_token=tokens.refresh_token,
        )

    # =========================================================================
    # Client Registration
    # =========================================================================

    def register_client(self, body: Mapping[str, Any]) -> Union[Dict[str, Any], OAuthError]:
        """Dynamic client registration; returns the client information response."""
        try:
            registration = ClientRegistration.model_validate(body)
        except ValidationError as e:
            self._logger.info("Client registration rejected", errors=e.error_count())
            return OAuthError(OAuthErrorCode.INVALID_CLIENT_METADATA, "Malformed client metadata")

        try:
            client, client_secret = self.clients.register_dynamic(registration)
        except ClientRegistrationError as e:
            self._logger.info("Client registration rejected", error=e.error.code.value)
            return e.error

        return client.to_registration_response(client_secret)

    # =========================================================================
    # Metadata
    # =========================================================================

    def discovery_document(self) -> Dict[str, Any]:
        """OpenID Provider metadata."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/oidc/auth",
            "token_endpoint": f"{self.issuer}/oidc/token",
            "userinfo_endpoint": f"{self.issuer}/oidc/userinfo",
            "jwks_uri": f"{self.issuer}/oidc/jwks",
            "registration_endpoint": f"{self.issuer}/api/v1/oauth/clients/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [self.signer.algorithm],
            "scopes_supported": list(self.supported_scopes),
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "code_challenge_methods_supported": [PKCE_METHOD_S256],
        }

    async def jwks(self) -> Dict[str, Any]:
        return await self.key_manager.public_jwks()

    async def _id_token(self, grant: AuthorizationGrant) -> Optional[str]:
        scopes = grant.scope.split()
        if "openid" not in scopes:
            return None

        claims: Dict[str, Any] = {"sub": grant.user_id, "aud": grant.client_id}
        if grant.nonce:
            claims["nonce"] = grant.nonce

        if "email" in scopes or "profile" in scopes:
            user = await self.backend.get_user_by_id(grant.user_id)
            if user is not None:
                if "email" in scopes:
                    claims["email"] = user.email
                    claims["email_verified"] = user.email_verified is not None
                if "profile" in scopes:
                    claims["name"] = user.name
                    claims["picture"] = user.picture

        return await self.signer.sign(claims, expires_in=self.id_token_ttl_seconds)
