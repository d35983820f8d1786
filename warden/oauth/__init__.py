"""OAuth 2.0 / OpenID Connect flows."""

from warden.oauth.clients import ApplicationType, ClientRegistry, OAuthClient, validate_redirect_uris
from warden.oauth.codes import AuthorizationCodeStore
from warden.oauth.pkce import (
    code_challenge_for,
    generate_pkce_pair,
    generate_state,
    verify_code_challenge,
    verify_state,
)
from warden.oauth.providers import (
    OAUTH_PROVIDERS,
    AuthorizationRequest,
    FederatedIdentity,
    FederatedLogin,
    FederatedLoginResult,
    OAuth2ProviderConfig,
)
from warden.oauth.server import AuthorizationResponse, AuthorizationServer, TokenResponse

__all__ = [
    "OAUTH_PROVIDERS",
    "ApplicationType",
    "AuthorizationCodeStore",
    "AuthorizationRequest",
    "AuthorizationResponse",
    "AuthorizationServer",
    "ClientRegistry",
    "FederatedIdentity",
    "FederatedLogin",
    "FederatedLoginResult",
    "OAuth2ProviderConfig",
    "OAuthClient",
    "TokenResponse",
    "code_challenge_for",
    "generate_pkce_pair",
    "generate_state",
    "validate_redirect_uris",
    "verify_code_challenge",
    "verify_state",
]
