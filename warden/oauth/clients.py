"""
OAuth client registry and redirect URI rules.

Clients come from configuration or from dynamic registration (RFC 7591).
Dynamically registered clients get a generated id; confidential ones also
get a secret that is returned once and only kept as a SHA-256 hash.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, Field

from warden.core.config import OAuthSettings
from warden.crypto.utils import constant_time_equals, sha256_hex
from warden.errors import OAuthError, OAuthErrorCode, WardenError

logger = structlog.get_logger(__name__)

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "[::1]", "::1"})

CLIENT_ID_PREFIX = "warden_"
DEFAULT_SCOPES = ["openid", "profile", "email"]

AUTH_METHOD_NONE = "none"
AUTH_METHOD_SECRET_POST = "client_secret_post"
SUPPORTED_AUTH_METHODS = frozenset({AUTH_METHOD_NONE, AUTH_METHOD_SECRET_POST})
SUPPORTED_GRANT_TYPES = frozenset({"authorization_code", "refresh_token"})


class ApplicationType(str, Enum):
    NATIVE = "native"
    WEB = "web"


class ClientRegistrationError(WardenError):
    """A dynamic registration request was rejected."""

    def __init__(self, code: OAuthErrorCode, description: str) -> None:
        self.error = OAuthError(code, description)
        super().__init__(description)


class ClientRegistration(BaseModel):
    """Client metadata submitted for dynamic registration."""
    client_name: str
    application_type: ApplicationType = ApplicationType.NATIVE
    redirect_uris: List[str] = Field(default_factory=list)
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    token_endpoint_auth_method: Optional[str] = None
    scopes: Optional[List[str]] = None


@dataclass
class OAuthClient:
    """A registered relying application."""
    client_id: str
    redirect_uris: List[str]
    application_type: ApplicationType = ApplicationType.NATIVE
    public: bool = True
    client_name: str = ""
    client_secret_hash: Optional[str] = None
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    grant_types: List[str] = field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: List[str] = field(default_factory=lambda: ["code"])
    active: bool = True
    created_at: float = field(default_factory=time.time)

    @property
    def token_endpoint_auth_method(self) -> str:
        return AUTH_METHOD_NONE if self.public else AUTH_METHOD_SECRET_POST

    def has_redirect_uri(self, redirect_uri: str) -> bool:
        """Exact string match against the registered URIs."""
        return redirect_uri in self.redirect_uris

    def verify_secret(self, client_secret: Optional[str]) -> bool:
        if self.public:
            return True
        if not client_secret or not self.client_secret_hash:
            return False
        return constant_time_equals(sha256_hex(client_secret), self.client_secret_hash)

    def to_registration_response(self, client_secret: Optional[str] = None) -> Dict[str, Any]:
        """Client information response (RFC 7591 section 3.2.1)."""
        body: Dict[str, Any] = {
            "client_id": self.client_id,
            "client_id_issued_at": int(self.created_at),
            "client_name": self.client_name,
            "application_type": self.application_type.value,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
            "response_types": list(self.response_types),
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
            "scope": " ".join(self.scopes),
        }
        if client_secret:
            body["client_secret"] = client_secret
            body["client_secret_expires_at"] = 0
        return body


def validate_redirect_uris(
    redirect_uris: Iterable[str],
    application_type: ApplicationType,
) -> List[str]:
    """
    Return a list of problems with `redirect_uris` (empty when valid).

    Native clients may use private-use URI schemes or http on loopback.
    Web clients must use https, except on loopback hosts.
    """
    errors: List[str] = []
    uris = list(redirect_uris)
    if not uris:
        return ["at least one redirect_uri is required"]

    for uri in uris:
        parts = urlsplit(uri)
        if not parts.scheme:
            errors.append(f"{uri}: redirect_uri must be absolute")
            continue
        if parts.fragment:
            errors.append(f"{uri}: redirect_uri must not contain a fragment")
            continue

        host = (parts.hostname or "").lower()
        loopback = host in LOOPBACK_HOSTS

        if parts.scheme == "https":
            if not host:
                errors.append(f"{uri}: https redirect_uri needs a host")
        elif parts.scheme == "http":
            if not loopback:
                errors.append(f"{uri}: http is only allowed for loopback hosts")
        elif application_type == ApplicationType.WEB:
            errors.append(f"{uri}: web clients must use https")

    return errors


class ClientRegistry:
    """In-process registry of OAuth clients."""

    def __init__(
        self,
        clients: Iterable[OAuthClient] = (),
        supported_scopes: Optional[Iterable[str]] = None,
    ):
        self._clients: Dict[str, OAuthClient] = {}
        self.supported_scopes = list(supported_scopes or DEFAULT_SCOPES)
        for client in clients:
            self.register(client)

    @classmethod
    def from_settings(cls, settings: OAuthSettings) -> "ClientRegistry":
        return cls(
            (
                OAuthClient(
                    client_id=c.client_id,
                    client_name=c.client_name,
                    redirect_uris=list(c.redirect_uris),
                    application_type=ApplicationType(c.application_type),
                    public=c.public,
                    client_secret_hash=sha256_hex(c.client_secret) if c.client_secret else None,
                    scopes=list(c.scopes),
                )
                for c in settings.clients
            ),
            supported_scopes=settings.supported_scopes,
        )

    def register(self, client: OAuthClient) -> None:
        errors = validate_redirect_uris(client.redirect_uris, client.application_type)
        if errors:
            raise ValueError(f"Invalid client {client.client_id}: {'; '.join(errors)}")
        self._clients[client.client_id] = client
        logger.info("OAuth client registered", client_id=client.client_id)

    def register_dynamic(self, registration: ClientRegistration) -> Tuple[OAuthClient, Optional[str]]:
        """
        Register a client from submitted metadata.

        Returns the client and its plaintext secret; the secret is None for
        public clients. Native clients are always public.

        Raises:
            ClientRegistrationError: metadata or redirect URIs are invalid
        """
        name = registration.client_name.strip()
        if not name:
            raise ClientRegistrationError(OAuthErrorCode.INVALID_CLIENT_METADATA, "client_name is required")

        errors = validate_redirect_uris(registration.redirect_uris, registration.application_type)
        if errors:
            raise ClientRegistrationError(OAuthErrorCode.INVALID_REDIRECT_URI, "; ".join(errors))

        auth_method = self._auth_method_for(registration)

        grant_types = registration.grant_types or ["authorization_code", "refresh_token"]
        if "authorization_code" not in grant_types or not set(grant_types) <= SUPPORTED_GRANT_TYPES:
            raise ClientRegistrationError(
                OAuthErrorCode.INVALID_CLIENT_METADATA, "Unsupported grant_types"
            )

        response_types = registration.response_types or ["code"]
        if set(response_types) != {"code"}:
            raise ClientRegistrationError(
                OAuthErrorCode.INVALID_CLIENT_METADATA, "Only the code response type is supported"
            )

        scopes = registration.scopes or list(DEFAULT_SCOPES)
        if not set(scopes) <= set(self.supported_scopes):
            raise ClientRegistrationError(OAuthErrorCode.INVALID_CLIENT_METADATA, "Unsupported scope")

        public = auth_method == AUTH_METHOD_NONE
        client_secret = None if public else secrets.token_hex(32)
        client = OAuthClient(
            client_id=self._new_client_id(),
            client_name=name,
            redirect_uris=list(registration.redirect_uris),
            application_type=registration.application_type,
            public=public,
            client_secret_hash=sha256_hex(client_secret) if client_secret else None,
            scopes=list(scopes),
            grant_types=list(grant_types),
            response_types=list(response_types),
        )
        self._clients[client.client_id] = client
        logger.info(
            "OAuth client registered dynamically",
            client_id=client.client_id,
            application_type=client.application_type.value,
            public=public,
        )
        return client, client_secret

    def deactivate(self, client_id: str) -> bool:
        """Disable a client; returns False if it is unknown or already inactive."""
        client = self._clients.get(client_id)
        if client is None or not client.active:
            return False
        client.active = False
        logger.info("OAuth client deactivated", client_id=client_id)
        return True

    def get(self, client_id: Optional[str]) -> Optional[OAuthClient]:
        """Look up an active client."""
        if not client_id:
            return None
        client = self._clients.get(client_id)
        if client is None or not client.active:
            return None
        return client

    def __len__(self) -> int:
        return len(self._clients)

    @staticmethod
    def _auth_method_for(registration: ClientRegistration) -> str:
        requested = registration.token_endpoint_auth_method
        if registration.application_type == ApplicationType.NATIVE:
            if requested and requested != AUTH_METHOD_NONE:
                logger.info("Native client auth method overridden", requested=requested)
            return AUTH_METHOD_NONE
        method = requested or AUTH_METHOD_SECRET_POST
        if method not in SUPPORTED_AUTH_METHODS:
            raise ClientRegistrationError(
                OAuthErrorCode.INVALID_CLIENT_METADATA,
                f"Unsupported token_endpoint_auth_method: {method}",
            )
        return method

    def _new_client_id(self) -> str:
        while True:
            client_id = f"{CLIENT_ID_PREFIX}{secrets.token_hex(10)}"
            if client_id not in self._clients:
                return client_id
