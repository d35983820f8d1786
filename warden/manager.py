"""
Warden Manager

Builds the authentication services from configuration and owns their
lifecycle.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import FastAPI

from warden.backend.client import BackendClient
from warden.core.config import WardenConfig, get_config
from warden.keys.manager import KeyManager
from warden.keys.signing import TokenSigner
from warden.middleware import (
    AuthenticationMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
    install_error_handlers,
)
from warden.oauth.clients import ClientRegistry
from warden.oauth.codes import AuthorizationCodeStore
from warden.oauth.providers import FederatedLogin
from warden.oauth.server import AuthorizationServer
from warden.ratelimit.limiter import FixedWindowRateLimiter
from warden.resolver.resolver import AuthResolver
from warden.storage.kv import KeyValueStore, create_kv_store
from warden.webauthn.ceremony import CeremonyController
from warden.webauthn.challenges import ChallengeStore
from warden.webauthn.relying_party import RelyingParty
from warden.webauthn.verifier import CredentialVerifier, PyWebAuthnVerifier

logger = structlog.get_logger(__name__)


# Global manager instance
_manager: Optional["WardenManager"] = None


def get_manager() -> "WardenManager":
    """Get the global Warden manager instance."""
    global _manager
    if _manager is None:
        _manager = WardenManager()
    return _manager


def set_manager(manager: "WardenManager") -> None:
    """Set the global Warden manager instance."""
    global _manager
    _manager = manager


class WardenManager:
    """
    Central coordinator for the authentication services.

    Services are built on construction so `install()` can run before the
    application starts; `initialize()` starts background work and opens the
    backend connection pool. The store, backend client and verifier can be
    injected for tests.
    """

    def __init__(
        self,
        config: Optional[WardenConfig] = None,
        store: Optional[KeyValueStore] = None,
        backend: Optional[BackendClient] = None,
        verifier: Optional[CredentialVerifier] = None,
    ):
        self.config = config or get_config()
        config = self.config

        self.store = store if store is not None else create_kv_store(config.redis)
        self.backend = backend if backend is not None else BackendClient.from_settings(config.backend)
        self.verifier = verifier or PyWebAuthnVerifier(
            require_user_verification=config.webauthn.require_user_verification
        )

        self.challenges = ChallengeStore(
            self.store,
            ttl_seconds=config.webauthn.challenge_ttl_seconds,
            sweep_interval_seconds=config.webauthn.sweep_interval_seconds,
        )
        self.ceremony = CeremonyController(
            self.challenges,
            self.backend,
            self.verifier,
            timeout_ms=config.webauthn.ceremony_timeout_ms,
        )

        self.codes = AuthorizationCodeStore(
            self.store,
            ttl_seconds=config.oauth.authorization_code_ttl_seconds,
        )
        self.keys = KeyManager.from_settings(self.store, config.keys)
        self.signer = TokenSigner(self.keys, config.oauth.issuer, config.keys.algorithm)
        self.authorization_server = AuthorizationServer(
            ClientRegistry.from_settings(config.oauth),
            self.codes,
            self.backend,
            self.keys,
            self.signer,
            issuer=config.oauth.issuer,
            supported_scopes=config.oauth.supported_scopes,
            id_token_ttl_seconds=config.oauth.id_token_ttl_seconds,
        )
        self.federated = FederatedLogin.from_settings(config.oauth.providers)

        self.rate_limiter = FixedWindowRateLimiter(self.store)
        self.resolver = AuthResolver(
            self.backend,
            self.backend,
            cookie_name=config.session.cookie_name,
            refresh_threshold_seconds=config.session.refresh_threshold_seconds,
        )

        self._initialized = False

    async def initialize(self) -> None:
        """Start background services."""
        if self._initialized:
            return

        logger.info("Initializing Warden", environment=self.config.environment)

        await self.backend.initialize()
        await self.challenges.initialize()
        keyset = await self.keys.get_current()

        self._initialized = True
        logger.info("Warden initialized", kid=keyset.kid)

    async def shutdown(self) -> None:
        logger.info("Shutting down Warden")

        await self.challenges.shutdown()
        await self.backend.shutdown()
        await self.store.close()

        self._initialized = False

    def relying_party(self, request_url: str) -> RelyingParty:
        """Relying party for the current request."""
        return RelyingParty.from_url(
            request_url,
            self.config.webauthn.rp_name,
            dev_port=self.config.webauthn.dev_port,
        )

    def install(self, app: FastAPI) -> None:
        """Add Warden middleware and error handlers to an app."""
        install_error_handlers(app)
        app.add_middleware(
            AuthenticationMiddleware,
            resolver=self.resolver,
            settings=self.config.session,
        )
        app.add_middleware(
            RateLimitMiddleware,
            limiter=self.rate_limiter,
            settings=self.config.rate_limit,
        )
        app.add_middleware(SecurityHeadersMiddleware)
