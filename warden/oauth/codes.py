"""
Authorization Code Store

One-time authorization codes binding a grant to a client, redirect URI,
user and optional PKCE challenge.

A code is removed from the store by the same atomic operation that reads
it, before any check runs. A failed exchange therefore burns the code, and
no two exchanges of one code can both succeed.
"""

from __future__ import annotations

import json
import time
from typing import Callable, Optional

import structlog

from warden.crypto.utils import random_token, sha256_hex
from warden.errors import UpstreamUnavailable
from warden.oauth.pkce import verify_code_challenge
from warden.storage.kv import KeyValueStore
from warden.types import AuthorizationCode, AuthorizationGrant

logger = structlog.get_logger(__name__)


CODE_KEY_PREFIX = "oauth:code"
CODE_BYTES = 32


class AuthorizationCodeStore:
    """Issues and redeems authorization codes."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._logger = logger.bind(component="authorization_codes")

    async def create(self, grant: AuthorizationGrant) -> str:
        """Store `grant` under a fresh code and return the code."""
        now = self._clock()
        code = random_token(CODE_BYTES)
        record = AuthorizationCode(
            code=code,
            grant=grant,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )

        await self._store.purge_expired()
        await self._store.set(self._key(code), json.dumps(record.to_dict()), ex=self.ttl_seconds)

        self._logger.info(
            "Authorization code issued",
            client_id=grant.client_id,
            user_id=grant.user_id,
            pkce=bool(grant.code_challenge),
        )
        return code

    async def validate_and_consume(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> Optional[AuthorizationGrant]:
        """
        Redeem a code.

        Returns the grant only if the code exists and is unexpired, the
        client and redirect URI match exactly, and the verifier reproduces
        the stored PKCE challenge when one was recorded. Returns None
        otherwise, including when the store is unreachable.
        """
        if not code:
            return None

        try:
            raw = await self._store.pop(self._key(code))
        except UpstreamUnavailable as e:
            self._logger.error("Code store unavailable", client_id=client_id, error=str(e))
            return None

        if raw is None:
            self._logger.info("Authorization code not found or already used", client_id=client_id)
            return None

        record = AuthorizationCode.from_dict(json.loads(raw))
        grant = record.grant

        if record.is_expired(self._clock()):
            self._logger.info("Authorization code expired", client_id=client_id)
            return None

        if grant.client_id != client_id:
            self._security_failure("Authorization code client mismatch", client_id=client_id)
            return None

        if grant.redirect_uri != redirect_uri:
            self._security_failure(
                "Authorization code redirect URI mismatch",
                client_id=client_id,
                redirect_uri=redirect_uri,
            )
            return None

        if grant.code_challenge is not None or grant.code_challenge_method:
            method = grant.code_challenge_method or "plain"
            if not verify_code_challenge(code_verifier, grant.code_challenge or "", method):
                self._security_failure("PKCE verification failed", client_id=client_id, method=method)
                return None

        self._logger.info("Authorization code redeemed", client_id=client_id, user_id=grant.user_id)
        return grant

    @staticmethod
    def _key(code: str) -> str:
        return f"{CODE_KEY_PREFIX}:{sha256_hex(code)}"

    def _security_failure(self, event: str, **context) -> None:
        self._logger.warning(event, security_event=True, **context)
