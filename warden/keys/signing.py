"""
RS256 token signing with the managed keyset.

Signed tokens carry the key id in their header; verification selects the
key from the published JWKS, so tokens signed before a rotation remain
verifiable during the grace window.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional, Tuple

import jwt
import structlog
from jwt.algorithms import RSAAlgorithm

from warden.keys.manager import KeyManager

logger = structlog.get_logger(__name__)


class TokenSigner:
    """Signs and verifies JWTs with the current signing key."""

    def __init__(
        self,
        key_manager: KeyManager,
        issuer: str,
        algorithm: str = "RS256",
    ):
        self.key_manager = key_manager
        self.issuer = issuer
        self.algorithm = algorithm

    async def sign(self, claims: Dict[str, Any], expires_in: int = 3600) -> str:
        keyset = await self.key_manager.get_current()
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "iat": now,
            "exp": now + expires_in,
            **claims,
        }
        return jwt.encode(
            payload,
            keyset.private_key,
            algorithm=self.algorithm,
            headers={"kid": keyset.kid},
        )

    async def verify(
        self,
        token: str,
        audience: Optional[str] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """
        Verify a token signed by this issuer.

        Returns:
            Tuple of (claims, error_message)
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            return None, "Malformed token"

        kid = header.get("kid")
        jwks = await self.key_manager.public_jwks()
        jwk = next((k for k in jwks["keys"] if k.get("kid") == kid), None)
        if jwk is None:
            logger.info("Token signed with unknown key", kid=kid)
            return None, "Unknown signing key"

        public_key = RSAAlgorithm.from_jwk(json.dumps(jwk))
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=[self.algorithm],
                audience=audience,
                issuer=self.issuer,
                options={"verify_aud": audience is not None},
            )
        except jwt.ExpiredSignatureError:
            return None, "Token expired"
        except jwt.InvalidTokenError as e:
            return None, f"Invalid token: {e}"

        return claims, None
