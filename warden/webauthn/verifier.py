"""
WebAuthn response verification.

The byte-level attestation and assertion checks are delegated to py_webauthn.
Verification is CPU-bound and runs in a worker thread so concurrent requests
are not blocked.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import structlog
from webauthn import verify_authentication_response, verify_registration_response
from webauthn.helpers import (
    base64url_to_bytes,
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException

from warden.backend.models import CredentialRecord

logger = structlog.get_logger(__name__)


@dataclass
class RegistrationVerification:
    """Outcome of verifying an attestation response."""
    verified: bool
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    counter: int = 0
    aaguid: Optional[str] = None
    device_type: Optional[str] = None
    backed_up: bool = False
    user_verified: bool = False
    error: Optional[str] = None


@dataclass
class AuthenticationVerification:
    """Outcome of verifying an assertion response."""
    verified: bool
    new_counter: int = 0
    device_type: Optional[str] = None
    backed_up: bool = False
    user_verified: bool = False
    error: Optional[str] = None


class CredentialVerifier(Protocol):
    """Cryptographic verifier for ceremony responses."""

    async def verify_registration(
        self,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        ...

    async def verify_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        credential: CredentialRecord,
    ) -> AuthenticationVerification:
        ...


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


class PyWebAuthnVerifier:
    """CredentialVerifier backed by the py_webauthn library."""

    def __init__(self, require_user_verification: bool = True):
        self.require_user_verification = require_user_verification

    async def verify_registration(
        self,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        return await asyncio.to_thread(
            self._verify_registration,
            response,
            expected_challenge,
            expected_origin,
            expected_rp_id,
        )

    async def verify_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        credential: CredentialRecord,
    ) -> AuthenticationVerification:
        return await asyncio.to_thread(
            self._verify_authentication,
            response,
            expected_challenge,
            expected_origin,
            expected_rp_id,
            credential,
        )

    def _verify_registration(
        self,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        try:
            parsed = parse_registration_credential_json(json.dumps(response))
            verified = verify_registration_response(
                credential=parsed,
                expected_challenge=expected_challenge,
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                require_user_verification=self.require_user_verification,
            )
        except (WebAuthnException, ValueError) as e:
            logger.info("Registration response rejected", error=str(e))
            return RegistrationVerification(verified=False, error=str(e))

        return RegistrationVerification(
            verified=True,
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            counter=verified.sign_count,
            aaguid=verified.aaguid,
            device_type=_enum_value(verified.credential_device_type),
            backed_up=verified.credential_backed_up,
            user_verified=verified.user_verified,
        )

    def _verify_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        credential: CredentialRecord,
    ) -> AuthenticationVerification:
        try:
            parsed = parse_authentication_credential_json(json.dumps(response))
            verified = verify_authentication_response(
                credential=parsed,
                expected_challenge=expected_challenge,
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                credential_public_key=base64url_to_bytes(credential.public_key),
                # Counter monotonicity is enforced by the ceremony controller
                credential_current_sign_count=0,
                require_user_verification=self.require_user_verification,
            )
        except (WebAuthnException, ValueError) as e:
            logger.info("Authentication response rejected", error=str(e))
            return AuthenticationVerification(verified=False, error=str(e))

        return AuthenticationVerification(
            verified=True,
            new_counter=verified.new_sign_count,
            device_type=_enum_value(verified.credential_device_type),
            backed_up=verified.credential_backed_up,
            user_verified=verified.user_verified,
        )
