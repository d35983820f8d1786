"""
Warden Passkey Ceremony Controller

Orchestrates WebAuthn registration and authentication:
- Builds standard options JSON with a freshly issued challenge
- Consumes the challenge before verification (single use regardless of outcome)
- Verifies responses against the request's relying party
- Enforces signature counter monotonicity
- Persists and updates credentials through the backend

Collaborator failures during verification fail closed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
)
from webauthn.helpers import base64url_to_bytes
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from warden.backend.client import BackendClient
from warden.backend.models import ApiUser, CredentialRecord
from warden.crypto.utils import b64url_decode
from warden.errors import (
    AuthFailure,
    BackendError,
    FailureKind,
    UpstreamUnavailable,
)
from warden.types import Challenge, ChallengeKind
from warden.webauthn.challenges import ChallengeStore
from warden.webauthn.relying_party import RelyingParty
from warden.webauthn.verifier import CredentialVerifier

logger = structlog.get_logger(__name__)


SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

_KNOWN_TRANSPORTS = {t.value for t in AuthenticatorTransport}


@dataclass
class CeremonyOptions:
    """Options payload handed to the client for one ceremony."""
    challenge_id: str
    options: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"challenge_id": self.challenge_id, "options": self.options}


@dataclass
class RegistrationResult:
    """Outcome of a registration ceremony."""
    verified: bool
    credential: Optional[CredentialRecord] = None
    failure: Optional[AuthFailure] = None


@dataclass
class AssertionResult:
    """Outcome of an authentication ceremony."""
    verified: bool
    user: Optional[ApiUser] = None
    credential_id: Optional[str] = None
    failure: Optional[AuthFailure] = None


class CeremonyController:
    """
    Passkey registration and authentication.

    The relying party is passed in per call; callers derive it once from the
    request URL and use the same value for options and verification.
    """

    def __init__(
        self,
        challenges: ChallengeStore,
        backend: BackendClient,
        verifier: CredentialVerifier,
        timeout_ms: int = 60000,
    ):
        self.challenges = challenges
        self.backend = backend
        self.verifier = verifier
        self.timeout_ms = timeout_ms
        self._logger = logger.bind(component="ceremony")

    # =========================================================================
    # Registration
    # =========================================================================

    async def begin_registration(
        self,
        rp: RelyingParty,
        user_id: str,
        user_name: str,
        display_name: Optional[str] = None,
    ) -> CeremonyOptions:
        """Build creation options for a new passkey bound to `user_id`."""
        existing = await self._credentials_for_options(user_id)
        challenge = await self.challenges.issue(ChallengeKind.REGISTRATION, bound_user_id=user_id)

        options = generate_registration_options(
            rp_id=rp.id,
            rp_name=rp.name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=display_name or user_name,
            challenge=base64url_to_bytes(challenge.value),
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=self._descriptors(existing),
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )

        self._logger.info(
            "Registration options generated",
            challenge_id=challenge.id,
            user_id=user_id,
            rp_id=rp.id,
            excluded=len(existing),
        )
        return CeremonyOptions(challenge.id, json.loads(options_to_json(options)))

    async def complete_registration(
        self,
        rp: RelyingParty,
        challenge_id: str,
        response: Dict[str, Any],
        name: Optional[str] = None,
    ) -> RegistrationResult:
        """Verify an attestation and persist the new credential."""
        challenge, failure = await self._take_challenge(challenge_id, ChallengeKind.REGISTRATION)
        if failure:
            return RegistrationResult(verified=False, failure=failure)

        if not challenge.bound_user_id:
            return RegistrationResult(
                verified=False,
                failure=self._fail(
                    FailureKind.INVALID_REQUEST,
                    "invalid_request",
                    "Registration challenge is not bound to a user",
                    challenge_id=challenge_id,
                ),
            )

        failure = self._check_origin(rp, response, challenge_id)
        if failure:
            return RegistrationResult(verified=False, failure=failure)

        verification = await self.verifier.verify_registration(
            response,
            expected_challenge=base64url_to_bytes(challenge.value),
            expected_origin=rp.origin,
            expected_rp_id=rp.id,
        )
        if not verification.verified:
            return RegistrationResult(
                verified=False,
                failure=self._fail(
                    FailureKind.VERIFICATION_FAILED,
                    "verification_failed",
                    verification.error or "Registration verification failed",
                    challenge_id=challenge_id,
                ),
            )

        transports = (response.get("response") or {}).get("transports") or []
        record = CredentialRecord(
            id=verification.credential_id,
            user_id=challenge.bound_user_id,
            public_key=verification.public_key,
            counter=verification.counter,
            transports=[t for t in transports if t in _KNOWN_TRANSPORTS],
            aaguid=verification.aaguid,
            user_verified=verification.user_verified,
            credential_device_type=verification.device_type,
            credential_backed_up=verification.backed_up,
            name=name,
            created_at=datetime.now(timezone.utc),
        )

        try:
            await self.backend.store_credential(record)
        except (UpstreamUnavailable, BackendError) as e:
            return RegistrationResult(
                verified=False,
                failure=self._fail(
                    FailureKind.UPSTREAM_UNAVAILABLE,
                    "temporarily_unavailable",
                    "Credential could not be stored",
                    challenge_id=challenge_id,
                    error=str(e),
                ),
            )

        self._logger.info(
            "Passkey registered",
            user_id=record.user_id,
            credential_id=record.id,
            device_type=record.credential_device_type,
        )
        return RegistrationResult(verified=True, credential=record)

    # =========================================================================
    # Authentication
    # =========================================================================

    async def begin_authentication(
        self,
        rp: RelyingParty,
        email: Optional[str] = None,
    ) -> CeremonyOptions:
        """
        Build request options.

        With an email hint the allow-list holds that user's credentials;
        without one it is empty so discoverable credentials can be used.
        """
        user: Optional[ApiUser] = None
        allowed: List[CredentialRecord] = []

        if email:
            try:
                user = await self.backend.get_user_by_email(email)
            except (UpstreamUnavailable, BackendError) as e:
                self._logger.warning("User lookup for allow-list failed", error=str(e))
            if user:
                allowed = await self._credentials_for_options(user.id)

        challenge = await self.challenges.issue(
            ChallengeKind.AUTHENTICATION,
            bound_user_id=user.id if user else None,
        )

        options = generate_authentication_options(
            rp_id=rp.id,
            challenge=base64url_to_bytes(challenge.value),
            timeout=self.timeout_ms,
            allow_credentials=self._descriptors(allowed),
            user_verification=UserVerificationRequirement.PREFERRED,
        )

        self._logger.info(
            "Authentication options generated",
            challenge_id=challenge.id,
            rp_id=rp.id,
            allowed=len(allowed),
        )
        return CeremonyOptions(challenge.id, json.loads(options_to_json(options)))

    async def complete_authentication(
        self,
        rp: RelyingParty,
        challenge_id: str,
        response: Dict[str, Any],
    ) -> AssertionResult:
        """Verify an assertion and advance the credential's counter."""
        challenge, failure = await self._take_challenge(challenge_id, ChallengeKind.AUTHENTICATION)
        if failure:
            return AssertionResult(verified=False, failure=failure)

        credential_id = response.get("id") or response.get("rawId")
        if not credential_id or not isinstance(credential_id, str):
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.INVALID_REQUEST,
                    "invalid_request",
                    "Missing credential id",
                    challenge_id=challenge_id,
                ),
            )

        failure = self._check_origin(rp, response, challenge_id)
        if failure:
            return AssertionResult(verified=False, failure=failure)

        try:
            credential = await self.backend.get_credential(credential_id)
        except (UpstreamUnavailable, BackendError) as e:
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.UPSTREAM_UNAVAILABLE,
                    "temporarily_unavailable",
                    "Credential lookup failed",
                    challenge_id=challenge_id,
                    error=str(e),
                ),
            )

        if credential is None:
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.NOT_FOUND,
                    "credential_not_found",
                    "Unknown credential",
                    challenge_id=challenge_id,
                    credential_id=credential_id,
                ),
            )

        if challenge.bound_user_id and credential.user_id != challenge.bound_user_id:
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.MISMATCH,
                    "credential_mismatch",
                    "Credential does not belong to the requested user",
                    challenge_id=challenge_id,
                    credential_id=credential_id,
                ),
            )

        verification = await self.verifier.verify_authentication(
            response,
            expected_challenge=base64url_to_bytes(challenge.value),
            expected_origin=rp.origin,
            expected_rp_id=rp.id,
            credential=credential,
        )
        if not verification.verified:
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.VERIFICATION_FAILED,
                    "verification_failed",
                    verification.error or "Authentication verification failed",
                    challenge_id=challenge_id,
                    credential_id=credential_id,
                ),
            )

        if not counter_advanced(credential.counter, verification.new_counter):
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.REPLAY_DETECTED,
                    "replay_detected",
                    "Signature counter did not increase; possible cloned authenticator",
                    credential_id=credential_id,
                    stored_counter=credential.counter,
                    reported_counter=verification.new_counter,
                ),
            )

        try:
            await self.backend.update_credential_counter(
                credential.id,
                verification.new_counter,
                datetime.now(timezone.utc),
            )
            user = await self.backend.get_user_by_id(credential.user_id)
        except (UpstreamUnavailable, BackendError) as e:
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.UPSTREAM_UNAVAILABLE,
                    "temporarily_unavailable",
                    "Credential state could not be updated",
                    credential_id=credential_id,
                    error=str(e),
                ),
            )

        if user is None:
            return AssertionResult(
                verified=False,
                failure=self._fail(
                    FailureKind.NOT_FOUND,
                    "user_not_found",
                    "Credential owner no longer exists",
                    credential_id=credential_id,
                ),
            )

        self._logger.info("Passkey authentication succeeded", user_id=user.id, credential_id=credential.id)
        return AssertionResult(verified=True, user=user, credential_id=credential.id)

    # =========================================================================
    # Credential Management
    # =========================================================================

    async def list_user_credentials(self, user_id: str) -> List[CredentialRecord]:
        return await self.backend.list_credentials(user_id)

    async def delete_credential(self, user_id: str, credential_id: str) -> bool:
        """Delete a credential owned by `user_id`."""
        credential = await self._owned_credential(user_id, credential_id)
        if credential is None:
            return False
        await self.backend.delete_credential(credential_id)
        self._logger.info("Passkey deleted", user_id=user_id, credential_id=credential_id)
        return True

    async def rename_credential(self, user_id: str, credential_id: str, name: str) -> bool:
        credential = await self._owned_credential(user_id, credential_id)
        if credential is None:
            return False
        await self.backend.rename_credential(credential_id, name)
        return True

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    async def _take_challenge(
        self,
        challenge_id: str,
        kind: ChallengeKind,
    ) -> tuple[Optional[Challenge], Optional[AuthFailure]]:
        try:
            challenge = await self.challenges.consume(challenge_id, kind)
        except UpstreamUnavailable as e:
            return None, self._fail(
                FailureKind.UPSTREAM_UNAVAILABLE,
                "temporarily_unavailable",
                "Challenge store unavailable",
                challenge_id=challenge_id,
                error=str(e),
            )

        if challenge is None:
            return None, self._fail(
                FailureKind.EXPIRED_STATE,
                "challenge_expired",
                "Challenge expired or already used",
                challenge_id=challenge_id,
            )
        return challenge, None

    def _check_origin(
        self,
        rp: RelyingParty,
        response: Dict[str, Any],
        challenge_id: str,
    ) -> Optional[AuthFailure]:
        """Reject responses whose client data names another origin."""
        encoded = (response.get("response") or {}).get("clientDataJSON")
        try:
            client_data = json.loads(b64url_decode(encoded))
            origin = client_data["origin"]
        except (TypeError, ValueError, KeyError):
            return self._fail(
                FailureKind.INVALID_REQUEST,
                "invalid_request",
                "Malformed client data",
                challenge_id=challenge_id,
            )

        if origin != rp.origin:
            return self._fail(
                FailureKind.MISMATCH,
                "origin_mismatch",
                "Response origin does not match the relying party",
                challenge_id=challenge_id,
                expected_origin=rp.origin,
                actual_origin=origin,
            )
        return None

    async def _credentials_for_options(self, user_id: str) -> List[CredentialRecord]:
        """Fetch credentials for an options list; a lookup failure yields an empty list."""
        try:
            return await self.backend.list_credentials(user_id)
        except (UpstreamUnavailable, BackendError) as e:
            self._logger.warning("Credential lookup for options failed", user_id=user_id, error=str(e))
            return []

    async def _owned_credential(self, user_id: str, credential_id: str) -> Optional[CredentialRecord]:
        credential = await self.backend.get_credential(credential_id)
        if credential is None:
            return None
        if credential.user_id != user_id:
            self._logger.warning(
                "Credential ownership mismatch",
                user_id=user_id,
                credential_id=credential_id,
                security_event=True,
            )
            return None
        return credential

    def _descriptors(self, credentials: List[CredentialRecord]) -> List[PublicKeyCredentialDescriptor]:
        """Options descriptors; credentials with undecodable ids are skipped."""
        descriptors = []
        for credential in credentials:
            try:
                raw_id = base64url_to_bytes(credential.id)
            except ValueError:
                self._logger.warning(
                    "Skipping credential with malformed id",
                    credential_id=credential.id,
                    user_id=credential.user_id,
                )
                continue
            descriptors.append(
                PublicKeyCredentialDescriptor(
                    id=raw_id,
                    transports=[
                        AuthenticatorTransport(t) for t in credential.transports if t in _KNOWN_TRANSPORTS
                    ] or None,
                )
            )
        return descriptors

    def _fail(
        self,
        kind: FailureKind,
        code: str,
        description: str,
        **context: Any,
    ) -> AuthFailure:
        failure = AuthFailure(kind=kind, code=code, description=description)
        if failure.is_security_event:
            self._logger.warning(description, failure=kind.value, security_event=True, **context)
        elif kind == FailureKind.UPSTREAM_UNAVAILABLE:
            self._logger.error(description, failure=kind.value, **context)
        else:
            self._logger.info(description, failure=kind.value, **context)
        return failure


def counter_advanced(stored: int, reported: int) -> bool:
    """
    Signature counter check.

    The reported counter must be strictly greater than the stored one.
    Authenticators that do not implement a counter report zero every time;
    zero against a stored zero is accepted.
    """
    if reported == 0 and stored == 0:
        return True
    return reported > stored
