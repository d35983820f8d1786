"""Passkey (WebAuthn) ceremonies."""

from warden.webauthn.ceremony import (
    AssertionResult,
    CeremonyController,
    CeremonyOptions,
    RegistrationResult,
    counter_advanced,
)
from warden.webauthn.challenges import ChallengeStore
from warden.webauthn.relying_party import RelyingParty
from warden.webauthn.verifier import (
    AuthenticationVerification,
    CredentialVerifier,
    PyWebAuthnVerifier,
    RegistrationVerification,
)

__all__ = [
    "AssertionResult",
    "AuthenticationVerification",
    "CeremonyController",
    "CeremonyOptions",
    "ChallengeStore",
    "CredentialVerifier",
    "PyWebAuthnVerifier",
    "RegistrationResult",
    "RegistrationVerification",
    "RelyingParty",
    "counter_advanced",
]
