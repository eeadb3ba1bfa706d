"""
Passkey error taxonomy.

Verification errors are raised by :mod:`knot.mobile.passkey_verifier` and are
always recoverable by repeating the ceremony. ``MissingWindowAnchor`` and
``AuthorizationFailed`` originate in the presentation layer and pass through
the core untouched.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from knot.core.knot_exceptions import AuthorizationFailed, KnotError


class PasskeyError(KnotError):
    """Base class for passkey ceremony and verification failures."""

    recoverable = True
    default_message = "Passkey operation failed."

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.default_message, details=details)


class MissingWindowAnchor(PasskeyError):
    default_message = "No presentation anchor is available for passkey prompt."


class PasskeyVerificationError(PasskeyError):
    """Raised when authenticator output fails verification."""
    default_message = "Passkey verification failed."


class UnsupportedResponse(PasskeyVerificationError):
    default_message = "Received unsupported passkey response type."


class MalformedAttestationObject(PasskeyVerificationError):
    default_message = "Passkey attestation object is malformed."


class MalformedAuthenticatorData(PasskeyVerificationError):
    default_message = "Passkey authenticator data is malformed."


class MalformedCoseKey(PasskeyVerificationError):
    default_message = "Passkey COSE public key is malformed."


class MalformedSignature(PasskeyVerificationError):
    default_message = "Passkey signature payload is malformed."


class MalformedClientDataJSON(PasskeyVerificationError):
    default_message = "Passkey clientDataJSON is malformed."


class ChallengeMismatch(PasskeyVerificationError):
    default_message = "Passkey challenge does not match the expected payload."


class RelyingPartyMismatch(PasskeyVerificationError):
    default_message = "Passkey relying party does not match."


class CredentialIDMismatch(PasskeyVerificationError):
    default_message = "Passkey credential ID does not match the expected credential."


class UserVerificationRequired(PasskeyVerificationError):
    default_message = "Passkey user verification is required."


class SignatureVerificationFailed(PasskeyVerificationError):
    default_message = "Passkey signature verification failed."


__all__ = [
    "AuthorizationFailed",
    "ChallengeMismatch",
    "CredentialIDMismatch",
    "MalformedAttestationObject",
    "MalformedAuthenticatorData",
    "MalformedClientDataJSON",
    "MalformedCoseKey",
    "MalformedSignature",
    "MissingWindowAnchor",
    "PasskeyError",
    "PasskeyVerificationError",
    "RelyingPartyMismatch",
    "SignatureVerificationFailed",
    "UnsupportedResponse",
    "UserVerificationRequired",
]
