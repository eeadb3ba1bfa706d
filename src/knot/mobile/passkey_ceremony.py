"""
Passkey ceremony provider interface

The platform authenticator (iOS AuthenticationServices, Android Credential
Manager) is driven by the presentation layer. The core only consumes the raw
responses described here and verifies them with
:class:`knot.mobile.passkey_verifier.PasskeyVerifier`.

Providers signal presentation failures with ``MissingWindowAnchor`` (no window
to attach the prompt to) or ``AuthorizationFailed(code, message)`` (the user or
platform refused). Both propagate to callers unchanged.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from knot.mobile.passkey_verifier import PasskeyRelyingParty


@dataclass(frozen=True)
class RegistrationResponse:
    """Raw output of a registration (create) ceremony."""
    credential_id: bytes
    raw_attestation_object: bytes
    raw_client_data_json: bytes


@dataclass(frozen=True)
class AssertionResponse:
    """Raw output of an authentication (get) ceremony."""
    credential_id: bytes
    signature: bytes
    authenticator_data: bytes
    client_data_json: bytes
    user_handle: Optional[bytes] = None


class PasskeyCeremonyProvider(ABC):
    """
    Abstract base class for platform passkey providers.

    Platform implementations:
    - iOS: ASAuthorizationPlatformPublicKeyCredentialProvider
    - Android: Credential Manager
    """

    @abstractmethod
    def register(
        self,
        relying_party: PasskeyRelyingParty,
        challenge: bytes,
        user_name: str,
        user_id: bytes,
    ) -> RegistrationResponse:
        """
        Create a new passkey credential.

        Raises:
            MissingWindowAnchor: No presentation anchor is available
            AuthorizationFailed: The prompt was cancelled or failed
        """
        pass

    @abstractmethod
    def assert_credential(
        self,
        relying_party: PasskeyRelyingParty,
        challenge: bytes,
        allowed_credential_ids: Sequence[bytes] = (),
    ) -> AssertionResponse:
        """Sign ``challenge`` with one of the allowed credentials."""
        pass
