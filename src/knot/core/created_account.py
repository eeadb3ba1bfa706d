"""Created account value object: EOA + passkey + signed delegation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from knot.core.authorization import (
    InvalidDelegateAddress,
    RecoveryFailed,
    SignedAuthorization,
    normalize_address,
    recover_authority_address,
)
from knot.core.knot_exceptions import KnotError
from knot.mobile.passkey_verifier import PasskeyPublicKey, b64url_encode


class CreatedAccountError(KnotError):
    """Raised when a created account bundle is inconsistent."""
    pass


@dataclass(frozen=True)
class CreatedAccount:
    """
    Immutable bundle produced by account provisioning.

    Equality is by value over all three parts.
    """
    eoa_address: str
    passkey: PasskeyPublicKey
    signed_authorization: SignedAuthorization

    def __post_init__(self) -> None:
        if not isinstance(self.passkey, PasskeyPublicKey):
            raise CreatedAccountError("passkey must be a PasskeyPublicKey")
        if not isinstance(self.signed_authorization, SignedAuthorization):
            raise CreatedAccountError("signed_authorization must be a SignedAuthorization")
        try:
            eoa = normalize_address(self.eoa_address)
        except InvalidDelegateAddress as exc:
            raise CreatedAccountError(f"Invalid EOA address: {self.eoa_address!r}") from exc
        object.__setattr__(self, "eoa_address", eoa)

    def verify_binding(self) -> bool:
        """True when the authorization was signed by ``eoa_address``."""
        try:
            return recover_authority_address(self.signed_authorization) == self.eoa_address
        except RecoveryFailed:
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eoa_address": self.eoa_address,
            "passkey": self.passkey.to_dict(),
            "credential_id": b64url_encode(self.passkey.credential_id),
            "signed_authorization": self.signed_authorization.to_relayer_dict(),
        }
