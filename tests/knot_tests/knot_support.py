"""
Shared helpers for the Knot test suite: a software passkey authenticator and
well-known addresses used across fixtures.
"""
import hashlib
import json
import secrets
from typing import Dict, Optional

import cbor2
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from knot.core.vm.exceptions import ExecutionReverted
from knot.mobile.passkey_ceremony import (
    AssertionResponse,
    PasskeyCeremonyProvider,
    RegistrationResponse,
)
from knot.mobile.passkey_verifier import PasskeyRelyingParty, b64url_encode

# Well-known development keys; never hold real funds
OWNER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OTHER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

HOME_CHAIN = 1
REMOTE_CHAIN = 10

ACCUMULATOR_ADDRESS = "0x" + "ac" * 20
APPROVER = "0x" + "a1" * 20
MESSENGER = "0x" + "b2" * 20
DEPOSITOR_A = "0x" + "d1" * 20
DEPOSITOR_B = "0x" + "d2" * 20
TOKEN_ADDRESS = "0x" + "70" * 20
DELEGATE_ADDRESS = "0x" + "de" * 20


def client_data_json(response_type: str, challenge: bytes, origin: str) -> bytes:
    return json.dumps(
        {
            "type": response_type,
            "challenge": b64url_encode(challenge),
            "origin": origin,
            "crossOrigin": False,
        },
        separators=(",", ":"),
    ).encode("utf-8")


def cose_key_for(private_key: ec.EllipticCurvePrivateKey) -> Dict[int, object]:
    numbers = private_key.public_key().public_numbers()
    return {
        1: 2,
        3: -7,
        -1: 1,
        -2: numbers.x.to_bytes(32, "big"),
        -3: numbers.y.to_bytes(32, "big"),
    }


class SoftwareAuthenticator(PasskeyCeremonyProvider):
    """P-256 platform authenticator stand-in producing real WebAuthn output."""

    def __init__(
        self,
        origin: Optional[str] = None,
        registration_flags: int = 0x45,
        assertion_flags: int = 0x05,
        aaguid: bytes = bytes(16),
    ) -> None:
        self.origin = origin
        self.registration_flags = registration_flags
        self.assertion_flags = assertion_flags
        self.aaguid = aaguid
        self.keys: Dict[bytes, ec.EllipticCurvePrivateKey] = {}
        self.sign_count = 0
        self.fail_with: Optional[Exception] = None
        self.last_challenge: Optional[bytes] = None

    def _origin(self, relying_party: PasskeyRelyingParty) -> str:
        return self.origin or relying_party.default_origin

    def authenticator_data(self, relying_party: PasskeyRelyingParty, flags: int) -> bytes:
        self.sign_count += 1
        return relying_party.rp_id_hash + bytes([flags]) + self.sign_count.to_bytes(4, "big")

    def register(self, relying_party, challenge, user_name, user_id):
        if self.fail_with is not None:
            raise self.fail_with
        self.last_challenge = challenge
        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = secrets.token_bytes(16)
        self.keys[credential_id] = private_key

        auth_data = (
            self.authenticator_data(relying_party, self.registration_flags)
            + self.aaguid
            + len(credential_id).to_bytes(2, "big")
            + credential_id
            + cbor2.dumps(cose_key_for(private_key))
        )
        attestation = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        return RegistrationResponse(
            credential_id=credential_id,
            raw_attestation_object=attestation,
            raw_client_data_json=client_data_json(
                "webauthn.create", challenge, self._origin(relying_party)
            ),
        )

    def assert_credential(self, relying_party, challenge, allowed_credential_ids=()):
        if self.fail_with is not None:
            raise self.fail_with
        self.last_challenge = challenge
        candidates = [cid for cid in allowed_credential_ids if cid in self.keys]
        credential_id = candidates[0] if candidates else next(iter(self.keys))
        return self.sign(relying_party, challenge, credential_id)

    def sign(self, relying_party, challenge, credential_id, response_type="webauthn.get"):
        auth_data = self.authenticator_data(relying_party, self.assertion_flags)
        client_data = client_data_json(response_type, challenge, self._origin(relying_party))
        signature = self.keys[credential_id].sign(
            auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256())
        )
        return AssertionResponse(
            credential_id=credential_id,
            signature=signature,
            authenticator_data=auth_data,
            client_data_json=client_data,
        )


# ==================== Contract Code ====================


def counter_handler(context, storage):
    """Counts calls per sender; returns the new count as uint256."""
    count = storage.get(context.sender, 0) + 1
    storage[context.sender] = count
    return count.to_bytes(32, "big")


def reverting_handler(payload: bytes):
    """Contract code that always reverts with ``payload``."""

    def handler(context, storage):
        storage["touched"] = True
        raise ExecutionReverted(payload)

    return handler


def returning_handler(payload: bytes):
    """Contract code that always returns ``payload``."""

    def handler(context, storage):
        return payload

    return handler
