"""
Passkey Verifier - WebAuthn attestation and assertion verification

Pure verification over authenticator output:
- Registration: parse the CBOR attestation object, check client data and
  relying party, extract the P-256 public key from the COSE key
- Authentication: check client data, user verification flag and the ECDSA
  P-256 signature over authenticatorData || SHA-256(clientDataJSON)

No network or presentation side effects. Identical inputs always produce
identical results. Attestation statements (fmt "none" on platform
authenticators) are not validated.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import cbor2
from eth_abi import encode as abi_encode

from knot.core.crypto_utils import (
    P256_ORDER,
    decode_der_signature,
    left_pad_32,
    load_p256_public_key,
    normalize_p256_s,
    validate_signature_range,
    verify_p256_signature,
)
from knot.mobile.passkey_errors import (
    ChallengeMismatch,
    CredentialIDMismatch,
    MalformedAttestationObject,
    MalformedAuthenticatorData,
    MalformedClientDataJSON,
    MalformedCoseKey,
    MalformedSignature,
    RelyingPartyMismatch,
    SignatureVerificationFailed,
    UnsupportedResponse,
    UserVerificationRequired,
)

logger = logging.getLogger(__name__)

# Authenticator data flags
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_CREDENTIAL_DATA = 0x40

# Authenticator data layout
RP_ID_HASH_LENGTH = 32
AUTH_DATA_HEADER_LENGTH = 37  # rpIdHash(32) + flags(1) + signCount(4)
AAGUID_LENGTH = 16
MIN_ATTESTED_AUTH_DATA_LENGTH = AUTH_DATA_HEADER_LENGTH + AAGUID_LENGTH + 2

# COSE key labels (RFC 9053)
COSE_KTY = 1
COSE_ALG = 3
COSE_CRV = -1
COSE_X = -2
COSE_Y = -3
COSE_KTY_EC2 = 2
COSE_ALG_ES256 = -7
COSE_CRV_P256 = 1

CLIENT_DATA_TYPE_CREATE = "webauthn.create"
CLIENT_DATA_TYPE_GET = "webauthn.get"

WEBAUTHN_AUTH_ABI = "(bytes,string,uint256,uint256,uint256,uint256)"


def b64url_encode(data: bytes) -> str:
    """Base64url without padding, as used in clientDataJSON."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """
    Strict base64url decode: only the unpadded canonical encoding is accepted.

    Raises:
        binascii.Error: On characters outside the alphabet or a non-canonical form
    """
    padding = "=" * (-len(value) % 4)
    decoded = base64.b64decode(value + padding, altchars=b"-_", validate=True)
    if b64url_encode(decoded) != value:
        raise binascii.Error("Non-canonical base64url encoding")
    return decoded


def challenge_for_payload(payload: bytes) -> bytes:
    """Challenge the authenticator signs when authorizing ``payload``."""
    return hashlib.sha256(payload).digest()


@dataclass(frozen=True)
class PasskeyRelyingParty:
    """Relying party passkeys are scoped to."""
    rp_id: str
    name: str = ""

    @property
    def rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.rp_id.encode("utf-8")).digest()

    @property
    def default_origin(self) -> str:
        return f"https://{self.rp_id}"


@dataclass(frozen=True)
class PasskeyPublicKey:
    """P-256 passkey credential produced by a successful registration."""
    x: bytes
    y: bytes
    credential_id: bytes
    user_name: str
    aaguid: bytes
    raw_attestation_object: bytes
    raw_client_data_json: bytes

    def __post_init__(self) -> None:
        for coordinate in (self.x, self.y):
            if len(coordinate) != 32 or not any(coordinate):
                raise MalformedCoseKey("Public key coordinates must be 32 non-zero bytes.")
        if len(self.aaguid) != AAGUID_LENGTH:
            raise MalformedAuthenticatorData("AAGUID must be 16 bytes.")

    @property
    def uncompressed(self) -> bytes:
        """SEC1 uncompressed point (0x04 || x || y)."""
        return b"\x04" + self.x + self.y

    @property
    def coordinates(self) -> Tuple[int, int]:
        return int.from_bytes(self.x, "big"), int.from_bytes(self.y, "big")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": base64.b64encode(self.x).decode("ascii"),
            "y": base64.b64encode(self.y).decode("ascii"),
            "credential_id": base64.b64encode(self.credential_id).decode("ascii"),
            "user_name": self.user_name,
            "aaguid": base64.b64encode(self.aaguid).decode("ascii"),
            "raw_attestation_object": base64.b64encode(self.raw_attestation_object).decode("ascii"),
            "raw_client_data_json": base64.b64encode(self.raw_client_data_json).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PasskeyPublicKey":
        try:
            return cls(
                x=base64.b64decode(data["x"], validate=True),
                y=base64.b64decode(data["y"], validate=True),
                credential_id=base64.b64decode(data["credential_id"], validate=True),
                user_name=str(data["user_name"]),
                aaguid=base64.b64decode(data["aaguid"], validate=True),
                raw_attestation_object=base64.b64decode(data["raw_attestation_object"], validate=True),
                raw_client_data_json=base64.b64decode(data["raw_client_data_json"], validate=True),
            )
        except (KeyError, TypeError, binascii.Error) as exc:
            raise MalformedCoseKey(
                "Stored passkey record is incomplete.", details={"error": str(exc)}
            ) from exc


@dataclass(frozen=True)
class PasskeySignature:
    """Raw assertion material for on-chain WebAuthn verification."""
    r: bytes
    s: bytes
    client_data_json: bytes
    auth_data: bytes
    credential_id: bytes

    @classmethod
    def from_der(
        cls,
        signature_der: bytes,
        client_data_json: bytes,
        auth_data: bytes,
        credential_id: bytes,
    ) -> "PasskeySignature":
        try:
            r, s = decode_der_signature(signature_der)
        except ValueError as exc:
            raise MalformedSignature(details={"error": str(exc)}) from exc
        if r.bit_length() > 256 or s.bit_length() > 256:
            raise MalformedSignature("Signature scalar exceeds 32 bytes.")
        return cls(
            r=r.to_bytes(32, "big"),
            s=s.to_bytes(32, "big"),
            client_data_json=bytes(client_data_json),
            auth_data=bytes(auth_data),
            credential_id=bytes(credential_id),
        )

    def normalized(self) -> "PasskeySignature":
        """Low-S form with both scalars padded to 32 bytes."""
        s_value = normalize_p256_s(int.from_bytes(self.s, "big"))
        return PasskeySignature(
            r=left_pad_32(self.r),
            s=s_value.to_bytes(32, "big"),
            client_data_json=self.client_data_json,
            auth_data=self.auth_data,
            credential_id=self.credential_id,
        )

    def _client_data_text(self) -> Optional[str]:
        try:
            return self.client_data_json.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def type_position(self) -> Optional[int]:
        """Offset of the ``"type"`` key inside clientDataJSON."""
        text = self._client_data_text()
        if text is None:
            return None
        index = text.find('"type"')
        return index if index >= 0 else None

    def challenge_position(self, payload: bytes) -> Optional[int]:
        """Offset of the encoded challenge for ``payload`` inside clientDataJSON."""
        text = self._client_data_text()
        if text is None:
            return None
        index = text.find(b64url_encode(challenge_for_payload(payload)))
        return index if index >= 0 else None

    def webauthn_auth_bytes(self, payload: bytes) -> bytes:
        """
        ABI-encode the WebAuthn auth struct consumed by the account contract.

        Layout: (authenticatorData, clientDataJSON, challengeIndex, typeIndex, r, s).

        Raises:
            MalformedSignature: If clientDataJSON does not carry the payload
                challenge or the type key.
        """
        normalized = self.normalized()
        challenge_index = normalized.challenge_position(payload)
        type_index = normalized.type_position()
        if challenge_index is None or type_index is None:
            raise MalformedSignature("clientDataJSON does not reference the payload challenge.")
        return abi_encode(
            [WEBAUTHN_AUTH_ABI],
            [(
                normalized.auth_data,
                normalized.client_data_json.decode("utf-8"),
                challenge_index,
                type_index,
                int.from_bytes(normalized.r, "big"),
                int.from_bytes(normalized.s, "big"),
            )],
        )


@dataclass(frozen=True)
class AuthenticatorData:
    """Parsed authenticator data."""
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    cose_key: Optional[Dict[int, Any]] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @property
    def has_attested_credential(self) -> bool:
        return bool(self.flags & FLAG_ATTESTED_CREDENTIAL_DATA)


@dataclass(frozen=True)
class AssertionResult:
    """Outcome of a verified assertion."""
    credential_id: bytes
    sign_count: int
    user_verified: bool
    signature: PasskeySignature


def parse_authenticator_data(auth_data: bytes, require_attested: bool = False) -> AuthenticatorData:
    """
    Parse authenticator data, including attested credential data when present.

    Raises:
        MalformedAuthenticatorData: On truncated or inconsistent data.
        MalformedCoseKey: If the credential public key is not CBOR.
    """
    auth_data = bytes(auth_data)
    if len(auth_data) < AUTH_DATA_HEADER_LENGTH:
        raise MalformedAuthenticatorData(
            details={"length": len(auth_data), "minimum": AUTH_DATA_HEADER_LENGTH}
        )

    rp_id_hash = auth_data[:RP_ID_HASH_LENGTH]
    flags = auth_data[32]
    sign_count = int.from_bytes(auth_data[33:37], "big")

    if not require_attested:
        return AuthenticatorData(rp_id_hash=rp_id_hash, flags=flags, sign_count=sign_count)

    if len(auth_data) < MIN_ATTESTED_AUTH_DATA_LENGTH:
        raise MalformedAuthenticatorData(
            details={"length": len(auth_data), "minimum": MIN_ATTESTED_AUTH_DATA_LENGTH}
        )
    if not flags & FLAG_ATTESTED_CREDENTIAL_DATA:
        raise MalformedAuthenticatorData("Attested credential data flag is not set.")

    index = AUTH_DATA_HEADER_LENGTH
    aaguid = auth_data[index:index + AAGUID_LENGTH]
    index += AAGUID_LENGTH

    cred_id_length = int.from_bytes(auth_data[index:index + 2], "big")
    index += 2
    if len(auth_data) < index + cred_id_length:
        raise MalformedAuthenticatorData("Credential ID is truncated.")
    credential_id = auth_data[index:index + cred_id_length]
    index += cred_id_length

    if len(auth_data) <= index:
        raise MalformedAuthenticatorData("Credential public key is missing.")

    # COSE key may be followed by extension data; decode only the first item
    try:
        cose_key = cbor2.CBORDecoder(io.BytesIO(auth_data[index:])).decode()
    except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
        raise MalformedCoseKey(details={"error": str(exc)}) from exc
    if not isinstance(cose_key, dict):
        raise MalformedCoseKey("COSE key is not a map.")

    return AuthenticatorData(
        rp_id_hash=rp_id_hash,
        flags=flags,
        sign_count=sign_count,
        aaguid=aaguid,
        credential_id=credential_id,
        cose_key=cose_key,
    )


def extract_p256_coordinates(cose_key: Dict[int, Any]) -> Tuple[bytes, bytes]:
    """
    Pull x/y from an EC2 P-256 COSE key, left-padding short coordinates.

    Raises:
        MalformedCoseKey: If the key is not a valid P-256 point.
    """
    if cose_key.get(COSE_KTY) != COSE_KTY_EC2:
        raise MalformedCoseKey("COSE key type is not EC2.")
    if COSE_CRV in cose_key and cose_key[COSE_CRV] != COSE_CRV_P256:
        raise MalformedCoseKey("COSE key curve is not P-256.")
    if COSE_ALG in cose_key and cose_key[COSE_ALG] != COSE_ALG_ES256:
        raise MalformedCoseKey("COSE key algorithm is not ES256.")

    x_raw = cose_key.get(COSE_X)
    y_raw = cose_key.get(COSE_Y)
    if not isinstance(x_raw, bytes) or not isinstance(y_raw, bytes):
        raise MalformedCoseKey("COSE key coordinates are missing.")
    if len(x_raw) > 32 or len(y_raw) > 32:
        raise MalformedCoseKey("COSE key coordinates exceed 32 bytes.")

    x = left_pad_32(x_raw)
    y = left_pad_32(y_raw)
    if not any(x) or not any(y):
        raise MalformedCoseKey("COSE key coordinates are zero.")
    try:
        load_p256_public_key(x, y)
    except ValueError as exc:
        raise MalformedCoseKey("COSE key is not a point on P-256.") from exc
    return x, y


class PasskeyVerifier:
    """
    Verifies passkey registration and authentication ceremonies.

    Stateless; safe to share across threads.
    """

    def __init__(
        self,
        relying_party: PasskeyRelyingParty,
        allowed_origins: Optional[Iterable[str]] = None,
    ) -> None:
        self.relying_party = relying_party
        origins = list(allowed_origins) if allowed_origins else []
        self.allowed_origins: List[str] = origins or [relying_party.default_origin]

    # ==================== Client Data ====================

    def _check_client_data(
        self,
        raw_client_data_json: bytes,
        expected_type: str,
        expected_challenge: bytes,
    ) -> Dict[str, Any]:
        try:
            client_data = json.loads(bytes(raw_client_data_json).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedClientDataJSON(details={"error": str(exc)}) from exc
        if not isinstance(client_data, dict):
            raise MalformedClientDataJSON("clientDataJSON is not an object.")

        response_type = client_data.get("type")
        challenge = client_data.get("challenge")
        origin = client_data.get("origin")
        if not all(isinstance(v, str) for v in (response_type, challenge, origin)):
            raise MalformedClientDataJSON("clientDataJSON is missing type, challenge or origin.")

        if response_type != expected_type:
            raise UnsupportedResponse(details={"type": response_type, "expected": expected_type})

        try:
            received_challenge = b64url_decode(challenge)
        except (binascii.Error, ValueError) as exc:
            raise MalformedClientDataJSON("Challenge is not base64url.") from exc
        if not hmac.compare_digest(received_challenge, bytes(expected_challenge)):
            logger.warning(
                "Passkey challenge mismatch",
                extra={"event": "passkey.challenge_mismatch", "type": expected_type},
            )
            raise ChallengeMismatch()

        if origin not in self.allowed_origins:
            logger.warning(
                "Passkey origin not allowed",
                extra={"event": "passkey.origin_rejected", "origin": origin},
            )
            raise RelyingPartyMismatch(details={"origin": origin})
        return client_data

    def _check_rp_id_hash(self, rp_id_hash: bytes) -> None:
        if not hmac.compare_digest(rp_id_hash, self.relying_party.rp_id_hash):
            logger.warning(
                "Passkey rpIdHash mismatch",
                extra={"event": "passkey.rp_mismatch", "rp_id": self.relying_party.rp_id},
            )
            raise RelyingPartyMismatch(details={"rp_id": self.relying_party.rp_id})

    # ==================== Registration ====================

    def verify_attestation(
        self,
        raw_attestation_object: bytes,
        raw_client_data_json: bytes,
        expected_challenge: bytes,
        credential_id: Optional[bytes] = None,
        user_name: str = "",
    ) -> PasskeyPublicKey:
        """
        Verify a registration response and extract the credential key.

        Args:
            raw_attestation_object: CBOR attestation object
            raw_client_data_json: clientDataJSON bytes from the authenticator
            expected_challenge: Challenge issued for this ceremony
            credential_id: Credential ID reported by the platform, if any
            user_name: Account name the credential was created for

        Returns:
            PasskeyPublicKey with 32-byte x/y coordinates

        Raises:
            PasskeyVerificationError: Subclass naming the failed check
        """
        self._check_client_data(raw_client_data_json, CLIENT_DATA_TYPE_CREATE, expected_challenge)

        try:
            attestation = cbor2.CBORDecoder(io.BytesIO(bytes(raw_attestation_object))).decode()
        except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
            raise MalformedAttestationObject(details={"error": str(exc)}) from exc
        if not isinstance(attestation, dict) or not isinstance(attestation.get("authData"), bytes):
            raise MalformedAttestationObject("Attestation object has no authData.")

        auth_data = parse_authenticator_data(attestation["authData"], require_attested=True)
        self._check_rp_id_hash(auth_data.rp_id_hash)

        if credential_id is not None and not hmac.compare_digest(
            bytes(credential_id), auth_data.credential_id
        ):
            raise CredentialIDMismatch()

        x, y = extract_p256_coordinates(auth_data.cose_key)
        public_key = PasskeyPublicKey(
            x=x,
            y=y,
            credential_id=auth_data.credential_id,
            user_name=user_name,
            aaguid=auth_data.aaguid,
            raw_attestation_object=bytes(raw_attestation_object),
            raw_client_data_json=bytes(raw_client_data_json),
        )
        logger.info(
            "Passkey attestation verified",
            extra={
                "event": "passkey.attestation_verified",
                "credential_id": b64url_encode(public_key.credential_id),
                "format": attestation.get("fmt"),
            },
        )
        return public_key

    # ==================== Authentication ====================

    def verify_assertion(
        self,
        signature_der: bytes,
        authenticator_data: bytes,
        client_data_json: bytes,
        stored_key: PasskeyPublicKey,
        expected_challenge: bytes,
        credential_id: Optional[bytes] = None,
        require_user_verification: bool = True,
    ) -> AssertionResult:
        """Verify an assertion against a previously registered key."""
        self._check_client_data(client_data_json, CLIENT_DATA_TYPE_GET, expected_challenge)

        auth_data = parse_authenticator_data(authenticator_data)
        self._check_rp_id_hash(auth_data.rp_id_hash)

        if credential_id is not None and not hmac.compare_digest(
            bytes(credential_id), stored_key.credential_id
        ):
            raise CredentialIDMismatch()

        if require_user_verification and not auth_data.user_verified:
            raise UserVerificationRequired()

        signature = PasskeySignature.from_der(
            signature_der, client_data_json, authenticator_data, stored_key.credential_id
        )
        r = int.from_bytes(signature.r, "big")
        s = int.from_bytes(signature.s, "big")
        try:
            validate_signature_range(r, s, P256_ORDER)
        except ValueError as exc:
            raise MalformedSignature(details={"error": str(exc)}) from exc

        message = bytes(authenticator_data) + hashlib.sha256(bytes(client_data_json)).digest()
        if not verify_p256_signature(stored_key.x, stored_key.y, message, r, s):
            logger.warning(
                "Passkey signature rejected",
                extra={
                    "event": "passkey.signature_rejected",
                    "credential_id": b64url_encode(stored_key.credential_id),
                },
            )
            raise SignatureVerificationFailed()

        return AssertionResult(
            credential_id=stored_key.credential_id,
            sign_count=auth_data.sign_count,
            user_verified=auth_data.user_verified,
            signature=signature,
        )
