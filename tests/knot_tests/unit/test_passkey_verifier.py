"""
Tests for passkey attestation and assertion verification.

Registration and authentication responses come from a software P-256
authenticator, so every check runs against real CBOR and real signatures.
"""

import json
import secrets

import cbor2
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from eth_abi import decode as abi_decode

from knot.core.crypto_utils import P256_HALF_ORDER, P256_ORDER
from knot.mobile.passkey_errors import (
    ChallengeMismatch,
    CredentialIDMismatch,
    MalformedAttestationObject,
    MalformedAuthenticatorData,
    MalformedClientDataJSON,
    MalformedCoseKey,
    MalformedSignature,
    PasskeyVerificationError,
    RelyingPartyMismatch,
    SignatureVerificationFailed,
    UnsupportedResponse,
    UserVerificationRequired,
)
from knot.mobile.passkey_verifier import (
    WEBAUTHN_AUTH_ABI,
    PasskeyPublicKey,
    PasskeyRelyingParty,
    PasskeySignature,
    PasskeyVerifier,
    b64url_encode,
    challenge_for_payload,
    extract_p256_coordinates,
    parse_authenticator_data,
)

from knot_support import SoftwareAuthenticator, client_data_json, cose_key_for


def attested_auth_data(relying_party, cose_key, flags=0x45, credential_id=b"\x01" * 16):
    return (
        relying_party.rp_id_hash
        + bytes([flags])
        + (1).to_bytes(4, "big")
        + bytes(16)
        + len(credential_id).to_bytes(2, "big")
        + credential_id
        + cbor2.dumps(cose_key)
    )


class TestAttestation:
    """Registration ceremony verification."""

    def test_valid_attestation_yields_public_key(self, verifier, registration, authenticator):
        challenge, response = registration
        key = verifier.verify_attestation(
            response.raw_attestation_object,
            response.raw_client_data_json,
            challenge,
            credential_id=response.credential_id,
            user_name="alice",
        )

        numbers = authenticator.keys[response.credential_id].public_key().public_numbers()
        assert key.x == numbers.x.to_bytes(32, "big")
        assert key.y == numbers.y.to_bytes(32, "big")
        assert key.credential_id == response.credential_id
        assert key.user_name == "alice"
        assert key.aaguid == bytes(16)
        assert key.raw_attestation_object == response.raw_attestation_object

    def test_verification_is_deterministic(self, verifier, registration):
        challenge, response = registration
        first = verifier.verify_attestation(
            response.raw_attestation_object, response.raw_client_data_json, challenge
        )
        second = verifier.verify_attestation(
            response.raw_attestation_object, response.raw_client_data_json, challenge
        )
        assert first == second

    def test_challenge_mismatch(self, verifier, registration):
        _, response = registration
        with pytest.raises(ChallengeMismatch):
            verifier.verify_attestation(
                response.raw_attestation_object,
                response.raw_client_data_json,
                secrets.token_bytes(32),
            )

    def test_wrong_client_data_type(self, verifier, registration, relying_party):
        challenge, response = registration
        client_data = client_data_json("webauthn.get", challenge, relying_party.default_origin)
        with pytest.raises(UnsupportedResponse):
            verifier.verify_attestation(response.raw_attestation_object, client_data, challenge)

    def test_client_data_not_json(self, verifier, registration):
        challenge, response = registration
        with pytest.raises(MalformedClientDataJSON):
            verifier.verify_attestation(response.raw_attestation_object, b"{not json", challenge)

    def test_client_data_missing_origin(self, verifier, registration):
        challenge, response = registration
        client_data = b'{"type":"webauthn.create","challenge":"' + b64url_encode(challenge).encode() + b'"}'
        with pytest.raises(MalformedClientDataJSON):
            verifier.verify_attestation(response.raw_attestation_object, client_data, challenge)

    @pytest.mark.parametrize("suffix", ["!!*~", "=", "+/"])
    def test_challenge_with_stray_characters(self, verifier, registration, relying_party, suffix):
        challenge, response = registration
        client_data = json.dumps(
            {
                "type": "webauthn.create",
                "challenge": b64url_encode(challenge) + suffix,
                "origin": relying_party.default_origin,
            },
            separators=(",", ":"),
        ).encode("utf-8")
        with pytest.raises(MalformedClientDataJSON):
            verifier.verify_attestation(response.raw_attestation_object, client_data, challenge)

    def test_origin_not_allowed(self, relying_party, verifier):
        authenticator = SoftwareAuthenticator(origin="https://evil.example")
        challenge = secrets.token_bytes(32)
        response = authenticator.register(relying_party, challenge, "alice", b"u")
        with pytest.raises(RelyingPartyMismatch):
            verifier.verify_attestation(
                response.raw_attestation_object, response.raw_client_data_json, challenge
            )

    def test_additional_allowed_origin(self, relying_party):
        authenticator = SoftwareAuthenticator(origin="android:apk-key-hash:abc")
        verifier = PasskeyVerifier(relying_party, ["https://knot.fi", "android:apk-key-hash:abc"])
        challenge = secrets.token_bytes(32)
        response = authenticator.register(relying_party, challenge, "alice", b"u")
        key = verifier.verify_attestation(
            response.raw_attestation_object, response.raw_client_data_json, challenge
        )
        assert key.credential_id == response.credential_id

    def test_rp_id_hash_mismatch(self, verifier):
        authenticator = SoftwareAuthenticator(origin="https://knot.fi")
        challenge = secrets.token_bytes(32)
        response = authenticator.register(
            PasskeyRelyingParty("other.example"), challenge, "alice", b"u"
        )
        with pytest.raises(RelyingPartyMismatch):
            verifier.verify_attestation(
                response.raw_attestation_object, response.raw_client_data_json, challenge
            )

    def test_credential_id_mismatch(self, verifier, registration):
        challenge, response = registration
        with pytest.raises(CredentialIDMismatch):
            verifier.verify_attestation(
                response.raw_attestation_object,
                response.raw_client_data_json,
                challenge,
                credential_id=b"\x00" * 16,
            )

    @pytest.mark.parametrize(
        "attestation",
        [b"", cbor2.dumps([1, 2, 3]), cbor2.dumps({"fmt": "none"}), cbor2.dumps({"authData": "text"})],
    )
    def test_malformed_attestation_object(self, verifier, registration, attestation):
        challenge, response = registration
        with pytest.raises(MalformedAttestationObject):
            verifier.verify_attestation(attestation, response.raw_client_data_json, challenge)

    def test_truncated_auth_data(self, verifier, registration):
        challenge, response = registration
        attestation = cbor2.dumps({"fmt": "none", "authData": b"\x00" * 40})
        with pytest.raises(MalformedAuthenticatorData):
            verifier.verify_attestation(attestation, response.raw_client_data_json, challenge)

    def test_attested_flag_missing(self, verifier, registration, relying_party):
        challenge, response = registration
        cose = cose_key_for(ec.generate_private_key(ec.SECP256R1()))
        auth_data = attested_auth_data(relying_party, cose, flags=0x05)
        attestation = cbor2.dumps({"fmt": "none", "authData": auth_data})
        with pytest.raises(MalformedAuthenticatorData):
            verifier.verify_attestation(attestation, response.raw_client_data_json, challenge)

    def test_non_ec2_cose_key(self, verifier, registration, relying_party):
        challenge, response = registration
        cose = cose_key_for(ec.generate_private_key(ec.SECP256R1()))
        cose[1] = 3  # RSA
        auth_data = attested_auth_data(relying_party, cose)
        attestation = cbor2.dumps({"fmt": "none", "authData": auth_data})
        with pytest.raises(MalformedCoseKey):
            verifier.verify_attestation(attestation, response.raw_client_data_json, challenge)

    def test_errors_are_recoverable(self, verifier, registration):
        _, response = registration
        with pytest.raises(PasskeyVerificationError) as exc_info:
            verifier.verify_attestation(
                response.raw_attestation_object, response.raw_client_data_json, b"\x00" * 32
            )
        assert exc_info.value.recoverable is True


class TestCoseKeyExtraction:
    """EC2 / P-256 key extraction."""

    def test_short_coordinates_are_left_padded(self):
        # Search for a key whose x coordinate has a leading zero byte
        while True:
            private_key = ec.generate_private_key(ec.SECP256R1())
            numbers = private_key.public_key().public_numbers()
            if numbers.x < 2 ** 248:
                break
        cose = cose_key_for(private_key)
        cose[-2] = numbers.x.to_bytes(31, "big")
        x, y = extract_p256_coordinates(cose)
        assert len(x) == 32
        assert int.from_bytes(x, "big") == numbers.x

    def test_off_curve_point(self):
        cose = {1: 2, 3: -7, -1: 1, -2: b"\x01" * 32, -3: b"\x01" * 32}
        with pytest.raises(MalformedCoseKey):
            extract_p256_coordinates(cose)

    def test_wrong_curve(self):
        cose = cose_key_for(ec.generate_private_key(ec.SECP256R1()))
        cose[-1] = 8
        with pytest.raises(MalformedCoseKey):
            extract_p256_coordinates(cose)

    def test_oversized_coordinate(self):
        cose = cose_key_for(ec.generate_private_key(ec.SECP256R1()))
        cose[-3] = b"\x01" * 33
        with pytest.raises(MalformedCoseKey):
            extract_p256_coordinates(cose)


class TestAuthenticatorData:
    def test_header_only(self, relying_party):
        parsed = parse_authenticator_data(relying_party.rp_id_hash + b"\x05" + b"\x00\x00\x00\x07")
        assert parsed.user_present
        assert parsed.user_verified
        assert not parsed.has_attested_credential
        assert parsed.sign_count == 7

    def test_too_short(self):
        with pytest.raises(MalformedAuthenticatorData):
            parse_authenticator_data(b"\x00" * 36)

    def test_truncated_credential_id(self, relying_party):
        auth_data = relying_party.rp_id_hash + b"\x45" + bytes(4) + bytes(16) + b"\x00\x40" + b"\x01" * 4
        with pytest.raises(MalformedAuthenticatorData):
            parse_authenticator_data(auth_data, require_attested=True)


class TestAssertion:
    """Authentication ceremony verification."""

    def test_valid_assertion(self, verifier, passkey, authenticator, relying_party):
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(relying_party, challenge, passkey.credential_id)
        result = verifier.verify_assertion(
            response.signature,
            response.authenticator_data,
            response.client_data_json,
            passkey,
            challenge,
            credential_id=response.credential_id,
        )
        assert result.credential_id == passkey.credential_id
        assert result.user_verified
        assert result.sign_count == authenticator.sign_count

    def test_challenge_mismatch(self, verifier, passkey, authenticator, relying_party):
        response = authenticator.sign(relying_party, b"\x01" * 32, passkey.credential_id)
        with pytest.raises(ChallengeMismatch):
            verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                passkey,
                b"\x02" * 32,
            )

    def test_create_type_rejected(self, verifier, passkey, authenticator, relying_party):
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(
            relying_party, challenge, passkey.credential_id, response_type="webauthn.create"
        )
        with pytest.raises(UnsupportedResponse):
            verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                passkey,
                challenge,
            )

    def test_user_verification_required(self, verifier, passkey, authenticator, relying_party):
        authenticator.assertion_flags = 0x01
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(relying_party, challenge, passkey.credential_id)
        with pytest.raises(UserVerificationRequired):
            verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                passkey,
                challenge,
            )

        result = verifier.verify_assertion(
            response.signature,
            response.authenticator_data,
            response.client_data_json,
            passkey,
            challenge,
            require_user_verification=False,
        )
        assert result.user_verified is False

    def test_tampered_authenticator_data(self, verifier, passkey, authenticator, relying_party):
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(relying_party, challenge, passkey.credential_id)
        tampered = response.authenticator_data[:-1] + bytes([response.authenticator_data[-1] ^ 0x01])
        with pytest.raises(SignatureVerificationFailed):
            verifier.verify_assertion(
                response.signature, tampered, response.client_data_json, passkey, challenge
            )

    def test_signature_from_other_key(self, verifier, passkey, authenticator, relying_party):
        other = authenticator.register(relying_party, b"\x00" * 32, "bob", b"u2")
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(relying_party, challenge, other.credential_id)
        with pytest.raises(SignatureVerificationFailed):
            verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                passkey,
                challenge,
            )

    def test_credential_id_mismatch(self, verifier, passkey, authenticator, relying_party):
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(relying_party, challenge, passkey.credential_id)
        with pytest.raises(CredentialIDMismatch):
            verifier.verify_assertion(
                response.signature,
                response.authenticator_data,
                response.client_data_json,
                passkey,
                challenge,
                credential_id=b"\xff" * 16,
            )

    def test_malformed_der(self, verifier, passkey, authenticator, relying_party):
        challenge = secrets.token_bytes(32)
        response = authenticator.sign(relying_party, challenge, passkey.credential_id)
        with pytest.raises(MalformedSignature):
            verifier.verify_assertion(
                b"\x01\x02\x03",
                response.authenticator_data,
                response.client_data_json,
                passkey,
                challenge,
            )


class TestPasskeySignature:
    """On-chain WebAuthn signature packaging."""

    def test_normalized_folds_high_s_and_pads(self):
        signature = PasskeySignature(
            r=b"\x01",
            s=(P256_ORDER - 5).to_bytes(32, "big"),
            client_data_json=b"{}",
            auth_data=b"",
            credential_id=b"",
        )
        normalized = signature.normalized()
        assert normalized.r == b"\x00" * 31 + b"\x01"
        assert int.from_bytes(normalized.s, "big") == 5

    def test_webauthn_auth_bytes(self, passkey, authenticator, relying_party):
        payload = b"knot:transfer:42"
        response = authenticator.sign(
            relying_party, challenge_for_payload(payload), passkey.credential_id
        )
        signature = PasskeySignature.from_der(
            response.signature,
            response.client_data_json,
            response.authenticator_data,
            response.credential_id,
        )

        encoded = signature.webauthn_auth_bytes(payload)
        (auth_data, client_data, challenge_index, type_index, r, s), = abi_decode(
            [WEBAUTHN_AUTH_ABI], encoded
        )
        text = response.client_data_json.decode("utf-8")
        assert auth_data == response.authenticator_data
        assert client_data == text
        assert type_index == text.index('"type"')
        assert challenge_index == text.index(b64url_encode(challenge_for_payload(payload)))
        assert r == int.from_bytes(signature.r, "big")
        assert 0 < s <= P256_HALF_ORDER

    def test_webauthn_auth_bytes_requires_payload_challenge(self, passkey, authenticator, relying_party):
        response = authenticator.sign(relying_party, b"\x00" * 32, passkey.credential_id)
        signature = PasskeySignature.from_der(
            response.signature,
            response.client_data_json,
            response.authenticator_data,
            response.credential_id,
        )
        assert signature.challenge_position(b"other payload") is None
        with pytest.raises(MalformedSignature):
            signature.webauthn_auth_bytes(b"other payload")


class TestPasskeyPublicKeyModel:
    def test_dict_round_trip(self, passkey):
        assert PasskeyPublicKey.from_dict(passkey.to_dict()) == passkey

    def test_from_dict_incomplete(self, passkey):
        data = passkey.to_dict()
        del data["y"]
        with pytest.raises(MalformedCoseKey):
            PasskeyPublicKey.from_dict(data)

    def test_zero_coordinate_rejected(self, passkey):
        with pytest.raises(MalformedCoseKey):
            PasskeyPublicKey(
                x=bytes(32),
                y=passkey.y,
                credential_id=passkey.credential_id,
                user_name="",
                aaguid=bytes(16),
                raw_attestation_object=b"",
                raw_client_data_json=b"",
            )

    def test_uncompressed_point(self, passkey):
        assert passkey.uncompressed == b"\x04" + passkey.x + passkey.y
