"""
Tests for EIP-7702 authorization building, encoding and recovery.
"""

import pytest
import rlp
from eth_utils import keccak, to_canonical_address, to_checksum_address

from knot.core.authorization import (
    PACKED_LENGTH,
    SECP256K1_HALF_ORDER,
    UINT64_MAX,
    AuthorizationBuilder,
    AuthorizationSigner,
    InvalidChainId,
    InvalidDelegateAddress,
    InvalidNonce,
    LocalAccountSigner,
    MalformedAuthorization,
    SignedAuthorization,
    authorization_digest,
    normalize_address,
    recover_authority_address,
)
from knot.core.crypto_utils import SECP256K1_ORDER
from knot.core.knot_exceptions import AuthorizationFailed

from knot_support import DELEGATE_ADDRESS, OWNER_KEY


class StaticSigner(AuthorizationSigner):
    """Returns a fixed signature regardless of the digest."""

    def __init__(self, address, vrs):
        self._address = address
        self.vrs = vrs

    @property
    def address(self):
        return self._address

    def sign_digest(self, digest):
        return self.vrs


class RaisingSigner(AuthorizationSigner):
    def __init__(self, error):
        self.error = error

    @property
    def address(self):
        return "0x" + "11" * 20

    def sign_digest(self, digest):
        raise self.error


@pytest.fixture
def builder():
    return AuthorizationBuilder()


@pytest.fixture
def signed(builder, signer):
    return builder.build(1, DELEGATE_ADDRESS, 0, signer)


class TestDigest:
    def test_digest_matches_set_code_preimage(self):
        address = to_canonical_address(DELEGATE_ADDRESS)
        expected = keccak(b"\x05" + rlp.encode([8453, address, 7]))
        assert authorization_digest(8453, DELEGATE_ADDRESS, 7) == expected

    def test_digest_accepts_raw_address_bytes(self):
        assert authorization_digest(1, to_canonical_address(DELEGATE_ADDRESS), 0) == (
            authorization_digest(1, DELEGATE_ADDRESS, 0)
        )

    def test_chain_zero_allowed_in_digest(self):
        assert len(authorization_digest(0, DELEGATE_ADDRESS, 0)) == 32

    @pytest.mark.parametrize(
        "changed",
        [
            (8454, DELEGATE_ADDRESS, 7),
            (8453, "0x" + "df" * 20, 7),
            (8453, DELEGATE_ADDRESS, 8),
        ],
    )
    def test_digest_changes_with_each_field(self, changed):
        assert authorization_digest(*changed) != authorization_digest(8453, DELEGATE_ADDRESS, 7)


class TestBuilder:
    def test_build_recovers_to_signer(self, signed, signer):
        assert signed.chain_id == 1
        assert signed.nonce == 0
        assert signed.delegate_address == to_checksum_address(DELEGATE_ADDRESS)
        assert signed.y_parity in (0, 1)
        assert 0 < signed.s <= SECP256K1_HALF_ORDER
        assert recover_authority_address(signed) == signer.address

    def test_build_is_deterministic(self, builder, signer):
        first = builder.build(10, DELEGATE_ADDRESS, 3, signer)
        second = builder.build(10, DELEGATE_ADDRESS, 3, signer)
        assert first == second

    @pytest.mark.parametrize("chain_id", [0, -1, UINT64_MAX + 1, True, "1"])
    def test_invalid_chain_id(self, builder, signer, chain_id):
        with pytest.raises(InvalidChainId):
            builder.build(chain_id, DELEGATE_ADDRESS, 0, signer)

    @pytest.mark.parametrize(
        "address",
        ["0x" + "00" * 20, "0x1234", "not-an-address", b"\x01" * 19, None],
    )
    def test_invalid_delegate_address(self, builder, signer, address):
        with pytest.raises(InvalidDelegateAddress):
            builder.build(1, address, 0, signer)

    @pytest.mark.parametrize("nonce", [-1, UINT64_MAX + 1, 1.5])
    def test_invalid_nonce(self, builder, signer, nonce):
        with pytest.raises(InvalidNonce):
            builder.build(1, DELEGATE_ADDRESS, nonce, signer)

    def test_max_nonce_accepted(self, builder, signer):
        assert builder.build(1, DELEGATE_ADDRESS, UINT64_MAX, signer).nonce == UINT64_MAX

    def test_signer_refusal_propagates_unchanged(self, builder):
        refusal = AuthorizationFailed("User cancelled", code=1001)
        with pytest.raises(AuthorizationFailed) as exc_info:
            builder.build(1, DELEGATE_ADDRESS, 0, RaisingSigner(refusal))
        assert exc_info.value is refusal
        assert exc_info.value.code == 1001

    def test_signer_crash_becomes_authorization_failed(self, builder):
        with pytest.raises(AuthorizationFailed) as exc_info:
            builder.build(1, DELEGATE_ADDRESS, 0, RaisingSigner(RuntimeError("device locked")))
        assert "device locked" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_invalid_recovery_id(self, builder, signer):
        with pytest.raises(AuthorizationFailed):
            builder.build(1, DELEGATE_ADDRESS, 0, StaticSigner(signer.address, (35, 1, 1)))

    def test_out_of_range_scalars(self, builder, signer):
        with pytest.raises(AuthorizationFailed):
            builder.build(1, DELEGATE_ADDRESS, 0, StaticSigner(signer.address, (27, 0, 1)))
        with pytest.raises(AuthorizationFailed):
            builder.build(1, DELEGATE_ADDRESS, 0, StaticSigner(signer.address, (27, 1, SECP256K1_ORDER)))

    def test_high_s_rejected(self, builder, signed, signer):
        high_s = SECP256K1_ORDER - signed.s
        vrs = (signed.y_parity ^ 1, signed.r, high_s)
        with pytest.raises(AuthorizationFailed):
            builder.build(1, DELEGATE_ADDRESS, 0, StaticSigner(signer.address, vrs))

    def test_signature_from_another_key(self, builder, signed, other_signer):
        vrs = (signed.y_parity + 27, signed.r, signed.s)
        with pytest.raises(AuthorizationFailed):
            builder.build(1, DELEGATE_ADDRESS, 0, StaticSigner(other_signer.address, vrs))

    def test_legacy_v_is_folded(self, builder, signed, signer):
        vrs = (signed.y_parity + 27, signed.r, signed.s)
        rebuilt = builder.build(1, DELEGATE_ADDRESS, 0, StaticSigner(signer.address, vrs))
        assert rebuilt == signed


class TestEncoding:
    def test_rlp_round_trip(self, signed):
        encoded = signed.to_rlp()
        assert SignedAuthorization.from_rlp(encoded) == signed
        assert SignedAuthorization.from_rlp(encoded).to_rlp() == encoded

    def test_rlp_layout(self, signed):
        chain_id, address, nonce, y_parity, r, s = rlp.decode(signed.to_rlp())
        assert chain_id == b"\x01"
        assert address == to_canonical_address(DELEGATE_ADDRESS)
        assert nonce == b""
        assert int.from_bytes(r, "big") == signed.r
        assert int.from_bytes(s, "big") == signed.s
        assert int.from_bytes(y_parity, "big") == signed.y_parity

    def test_rlp_garbage(self):
        with pytest.raises(MalformedAuthorization):
            SignedAuthorization.from_rlp(b"\xc0")

    def test_pack_round_trip(self, signed):
        packed = signed.pack()
        assert len(packed) == PACKED_LENGTH
        assert packed[:8] == (1).to_bytes(8, "big")
        assert packed[8:28] == to_canonical_address(DELEGATE_ADDRESS)
        assert SignedAuthorization.unpack(packed) == signed

    def test_unpack_wrong_length(self, signed):
        with pytest.raises(MalformedAuthorization):
            SignedAuthorization.unpack(signed.pack()[:-1])

    def test_relayer_dict(self, signed):
        data = signed.to_relayer_dict()
        assert data["chainId"] == "0x1"
        assert data["nonce"] == "0x0"
        assert data["address"] == to_checksum_address(DELEGATE_ADDRESS)
        assert SignedAuthorization.from_relayer_dict(data) == signed

    def test_relayer_dict_missing_field(self, signed):
        data = signed.to_relayer_dict()
        del data["r"]
        with pytest.raises(MalformedAuthorization):
            SignedAuthorization.from_relayer_dict(data)

    def test_invalid_y_parity(self, signed):
        with pytest.raises(MalformedAuthorization):
            SignedAuthorization(1, DELEGATE_ADDRESS, 0, 2, signed.r, signed.s)


class TestSigners:
    def test_local_signer_address(self, signer):
        assert signer.address == "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"

    def test_from_mnemonic(self):
        hardhat = "test test test test test test test test test test test junk"
        signer = LocalAccountSigner.from_mnemonic(hardhat)
        assert signer.address == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

    def test_normalize_address_bytes(self):
        assert normalize_address(b"\xde" * 20) == to_checksum_address(DELEGATE_ADDRESS)

    def test_recovery_uses_digest(self, signed, builder):
        moved = SignedAuthorization(
            signed.chain_id + 1, signed.delegate_address, signed.nonce,
            signed.y_parity, signed.r, signed.s,
        )
        assert recover_authority_address(moved) != LocalAccountSigner(OWNER_KEY).address
