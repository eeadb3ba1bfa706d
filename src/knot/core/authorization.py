"""
EIP-7702 delegation authorizations.

An authorization delegates an EOA's code to ``delegate_address`` for one chain
and one account nonce. The signed digest is::

    keccak256(0x05 || rlp([chain_id, delegate_address, nonce]))

Wire formats:
    - RLP tuple ``[chain_id, address, nonce, y_parity, r, s]`` as carried in the
      set-code transaction authorization list
    - fixed 101-byte packing ``uint64 || address || uint64 || uint8 || bytes32 || bytes32``
"""

from __future__ import annotations

import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

import rlp
from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import is_address, keccak, to_canonical_address, to_checksum_address
from rlp.exceptions import RLPException
from rlp.sedes import Binary, big_endian_int
from rlp.sedes import List as RLPList

from knot.core.crypto_utils import SECP256K1_ORDER, is_valid_scalar
from knot.core.knot_exceptions import AuthorizationFailed, KnotError

logger = logging.getLogger(__name__)

EIP7702_MAGIC = b"\x05"
UINT64_MAX = 2**64 - 1
SECP256K1_HALF_ORDER = SECP256K1_ORDER // 2
PACKED_LENGTH = 101
ZERO_ADDRESS = "0x" + "00" * 20

_AUTHORIZATION_SEDES = RLPList([
    big_endian_int,
    Binary.fixed_length(20),
    big_endian_int,
    big_endian_int,
    big_endian_int,
    big_endian_int,
])

AddressLike = Union[str, bytes]


# ==================== Errors ====================


class AuthorizationError(KnotError):
    """Base class for authorization construction and decoding errors."""
    recoverable = True


class InvalidChainId(AuthorizationError):
    def __init__(self, chain_id: Any) -> None:
        super().__init__(
            f"Chain ID must be in 1..2^64-1, got {chain_id!r}",
            details={"chain_id": chain_id},
        )


class InvalidDelegateAddress(AuthorizationError):
    def __init__(self, address: Any) -> None:
        super().__init__(
            f"Delegate address is invalid: {address!r}",
            details={"address": str(address)},
        )


class InvalidNonce(AuthorizationError):
    def __init__(self, nonce: Any) -> None:
        super().__init__(f"Nonce must be in 0..2^64-1, got {nonce!r}", details={"nonce": nonce})


class MalformedAuthorization(AuthorizationError):
    """Encoded or constructed authorization violates its invariants."""
    pass


class RecoveryFailed(AuthorizationError):
    def __init__(self, reason: str = "") -> None:
        super().__init__(
            "Failed to recover signer address from signed authorization.",
            details={"reason": reason},
        )


# ==================== Helpers ====================


def normalize_address(address: AddressLike) -> str:
    """
    Return the checksummed form of a hex or 20-byte address.

    Raises:
        InvalidDelegateAddress: If ``address`` is not an address.
    """
    if isinstance(address, (bytes, bytearray)):
        if len(address) != 20:
            raise InvalidDelegateAddress(address)
        return to_checksum_address("0x" + bytes(address).hex())
    if not isinstance(address, str) or not is_address(address):
        raise InvalidDelegateAddress(address)
    return to_checksum_address(address)


def _is_uint64(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= UINT64_MAX


def authorization_digest(chain_id: int, delegate_address: AddressLike, nonce: int) -> bytes:
    """keccak256(0x05 || rlp([chain_id, address, nonce]))."""
    if not _is_uint64(chain_id):
        raise InvalidChainId(chain_id)
    if not _is_uint64(nonce):
        raise InvalidNonce(nonce)
    address = to_canonical_address(normalize_address(delegate_address))
    return keccak(EIP7702_MAGIC + rlp.encode([chain_id, address, nonce]))


# ==================== Signed Authorization ====================


@dataclass(frozen=True)
class SignedAuthorization:
    """Signed EIP-7702 authorization tuple."""
    chain_id: int
    delegate_address: str
    nonce: int
    y_parity: int
    r: int
    s: int

    def __post_init__(self) -> None:
        if not _is_uint64(self.chain_id):
            raise MalformedAuthorization(f"chain_id out of range: {self.chain_id!r}")
        if not _is_uint64(self.nonce):
            raise MalformedAuthorization(f"nonce out of range: {self.nonce!r}")
        if self.y_parity not in (0, 1):
            raise MalformedAuthorization(f"y_parity must be 0 or 1, got {self.y_parity!r}")
        if not is_valid_scalar(self.r) or not is_valid_scalar(self.s):
            raise MalformedAuthorization("Signature scalars must be in 1..n-1.")
        try:
            checksummed = normalize_address(self.delegate_address)
        except InvalidDelegateAddress as exc:
            raise MalformedAuthorization(exc.message) from exc
        object.__setattr__(self, "delegate_address", checksummed)

    @property
    def digest(self) -> bytes:
        return authorization_digest(self.chain_id, self.delegate_address, self.nonce)

    def to_rlp(self) -> bytes:
        return rlp.encode(
            [
                self.chain_id,
                to_canonical_address(self.delegate_address),
                self.nonce,
                self.y_parity,
                self.r,
                self.s,
            ],
            sedes=_AUTHORIZATION_SEDES,
        )

    @classmethod
    def from_rlp(cls, data: bytes) -> "SignedAuthorization":
        try:
            chain_id, address, nonce, y_parity, r, s = rlp.decode(
                bytes(data), sedes=_AUTHORIZATION_SEDES, strict=True
            )
        except RLPException as exc:
            raise MalformedAuthorization(f"Invalid authorization RLP: {exc}") from exc
        return cls(chain_id, "0x" + address.hex(), nonce, y_parity, r, s)

    def pack(self) -> bytes:
        """Fixed-width 101-byte encoding."""
        return (
            struct.pack(">Q", self.chain_id)
            + to_canonical_address(self.delegate_address)
            + struct.pack(">QB", self.nonce, self.y_parity)
            + self.r.to_bytes(32, "big")
            + self.s.to_bytes(32, "big")
        )

    @classmethod
    def unpack(cls, data: bytes) -> "SignedAuthorization":
        data = bytes(data)
        if len(data) != PACKED_LENGTH:
            raise MalformedAuthorization(
                f"Packed authorization must be {PACKED_LENGTH} bytes, got {len(data)}"
            )
        (chain_id,) = struct.unpack(">Q", data[0:8])
        address = data[8:28]
        nonce, y_parity = struct.unpack(">QB", data[28:37])
        r = int.from_bytes(data[37:69], "big")
        s = int.from_bytes(data[69:101], "big")
        return cls(chain_id, "0x" + address.hex(), nonce, y_parity, r, s)

    def to_relayer_dict(self) -> Dict[str, str]:
        """JSON-RPC form used by relayers and bundlers."""
        return {
            "chainId": hex(self.chain_id),
            "address": self.delegate_address,
            "nonce": hex(self.nonce),
            "yParity": hex(self.y_parity),
            "r": hex(self.r),
            "s": hex(self.s),
        }

    @classmethod
    def from_relayer_dict(cls, data: Dict[str, Any]) -> "SignedAuthorization":
        try:
            return cls(
                chain_id=int(data["chainId"], 16),
                delegate_address=data["address"],
                nonce=int(data["nonce"], 16),
                y_parity=int(data["yParity"], 16),
                r=int(data["r"], 16),
                s=int(data["s"], 16),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedAuthorization(f"Invalid relayer authorization: {exc}") from exc


def recover_authority_address(signed: SignedAuthorization) -> str:
    """
    Recover the checksummed address of the EOA that signed ``signed``.

    Raises:
        RecoveryFailed: If no public key can be recovered.
    """
    try:
        signature = keys.Signature(vrs=(signed.y_parity, signed.r, signed.s))
        public_key = signature.recover_public_key_from_msg_hash(signed.digest)
    except (BadSignature, ValidationError, ValueError) as exc:
        raise RecoveryFailed(str(exc)) from exc
    return public_key.to_checksum_address()


# ==================== Signing ====================


class AuthorizationSigner(ABC):
    """Signing capability over raw 32-byte digests (no message prefix)."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksummed address of the signing EOA."""
        pass

    @abstractmethod
    def sign_digest(self, digest: bytes) -> Tuple[int, int, int]:
        """
        Sign ``digest`` and return ``(v, r, s)``; ``v`` may be 0/1 or 27/28.

        Raises:
            AuthorizationFailed: If the user or device refuses to sign
        """
        pass


class LocalAccountSigner(AuthorizationSigner):
    """Signer backed by an in-process eth-account key."""

    def __init__(self, private_key: Union[str, bytes]) -> None:
        self._account = Account.from_key(private_key)

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "") -> "LocalAccountSigner":
        Account.enable_unaudited_hdwallet_features()
        account = Account.from_mnemonic(mnemonic, passphrase=passphrase)
        return cls(account.key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_digest(self, digest: bytes) -> Tuple[int, int, int]:
        signed = self._account.unsafe_sign_hash(digest)
        return signed.v, signed.r, signed.s


class AuthorizationBuilder:
    """
    Builds signed EIP-7702 authorizations.

    Either a complete, self-consistent :class:`SignedAuthorization` is returned
    or an error is raised; nothing partial escapes.
    """

    def build(
        self,
        chain_id: int,
        delegate_address: AddressLike,
        nonce: int,
        signer: AuthorizationSigner,
    ) -> SignedAuthorization:
        """
        Validate inputs, sign the authorization digest and decompose the signature.

        Raises:
            InvalidChainId: chain_id is 0 or exceeds uint64
            InvalidDelegateAddress: Address is malformed or the zero address
            InvalidNonce: Nonce outside uint64
            AuthorizationFailed: Signer refused or produced an unusable signature
        """
        if not _is_uint64(chain_id) or chain_id == 0:
            raise InvalidChainId(chain_id)
        delegate = normalize_address(delegate_address)
        if delegate == ZERO_ADDRESS:
            raise InvalidDelegateAddress(delegate_address)
        if not _is_uint64(nonce):
            raise InvalidNonce(nonce)

        digest = authorization_digest(chain_id, delegate, nonce)

        try:
            v, r, s = signer.sign_digest(digest)
        except AuthorizationFailed:
            raise
        except Exception as exc:
            logger.warning(
                "Authorization signer raised: %s",
                type(exc).__name__,
                extra={"event": "authorization.signer_failed", "chain_id": chain_id},
            )
            raise AuthorizationFailed(str(exc) or type(exc).__name__) from exc

        y_parity = v - 27 if v in (27, 28) else v
        if y_parity not in (0, 1):
            raise AuthorizationFailed(f"Signer returned invalid recovery id {v!r}")
        if not is_valid_scalar(r) or not is_valid_scalar(s) or s > SECP256K1_HALF_ORDER:
            raise AuthorizationFailed("Signer returned signature scalars out of range")

        signed = SignedAuthorization(
            chain_id=chain_id,
            delegate_address=delegate,
            nonce=nonce,
            y_parity=y_parity,
            r=r,
            s=s,
        )

        try:
            authority = recover_authority_address(signed)
        except RecoveryFailed as exc:
            raise AuthorizationFailed("Signature does not recover to a public key") from exc
        if authority != to_checksum_address(signer.address):
            raise AuthorizationFailed("Signature was not produced by the signer's key")

        logger.info(
            "EIP-7702 authorization signed",
            extra={
                "event": "authorization.signed",
                "chain_id": chain_id,
                "delegate": delegate,
                "nonce": nonce,
            },
        )
        return signed
