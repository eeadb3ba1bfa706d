"""Utility helpers for secp256k1 / P-256 scalars and passkey signatures."""

from __future__ import annotations

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

SECP256K1_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
P256_ORDER = int("FFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551", 16)
P256_HALF_ORDER = P256_ORDER // 2

_P256 = ec.SECP256R1()


def left_pad_32(data: bytes) -> bytes:
    """Left-pad to 32 bytes, keeping the low 32 bytes of longer input."""
    if len(data) >= 32:
        return bytes(data[-32:])
    return bytes(32 - len(data)) + bytes(data)


def is_valid_scalar(value: int, order: int = SECP256K1_ORDER) -> bool:
    """True when ``value`` is a non-zero scalar below ``order``."""
    return 0 < value < order


def validate_signature_range(r: int, s: int, order: int = SECP256K1_ORDER) -> None:
    """
    Ensure signature components fall within the curve order.

    Raises:
        ValueError: If either component is out of range.
    """
    if not is_valid_scalar(r, order):
        raise ValueError("Signature r component out of range.")
    if not is_valid_scalar(s, order):
        raise ValueError("Signature s component out of range.")


def normalize_p256_s(s: int) -> int:
    """Fold a P-256 ``s`` into the lower half of the order (low-S form)."""
    if s > P256_HALF_ORDER:
        return P256_ORDER - s
    return s


def decode_der_signature(der: bytes) -> tuple[int, int]:
    """
    Split a DER-encoded ECDSA signature into integer (r, s).

    Raises:
        ValueError: If the encoding is malformed.
    """
    if not der or der[0] != 0x30:
        raise ValueError("Signature is not a DER sequence.")
    return decode_dss_signature(bytes(der))


def load_p256_public_key(x: bytes, y: bytes) -> ec.EllipticCurvePublicKey:
    """
    Build a P-256 public key from raw 32-byte coordinates.

    Raises:
        ValueError: If the coordinates do not form a point on the curve.
    """
    if len(x) != 32 or len(y) != 32:
        raise ValueError("P-256 coordinates must be 32 bytes each.")
    numbers = ec.EllipticCurvePublicNumbers(
        int.from_bytes(x, "big"), int.from_bytes(y, "big"), _P256
    )
    return numbers.public_key()


def verify_p256_signature(x: bytes, y: bytes, message: bytes, r: int, s: int) -> bool:
    """
    Verify an ECDSA P-256 / SHA-256 signature over ``message``.

    The message is hashed here; pass the raw signed bytes.
    """
    try:
        validate_signature_range(r, s, P256_ORDER)
        public_key = load_p256_public_key(x, y)
        public_key.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False
