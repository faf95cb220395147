"""
Fixed-width big-endian encoding of BN254 field elements and Groth16 proofs.

The on-chain verifier reads every public input as a 32-byte big-endian word
and expects the proof in its own point layout (A negated, B limbs swapped).
"""
from __future__ import annotations

from typing import Sequence, Tuple, Union

import base58

# BN254 base field (curve coordinates)
BASE_FIELD_MODULUS = 21888242871839275222246405745257275088696311157297823662689037894645226208583
# BN254 scalar field (circuit signals, Merkle nodes)
SCALAR_FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

WORD_SIZE = 32
PROOF_SIZE = 256
U64_MAX = (1 << 64) - 1

FieldLike = Union[int, str]


class FieldOverflow(ValueError):
    """A value does not fit the field it is being encoded into."""

    def __init__(self, value: int, modulus: int):
        self.value = value
        self.modulus = modulus
        super().__init__(f"value {value} is not a canonical element of the field (modulus {modulus})")


def to_int(value: FieldLike) -> int:
    """Accept ints, decimal strings and 0x-hex strings."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.startswith(("0x", "0X")):
        return int(text, 16)
    return int(text, 10)


def to_fixed_width_be(value: FieldLike, modulus: int = BASE_FIELD_MODULUS) -> bytes:
    x = to_int(value)
    if x < 0 or x >= modulus:
        raise FieldOverflow(x, modulus)
    return x.to_bytes(WORD_SIZE, "big")


def from_fixed_width_be(data: bytes) -> int:
    if len(data) != WORD_SIZE:
        raise ValueError(f"expected {WORD_SIZE} bytes, got {len(data)}")
    return int.from_bytes(data, "big")


def pack_u64_be(value: int) -> bytes:
    """u64 in the low 8 bytes of a 32-byte word."""
    if value < 0 or value > U64_MAX:
        raise ValueError(f"value {value} out of u64 range")
    return b"\x00" * 24 + value.to_bytes(8, "big")


def address_bytes(address: Union[bytes, str]) -> bytes:
    """32 raw bytes for an account address given as bytes or base58."""
    raw = base58.b58decode(address) if isinstance(address, str) else bytes(address)
    if len(raw) != WORD_SIZE:
        raise ValueError(f"address must be {WORD_SIZE} bytes, got {len(raw)}")
    return raw


def split_address(address: Union[bytes, str]) -> Tuple[int, int]:
    """
    Split a 32-byte address into two field elements.

    Returns (high, low): the first and last 16 bytes, each read as a
    big-endian integer (equivalently, left-padded to a 32-byte word).
    """
    raw = address_bytes(address)
    return int.from_bytes(raw[:16], "big"), int.from_bytes(raw[16:], "big")


def serialize_proof(
    a: Sequence[FieldLike],
    b: Sequence[Sequence[FieldLike]],
    c: Sequence[FieldLike],
) -> bytes:
    """
    Serialize a Groth16 proof into the verifier's 256-byte layout.

    Args:
        a: [x, y] (extra projective coordinate ignored)
        b: [[x.c0, x.c1], [y.c0, y.c1]] as produced by snarkjs
        c: [x, y]

    Returns:
        A.x ‖ -A.y ‖ B.x.c1 ‖ B.x.c0 ‖ B.y.c1 ‖ B.y.c0 ‖ C.x ‖ C.y
    """
    p = BASE_FIELD_MODULUS
    ax, ay = to_int(a[0]), to_int(a[1])
    neg_ay = ((p - ay) % p + p) % p

    bx0, bx1 = to_int(b[0][0]), to_int(b[0][1])
    by0, by1 = to_int(b[1][0]), to_int(b[1][1])

    out = b"".join(
        to_fixed_width_be(v, p)
        for v in (ax, neg_ay, bx1, bx0, by1, by0, to_int(c[0]), to_int(c[1]))
    )
    if len(out) != PROOF_SIZE:
        raise ValueError(f"proof serialized to {len(out)} bytes, expected {PROOF_SIZE}")
    return out


PUBLIC_INPUT_COUNT = 8


def pack_public_inputs(signals: Sequence[FieldLike]) -> bytes:
    """
    The withdraw circuit's public inputs in verifier order:
    root, nullifierHash, recipientHigh, recipientLow, protocolHigh,
    protocolLow, fee, refund. Each is one 32-byte big-endian word.
    """
    if len(signals) != PUBLIC_INPUT_COUNT:
        raise ValueError(f"expected {PUBLIC_INPUT_COUNT} public inputs, got {len(signals)}")
    fields = [to_fixed_width_be(s, SCALAR_FIELD_MODULUS) for s in signals[:6]]
    amounts = [pack_u64_be(to_int(s)) for s in signals[6:]]
    return b"".join(fields + amounts)


def hex_to_bytes32(value: str) -> bytes:
    text = value[2:] if value.startswith(("0x", "0X")) else value
    raw = bytes.fromhex(text.rjust(64, "0"))
    if len(raw) != WORD_SIZE:
        raise ValueError(f"expected a 32-byte hex value, got {len(raw)} bytes")
    return raw


def bytes_to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def field_to_hex(value: FieldLike) -> str:
    return bytes_to_hex(to_int(value).to_bytes(WORD_SIZE, "big"))
