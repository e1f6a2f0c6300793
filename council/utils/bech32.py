"""
Bech32m codec (BIP-0350) for council addresses.

Addresses are `hrp1...` strings over a 21-byte payload: one version byte
(0x00 for a single key, 0x05 for a multisig redeem script) followed by the
first 20 bytes of SHA3-256 of the key or script.

Helpers
-------
- encode(hrp, data5) -> string (data must be 5-bit ints 0..31)
- decode(addr) -> (hrp, data5)
- encode_bytes(hrp, payload) -> string (8→5 convertbits)
- decode_bytes(addr, expected_hrp=None) -> (hrp, payload: bytes)
- is_valid_address(addr, expected_hrp=None) -> bool

HRP must be lowercase alphanumeric; mixed-case and classic bech32 are rejected.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

__all__ = [
    "encode",
    "decode",
    "encode_bytes",
    "decode_bytes",
    "convertbits",
    "is_valid_address",
    "Bech32Error",
    "DEFAULT_HRP",
]

DEFAULT_HRP = "cncl"

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
CHARSET_REV = {c: i for i, c in enumerate(CHARSET)}

_BECH32M_CONST = 0x2BC830A3


class Bech32Error(ValueError):
    pass


def _polymod(values: Sequence[int]) -> int:
    GENERATORS = (0x3b6a57b2, 0x26508e6d, 0x1ea119fa, 0x3d4233dd, 0x2a1462b3)
    chk = 1
    for v in values:
        b = (chk >> 25) & 0xFF
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            chk ^= GENERATORS[i] if ((b >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: Sequence[int]) -> List[int]:
    values = _hrp_expand(hrp) + list(data)
    pm = _polymod(values + [0, 0, 0, 0, 0, 0]) ^ _BECH32M_CONST
    return [(pm >> 5 * (5 - i)) & 31 for i in range(6)]


def _validate_hrp(hrp: str) -> None:
    if not hrp or any(not ("a" <= c <= "z" or "0" <= c <= "9") for c in hrp):
        raise Bech32Error("invalid HRP (must be lowercase alphanumeric)")


def encode(hrp: str, data5: Iterable[int]) -> str:
    _validate_hrp(hrp)
    data5 = list(data5)
    if any((v < 0 or v > 31) for v in data5):
        raise Bech32Error("data5 values must be in 0..31")
    checksum = _create_checksum(hrp, data5)
    return hrp + "1" + "".join(CHARSET[d] for d in (data5 + checksum))


def decode(addr: str) -> Tuple[str, List[int]]:
    """Decode a bech32m string. Returns (hrp, data5); raises Bech32Error."""
    if any(ord(x) < 33 or ord(x) > 126 for x in addr):
        raise Bech32Error("invalid characters")
    if addr.lower() != addr and addr.upper() != addr:
        raise Bech32Error("mixed case not allowed")
    addr = addr.lower()
    pos = addr.rfind("1")
    if pos == -1:
        raise Bech32Error("missing separator '1'")
    hrp, rest = addr[:pos], addr[pos + 1 :]
    _validate_hrp(hrp)
    if len(rest) < 6:
        raise Bech32Error("too short data/checksum")
    try:
        data = [CHARSET_REV[c] for c in rest]
    except KeyError:
        raise Bech32Error("invalid charset") from None
    if _polymod(_hrp_expand(hrp) + data) != _BECH32M_CONST:
        raise Bech32Error("invalid checksum")
    return hrp, data[:-6]


def convertbits(data: Iterable[int], from_bits: int, to_bits: int, *, pad: bool = True) -> List[int]:
    """General power-of-two base conversion (e.g., 8→5 or 5→8)."""
    acc = 0
    bits = 0
    ret: List[int] = []
    maxv = (1 << to_bits) - 1
    max_acc = (1 << (from_bits + to_bits - 1)) - 1
    for value in data:
        if value < 0 or value >> from_bits:
            raise Bech32Error("invalid value for convertbits")
        acc = ((acc << from_bits) | value) & max_acc
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (to_bits - bits)) & maxv)
    else:
        if bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
            raise Bech32Error("non-zero padding")
    return ret


def encode_bytes(hrp: str, payload: bytes) -> str:
    return encode(hrp, convertbits(payload, 8, 5, pad=True))


def decode_bytes(addr: str, *, expected_hrp: Optional[str] = None) -> Tuple[str, bytes]:
    hrp, data5 = decode(addr)
    if expected_hrp is not None and hrp != expected_hrp:
        raise Bech32Error(f"HRP mismatch: expected {expected_hrp}, got {hrp}")
    return hrp, bytes(convertbits(data5, 5, 8, pad=False))


def is_valid_address(addr: str, expected_hrp: Optional[str] = None) -> bool:
    try:
        decode_bytes(addr, expected_hrp=expected_hrp)
    except Bech32Error:
        return False
    return True
