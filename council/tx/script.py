"""
Multisig locking scripts.

The redeem script for an M-of-N policy is

    OP_M <pk_1> ... <pk_N> OP_N OP_CHECKMULTISIG

with keys in policy order. The locking script checks signatures in that same
order, which is why signatures are always placed by key position.
Counts 1..16 use the small-integer opcodes; larger counts use a minimal
little-endian number push, so a 51-of-100 council is representable.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from ..keys import ADDRESS_VERSION_SCRIPT
from ..utils.bech32 import encode_bytes
from ..utils.bytes import from_hex
from ..utils.hashing import sha3_256

OP_0 = 0x00
OP_1 = 0x51
OP_16 = 0x60
OP_CHECKMULTISIG = 0xAE
PUSH_PUBKEY = 0x21  # 33-byte compressed key

MAX_KEYS = 255


class ScriptError(ValueError):
    pass


def _encode_number(n: int) -> bytes:
    if n == 0:
        return bytes([OP_0])
    if 1 <= n <= 16:
        return bytes([OP_1 + n - 1])
    body = bytearray()
    v = n
    while v:
        body.append(v & 0xFF)
        v >>= 8
    if body[-1] & 0x80:
        # keep the number positive
        body.append(0x00)
    return bytes([len(body)]) + bytes(body)


def _decode_number(script: bytes, pos: int) -> Tuple[int, int]:
    if pos >= len(script):
        raise ScriptError("truncated script")
    op = script[pos]
    if op == OP_0:
        return 0, pos + 1
    if OP_1 <= op <= OP_16:
        return op - OP_1 + 1, pos + 1
    if 1 <= op <= 4:
        end = pos + 1 + op
        if end > len(script):
            raise ScriptError("truncated number push")
        raw = script[pos + 1 : end]
        if raw[-1] & 0x80:
            raise ScriptError("negative counts are not allowed")
        value = int.from_bytes(raw, "little")
        if _encode_number(value) != script[pos:end]:
            raise ScriptError("non-minimal number push")
        return value, end
    raise ScriptError(f"expected a number at offset {pos}")


def multisig_redeem_script(public_keys: Sequence[str], threshold: int) -> bytes:
    keys = [from_hex(k) for k in public_keys]
    n = len(keys)
    if not 1 <= n <= MAX_KEYS:
        raise ScriptError(f"key count must be in 1..{MAX_KEYS}")
    if not 1 <= threshold <= n:
        raise ScriptError("threshold must be in 1..N")
    out = bytearray(_encode_number(threshold))
    for k in keys:
        if len(k) != 33:
            raise ScriptError("public keys must be 33-byte compressed points")
        out.append(PUSH_PUBKEY)
        out += k
    out += _encode_number(n)
    out.append(OP_CHECKMULTISIG)
    return bytes(out)


def parse_multisig_script(script: bytes) -> Tuple[int, List[str]]:
    """Inverse of multisig_redeem_script: returns (threshold, public keys hex)."""
    m, pos = _decode_number(script, 0)
    keys: List[str] = []
    while pos < len(script) and script[pos] == PUSH_PUBKEY:
        end = pos + 1 + 33
        if end > len(script):
            raise ScriptError("truncated public key push")
        keys.append(script[pos + 1 : end].hex())
        pos = end
    n, pos = _decode_number(script, pos)
    if pos != len(script) - 1 or script[pos] != OP_CHECKMULTISIG:
        raise ScriptError("script must end with OP_CHECKMULTISIG")
    if n != len(keys):
        raise ScriptError(f"script declares {n} keys but carries {len(keys)}")
    if not 1 <= m <= n:
        raise ScriptError("threshold must be in 1..N")
    return m, keys


def script_address(script: bytes, hrp: str) -> str:
    """Address of the funds locked by `script`."""
    return encode_bytes(hrp, bytes([ADDRESS_VERSION_SCRIPT]) + sha3_256(script)[:20])


__all__ = [
    "ScriptError",
    "multisig_redeem_script",
    "parse_multisig_script",
    "script_address",
]
