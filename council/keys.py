"""
council.keys
------------

secp256k1 key handling for signing agents.

- Public keys travel as 33-byte compressed SEC1 points (hex).
- Signatures are DER-encoded ECDSA over a precomputed 32-byte digest,
  with RFC 6979 nonces and normalized to low-S, so each (key, digest) pair
  has exactly one signature.
- Private keys never leave a KeyPair; only signatures and public keys do.

Key files are JSON objects: {"privateKey": "<hex>", "publicKey": ..., "address": ...};
only `privateKey` is required when loading.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (Prehashed,
                                                             decode_dss_signature,
                                                             encode_dss_signature)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .utils.bech32 import DEFAULT_HRP, encode_bytes
from .utils.bytes import from_hex
from .utils.hashing import sha3_256

__all__ = [
    "KeyPair",
    "ADDRESS_VERSION_KEY",
    "ADDRESS_VERSION_SCRIPT",
    "normalize_public_key",
    "key_address",
    "verify_digest",
]

CURVE = ec.SECP256K1()
# Group order of secp256k1
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

ADDRESS_VERSION_KEY = 0x00
ADDRESS_VERSION_SCRIPT = 0x05

# RFC 6979 nonces: the same key and digest always give the same signature
_SIGN = ec.ECDSA(Prehashed(hashes.SHA256()), deterministic_signing=True)
_VERIFY = ec.ECDSA(Prehashed(hashes.SHA256()))


def _load_public(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    raw = from_hex(public_key_hex)
    if len(raw) != 33 or raw[0] not in (0x02, 0x03):
        raise ValueError("public key must be a 33-byte compressed point")
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)


def normalize_public_key(public_key_hex: str) -> str:
    """Validate a compressed public key and return it as lowercase hex."""
    _load_public(public_key_hex)
    return from_hex(public_key_hex).hex()


def key_address(public_key_hex: str, hrp: str = DEFAULT_HRP) -> str:
    """Address bound to a single public key."""
    payload = bytes([ADDRESS_VERSION_KEY]) + sha3_256(from_hex(public_key_hex))[:20]
    return encode_bytes(hrp, payload)


def _low_s(der: bytes) -> bytes:
    r, s = decode_dss_signature(der)
    if s > CURVE_ORDER // 2:
        s = CURVE_ORDER - s
    return encode_dss_signature(r, s)


def verify_digest(public_key_hex: str, digest: bytes, signature_hex: str) -> bool:
    """True when `signature_hex` (DER) is a valid low-S signature over `digest`."""
    try:
        pub = _load_public(public_key_hex)
        der = from_hex(signature_hex)
        _r, s = decode_dss_signature(der)
    except ValueError:
        return False
    if s > CURVE_ORDER // 2:
        return False
    try:
        pub.verify(der, digest, _VERIFY)
    except InvalidSignature:
        return False
    return True


@dataclass(frozen=True)
class KeyPair:
    """A member's signing key. Hold one per agent process."""

    _private: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(ec.generate_private_key(CURVE))

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "KeyPair":
        value = int.from_bytes(from_hex(private_key_hex), "big")
        if not 0 < value < CURVE_ORDER:
            raise ValueError("private key out of range")
        return cls(ec.derive_private_key(value, CURVE))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "KeyPair":
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        if not isinstance(data, dict) or "privateKey" not in data:
            raise ValueError(f"{path}: key file must contain 'privateKey'")
        return cls.from_hex(str(data["privateKey"]))

    def save(self, path: Union[str, Path], *, hrp: str = DEFAULT_HRP) -> Path:
        """Write a key file readable only by the owner."""
        p = Path(path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        body = {
            "privateKey": self.private_key_hex(),
            "publicKey": self.public_key,
            "address": self.address(hrp),
        }
        fd = os.open(str(p), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(body, fh, indent=2)
        return p

    def private_key_hex(self) -> str:
        return self._private.private_numbers().private_value.to_bytes(32, "big").hex()

    @property
    def public_key(self) -> str:
        return self._private.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint).hex()

    def address(self, hrp: str = DEFAULT_HRP) -> str:
        return key_address(self.public_key, hrp)

    def sign_digest(self, digest: bytes) -> str:
        """Sign a 32-byte digest; returns low-S DER signature hex."""
        if len(digest) != 32:
            raise ValueError("digest must be 32 bytes")
        der = self._private.sign(digest, _SIGN)
        return _low_s(der).hex()

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r})"
