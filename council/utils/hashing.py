from __future__ import annotations

import hashlib

from .bytes import BytesLike, ensure_bytes


def sha3_256(data: BytesLike) -> bytes:
    """SHA3-256 digest; used for transaction ids, addresses and content checks."""
    return hashlib.sha3_256(ensure_bytes(data)).digest()


def sha3_256_hex(data: BytesLike) -> str:
    return sha3_256(data).hex()


def sha256d(data: BytesLike) -> bytes:
    """Double SHA-256; the digest that signers commit to."""
    return hashlib.sha256(hashlib.sha256(ensure_bytes(data)).digest()).digest()


__all__ = ["sha3_256", "sha3_256_hex", "sha256d"]
