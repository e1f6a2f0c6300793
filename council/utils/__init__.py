"""
Utility helpers for council.

Re-exports:
- bytes: hex helpers
- hashing: SHA3-256 and double-SHA256 wrappers
- cbor: canonical CBOR (de)serialization
- bech32: address codec primitives
- retry: retry-with-backoff and idempotency classification
"""

from .bech32 import decode_bytes, encode_bytes
from .bytes import ensure_bytes, from_hex
from .cbor import cbor_dumps, cbor_loads
from .hashing import sha3_256, sha3_256_hex, sha256d
from .retry import Idempotency, RetryError, Retrier, RetryPolicy, call_with_retry

__all__ = [
    # bytes
    "from_hex",
    "ensure_bytes",
    # hashing
    "sha3_256",
    "sha3_256_hex",
    "sha256d",
    # cbor
    "cbor_dumps",
    "cbor_loads",
    # bech32
    "encode_bytes",
    "decode_bytes",
    # retry
    "Idempotency",
    "RetryError",
    "RetryPolicy",
    "Retrier",
    "call_with_retry",
]
