"""
Canonical CBOR helpers.

Transaction ids and signature digests are computed over canonical CBOR
(RFC 8949 core deterministic encoding: sorted map keys, shortest ints), so
every member derives identical bytes for the same logical transaction.
"""

from __future__ import annotations

from typing import Any

import cbor2


def cbor_dumps(obj: Any) -> bytes:
    return cbor2.dumps(obj, canonical=True)


def cbor_loads(data: bytes) -> Any:
    return cbor2.loads(data)


__all__ = ["cbor_dumps", "cbor_loads"]
