"""
In-process collaborators.

Used by the test-suite and for local dry runs. They honour the same error
contract as the network adapters, and can be told to fail a number of times
so retry behaviour is observable.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..errors import BroadcastRejected, DiscoveryError, StagingError, TransportError
from ..types import Envelope
from ..utils.hashing import sha3_256_hex


class _Flaky:
    """Counts down injected transient failures per operation name."""

    def __init__(self) -> None:
        self._failures: Dict[str, int] = {}

    def fail_next(self, op: str, times: int = 1) -> None:
        self._failures[op] = self._failures.get(op, 0) + times

    def _maybe_fail(self, op: str) -> None:
        left = self._failures.get(op, 0)
        if left > 0:
            self._failures[op] = left - 1
            raise TransportError(f"injected {op} failure", endpoint="memory")


class InMemoryChannel(_Flaky):
    """
    Mailboxes keyed by recipient. With `duplicate=True` every message is
    delivered twice, which exercises at-least-once handling.
    """

    def __init__(self, *, duplicate: bool = False) -> None:
        super().__init__()
        self.duplicate = duplicate
        self._boxes: Dict[str, List[Envelope]] = {}
        self._lock = threading.Lock()
        self.sent: List[Tuple[str, Envelope]] = []

    def send(self, recipient: str, envelope: Envelope) -> None:
        self._maybe_fail("send")
        self._maybe_fail(f"send:{recipient}")
        with self._lock:
            box = self._boxes.setdefault(recipient, [])
            box.append(envelope)
            if self.duplicate:
                box.append(envelope)
            self.sent.append((recipient, envelope))

    def fetch(self, recipient: str, cursor: Optional[str]) -> Tuple[List[Envelope], Optional[str]]:
        self._maybe_fail("fetch")
        with self._lock:
            box = self._boxes.get(recipient, [])
            start = int(cursor) if cursor else 0
            return list(box[start:]), str(len(box))

    def pending(self, recipient: str) -> int:
        with self._lock:
            return len(self._boxes.get(recipient, []))


class InMemoryStager(_Flaky):
    def __init__(self) -> None:
        super().__init__()
        self.blobs: Dict[str, bytes] = {}

    def stage(self, data: bytes) -> str:
        self._maybe_fail("stage")
        cid = "mem-" + sha3_256_hex(data)[:32]
        self.blobs[cid] = bytes(data)
        return cid

    def fetch(self, content_address: str) -> bytes:
        self._maybe_fail("fetch")
        try:
            return self.blobs[content_address]
        except KeyError:
            raise StagingError("unknown content address", content_address=content_address) from None


class InMemoryBroadcaster(_Flaky):
    """
    Hands out broadcast ids from `ids` in order (falling back to the
    transaction hash), or rejects with `reject_reason`.
    """

    def __init__(self, ids: Optional[Sequence[str]] = None, *, reject_reason: Optional[str] = None) -> None:
        super().__init__()
        self.ids: List[str] = list(ids or [])
        self.reject_reason = reject_reason
        self.submitted: List[str] = []

    def broadcast(self, raw_hex: str) -> str:
        self._maybe_fail("broadcast")
        if self.reject_reason is not None:
            raise BroadcastRejected(reason=self.reject_reason)
        self.submitted.append(raw_hex)
        if self.ids:
            return self.ids.pop(0)
        return sha3_256_hex(bytes.fromhex(raw_hex))


class StaticResolver(_Flaky):
    """
    Resolver over fixed tables:
      anchors:     anchor id -> tokens
      holders:     token -> address
      public_keys: address -> public key (missing = never transacted)
    """

    def __init__(
        self,
        anchors: Mapping[str, Sequence[str]],
        holders: Mapping[str, str],
        public_keys: Mapping[str, str],
    ) -> None:
        super().__init__()
        self.anchors = {k: list(v) for k, v in anchors.items()}
        self.holders = dict(holders)
        self.public_keys = dict(public_keys)

    def children(self, anchor_id: str) -> Sequence[str]:
        self._maybe_fail("children")
        try:
            return list(self.anchors[anchor_id])
        except KeyError:
            raise DiscoveryError("unknown membership anchor", anchor_id=anchor_id) from None

    def holder(self, token: str) -> str:
        self._maybe_fail("holder")
        try:
            return self.holders[token]
        except KeyError:
            raise DiscoveryError("unknown membership token", token=token) from None

    def public_key(self, address: str) -> Optional[str]:
        self._maybe_fail("public_key")
        self._maybe_fail(f"public_key:{address}")
        return self.public_keys.get(address)

    @classmethod
    def from_members(
        cls,
        anchor_id: str,
        members: Iterable[Tuple[str, str, Optional[str]]],
    ) -> "StaticResolver":
        """Build from (token, address, public_key or None) triples."""
        tokens: List[str] = []
        holders: Dict[str, str] = {}
        keys: Dict[str, str] = {}
        for token, address, pk in members:
            tokens.append(token)
            holders[token] = address
            if pk:
                keys[address] = pk
        return cls({anchor_id: tokens}, holders, keys)


__all__ = ["InMemoryChannel", "InMemoryStager", "InMemoryBroadcaster", "StaticResolver"]
