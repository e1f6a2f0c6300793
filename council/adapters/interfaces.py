"""
Collaborator interfaces. The core only talks to these; concrete adapters live
next to this module (memory, mailbox, rpc, staging).

Error contract for implementations:
- transient failures (unreachable endpoint, timeout) raise TransportError or
  let httpx/OSError propagate; the core retries them
- MembershipResolver raises DiscoveryError when an anchor/token does not exist
- Broadcaster raises BroadcastRejected when the network refuses a transaction
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from ..types import Envelope


@runtime_checkable
class MembershipResolver(Protocol):
    def children(self, anchor_id: str) -> Sequence[str]:
        """Membership tokens issued under the anchor."""
        ...

    def holder(self, token: str) -> str:
        """Current holder address of a membership token."""
        ...

    def public_key(self, address: str) -> Optional[str]:
        """Compressed public key of `address`, or None if it never transacted."""
        ...


@runtime_checkable
class MessagingChannel(Protocol):
    """At-least-once delivery; order not guaranteed across senders."""

    def send(self, recipient: str, envelope: Envelope) -> None: ...

    def fetch(self, recipient: str, cursor: Optional[str]) -> Tuple[List[Envelope], Optional[str]]:
        """Messages for `recipient` after `cursor`, plus the cursor to resume from."""
        ...


@runtime_checkable
class Stager(Protocol):
    def stage(self, data: bytes) -> str:
        """Store `data`; returns its content address."""
        ...

    def fetch(self, content_address: str) -> bytes: ...


@runtime_checkable
class Broadcaster(Protocol):
    def broadcast(self, raw_hex: str) -> str:
        """Submit a raw transaction; returns the network's broadcast id."""
        ...


__all__ = ["MembershipResolver", "MessagingChannel", "Stager", "Broadcaster"]
