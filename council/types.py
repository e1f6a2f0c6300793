"""
council.types
-------------

Domain records shared by every component. All are immutable; components
exchange them by value.

  Identity            member address + public key, from discovery
  UnresolvedHolder    holder whose public key could not be resolved (yet)
  DiscoveryResult     identities plus unresolved holders
  SpendingPolicy      ordered keys, threshold, derived address/script
  Proposal            unsigned transaction + policy, id = txid
  PartialSignature    one member's signature over one input
  FinalizedTransaction broadcastable bytes after quorum
  ProposalState       AWAITING_SIGNATURES → QUORATE → FINALIZED → SUBMITTED | ABANDONED
  Envelope            one message on the channel
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from .tx.model import SignatureObject, Transaction

__all__ = [
    "Identity",
    "UnresolvedHolder",
    "DiscoveryResult",
    "SpendingPolicy",
    "Proposal",
    "PartialSignature",
    "SignatureObject",
    "FinalizedTransaction",
    "ProposalState",
    "Envelope",
    "KIND_PROPOSAL",
    "KIND_SIGNATURE",
]


@dataclass(frozen=True)
class Identity:
    """A discovered member. Equality is by address only."""

    address: str
    public_key: str = field(compare=False)
    membership_token: str = field(compare=False)


@dataclass(frozen=True)
class UnresolvedHolder:
    address: str
    membership_token: str


@dataclass(frozen=True)
class DiscoveryResult:
    identities: FrozenSet[Identity]
    unresolved: Tuple[UnresolvedHolder, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.unresolved

    def to_dict(self) -> dict:
        return {
            "identities": [
                {"address": i.address, "publicKey": i.public_key, "token": i.membership_token}
                for i in sorted(self.identities, key=lambda x: x.address)
            ],
            "unresolved": [{"address": u.address, "token": u.membership_token} for u in self.unresolved],
        }


@dataclass(frozen=True)
class SpendingPolicy:
    """
    M-of-N policy. `address` and `redeem_script_hex` are pure functions of
    (ordered_public_keys, threshold); build with council.policy.build_policy.
    """

    ordered_public_keys: Tuple[str, ...]
    threshold: int
    address: str
    redeem_script_hex: str

    @property
    def size(self) -> int:
        return len(self.ordered_public_keys)

    def key_index(self, public_key: str) -> Optional[int]:
        try:
            return self.ordered_public_keys.index(public_key.lower())
        except ValueError:
            return None

    def __contains__(self, public_key: object) -> bool:
        return isinstance(public_key, str) and self.key_index(public_key) is not None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "scriptHex": self.redeem_script_hex,
            "publicKeys": list(self.ordered_public_keys),
            "requiredSigners": self.threshold,
        }


@dataclass(frozen=True)
class Proposal:
    id: str
    unsigned_transaction: Transaction
    policy: SpendingPolicy
    required_signatures: int

    @property
    def input_count(self) -> int:
        return len(self.unsigned_transaction.inputs)


@dataclass(frozen=True)
class PartialSignature:
    proposal_id: str
    signer_address: str
    input_index: int
    signature_object: SignatureObject


@dataclass(frozen=True)
class FinalizedTransaction:
    proposal_id: str
    txid: str
    raw: bytes
    transaction: Transaction = field(repr=False, compare=False)

    @property
    def hex(self) -> str:
        return self.raw.hex()


class ProposalState(str, Enum):
    AWAITING_SIGNATURES = "awaiting_signatures"
    QUORATE = "quorate"
    FINALIZED = "finalized"
    SUBMITTED = "submitted"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (ProposalState.SUBMITTED, ProposalState.ABANDONED)


KIND_PROPOSAL = "proposal"
KIND_SIGNATURE = "signature"


@dataclass(frozen=True)
class Envelope:
    """
    One channel message. `payload` is an encoded wire artifact (see
    council.wire); `proposal_ref` lets recipients route without decoding.
    """

    sender: str
    proposal_ref: str
    kind: str
    payload: bytes
