"""
Proposal distribution.

make_proposal() fixes the proposal id to the unsigned transaction's txid;
deliver() sends the artifact to every policy member, one envelope each.
Artifacts above `inline_limit` bytes are staged first and members receive
only a content-address pointer (with the SHA3 of the staged bytes).

Delivery is best-effort per recipient: each send is retried on its own and a
member whose send exhausts its retries is recorded in the DeliveryReport
without blocking the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from . import metrics
from .adapters.interfaces import MessagingChannel, Stager
from .channel import send_envelope
from .errors import ChannelError, InvalidTransaction, StagingError
from .tx.model import Transaction
from .types import KIND_PROPOSAL, Envelope, Identity, Proposal, SpendingPolicy
from .utils.hashing import sha3_256_hex
from .utils.retry import Retrier, RetryError
from .wire import StagedRef, encode_proposal, encode_staged_ref

log = logging.getLogger(__name__)

__all__ = ["DeliveryReport", "ProposalDistributor", "make_proposal", "DEFAULT_INLINE_LIMIT"]

DEFAULT_INLINE_LIMIT = 16 * 1024


def make_proposal(unsigned_tx: Transaction, policy: SpendingPolicy) -> Proposal:
    """
    Wrap an unsigned spend of `policy` funds as a Proposal. Every input must be
    locked by the policy's redeem script and carry no signatures.
    """
    for idx, inp in enumerate(unsigned_tx.inputs):
        if inp.redeem_script != policy.redeem_script_hex:
            raise InvalidTransaction("input is not locked by the policy script", input_index=idx)
        if inp.signature_count():
            raise InvalidTransaction("proposal inputs must be unsigned", input_index=idx)
    return Proposal(
        id=unsigned_tx.txid(),
        unsigned_transaction=unsigned_tx,
        policy=policy,
        required_signatures=policy.threshold,
    )


@dataclass
class DeliveryReport:
    proposal_id: str
    staged: Optional[StagedRef] = None
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "proposalId": self.proposal_id,
            "staged": self.staged.content_address if self.staged else None,
            "delivered": list(self.delivered),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
        }


class ProposalDistributor:
    def __init__(
        self,
        channel: MessagingChannel,
        sender: str,
        *,
        stager: Optional[Stager] = None,
        retry: Optional[Retrier] = None,
        inline_limit: int = DEFAULT_INLINE_LIMIT,
    ) -> None:
        self.channel = channel
        self.sender = sender
        self.stager = stager
        self.retry = retry or Retrier()
        self.inline_limit = inline_limit

    def distribute(
        self,
        unsigned_tx: Transaction,
        policy: SpendingPolicy,
        members: Iterable[Identity],
    ) -> Proposal:
        proposal = make_proposal(unsigned_tx, policy)
        report = self.deliver(proposal, members)
        if report.failed:
            log.warning(
                "proposal %s: delivery failed for %d member(s): %s",
                proposal.id,
                len(report.failed),
                ", ".join(sorted(report.failed)),
            )
        return proposal

    def _payload(self, proposal: Proposal) -> Tuple[bytes, Optional[StagedRef]]:
        artifact = encode_proposal(proposal)
        if len(artifact) <= self.inline_limit or self.stager is None:
            if len(artifact) > self.inline_limit:
                log.warning(
                    "proposal %s: %d bytes exceeds inline limit %d but no stager is configured",
                    proposal.id,
                    len(artifact),
                    self.inline_limit,
                )
            metrics.PROPOSALS_DISTRIBUTED.labels(transport="inline").inc()
            return artifact, None
        try:
            address = self.retry.call(self.stager.stage, artifact, label="staging.stage")
        except RetryError as e:
            raise StagingError("could not stage proposal", details={"proposal_id": proposal.id}) from e
        ref = StagedRef(content_address=address, sha3=sha3_256_hex(artifact), size=len(artifact))
        log.info("proposal %s: staged %d bytes at %s", proposal.id, len(artifact), address)
        metrics.PROPOSALS_DISTRIBUTED.labels(transport="staged").inc()
        return encode_staged_ref(ref), ref

    def deliver(self, proposal: Proposal, members: Iterable[Identity]) -> DeliveryReport:
        payload, ref = self._payload(proposal)
        report = DeliveryReport(proposal_id=proposal.id, staged=ref)
        envelope = Envelope(sender=self.sender, proposal_ref=proposal.id, kind=KIND_PROPOSAL, payload=payload)

        for member in sorted(members, key=lambda m: m.address):
            if member.public_key not in proposal.policy:
                log.info("proposal %s: %s is not in the policy, skipping", proposal.id, member.address)
                report.skipped.append(member.address)
                metrics.DELIVERIES.labels(result="skipped").inc()
                continue
            try:
                send_envelope(self.channel, member.address, envelope, retry=self.retry)
            except ChannelError as e:
                report.failed[member.address] = e.message
                metrics.DELIVERIES.labels(result="failed").inc()
                continue
            report.delivered.append(member.address)
            metrics.DELIVERIES.labels(result="sent").inc()

        log.info(
            "proposal %s: delivered to %d/%d member(s)",
            proposal.id,
            len(report.delivered),
            len(report.delivered) + len(report.failed),
        )
        return report
