"""
Assembly and submission of quorate proposals.

Signatures are applied in a fixed order: by input index, then by the
policy's canonical key order, taking the first `threshold` keys that signed.
Because the redeem script lists keys in that same order, placing each
signature in its key's slot yields a witness the locking script accepts.

Broadcast is never retried. A rejection is terminal for the proposal
(BroadcastRejected, state ABANDONED); an unreachable endpoint leaves the
proposal FINALIZED so an operator can resubmit (BroadcastUnavailable).
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from . import metrics
from .adapters.interfaces import Broadcaster
from .claims import ProposalClaims
from .collector import SignatureCollector
from .errors import (BroadcastRejected, BroadcastUnavailable, InsufficientSignatures,
                     ProposalStateError)
from .keys import verify_digest
from .tx.model import SignatureObject
from .types import FinalizedTransaction, PartialSignature, Proposal, ProposalState
from .utils.retry import Idempotency, Retrier, RetryError

log = logging.getLogger(__name__)

__all__ = ["SignatureAssembler"]


class SignatureAssembler:
    def __init__(
        self,
        broadcaster: Broadcaster,
        *,
        claims: Optional[ProposalClaims] = None,
        retry: Optional[Retrier] = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.claims = claims
        self.retry = retry or Retrier()

    # --- assembly ----------------------------------------------------------

    def build(self, proposal: Proposal, signatures: Iterable[PartialSignature]) -> FinalizedTransaction:
        """
        Apply signatures to the unsigned transaction. Raises
        InsufficientSignatures naming the first input short of quorum.
        """
        tx = proposal.unsigned_transaction
        by_input: Dict[int, Dict[str, SignatureObject]] = {i: {} for i in range(len(tx.inputs))}
        for p in signatures:
            sig = p.signature_object
            if p.proposal_id != proposal.id or p.input_index not in by_input:
                log.debug("assemble %s: ignoring foreign signature from %s", proposal.id, p.signer_address)
                continue
            if not verify_digest(sig.public_key, tx.sighash(p.input_index, sig.sighash_type), sig.signature):
                log.warning("assemble %s: ignoring invalid signature from %s", proposal.id, p.signer_address)
                continue
            by_input[p.input_index][sig.public_key] = sig

        need = proposal.required_signatures
        signed = tx
        for idx, inp in enumerate(tx.inputs):
            available = by_input[idx]
            chosen: List[SignatureObject] = [available[pk] for pk in inp.public_keys if pk in available]
            if len(chosen) < need:
                raise InsufficientSignatures(proposal_id=proposal.id, input_index=idx, have=len(chosen), need=need)
            for sig in chosen[: inp.threshold]:
                signed = signed.with_signature(sig)

        finalized = FinalizedTransaction(
            proposal_id=proposal.id,
            txid=signed.txid(),
            raw=signed.serialize(),
            transaction=signed,
        )
        log.info("assemble %s: finalized %d bytes", proposal.id, len(finalized.raw))
        return finalized

    # --- submission --------------------------------------------------------

    def submit(self, finalized: FinalizedTransaction) -> str:
        """Hand the finalized transaction to the network once."""
        try:
            broadcast_id = self.retry.call(
                self.broadcaster.broadcast,
                finalized.hex,
                idempotency=Idempotency.NON_IDEMPOTENT,
                label="broadcast",
            )
        except BroadcastRejected as e:
            metrics.BROADCASTS.labels(result="rejected").inc()
            log.error("broadcast %s: rejected: %s", finalized.proposal_id, e.reason)
            raise BroadcastRejected(reason=e.reason, proposal_id=finalized.proposal_id) from e
        except RetryError as e:
            metrics.BROADCASTS.labels(result="unavailable").inc()
            raise BroadcastUnavailable(proposal_id=finalized.proposal_id) from e
        metrics.BROADCASTS.labels(result="submitted").inc()
        log.info("broadcast %s: accepted as %s", finalized.proposal_id, broadcast_id)
        return broadcast_id

    def assemble(self, proposal: Proposal, signatures: Iterable[PartialSignature]) -> str:
        """Build and submit; returns the broadcast id."""
        return self.submit(self.build(proposal, signatures))

    def finalize(self, collector: SignatureCollector) -> str:
        """
        Drive a collector from QUORATE (or FINALIZED, on resubmission) to
        SUBMITTED under the proposal's claim.
        """
        pid = collector.proposal.id
        if self.claims is not None:
            self._refuse_submitted(pid)
        if collector.state in (ProposalState.SUBMITTED, ProposalState.ABANDONED):
            raise ProposalStateError("proposal is closed", proposal_id=pid, state=collector.state.value)

        if self.claims is None:
            return self._finalize(collector)
        with self.claims.claim(pid):
            # another coordinator may have submitted between the check above and the claim
            self._refuse_submitted(pid)
            broadcast_id = self._finalize(collector)
            self.claims.mark_submitted(pid, broadcast_id)
            return broadcast_id

    def _refuse_submitted(self, pid: str) -> None:
        prior = self.claims.submitted(pid)
        if prior is not None:
            raise ProposalStateError(
                "proposal was already submitted", proposal_id=pid, details={"broadcast_id": prior}
            )

    def _finalize(self, collector: SignatureCollector) -> str:
        if collector.state is ProposalState.FINALIZED and collector.finalized is not None:
            finalized = collector.finalized
        else:
            finalized = self.build(collector.proposal, collector.signatures())
            collector.mark_finalized(finalized)
        try:
            broadcast_id = self.submit(finalized)
        except BroadcastRejected as e:
            collector.abandon(f"broadcast rejected: {e.reason}")
            raise
        collector.mark_submitted(broadcast_id)
        return broadcast_id
