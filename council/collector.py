"""
Signature collection and the per-proposal state machine.

    AWAITING_SIGNATURES ──quorum──▶ QUORATE ──assemble──▶ FINALIZED ──broadcast──▶ SUBMITTED
            │                          │                      │
            └──────────── abandon (operator) ─────────────────┴──▶ ABANDONED

Signatures arrive asynchronously, out of order and possibly more than once.
The collector keeps one signature per (signer, input): a repeat submission
replaces the earlier one rather than counting twice. Each signature is
checked at the boundary (proposal id, input index, key membership, signer
address bound to the key, signature over the sighash); failures are logged
and counted, never fatal to collection.

Quorum means every input has at least `required_signatures` distinct signers.
The collector never times out on its own; `collect()` stops at quorum, at the
caller's deadline, or when the caller's batch stream ends.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import metrics
from .errors import CodecError, ProposalStateError, SignatureRejected
from .keys import key_address, verify_digest
from .types import (KIND_SIGNATURE, Envelope, FinalizedTransaction, PartialSignature, Proposal,
                    ProposalState)
from .utils.bech32 import DEFAULT_HRP
from .wire import decode_signature

log = logging.getLogger(__name__)

__all__ = ["SignatureCollector"]


class SignatureCollector:
    def __init__(self, proposal: Proposal, *, hrp: str = DEFAULT_HRP) -> None:
        self.proposal = proposal
        # called with every accepted signature, new or replacement
        self.on_accepted: Optional[Callable[[PartialSignature], None]] = None
        self.hrp = hrp
        self.state = ProposalState.AWAITING_SIGNATURES
        self.reason: Optional[str] = None
        self.finalized: Optional[FinalizedTransaction] = None
        self.broadcast_id: Optional[str] = None
        self.rejected = 0
        self._sigs: Dict[Tuple[str, int], PartialSignature] = {}

    @classmethod
    def resume(
        cls,
        proposal: Proposal,
        signatures: Iterable[PartialSignature],
        *,
        hrp: str = DEFAULT_HRP,
        state: ProposalState = ProposalState.AWAITING_SIGNATURES,
        reason: Optional[str] = None,
        broadcast_id: Optional[str] = None,
    ) -> "SignatureCollector":
        """
        Rebuild a collector from persisted signatures and state. A persisted
        FINALIZED state resumes as QUORATE: assembly is deterministic, so the
        same signatures finalize to the same bytes again.
        """
        c = cls(proposal, hrp=hrp)
        for p in signatures:
            try:
                c.add(p)
            except SignatureRejected as e:
                log.warning("proposal %s: dropping stored signature: %s", proposal.id, e)
        if state is ProposalState.ABANDONED:
            c.state = state
            c.reason = reason
        elif state is ProposalState.SUBMITTED:
            c.state = state
            c.broadcast_id = broadcast_id
        return c

    # --- queries -----------------------------------------------------------

    @property
    def required(self) -> int:
        return self.proposal.required_signatures

    def signers(self, input_index: int = 0) -> List[str]:
        return sorted(addr for (addr, idx) in self._sigs if idx == input_index)

    def distinct_signers(self) -> List[str]:
        return sorted({addr for (addr, _idx) in self._sigs})

    def counts(self) -> List[int]:
        return [len(self.signers(i)) for i in range(self.proposal.input_count)]

    def is_quorate(self) -> bool:
        return all(n >= self.required for n in self.counts())

    def signatures(self) -> List[PartialSignature]:
        """Distinct signatures by input index, then canonical key order."""
        keys = self.proposal.policy.ordered_public_keys

        def order(p: PartialSignature) -> Tuple[int, int]:
            pk = p.signature_object.public_key
            return (p.input_index, keys.index(pk) if pk in keys else len(keys))

        return sorted(self._sigs.values(), key=order)

    # --- ingestion ---------------------------------------------------------

    def _validate(self, partial: PartialSignature) -> None:
        pid = self.proposal.id
        signer = partial.signer_address
        idx = partial.input_index

        def reject(msg: str) -> SignatureRejected:
            return SignatureRejected(msg, signer=signer, proposal_id=partial.proposal_id, input_index=idx)

        if partial.proposal_id != pid:
            raise reject("signature is for a different proposal")
        tx = self.proposal.unsigned_transaction
        if not 0 <= idx < len(tx.inputs):
            raise reject("input index out of range")
        sig = partial.signature_object
        if sig.input_index != idx:
            raise reject("signature object names a different input")
        inp = tx.inputs[idx]
        if sig.prev_txid != inp.prev_txid or sig.output_index != inp.output_index:
            raise reject("signature is for a different outpoint")
        if inp.key_slot(sig.public_key) is None or sig.public_key not in self.proposal.policy:
            raise reject("signing key is not part of the policy")
        if key_address(sig.public_key, self.hrp) != signer:
            raise reject("signer address is not bound to the signing key")
        if not verify_digest(sig.public_key, tx.sighash(idx, sig.sighash_type), sig.signature):
            raise reject("signature does not verify")

    def add(self, partial: PartialSignature) -> bool:
        """
        Record a partial signature. Returns True when it added a new
        (signer, input) pair, False for a replacement or a late arrival.
        Raises SignatureRejected for invalid signatures and
        ProposalStateError once the proposal is abandoned.
        """
        if self.state is ProposalState.ABANDONED:
            raise ProposalStateError("proposal was abandoned", proposal_id=self.proposal.id, state=self.state.value)
        if self.state in (ProposalState.FINALIZED, ProposalState.SUBMITTED):
            log.debug("proposal %s: late signature from %s ignored", self.proposal.id, partial.signer_address)
            metrics.SIGNATURES_COLLECTED.labels(result="ignored").inc()
            return False
        try:
            self._validate(partial)
        except SignatureRejected:
            self.rejected += 1
            metrics.SIGNATURES_COLLECTED.labels(result="rejected").inc()
            raise

        key = (partial.signer_address, partial.input_index)
        is_new = key not in self._sigs
        self._sigs[key] = partial
        metrics.SIGNATURES_COLLECTED.labels(result="accepted" if is_new else "replaced").inc()
        if self.on_accepted is not None:
            self.on_accepted(partial)
        log.info(
            "proposal %s: %s signature from %s for input %d (%s)",
            self.proposal.id,
            "new" if is_new else "replacement",
            partial.signer_address,
            partial.input_index,
            "/".join(f"{n}" for n in self.counts()) + f" of {self.required}",
        )
        if self.state is ProposalState.AWAITING_SIGNATURES and self.is_quorate():
            self._transition(ProposalState.QUORATE)
        return is_new

    def ingest(self, envelope: Envelope) -> bool:
        """Decode and add one signature envelope; invalid ones are logged and dropped."""
        if envelope.kind != KIND_SIGNATURE or envelope.proposal_ref != self.proposal.id:
            return False
        try:
            sig = decode_signature(envelope.payload)
            return self.add(
                PartialSignature(
                    proposal_id=envelope.proposal_ref,
                    signer_address=envelope.sender,
                    input_index=sig.input_index,
                    signature_object=sig,
                )
            )
        except CodecError as e:
            self.rejected += 1
            metrics.SIGNATURES_COLLECTED.labels(result="rejected").inc()
            log.warning("proposal %s: undecodable signature from %s: %s", self.proposal.id, envelope.sender, e)
        except SignatureRejected as e:
            log.warning("proposal %s: rejected signature from %s: %s", self.proposal.id, envelope.sender, e)
        return False

    def collect(
        self,
        batches: Iterable[Sequence[Envelope]],
        *,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ProposalState:
        """
        Consume envelope batches until quorum, until `clock()` passes
        `deadline`, or until `batches` is exhausted.
        """
        if self.state is not ProposalState.AWAITING_SIGNATURES:
            return self.state
        for batch in batches:
            for env in batch:
                self.ingest(env)
            if self.state is not ProposalState.AWAITING_SIGNATURES:
                break
            if deadline is not None and clock() >= deadline:
                log.info("proposal %s: collection deadline reached at %s", self.proposal.id, self.counts())
                break
        return self.state

    # --- transitions -------------------------------------------------------

    def _transition(self, state: ProposalState) -> None:
        log.info("proposal %s: %s -> %s", self.proposal.id, self.state.value, state.value)
        self.state = state
        metrics.STATE_TRANSITIONS.labels(state=state.value).inc()

    def mark_finalized(self, finalized: FinalizedTransaction) -> None:
        if self.state is not ProposalState.QUORATE:
            raise ProposalStateError("only a quorate proposal can be finalized", proposal_id=self.proposal.id, state=self.state.value)
        self.finalized = finalized
        self._transition(ProposalState.FINALIZED)

    def mark_submitted(self, broadcast_id: str) -> None:
        if self.state is not ProposalState.FINALIZED:
            raise ProposalStateError("only a finalized proposal can be submitted", proposal_id=self.proposal.id, state=self.state.value)
        self.broadcast_id = broadcast_id
        self._transition(ProposalState.SUBMITTED)

    def abandon(self, reason: str) -> None:
        """Operator-triggered terminal state. Collected signatures are kept."""
        if self.state is ProposalState.SUBMITTED:
            raise ProposalStateError("proposal was already submitted", proposal_id=self.proposal.id, state=self.state.value)
        if self.state is ProposalState.ABANDONED:
            return
        self.reason = reason
        self._transition(ProposalState.ABANDONED)
