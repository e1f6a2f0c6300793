from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict

import pytest

from council.adapters.memory import InMemoryBroadcaster
from council.assembler import SignatureAssembler
from council.claims import ProposalClaims
from council.collector import SignatureCollector
from council.distributor import make_proposal
from council.errors import (BroadcastRejected, BroadcastUnavailable, ClaimConflict, InsufficientSignatures,
                            ProposalStateError)
from council.keys import verify_digest
from council.tx.model import Transaction
from council.types import Proposal, ProposalState, SpendingPolicy
from council.utils.cbor import cbor_loads
from council.utils.retry import Retrier

from .helpers import HRP, Member, sign_partial


def _collector(proposal: Proposal, members: Dict[str, Member], names: str) -> SignatureCollector:
    c = SignatureCollector(proposal, hrp=HRP)
    for n in names:
        c.add(sign_partial(members[n], proposal))
    return c


def test_below_threshold_raises(members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster) -> None:
    with pytest.raises(InsufficientSignatures) as ei:
        SignatureAssembler(broadcaster).build(proposal, [sign_partial(members["A"], proposal)])
    err = ei.value
    assert (err.have, err.need, err.input_index) == (1, 2, 0)
    assert err.message == "TX requires 2 signatures, but only 1 have been provided"
    assert broadcaster.submitted == []


def test_threshold_signatures_finalize(
    members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    sigs = [sign_partial(members["B"], proposal), sign_partial(members["A"], proposal)]
    finalized = SignatureAssembler(broadcaster).build(proposal, sigs)

    tx = finalized.transaction
    assert finalized.txid == proposal.id
    assert [i.signature_count() for i in tx.inputs] == [2]
    decoded = cbor_loads(finalized.raw)
    witness = decoded["witness"][0]
    assert len(witness["signatures"]) == 2

    # witness signatures follow the script's key order
    keys = [k for k in proposal.policy.ordered_public_keys if k in (members["A"].public_key, members["B"].public_key)]
    digest = proposal.unsigned_transaction.sighash(0)
    for pk, sig in zip(keys, witness["signatures"]):
        assert verify_digest(pk, digest, sig.hex())


def test_extra_signatures_are_trimmed(
    members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    sigs = [sign_partial(members[n], proposal) for n in "CBA"]
    finalized = SignatureAssembler(broadcaster).build(proposal, sigs)
    assert finalized.transaction.inputs[0].signature_count() == 2
    first_two = set(proposal.policy.ordered_public_keys[:2])
    placed = {s.public_key for s in finalized.transaction.inputs[0].signatures if s is not None}
    assert placed == first_two


def test_assembly_is_deterministic(members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster) -> None:
    sigs = [sign_partial(members[n], proposal) for n in "AB"]
    asm = SignatureAssembler(broadcaster)
    assert asm.build(proposal, sigs).raw == asm.build(proposal, list(reversed(sigs))).raw


def test_invalid_signatures_do_not_count(
    members: Dict[str, Member], outsider: Member, proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    sigs = [sign_partial(members["A"], proposal), sign_partial(outsider, proposal)]
    with pytest.raises(InsufficientSignatures):
        SignatureAssembler(broadcaster).build(proposal, sigs)


def test_multi_input_reports_short_input(
    members: Dict[str, Member], policy: SpendingPolicy, spend: Callable[..., Transaction],
    broadcaster: InMemoryBroadcaster,
) -> None:
    proposal = make_proposal(spend(policy, inputs=2), policy)
    sigs = [sign_partial(members[n], proposal, 0) for n in "AB"] + [sign_partial(members["A"], proposal, 1)]
    with pytest.raises(InsufficientSignatures) as ei:
        SignatureAssembler(broadcaster).build(proposal, sigs)
    assert ei.value.input_index == 1

    sigs.append(sign_partial(members["C"], proposal, 1))
    signed = SignatureAssembler(broadcaster).build(proposal, sigs).transaction
    assert [i.signature_count() for i in signed.inputs] == [2, 2]


def test_assemble_broadcasts(members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster) -> None:
    sigs = [sign_partial(members[n], proposal) for n in "AB"]
    assert SignatureAssembler(broadcaster).assemble(proposal, sigs) == "B1"
    assert len(broadcaster.submitted) == 1


def test_finalize_drives_collector_to_submitted(
    members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    c = _collector(proposal, members, "AB")
    assert SignatureAssembler(broadcaster).finalize(c) == "B1"
    assert c.state is ProposalState.SUBMITTED
    assert c.broadcast_id == "B1"
    assert c.finalized is not None


def test_finalize_before_quorum(members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster) -> None:
    c = _collector(proposal, members, "A")
    with pytest.raises(InsufficientSignatures):
        SignatureAssembler(broadcaster).finalize(c)
    assert c.state is ProposalState.AWAITING_SIGNATURES


def test_rejection_abandons_proposal(members: Dict[str, Member], proposal: Proposal) -> None:
    c = _collector(proposal, members, "AB")
    with pytest.raises(BroadcastRejected) as ei:
        SignatureAssembler(InMemoryBroadcaster(reject_reason="inputs already spent")).finalize(c)
    assert ei.value.proposal_id == proposal.id
    assert c.state is ProposalState.ABANDONED
    assert "inputs already spent" in (c.reason or "")


def test_unreachable_network_keeps_finalized(members: Dict[str, Member], proposal: Proposal) -> None:
    flaky = InMemoryBroadcaster(ids=["B1"])
    flaky.fail_next("broadcast", times=1)
    c = _collector(proposal, members, "AB")
    asm = SignatureAssembler(flaky, retry=Retrier.immediate(attempts=5))

    with pytest.raises(BroadcastUnavailable):
        asm.finalize(c)
    # broadcast is not retried automatically
    assert flaky.submitted == []
    assert c.state is ProposalState.FINALIZED
    raw = c.finalized.raw

    assert asm.finalize(c) == "B1"
    assert c.state is ProposalState.SUBMITTED
    assert bytes.fromhex(flaky.submitted[0]) == raw


def test_finalize_refuses_closed_proposals(
    members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    c = _collector(proposal, members, "AB")
    asm = SignatureAssembler(broadcaster)
    asm.finalize(c)
    with pytest.raises(ProposalStateError):
        asm.finalize(c)

    abandoned = _collector(proposal, members, "AB")
    abandoned.abandon("no longer needed")
    with pytest.raises(ProposalStateError):
        asm.finalize(abandoned)
    assert len(broadcaster.submitted) == 1


def test_claims_prevent_double_submission(
    tmp_path: Path, members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    claims = ProposalClaims(tmp_path / "claims")
    first = SignatureAssembler(broadcaster, claims=claims)
    second = SignatureAssembler(broadcaster, claims=ProposalClaims(tmp_path / "claims"))

    assert first.finalize(_collector(proposal, members, "AB")) == "B1"
    assert claims.submitted(proposal.id) == "B1"

    # A second coordinator with its own collector sees the submitted marker
    with pytest.raises(ProposalStateError):
        second.finalize(_collector(proposal, members, "BC"))
    assert len(broadcaster.submitted) == 1


def test_held_claim_blocks_other_coordinators(
    tmp_path: Path, members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    claims = ProposalClaims(tmp_path / "claims")
    other = SignatureAssembler(broadcaster, claims=ProposalClaims(tmp_path / "claims"))
    with claims.claim(proposal.id):
        with pytest.raises(ClaimConflict):
            other.finalize(_collector(proposal, members, "AB"))
    assert broadcaster.submitted == []
    assert other.finalize(_collector(proposal, members, "AB")) == "B1"


class _LaggingClaims(ProposalClaims):
    """Runs `meanwhile` right after the first submitted-marker read."""

    def __init__(self, directory: Path, meanwhile: Callable[[], None]) -> None:
        super().__init__(directory)
        self.meanwhile = meanwhile

    def submitted(self, proposal_id: str):
        seen = super().submitted(proposal_id)
        if self.meanwhile is not None:
            run, self.meanwhile = self.meanwhile, None
            run()
        return seen


def test_submission_in_the_claim_window_is_not_repeated(
    tmp_path: Path, members: Dict[str, Member], proposal: Proposal, broadcaster: InMemoryBroadcaster
) -> None:
    first = SignatureAssembler(broadcaster, claims=ProposalClaims(tmp_path / "claims"))

    def first_finishes() -> None:
        assert first.finalize(_collector(proposal, members, "AB")) == "B1"

    second = SignatureAssembler(broadcaster, claims=_LaggingClaims(tmp_path / "claims", first_finishes))
    late = _collector(proposal, members, "BC")
    with pytest.raises(ProposalStateError) as ei:
        second.finalize(late)
    assert ei.value.details["broadcast_id"] == "B1"
    assert len(broadcaster.submitted) == 1
    assert late.state is ProposalState.QUORATE
