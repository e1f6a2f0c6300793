"""
End-to-end wiring for the proposal originator.

    coord = Coordinator(config, resolver=..., channel=..., broadcaster=...)
    policy, found = coord.derive_policy(anchor_id)
    proposal, report = coord.propose(tx, anchor_id)
    state = coord.collect(proposal.id)          # one inbox round
    broadcast_id = coord.finish(proposal.id)

Everything the coordinator learns is persisted in the ProposalStore, so each
step can run in a separate process. Signatures arriving for any stored
proposal are filed when the inbox is read, whichever proposal is being
collected at the time.
"""

from __future__ import annotations

import logging
import time
from itertools import islice
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from . import logging as clog
from .adapters.interfaces import Broadcaster, MembershipResolver, MessagingChannel, Stager
from .assembler import SignatureAssembler
from .channel import Inbox
from .claims import ProposalClaims
from .collector import SignatureCollector
from .config import CouncilConfig
from .discovery import MembershipDiscovery
from .distributor import DeliveryReport, ProposalDistributor, make_proposal
from .errors import BroadcastRejected, BroadcastUnavailable, InvalidTransaction
from .policy import build_policy
from .store import ProposalStore
from .tx.model import Transaction
from .types import KIND_SIGNATURE, DiscoveryResult, Envelope, Proposal, ProposalState, SpendingPolicy
from .utils.retry import Retrier

log = logging.getLogger(__name__)

__all__ = ["Coordinator"]


class Coordinator:
    def __init__(
        self,
        config: CouncilConfig,
        *,
        resolver: MembershipResolver,
        channel: MessagingChannel,
        broadcaster: Broadcaster,
        stager: Optional[Stager] = None,
        store: Optional[ProposalStore] = None,
        claims: Optional[ProposalClaims] = None,
        retry: Optional[Retrier] = None,
    ) -> None:
        self.config = config
        self.hrp = config.network.hrp
        self.identity = config.channel.identity
        self.retry = retry or Retrier(config.retry.policy())
        self.store = store or ProposalStore(config.store_dir, hrp=self.hrp)
        self.discovery = MembershipDiscovery(resolver, retry=self.retry)
        self.distributor = ProposalDistributor(
            channel,
            self.identity,
            stager=stager,
            retry=self.retry,
            inline_limit=config.channel.inline_limit,
        )
        self.assembler = SignatureAssembler(
            broadcaster,
            claims=claims or ProposalClaims(config.claims_dir),
            retry=self.retry,
        )
        self.inbox = Inbox(channel, self.identity, retry=self.retry, cursor=self.store.load_cursor(self.identity))
        self._collectors: Dict[str, SignatureCollector] = {}

    def _anchor(self, anchor_id: Optional[str]) -> str:
        anchor = anchor_id or self.config.network.anchor_id
        if not anchor:
            raise ValueError("no membership anchor given (set COUNCIL_ANCHOR_ID or pass one)")
        return anchor

    # --- discovery & policy -------------------------------------------------

    def discover(self, anchor_id: Optional[str] = None) -> DiscoveryResult:
        return self.discovery.discover(self._anchor(anchor_id))

    def derive_policy(self, anchor_id: Optional[str] = None) -> Tuple[SpendingPolicy, DiscoveryResult]:
        """Re-discover, then derive the policy from the resolved members."""
        found = self.discover(anchor_id)
        return build_policy(found.identities, hrp=self.hrp), found

    # --- proposing ----------------------------------------------------------

    def propose(
        self,
        unsigned_tx: Optional[Transaction] = None,
        anchor_id: Optional[str] = None,
        *,
        build: Optional[Callable[[SpendingPolicy], Transaction]] = None,
    ) -> Tuple[Proposal, DeliveryReport]:
        """
        Distribute `unsigned_tx` to the current members. With `build`, the
        transaction is produced from the freshly derived policy instead.
        """
        policy, found = self.derive_policy(anchor_id)
        tx = build(policy) if build is not None else unsigned_tx
        if tx is None:
            raise InvalidTransaction("nothing to propose")
        proposal = make_proposal(tx, policy)
        self.store.save_proposal(proposal)
        with clog.scope(role="coordinator", proposal=proposal.id):
            report = self.distributor.deliver(proposal, found.identities)
        log.info(
            "proposal %s: %d-of-%d, delivered=%d failed=%d",
            proposal.id,
            policy.threshold,
            policy.size,
            len(report.delivered),
            len(report.failed),
        )
        return proposal, report

    # --- collecting ---------------------------------------------------------

    def collector(self, proposal_id: str) -> SignatureCollector:
        c = self._collectors.get(proposal_id)
        if c is None:
            stored = self.store.load_state(proposal_id)
            c = SignatureCollector.resume(
                self.store.load_proposal(proposal_id),
                self.store.load_signatures(proposal_id),
                hrp=self.hrp,
                state=stored.state,
                reason=stored.reason,
                broadcast_id=stored.broadcast_id,
            )
            c.on_accepted = self.store.save_signature
            self._collectors[proposal_id] = c
        return c

    def _file(self, env: Envelope) -> bool:
        """Hand one signature envelope to its proposal's collector."""
        if not self.store.has_proposal(env.proposal_ref):
            log.debug("inbox: signature for unknown proposal %s from %s", env.proposal_ref, env.sender)
            return False
        c = self.collector(env.proposal_ref)
        if c.state.terminal:
            return False
        before = c.state
        is_new = c.ingest(env)
        if c.state is not before:
            self.store.save_state(env.proposal_ref, c.state)
        return is_new

    def sync_inbox(self) -> int:
        """Read one inbox round and file every valid signature. Returns how many were new."""
        added = sum(int(self._file(env)) for env in self.inbox.drain(kind=KIND_SIGNATURE))
        self.store.save_cursor(self.identity, self.inbox.cursor)
        return added

    def _rounds_for(self, c: SignatureCollector, rounds: Iterable[List[Envelope]]) -> Iterator[List[Envelope]]:
        """
        Pass the collector its own envelopes; signatures for other stored
        proposals are filed on the way. The cursor is saved once a round has
        been fully consumed.
        """
        for batch in rounds:
            mine: List[Envelope] = []
            for env in batch:
                if env.proposal_ref == c.proposal.id:
                    mine.append(env)
                else:
                    self._file(env)
            yield mine
            self.store.save_cursor(self.identity, self.inbox.cursor)

    def collect(
        self,
        proposal_id: str,
        *,
        wait: bool = False,
        deadline: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> ProposalState:
        """
        Read the inbox until the proposal is quorate. Without `wait` a single
        round is read; with `wait`, rounds repeat every poll interval until
        quorum or `deadline` (monotonic seconds).
        """
        c = self.collector(proposal_id)
        if c.state is not ProposalState.AWAITING_SIGNATURES:
            self.sync_inbox()
            return c.state
        rounds: Iterable[List[Envelope]] = self.inbox.poll(
            kind=KIND_SIGNATURE, interval=self.config.channel.poll_interval, sleep=sleep
        )
        if not wait:
            rounds = islice(rounds, 1)
        with clog.scope(role="coordinator", proposal=proposal_id):
            state = c.collect(self._rounds_for(c, rounds), deadline=deadline, clock=clock)
        self.store.save_cursor(self.identity, self.inbox.cursor)
        if state is not ProposalState.AWAITING_SIGNATURES:
            self.store.save_state(proposal_id, state)
        return state

    # --- finishing ----------------------------------------------------------

    def finish(self, proposal_id: str) -> str:
        c = self.collector(proposal_id)
        try:
            with clog.scope(role="coordinator", proposal=proposal_id):
                broadcast_id = self.assembler.finalize(c)
        except BroadcastRejected:
            self.store.save_state(proposal_id, c.state, reason=c.reason)
            raise
        except BroadcastUnavailable:
            self.store.save_state(proposal_id, c.state)
            raise
        self.store.save_state(proposal_id, c.state, broadcast_id=broadcast_id)
        return broadcast_id

    def abandon(self, proposal_id: str, reason: str) -> None:
        c = self.collector(proposal_id)
        c.abandon(reason)
        self.store.save_state(proposal_id, c.state, reason=reason)

    def status(self, proposal_id: str) -> dict:
        c = self.collector(proposal_id)
        p = c.proposal
        return {
            "proposalId": p.id,
            "state": c.state.value,
            "requiredSignatures": p.required_signatures,
            "policyAddress": p.policy.address,
            "signers": c.distinct_signers(),
            "perInput": c.counts(),
            "reason": c.reason,
            "broadcastId": c.broadcast_id,
        }

