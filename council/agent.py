"""
Signing agent: one per member, acting independently.

On each proposal the agent checks it is a party to the policy, finds the
inputs its key can unlock, signs their sighash and sends the signatures back
to the proposal's originator. The private key never leaves the agent's
KeyPair.

`on_proposal_received` returns the signature for the first matching input.
`sign_all` covers every matching input of a multi-input spend, and is what
`handle` sends back.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from . import metrics
from .adapters.interfaces import MessagingChannel, Stager
from .channel import send_envelope
from .errors import CodecError, NoMatchingInput, NotAParty, StagingError
from .keys import KeyPair
from .tx.model import SIGHASH_ALL, SignatureObject
from .types import KIND_PROPOSAL, KIND_SIGNATURE, Envelope, PartialSignature, Proposal
from .utils.bech32 import DEFAULT_HRP
from .utils.hashing import sha3_256_hex
from .utils.retry import Retrier, RetryError
from .wire import decode_proposal, encode_signature, staged_ref_from_payload

log = logging.getLogger(__name__)

__all__ = ["SigningAgent"]


class SigningAgent:
    def __init__(
        self,
        keypair: KeyPair,
        channel: MessagingChannel,
        *,
        hrp: str = DEFAULT_HRP,
        retry: Optional[Retrier] = None,
        fetcher: Optional[Stager] = None,
    ) -> None:
        self.keypair = keypair
        self.channel = channel
        self.hrp = hrp
        self.retry = retry or Retrier()
        self.fetcher = fetcher
        self.address = keypair.address(hrp)
        self.public_key = keypair.public_key

    # --- signing -----------------------------------------------------------

    def _matching_inputs(self, proposal: Proposal) -> List[int]:
        if self.public_key not in proposal.policy:
            raise NotAParty(signer=self.address, proposal_id=proposal.id)
        matches = [
            idx
            for idx, inp in enumerate(proposal.unsigned_transaction.inputs)
            if inp.key_slot(self.public_key) is not None
        ]
        if not matches:
            raise NoMatchingInput(signer=self.address, proposal_id=proposal.id)
        return matches

    def _sign_input(self, proposal: Proposal, input_index: int) -> PartialSignature:
        tx = proposal.unsigned_transaction
        inp = tx.inputs[input_index]
        digest = tx.sighash(input_index, SIGHASH_ALL)
        sig = SignatureObject(
            public_key=self.public_key,
            prev_txid=inp.prev_txid,
            output_index=inp.output_index,
            input_index=input_index,
            signature=self.keypair.sign_digest(digest),
            sighash_type=SIGHASH_ALL,
        )
        metrics.SIGNATURES_PRODUCED.inc()
        return PartialSignature(
            proposal_id=proposal.id,
            signer_address=self.address,
            input_index=input_index,
            signature_object=sig,
        )

    def on_proposal_received(self, proposal: Proposal) -> PartialSignature:
        """Sign the first input locked by this agent's key."""
        first = self._matching_inputs(proposal)[0]
        partial = self._sign_input(proposal, first)
        log.info("agent %s: signed proposal %s input %d", self.address, proposal.id, first)
        return partial

    def sign_all(self, proposal: Proposal) -> List[PartialSignature]:
        return [self._sign_input(proposal, idx) for idx in self._matching_inputs(proposal)]

    # --- channel -----------------------------------------------------------

    def open_envelope(self, envelope: Envelope) -> Proposal:
        """Decode a proposal envelope, fetching staged bodies when needed."""
        if envelope.kind != KIND_PROPOSAL:
            raise CodecError(f"expected a proposal envelope, got {envelope.kind!r}")
        ref = staged_ref_from_payload(envelope.payload)
        if ref is None:
            body = envelope.payload
        else:
            if self.fetcher is None:
                raise StagingError("proposal is staged but no fetcher is configured", content_address=ref.content_address)
            try:
                body = self.retry.call(self.fetcher.fetch, ref.content_address, label="staging.fetch")
            except RetryError as e:
                raise StagingError("could not fetch staged proposal", content_address=ref.content_address) from e
            if sha3_256_hex(body) != ref.sha3 or len(body) != ref.size:
                raise StagingError("staged proposal does not match its digest", content_address=ref.content_address)
        proposal = decode_proposal(body, hrp=self.hrp)
        if proposal.id != envelope.proposal_ref:
            raise CodecError(
                "proposal id does not match envelope reference",
                details={"proposal_id": proposal.id, "proposal_ref": envelope.proposal_ref},
            )
        return proposal

    def return_signature(self, partial: PartialSignature, recipient: str) -> None:
        envelope = Envelope(
            sender=self.address,
            proposal_ref=partial.proposal_id,
            kind=KIND_SIGNATURE,
            payload=encode_signature(partial.signature_object),
        )
        send_envelope(self.channel, recipient, envelope, retry=self.retry)

    def handle(self, envelope: Envelope) -> List[PartialSignature]:
        """Open, sign and reply to one proposal envelope."""
        proposal = self.open_envelope(envelope)
        partials = self.sign_all(proposal)
        for p in partials:
            self.return_signature(p, envelope.sender)
        log.info(
            "agent %s: returned %d signature(s) for proposal %s to %s",
            self.address,
            len(partials),
            proposal.id,
            envelope.sender,
        )
        return partials
