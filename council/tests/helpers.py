from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from council.keys import KeyPair
from council.tx.model import SIGHASH_ALL, SignatureObject
from council.types import KIND_SIGNATURE, Envelope, Identity, PartialSignature, Proposal
from council.wire import encode_signature

HRP = "cncl"
ANCHOR = "council-root"
COORDINATOR = "coordinator"


@dataclass(frozen=True)
class Member:
    name: str
    keypair: KeyPair
    token: str

    @property
    def address(self) -> str:
        return self.keypair.address(HRP)

    @property
    def public_key(self) -> str:
        return self.keypair.public_key

    @property
    def identity(self) -> Identity:
        return Identity(address=self.address, public_key=self.public_key, membership_token=self.token)


def make_member(name: str, seed: int) -> Member:
    return Member(name=name, keypair=KeyPair.from_hex(f"{seed:064x}"), token=f"tok-{name.lower()}")


def identities(members: Dict[str, Member], names: str = "ABC") -> List[Identity]:
    return [members[n].identity for n in names]


def sign_partial(member: Member, proposal: Proposal, input_index: int = 0) -> PartialSignature:
    tx = proposal.unsigned_transaction
    inp = tx.inputs[input_index]
    sig = SignatureObject(
        public_key=member.public_key,
        prev_txid=inp.prev_txid,
        output_index=inp.output_index,
        input_index=input_index,
        signature=member.keypair.sign_digest(tx.sighash(input_index, SIGHASH_ALL)),
    )
    return PartialSignature(
        proposal_id=proposal.id,
        signer_address=member.address,
        input_index=input_index,
        signature_object=sig,
    )


def signature_envelope(partial: PartialSignature, sender: Optional[str] = None) -> Envelope:
    return Envelope(
        sender=sender or partial.signer_address,
        proposal_ref=partial.proposal_id,
        kind=KIND_SIGNATURE,
        payload=encode_signature(partial.signature_object),
    )


def rpc_result(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def rpc_error(code: int, message: str) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


def json_rpc_router(table: Mapping[str, Any]) -> Callable[[httpx.Request], httpx.Response]:
    """
    respx side effect answering from `table`, keyed by "method:first-param"
    or by bare method name. Unknown keys answer "not found".
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        params = body.get("params") or [None]
        answer = table.get(f"{body['method']}:{params[0]}", table.get(body["method"]))
        if isinstance(answer, httpx.Response):
            return answer
        if answer is None:
            return rpc_error(-32004, "not found")
        return rpc_result(answer)

    return handler


def membership_table(anchor: str, members: List[Member]) -> Dict[str, Any]:
    table: Dict[str, Any] = {f"token.getChildren:{anchor}": [m.token for m in members]}
    for m in members:
        table[f"token.getHolder:{m.token}"] = m.address
        table[f"account.getPublicKey:{m.address}"] = m.public_key
    return table
