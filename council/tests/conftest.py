from __future__ import annotations

from typing import Callable, Dict, Optional

import pytest

from council.adapters.memory import InMemoryBroadcaster, InMemoryChannel, InMemoryStager, StaticResolver
from council.distributor import make_proposal
from council.keys import KeyPair, key_address
from council.policy import policy_from_public_keys
from council.tx.build import Utxo, build_spend
from council.tx.model import Transaction, TxOutput
from council.types import Proposal, SpendingPolicy
from council.utils.retry import Retrier

from .helpers import ANCHOR, HRP, Member, make_member


@pytest.fixture
def members() -> Dict[str, Member]:
    """Three council members A, B, C with fixed keys."""
    return {name: make_member(name, seed) for name, seed in (("A", 101), ("B", 202), ("C", 303))}


@pytest.fixture
def outsider() -> Member:
    return make_member("Z", 909)


@pytest.fixture
def payee() -> str:
    return key_address(KeyPair.from_hex(f"{777:064x}").public_key, HRP)


@pytest.fixture
def policy(members: Dict[str, Member]) -> SpendingPolicy:
    return policy_from_public_keys([m.public_key for m in members.values()], hrp=HRP)


@pytest.fixture
def spend(payee: str) -> Callable[..., Transaction]:
    """Factory: an unsigned spend of `inputs` policy utxos."""

    def _make(policy: SpendingPolicy, inputs: int = 1, amount: int = 4_000, memo: Optional[str] = None) -> Transaction:
        utxos = [Utxo(txid=f"{i + 1:02x}" * 32, index=i, amount=10_000) for i in range(inputs)]
        return build_spend(policy, utxos, [TxOutput(address=payee, amount=amount)], fee=100, memo=memo)

    return _make


@pytest.fixture
def proposal(policy: SpendingPolicy, spend: Callable[..., Transaction]) -> Proposal:
    return make_proposal(spend(policy), policy)


@pytest.fixture
def retry() -> Retrier:
    return Retrier.immediate()


@pytest.fixture
def channel() -> InMemoryChannel:
    return InMemoryChannel()


@pytest.fixture
def stager() -> InMemoryStager:
    return InMemoryStager()


@pytest.fixture
def broadcaster() -> InMemoryBroadcaster:
    return InMemoryBroadcaster(ids=["B1"])


@pytest.fixture
def resolver(members: Dict[str, Member]) -> StaticResolver:
    return StaticResolver.from_members(ANCHOR, [(m.token, m.address, m.public_key) for m in members.values()])
