from __future__ import annotations

from typing import Dict

import pytest

from council.errors import InvalidPolicyInput
from council.keys import KeyPair
from council.policy import build_policy, policy_from_public_keys, policy_from_script, threshold_for
from council.tx.script import multisig_redeem_script, parse_multisig_script
from council.utils.bech32 import decode_bytes

from .helpers import HRP, Member, identities


@pytest.mark.parametrize("n, m", [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3), (100, 51)])
def test_threshold_is_strict_majority(n: int, m: int) -> None:
    assert threshold_for(n) == m


def test_threshold_rejects_empty() -> None:
    with pytest.raises(InvalidPolicyInput):
        threshold_for(0)


def test_policy_for_three_members(members: Dict[str, Member]) -> None:
    policy = build_policy(identities(members), hrp=HRP)
    assert policy.threshold == 2
    assert policy.size == 3
    assert list(policy.ordered_public_keys) == sorted(policy.ordered_public_keys)
    hrp, payload = decode_bytes(policy.address, expected_hrp=HRP)
    assert hrp == HRP
    assert payload[0] == 0x05 and len(payload) == 21

    m, keys = parse_multisig_script(bytes.fromhex(policy.redeem_script_hex))
    assert m == 2
    assert tuple(keys) == policy.ordered_public_keys


def test_policy_is_independent_of_member_order(members: Dict[str, Member]) -> None:
    forward = build_policy(identities(members, "ABC"), hrp=HRP)
    backward = build_policy(identities(members, "CBA"), hrp=HRP)
    shuffled = build_policy(identities(members, "BCA"), hrp=HRP)
    assert forward == backward == shuffled


def test_policy_changes_with_membership(members: Dict[str, Member]) -> None:
    full = build_policy(identities(members, "ABC"), hrp=HRP)
    pair = build_policy(identities(members, "AB"), hrp=HRP)
    assert pair.threshold == 2
    assert pair.address != full.address


def test_policy_for_one_hundred_members() -> None:
    keys = [KeyPair.from_hex(f"{i + 1:064x}").public_key for i in range(100)]
    policy = policy_from_public_keys(keys, hrp=HRP)
    assert policy.threshold == 51
    assert policy.size == 100
    m, parsed = parse_multisig_script(bytes.fromhex(policy.redeem_script_hex))
    assert m == 51
    assert len(parsed) == 100
    assert policy_from_public_keys(list(reversed(keys)), hrp=HRP).address == policy.address


def test_policy_address_depends_on_hrp(members: Dict[str, Member]) -> None:
    a = build_policy(identities(members), hrp="cncl")
    b = build_policy(identities(members), hrp="tcncl")
    assert a.redeem_script_hex == b.redeem_script_hex
    assert a.address.startswith("cncl1")
    assert b.address.startswith("tcncl1")


def test_empty_key_set_rejected() -> None:
    with pytest.raises(InvalidPolicyInput):
        policy_from_public_keys([], hrp=HRP)


def test_duplicate_keys_rejected(members: Dict[str, Member]) -> None:
    pk = members["A"].public_key
    with pytest.raises(InvalidPolicyInput) as ei:
        policy_from_public_keys([pk, members["B"].public_key, pk.upper()], hrp=HRP)
    assert ei.value.details["public_key"] == pk


@pytest.mark.parametrize("bad", ["", "zz", "02abcd", "04" + "11" * 64, "05" + "11" * 32])
def test_malformed_key_rejected(members: Dict[str, Member], bad: str) -> None:
    with pytest.raises(InvalidPolicyInput):
        policy_from_public_keys([members["A"].public_key, bad], hrp=HRP)


def test_policy_from_script_round_trip(members: Dict[str, Member]) -> None:
    policy = build_policy(identities(members), hrp=HRP)
    assert policy_from_script(policy.redeem_script_hex, hrp=HRP) == policy


def test_policy_from_script_rejects_non_canonical(members: Dict[str, Member]) -> None:
    policy = build_policy(identities(members), hrp=HRP)
    keys = list(reversed(policy.ordered_public_keys))
    with pytest.raises(InvalidPolicyInput):
        policy_from_script(multisig_redeem_script(keys, 2).hex(), hrp=HRP)
    with pytest.raises(InvalidPolicyInput):
        policy_from_script(multisig_redeem_script(list(policy.ordered_public_keys), 3).hex(), hrp=HRP)
