"""
Spending policy derivation.

build_policy() turns a member set into an M-of-N policy with
M = floor(N/2) + 1 (strict majority). It is pure and deterministic: keys are
put in canonical order (ascending compressed public-key bytes) before the
redeem script and address are derived, so any two coordinators given the
same member set, in any order, derive the same address.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from .errors import InvalidPolicyInput
from .keys import normalize_public_key
from .tx.script import ScriptError, multisig_redeem_script, parse_multisig_script, script_address
from .types import Identity, SpendingPolicy
from .utils.bech32 import DEFAULT_HRP

log = logging.getLogger(__name__)

__all__ = ["threshold_for", "canonical_order", "build_policy", "policy_from_public_keys", "policy_from_script"]


def threshold_for(n: int) -> int:
    """Strict majority of n signers."""
    if n < 1:
        raise InvalidPolicyInput("a policy needs at least one key", details={"n": n})
    return n // 2 + 1


def canonical_order(public_keys: Iterable[str]) -> List[str]:
    return sorted(public_keys, key=bytes.fromhex)


def policy_from_public_keys(public_keys: Sequence[str], *, hrp: str = DEFAULT_HRP) -> SpendingPolicy:
    keys: List[str] = []
    for pk in public_keys:
        try:
            keys.append(normalize_public_key(pk))
        except (TypeError, ValueError) as e:
            raise InvalidPolicyInput(f"malformed public key: {e}", public_key=str(pk)) from e
    if not keys:
        raise InvalidPolicyInput("cannot build a policy from an empty key set")
    seen = set()
    for k in keys:
        if k in seen:
            raise InvalidPolicyInput("duplicate public key", public_key=k)
        seen.add(k)

    ordered = canonical_order(keys)
    m = threshold_for(len(ordered))
    try:
        script = multisig_redeem_script(ordered, m)
    except ScriptError as e:
        raise InvalidPolicyInput(str(e), details={"n": len(ordered)}) from e
    return SpendingPolicy(
        ordered_public_keys=tuple(ordered),
        threshold=m,
        address=script_address(script, hrp),
        redeem_script_hex=script.hex(),
    )


def build_policy(identities: Iterable[Identity], *, hrp: str = DEFAULT_HRP) -> SpendingPolicy:
    """
    Derive the M-of-N policy for `identities`.

    Raises InvalidPolicyInput when the set is empty, when two members share a
    public key, or when a key is not a valid compressed secp256k1 point.
    """
    members = list(identities)
    policy = policy_from_public_keys([i.public_key for i in members], hrp=hrp)
    log.debug("policy: %d-of-%d address=%s", policy.threshold, policy.size, policy.address)
    return policy


def policy_from_script(redeem_script_hex: str, *, hrp: str = DEFAULT_HRP) -> SpendingPolicy:
    """
    Rebuild a policy from a redeem script received on the wire. The script
    must use canonical key order and the majority threshold.
    """
    try:
        m, keys = parse_multisig_script(bytes.fromhex(redeem_script_hex))
    except (ScriptError, ValueError) as e:
        raise InvalidPolicyInput(f"bad redeem script: {e}") from e
    policy = policy_from_public_keys(keys, hrp=hrp)
    if list(policy.ordered_public_keys) != keys or policy.threshold != m:
        raise InvalidPolicyInput("redeem script is not a canonical majority policy")
    return policy
