"""
Build unsigned spends out of a policy address.

A spend description is the JSON an operator hands to `council propose`:

    {
      "utxos":   [{"txid": "<hex>", "index": 0, "amount": 5000}],
      "outputs": [{"address": "cncl1...", "amount": 1000}],
      "memo":    "<hex or utf-8 text>",      # optional data output
      "fee":     250,                          # optional
      "changeAddress": "cncl1..."             # optional, defaults to the policy address
    }
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from ..errors import InvalidTransaction
from ..types import SpendingPolicy
from ..utils.bech32 import decode_bytes, is_valid_address
from ..utils.bytes import from_hex, is_hex
from .model import Transaction, TxInput, TxOutput

# Outputs below this are not worth creating; the remainder goes to the fee.
DUST_LIMIT = 546


@dataclass(frozen=True)
class Utxo:
    txid: str
    index: int
    amount: int

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "Utxo":
        try:
            return cls(txid=str(obj["txid"]), index=int(obj["index"]), amount=int(obj["amount"]))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidTransaction(f"bad utxo entry: {obj!r}") from e


def _memo_bytes(memo: str) -> bytes:
    if is_hex(memo):
        return from_hex(memo)
    return memo.encode("utf-8")


def build_spend(
    policy: SpendingPolicy,
    utxos: Iterable[Utxo],
    outputs: Sequence[TxOutput],
    *,
    fee: int = 0,
    change_address: Optional[str] = None,
    memo: Optional[str] = None,
) -> Transaction:
    """Spend `utxos` (all locked by `policy`) to `outputs`, sending change back."""
    script = bytes.fromhex(policy.redeem_script_hex)
    inputs: List[TxInput] = [TxInput.for_script(u.txid, u.index, u.amount, script) for u in utxos]
    if not inputs:
        raise InvalidTransaction("no utxos to spend")
    if fee < 0:
        raise InvalidTransaction("fee must be >= 0")

    hrp, _ = decode_bytes(policy.address)
    for addr in [o.address for o in outputs if o.address is not None] + [change_address or policy.address]:
        if not is_valid_address(addr, hrp):
            raise InvalidTransaction(f"not a valid {hrp} address: {addr}")

    outs = list(outputs)
    if memo:
        outs.append(TxOutput(data=_memo_bytes(memo).hex(), amount=0))
    if not outs:
        raise InvalidTransaction("no outputs")

    total_in = sum(i.amount for i in inputs)
    spent = sum(o.amount for o in outs) + fee
    if spent > total_in:
        raise InvalidTransaction(f"insufficient funds: inputs {total_in}, outputs+fee {spent}")
    change = total_in - spent
    if change >= DUST_LIMIT:
        outs.append(TxOutput(address=change_address or policy.address, amount=change))
    return Transaction(inputs=tuple(inputs), outputs=tuple(outs))


def spend_from_description(policy: SpendingPolicy, desc: Mapping[str, Any]) -> Transaction:
    utxos = [Utxo.from_object(u) for u in desc.get("utxos") or []]
    outputs = [TxOutput.from_object(o) for o in desc.get("outputs") or []]
    return build_spend(
        policy,
        utxos,
        outputs,
        fee=int(desc.get("fee", 0)),
        change_address=desc.get("changeAddress"),
        memo=desc.get("memo"),
    )


__all__ = ["DUST_LIMIT", "Utxo", "build_spend", "spend_from_description"]
