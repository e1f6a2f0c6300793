"""
council.tx.model
----------------

Immutable transaction model for spends out of a multisig policy address.

Each input carries its redeem script (and the decoded key list/threshold) plus
one signature slot per key, in key order. Slots start empty on an unsigned
proposal and are filled by the assembler.

Identity & digests
  - unsigned_body(): canonical map without signature slots
  - txid():          SHA3-256(canonical CBOR(unsigned_body)), hex
  - sighash(i):      SHA256d(tag || CBOR(body) || u32be(i) || redeem_script || sigtype)

The txid never changes as signatures are applied, so it doubles as the
proposal id. `to_object()`/`from_object()` give the lossless JSON form used in
proposal artifacts; `serialize()` gives the raw broadcastable bytes.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import InvalidTransaction
from ..utils.bytes import from_hex, is_hex
from ..utils.cbor import cbor_dumps
from ..utils.hashing import sha3_256_hex, sha256d
from .script import ScriptError, parse_multisig_script

SIGHASH_ALL = 0x01
SIGHASH_TAG = b"council/sighash/v1"
DEFAULT_SEQUENCE = 0xFFFFFFFF
TX_VERSION = 1


def _require_hex(value: Any, what: str, *, size: Optional[int] = None) -> str:
    if not isinstance(value, str) or not is_hex(value):
        raise InvalidTransaction(f"{what} must be a hex string")
    raw = from_hex(value)
    if size is not None and len(raw) != size:
        raise InvalidTransaction(f"{what} must be {size} bytes")
    return raw.hex()


def _require_int(value: Any, what: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise InvalidTransaction(f"{what} must be an integer >= {minimum}")
    return value


@dataclass(frozen=True)
class SignatureObject:
    """A single key's signature over one input, as exchanged on the wire."""

    public_key: str
    prev_txid: str
    output_index: int
    input_index: int
    signature: str  # DER, hex
    sighash_type: int = SIGHASH_ALL

    def to_object(self) -> Dict[str, Any]:
        return {
            "publicKey": self.public_key,
            "prevTxId": self.prev_txid,
            "outputIndex": self.output_index,
            "inputIndex": self.input_index,
            "signature": self.signature,
            "sigtype": self.sighash_type,
        }

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "SignatureObject":
        try:
            return cls(
                public_key=_require_hex(obj["publicKey"], "publicKey", size=33),
                prev_txid=_require_hex(obj["prevTxId"], "prevTxId", size=32),
                output_index=_require_int(obj["outputIndex"], "outputIndex"),
                input_index=_require_int(obj["inputIndex"], "inputIndex"),
                signature=_require_hex(obj["signature"], "signature"),
                sighash_type=_require_int(obj.get("sigtype", SIGHASH_ALL), "sigtype"),
            )
        except KeyError as e:
            raise InvalidTransaction(f"signature object missing field {e.args[0]!r}") from None


@dataclass(frozen=True)
class TxInput:
    prev_txid: str
    output_index: int
    amount: int
    redeem_script: str
    public_keys: Tuple[str, ...]
    threshold: int
    signatures: Tuple[Optional[SignatureObject], ...] = ()
    sequence: int = DEFAULT_SEQUENCE

    def __post_init__(self) -> None:
        if not self.signatures:
            object.__setattr__(self, "signatures", (None,) * len(self.public_keys))
        if len(self.signatures) != len(self.public_keys):
            raise InvalidTransaction("one signature slot per public key is required")

    @classmethod
    def for_script(cls, prev_txid: str, output_index: int, amount: int, redeem_script: bytes) -> "TxInput":
        try:
            m, keys = parse_multisig_script(redeem_script)
        except ScriptError as e:
            raise InvalidTransaction(f"bad redeem script: {e}") from e
        return cls(
            prev_txid=_require_hex(prev_txid, "prevTxId", size=32),
            output_index=_require_int(output_index, "outputIndex"),
            amount=_require_int(amount, "amount", minimum=1),
            redeem_script=redeem_script.hex(),
            public_keys=tuple(keys),
            threshold=m,
        )

    def key_slot(self, public_key: str) -> Optional[int]:
        try:
            return self.public_keys.index(public_key.lower())
        except ValueError:
            return None

    def signature_count(self) -> int:
        return sum(1 for s in self.signatures if s is not None)

    def unsigned_body(self) -> Dict[str, Any]:
        return {
            "prevTxId": from_hex(self.prev_txid),
            "outputIndex": self.output_index,
            "amount": self.amount,
            "redeemScript": from_hex(self.redeem_script),
            "sequence": self.sequence,
        }

    def to_object(self) -> Dict[str, Any]:
        return {
            "prevTxId": self.prev_txid,
            "outputIndex": self.output_index,
            "amount": self.amount,
            "redeemScript": self.redeem_script,
            "publicKeys": list(self.public_keys),
            "threshold": self.threshold,
            "signatures": [s.to_object() if s is not None else None for s in self.signatures],
            "sequence": self.sequence,
        }

    @classmethod
    def from_object(cls, obj: Mapping[str, Any], index: int) -> "TxInput":
        try:
            script_hex = _require_hex(obj["redeemScript"], "redeemScript")
            public_keys = tuple(_require_hex(k, "publicKeys[]", size=33) for k in obj["publicKeys"])
            threshold = _require_int(obj["threshold"], "threshold", minimum=1)
            slots = obj.get("signatures") or []
            base = cls(
                prev_txid=_require_hex(obj["prevTxId"], "prevTxId", size=32),
                output_index=_require_int(obj["outputIndex"], "outputIndex"),
                amount=_require_int(obj["amount"], "amount", minimum=1),
                redeem_script=script_hex,
                public_keys=public_keys,
                threshold=threshold,
                signatures=tuple(SignatureObject.from_object(s) if s is not None else None for s in slots),
                sequence=_require_int(obj.get("sequence", DEFAULT_SEQUENCE), "sequence"),
            )
        except KeyError as e:
            raise InvalidTransaction(f"input missing field {e.args[0]!r}", input_index=index) from None
        try:
            m, keys = parse_multisig_script(from_hex(script_hex))
        except ScriptError as e:
            raise InvalidTransaction(f"bad redeem script: {e}", input_index=index) from e
        if m != threshold or tuple(keys) != public_keys:
            raise InvalidTransaction("publicKeys/threshold do not match redeemScript", input_index=index)
        return base


@dataclass(frozen=True)
class TxOutput:
    """Payment output (address + amount) or a data output carrying a memo."""

    address: Optional[str] = None
    amount: int = 0
    data: Optional[str] = None  # hex

    def __post_init__(self) -> None:
        if (self.address is None) == (self.data is None):
            raise InvalidTransaction("an output carries either an address or data")

    def body(self) -> Dict[str, Any]:
        if self.data is not None:
            return {"data": from_hex(self.data), "amount": self.amount}
        return {"address": self.address, "amount": self.amount}

    def to_object(self) -> Dict[str, Any]:
        if self.data is not None:
            return {"data": self.data, "amount": self.amount}
        return {"address": self.address, "amount": self.amount}

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "TxOutput":
        amount = _require_int(obj.get("amount", 0), "amount")
        if obj.get("data") is not None:
            return cls(data=_require_hex(obj["data"], "data"), amount=amount)
        address = obj.get("address")
        if not isinstance(address, str) or not address:
            raise InvalidTransaction("output address must be a non-empty string")
        return cls(address=address, amount=amount)


@dataclass(frozen=True)
class Transaction:
    inputs: Tuple[TxInput, ...]
    outputs: Tuple[TxOutput, ...]
    version: int = TX_VERSION
    lock_time: int = 0
    _txid: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.inputs:
            raise InvalidTransaction("transaction has no inputs")
        if not self.outputs:
            raise InvalidTransaction("transaction has no outputs")

    # --- identity ----------------------------------------------------------

    def unsigned_body(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "inputs": [i.unsigned_body() for i in self.inputs],
            "outputs": [o.body() for o in self.outputs],
            "lockTime": self.lock_time,
        }

    def txid(self) -> str:
        if self._txid is None:
            object.__setattr__(self, "_txid", sha3_256_hex(cbor_dumps(self.unsigned_body())))
        return self._txid  # type: ignore[return-value]

    def sighash(self, input_index: int, sighash_type: int = SIGHASH_ALL) -> bytes:
        if not 0 <= input_index < len(self.inputs):
            raise InvalidTransaction("input index out of range", input_index=input_index)
        inp = self.inputs[input_index]
        preimage = (
            SIGHASH_TAG
            + cbor_dumps(self.unsigned_body())
            + input_index.to_bytes(4, "big")
            + from_hex(inp.redeem_script)
            + bytes([sighash_type & 0xFF])
        )
        return sha256d(preimage)

    # --- signatures --------------------------------------------------------

    def is_unsigned(self) -> bool:
        return all(i.signature_count() == 0 for i in self.inputs)

    def with_signature(self, signature: SignatureObject) -> "Transaction":
        """Return a copy with `signature` placed in its key's slot."""
        idx = signature.input_index
        if not 0 <= idx < len(self.inputs):
            raise InvalidTransaction("input index out of range", input_index=idx)
        inp = self.inputs[idx]
        slot = inp.key_slot(signature.public_key)
        if slot is None:
            raise InvalidTransaction("signature key is not part of the input's script", input_index=idx)
        slots = list(inp.signatures)
        slots[slot] = signature
        inputs = list(self.inputs)
        inputs[idx] = replace(inp, signatures=tuple(slots))
        return replace(self, inputs=tuple(inputs))

    # --- encodings ---------------------------------------------------------

    def to_object(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "inputs": [i.to_object() for i in self.inputs],
            "outputs": [o.to_object() for o in self.outputs],
            "lockTime": self.lock_time,
        }

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "Transaction":
        inputs: Sequence[Mapping[str, Any]] = obj.get("inputs") or []
        outputs: Sequence[Mapping[str, Any]] = obj.get("outputs") or []
        return cls(
            inputs=tuple(TxInput.from_object(o, i) for i, o in enumerate(inputs)),
            outputs=tuple(TxOutput.from_object(o) for o in outputs),
            version=_require_int(obj.get("version", TX_VERSION), "version"),
            lock_time=_require_int(obj.get("lockTime", 0), "lockTime"),
        )

    def witnesses(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for idx, inp in enumerate(self.inputs):
            sigs = [from_hex(s.signature) for s in inp.signatures if s is not None][: inp.threshold]
            if len(sigs) < inp.threshold:
                raise InvalidTransaction("input is not fully signed", input_index=idx)
            out.append({"signatures": sigs, "redeemScript": from_hex(inp.redeem_script)})
        return out

    def serialize(self) -> bytes:
        """Raw broadcastable bytes: body plus per-input witnesses in key order."""
        return cbor_dumps({"tx": self.unsigned_body(), "witness": self.witnesses()})


__all__ = [
    "SIGHASH_ALL",
    "SignatureObject",
    "TxInput",
    "TxOutput",
    "Transaction",
]
