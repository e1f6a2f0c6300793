"""
Wire formats: typed JSON shapes exchanged over the messaging channel and
persisted on disk. These are *views* over council.types records and keep field
names stable across members running different versions.

Includes:
- Proposal artifact   {"data": <transaction object with signature slots>}
- Signature artifact  {"data": <signature object>}
- Staged pointer      {"contentAddress", "sha3", "size"} for large proposals
- Envelope            {"sender", "proposalRef", "kind", "payload" (base64)}

Validation:
- Hex strings are bare (no 0x) and even-length.
- Public keys are 33 bytes, transaction ids 32 bytes.
- Every decoder raises CodecError on malformed input.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import CodecError, InvalidPolicyInput, InvalidTransaction
from .policy import policy_from_script
from .tx.model import SignatureObject, Transaction
from .types import Envelope, Proposal
from .utils.bech32 import DEFAULT_HRP
from .utils.bytes import is_hex

__all__ = [
    "ProposalArtifact",
    "SignatureArtifact",
    "StagedPointer",
    "EnvelopeWire",
    "StagedRef",
    "encode_proposal",
    "decode_proposal",
    "proposal_to_json",
    "encode_signature",
    "decode_signature",
    "encode_staged_ref",
    "staged_ref_from_payload",
    "envelope_to_json",
    "envelope_from_json",
]


def _check_hex(v: str, size: Optional[int] = None) -> str:
    if not is_hex(v) or v.startswith(("0x", "0X")):
        raise ValueError("expected bare even-length hex")
    if size is not None and len(v) != size * 2:
        raise ValueError(f"expected {size} bytes")
    return v.lower()


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


class SignatureWire(_WireModel):
    public_key: str = Field(alias="publicKey")
    prev_tx_id: str = Field(alias="prevTxId")
    output_index: int = Field(alias="outputIndex", ge=0)
    input_index: int = Field(alias="inputIndex", ge=0)
    signature: str
    sigtype: int = Field(default=1, ge=0, le=255)

    @field_validator("public_key")
    @classmethod
    def _pk_ok(cls, v: str) -> str:
        return _check_hex(v, 33)

    @field_validator("prev_tx_id")
    @classmethod
    def _txid_ok(cls, v: str) -> str:
        return _check_hex(v, 32)

    @field_validator("signature")
    @classmethod
    def _sig_ok(cls, v: str) -> str:
        return _check_hex(v)


class InputWire(_WireModel):
    prev_tx_id: str = Field(alias="prevTxId")
    output_index: int = Field(alias="outputIndex", ge=0)
    amount: int = Field(gt=0)
    redeem_script: str = Field(alias="redeemScript")
    public_keys: List[str] = Field(alias="publicKeys", min_length=1)
    threshold: int = Field(ge=1)
    signatures: List[Optional[SignatureWire]] = Field(default_factory=list)
    sequence: int = Field(default=0xFFFFFFFF, ge=0)

    @field_validator("prev_tx_id")
    @classmethod
    def _txid_ok(cls, v: str) -> str:
        return _check_hex(v, 32)

    @field_validator("redeem_script")
    @classmethod
    def _script_ok(cls, v: str) -> str:
        return _check_hex(v)


class OutputWire(_WireModel):
    address: Optional[str] = None
    amount: int = Field(default=0, ge=0)
    data: Optional[str] = None


class TransactionWire(_WireModel):
    version: int = 1
    inputs: List[InputWire] = Field(min_length=1)
    outputs: List[OutputWire] = Field(min_length=1)
    lock_time: int = Field(default=0, alias="lockTime", ge=0)


class ProposalArtifact(_WireModel):
    data: TransactionWire


class SignatureArtifact(_WireModel):
    data: SignatureWire


class StagedPointer(_WireModel):
    content_address: str = Field(alias="contentAddress", min_length=1)
    sha3: str
    size: int = Field(ge=0)

    @field_validator("sha3")
    @classmethod
    def _sha_ok(cls, v: str) -> str:
        return _check_hex(v, 32)


class EnvelopeWire(_WireModel):
    sender: str = Field(min_length=1)
    proposal_ref: str = Field(alias="proposalRef", min_length=1)
    kind: Literal["proposal", "signature"]
    payload: str


@dataclass(frozen=True)
class StagedRef:
    content_address: str
    sha3: str
    size: int


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _loads(raw: Union[bytes, str]) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CodecError(f"payload is not JSON: {e}") from e


# -----------------------------------------------------------------------------
# Proposal artifact
# -----------------------------------------------------------------------------


def encode_proposal(proposal: Proposal) -> bytes:
    return _dumps({"data": proposal.unsigned_transaction.to_object()})


def proposal_to_json(proposal: Proposal, *, indent: Optional[int] = 2) -> str:
    return json.dumps({"data": proposal.unsigned_transaction.to_object()}, indent=indent, sort_keys=True)


def decode_proposal(raw: Union[bytes, str], *, hrp: str = DEFAULT_HRP) -> Proposal:
    """
    Rebuild a Proposal from its artifact. The policy comes from the inputs'
    redeem script, which must be identical across inputs.
    """
    try:
        art = ProposalArtifact.model_validate(_loads(raw))
        tx = Transaction.from_object(art.data.model_dump(by_alias=True))
    except ValidationError as e:
        raise CodecError(f"invalid proposal artifact: {e.error_count()} error(s)", details={"errors": _brief(e)}) from e
    except InvalidTransaction as e:
        raise CodecError(f"invalid proposal transaction: {e.message}", details=e.details) from e
    if not tx.is_unsigned():
        raise CodecError("proposal artifact must not carry signatures")
    scripts = {i.redeem_script for i in tx.inputs}
    if len(scripts) != 1:
        raise CodecError("proposal inputs are locked by different scripts")
    try:
        policy = policy_from_script(scripts.pop(), hrp=hrp)
    except InvalidPolicyInput as e:
        raise CodecError(f"proposal policy: {e.message}", details=e.details) from e
    return Proposal(id=tx.txid(), unsigned_transaction=tx, policy=policy, required_signatures=policy.threshold)


# -----------------------------------------------------------------------------
# Signature artifact
# -----------------------------------------------------------------------------


def encode_signature(sig: SignatureObject) -> bytes:
    return _dumps({"data": sig.to_object()})


def decode_signature(raw: Union[bytes, str]) -> SignatureObject:
    try:
        art = SignatureArtifact.model_validate(_loads(raw))
        return SignatureObject.from_object(art.data.model_dump(by_alias=True))
    except ValidationError as e:
        raise CodecError(f"invalid signature artifact: {e.error_count()} error(s)", details={"errors": _brief(e)}) from e
    except InvalidTransaction as e:
        raise CodecError(f"invalid signature object: {e.message}") from e


# -----------------------------------------------------------------------------
# Staged pointer
# -----------------------------------------------------------------------------


def encode_staged_ref(ref: StagedRef) -> bytes:
    return _dumps({"contentAddress": ref.content_address, "sha3": ref.sha3, "size": ref.size})


def staged_ref_from_payload(raw: Union[bytes, str]) -> Optional[StagedRef]:
    """Return the pointer when `raw` is a staged-proposal pointer, else None."""
    obj = _loads(raw)
    if not isinstance(obj, dict) or "contentAddress" not in obj:
        return None
    try:
        p = StagedPointer.model_validate(obj)
    except ValidationError as e:
        raise CodecError("invalid staged pointer", details={"errors": _brief(e)}) from e
    return StagedRef(content_address=p.content_address, sha3=p.sha3, size=p.size)


# -----------------------------------------------------------------------------
# Envelope
# -----------------------------------------------------------------------------


def envelope_to_json(env: Envelope) -> str:
    return json.dumps(
        {
            "sender": env.sender,
            "proposalRef": env.proposal_ref,
            "kind": env.kind,
            "payload": base64.b64encode(env.payload).decode("ascii"),
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def envelope_from_json(text: Union[bytes, str]) -> Envelope:
    try:
        w = EnvelopeWire.model_validate(_loads(text))
        payload = base64.b64decode(w.payload, validate=True)
    except ValidationError as e:
        raise CodecError("invalid envelope", details={"errors": _brief(e)}) from e
    except (binascii.Error, ValueError) as e:
        raise CodecError(f"invalid envelope payload: {e}") from e
    return Envelope(sender=w.sender, proposal_ref=w.proposal_ref, kind=w.kind, payload=payload)


def _brief(e: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5]]