from __future__ import annotations
# council/errors.py
"""
Error types for council coordination. Every error names the entity it
concerns (anchor, token, signer, proposal, input) in `details` so operators
can tell which member or proposal needs attention. They are lightweight,
serializable, and safe to surface in logs and CLI output.

Exports:
- CouncilError (base)
- TransportError (transient; retried by council.utils.retry)
- DiscoveryError
- InvalidPolicyInput
- InvalidTransaction
- NotAParty
- NoMatchingInput
- SignatureRejected
- InsufficientSignatures
- ProposalStateError
- BroadcastRejected
- BroadcastUnavailable
- CodecError
- ChannelError
- StagingError
- ClaimConflict
- ConfigError
"""


import json
from typing import Any, Dict, Mapping, Optional


class CouncilError(Exception):
    """Base class for council domain errors."""

    code: str = "COUNCIL_ERROR"

    def __init__(self, message: str = "", *, details: Optional[Mapping[str, Any]] = None) -> None:
        self.message = message or self.__class__.__name__
        self.details = dict(details or {})
        super().__init__(self.__str__())

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __str__(self) -> str:  # pragma: no cover - trivial
        if self.details:
            # Keep this compact and stable for logs
            try:
                packed = json.dumps(self.details, sort_keys=True, separators=(",", ":"))
            except (TypeError, ValueError):
                packed = str(self.details)
            return f"{self.code}: {self.message} [{packed}]"
        return f"{self.code}: {self.message}"


def _merge(details: Optional[Mapping[str, Any]], **fields: Any) -> Dict[str, Any]:
    d = dict(details or {})
    for k, v in fields.items():
        if v is not None:
            d.setdefault(k, v)
    return d


class TransportError(CouncilError):
    """
    A collaborator could not be reached (network hiccup, timeout, overloaded
    endpoint). Always considered transient by the retry layer.
    """
    code = "COUNCIL_TRANSPORT"

    def __init__(
        self,
        message: str = "transport failure",
        *,
        endpoint: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, endpoint=endpoint))


class DiscoveryError(CouncilError):
    """The membership anchor (or one of its tokens) could not be resolved."""
    code = "COUNCIL_DISCOVERY"

    def __init__(
        self,
        message: str = "membership discovery failed",
        *,
        anchor_id: Optional[str] = None,
        token: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, anchor_id=anchor_id, token=token))


class InvalidPolicyInput(CouncilError):
    """Empty key set, duplicate keys or malformed public keys."""
    code = "COUNCIL_INVALID_POLICY_INPUT"

    def __init__(
        self,
        message: str = "invalid policy input",
        *,
        public_key: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, public_key=public_key))


class InvalidTransaction(CouncilError):
    """A transaction is malformed or does not match the spending policy."""
    code = "COUNCIL_INVALID_TX"

    def __init__(
        self,
        message: str = "invalid transaction",
        *,
        input_index: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, input_index=input_index))


class NotAParty(CouncilError):
    """The agent's key is not part of the proposal's spending policy."""
    code = "COUNCIL_NOT_A_PARTY"

    def __init__(
        self,
        *,
        signer: str,
        proposal_id: str,
        message: str = "signer is not a party to this policy",
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.signer = signer
        self.proposal_id = proposal_id
        super().__init__(message, details=_merge(details, signer=signer, proposal_id=proposal_id))


class NoMatchingInput(CouncilError):
    """No transaction input is spendable by the agent's key."""
    code = "COUNCIL_NO_MATCHING_INPUT"

    def __init__(
        self,
        *,
        signer: str,
        proposal_id: str,
        message: str = "no input is locked by the signer's key",
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.signer = signer
        self.proposal_id = proposal_id
        super().__init__(message, details=_merge(details, signer=signer, proposal_id=proposal_id))


class SignatureRejected(CouncilError):
    """A partial signature failed boundary validation and was not counted."""
    code = "COUNCIL_SIGNATURE_REJECTED"

    def __init__(
        self,
        message: str = "partial signature rejected",
        *,
        signer: Optional[str] = None,
        proposal_id: Optional[str] = None,
        input_index: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            details=_merge(details, signer=signer, proposal_id=proposal_id, input_index=input_index),
        )


class InsufficientSignatures(CouncilError):
    """Quorum not reached for (at least) one input. Recoverable: keep collecting."""
    code = "COUNCIL_INSUFFICIENT_SIGNATURES"

    def __init__(
        self,
        *,
        proposal_id: str,
        have: int,
        need: int,
        input_index: int = 0,
        message: str = "",
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.proposal_id = proposal_id
        self.have = int(have)
        self.need = int(need)
        self.input_index = int(input_index)
        msg = message or f"TX requires {need} signatures, but only {have} have been provided"
        d = _merge(details, proposal_id=proposal_id, input_index=self.input_index)
        d.update({"have": self.have, "need": self.need})
        super().__init__(msg, details=d)


class ProposalStateError(CouncilError):
    """An operation is not allowed in the proposal's current state."""
    code = "COUNCIL_PROPOSAL_STATE"

    def __init__(
        self,
        message: str = "operation not allowed in current state",
        *,
        proposal_id: Optional[str] = None,
        state: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, proposal_id=proposal_id, state=state))


class BroadcastRejected(CouncilError):
    """
    The network of record refused the transaction. Terminal for the proposal;
    a fresh proposal with updated inputs is required.
    """
    code = "COUNCIL_BROADCAST_REJECTED"

    def __init__(
        self,
        *,
        reason: str,
        proposal_id: Optional[str] = None,
        message: str = "broadcast rejected",
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.reason = reason
        self.proposal_id = proposal_id
        super().__init__(message, details=_merge(details, proposal_id=proposal_id, reason=reason))


class BroadcastUnavailable(CouncilError):
    """The broadcast endpoint could not be reached; the proposal stays finalized."""
    code = "COUNCIL_BROADCAST_UNAVAILABLE"

    def __init__(
        self,
        *,
        proposal_id: str,
        message: str = "broadcast endpoint unavailable",
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.proposal_id = proposal_id
        super().__init__(message, details=_merge(details, proposal_id=proposal_id))


class CodecError(CouncilError):
    """A wire artifact could not be decoded or failed validation."""
    code = "COUNCIL_CODEC"


class ChannelError(CouncilError):
    """The messaging channel failed after retries were exhausted."""
    code = "COUNCIL_CHANNEL"

    def __init__(
        self,
        message: str = "messaging channel failure",
        *,
        recipient: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, recipient=recipient))


class StagingError(CouncilError):
    """Bulk payload staging failed or the staged content did not match."""
    code = "COUNCIL_STAGING"

    def __init__(
        self,
        message: str = "payload staging failed",
        *,
        content_address: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, content_address=content_address))


class ClaimConflict(CouncilError):
    """Another coordinator holds the claim on this proposal."""
    code = "COUNCIL_CLAIM_CONFLICT"

    def __init__(
        self,
        *,
        proposal_id: str,
        holder: Optional[str] = None,
        message: str = "proposal is claimed by another coordinator",
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=_merge(details, proposal_id=proposal_id, holder=holder))


class ConfigError(CouncilError):
    """Invalid configuration value or file."""
    code = "COUNCIL_CONFIG"


__all__ = [
    "CouncilError",
    "TransportError",
    "DiscoveryError",
    "InvalidPolicyInput",
    "InvalidTransaction",
    "NotAParty",
    "NoMatchingInput",
    "SignatureRejected",
    "InsufficientSignatures",
    "ProposalStateError",
    "BroadcastRejected",
    "BroadcastUnavailable",
    "CodecError",
    "ChannelError",
    "StagingError",
    "ClaimConflict",
    "ConfigError",
]
