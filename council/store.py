"""
On-disk persistence of proposals, collected signatures and state.

Layout under the data directory:

    proposals/<proposal_id>/proposal.json          proposal artifact {"data": ...}
    proposals/<proposal_id>/signatures/<signer>.<input>.json   signature artifact
    proposals/<proposal_id>/state.json             {"state", "reason", "broadcastId"}
    cursors/<name>                                  inbox cursors

Lets CLI invocations resume collection where an earlier one stopped; collected
signatures are never discarded.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .errors import CodecError
from .types import PartialSignature, Proposal, ProposalState
from .utils.bech32 import DEFAULT_HRP
from .wire import decode_proposal, decode_signature, encode_signature, proposal_to_json

log = logging.getLogger(__name__)

__all__ = ["ProposalStore", "StoredState"]

_SIG_NAME = re.compile(r"^(?P<signer>[A-Za-z0-9_-]+)\.(?P<input>\d+)\.json$")


@dataclass(frozen=True)
class StoredState:
    state: ProposalState
    reason: Optional[str] = None
    broadcast_id: Optional[str] = None


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class ProposalStore:
    def __init__(self, root: Union[str, Path], *, hrp: str = DEFAULT_HRP) -> None:
        self.root = Path(root).expanduser()
        self.hrp = hrp

    def _dir(self, proposal_id: str) -> Path:
        if not re.fullmatch(r"[0-9a-f]{64}", proposal_id):
            raise ValueError(f"bad proposal id: {proposal_id!r}")
        return self.root / "proposals" / proposal_id

    # --- proposals ---------------------------------------------------------

    def save_proposal(self, proposal: Proposal) -> Path:
        path = self._dir(proposal.id) / "proposal.json"
        _atomic_write(path, proposal_to_json(proposal))
        if not (path.parent / "state.json").exists():
            self.save_state(proposal.id, ProposalState.AWAITING_SIGNATURES)
        return path

    def has_proposal(self, proposal_id: str) -> bool:
        return (self._dir(proposal_id) / "proposal.json").is_file()

    def load_proposal(self, proposal_id: str) -> Proposal:
        path = self._dir(proposal_id) / "proposal.json"
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise KeyError(proposal_id) from None
        return decode_proposal(text, hrp=self.hrp)

    def list_proposals(self) -> List[str]:
        base = self.root / "proposals"
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if (p / "proposal.json").is_file())

    # --- signatures --------------------------------------------------------

    def save_signature(self, partial: PartialSignature) -> Path:
        name = f"{partial.signer_address}.{partial.input_index}.json"
        if not _SIG_NAME.match(name):
            raise ValueError(f"bad signer address: {partial.signer_address!r}")
        path = self._dir(partial.proposal_id) / "signatures" / name
        _atomic_write(path, encode_signature(partial.signature_object).decode("utf-8"))
        return path

    def load_signatures(self, proposal_id: str) -> List[PartialSignature]:
        base = self._dir(proposal_id) / "signatures"
        if not base.is_dir():
            return []
        out: List[PartialSignature] = []
        for p in sorted(base.iterdir()):
            m = _SIG_NAME.match(p.name)
            if not m:
                continue
            try:
                sig = decode_signature(p.read_text(encoding="utf-8"))
            except CodecError as e:
                log.warning("store: skipping unreadable signature %s: %s", p, e)
                continue
            out.append(
                PartialSignature(
                    proposal_id=proposal_id,
                    signer_address=m.group("signer"),
                    input_index=int(m.group("input")),
                    signature_object=sig,
                )
            )
        return out

    # --- state -------------------------------------------------------------

    def save_state(
        self,
        proposal_id: str,
        state: ProposalState,
        *,
        reason: Optional[str] = None,
        broadcast_id: Optional[str] = None,
    ) -> None:
        body = {"state": state.value, "reason": reason, "broadcastId": broadcast_id}
        _atomic_write(self._dir(proposal_id) / "state.json", json.dumps(body, indent=2, sort_keys=True))

    def load_state(self, proposal_id: str) -> StoredState:
        path = self._dir(proposal_id) / "state.json"
        try:
            body = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return StoredState(ProposalState.AWAITING_SIGNATURES)
        return StoredState(
            state=ProposalState(body.get("state", ProposalState.AWAITING_SIGNATURES.value)),
            reason=body.get("reason"),
            broadcast_id=body.get("broadcastId"),
        )

    # --- cursors -----------------------------------------------------------

    def load_cursor(self, name: str) -> Optional[str]:
        try:
            return (self.root / "cursors" / name).read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def save_cursor(self, name: str, cursor: Optional[str]) -> None:
        if cursor is None:
            return
        _atomic_write(self.root / "cursors" / name, cursor)
