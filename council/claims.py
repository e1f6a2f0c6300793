"""
Cross-process claims on proposals.

Only one coordinator may finalize and submit a given proposal. A claim is a
file created with O_CREAT|O_EXCL under the claims directory, keyed by proposal
id; a process-local lock serialises threads of the same coordinator. Once a
proposal is submitted a marker records the broadcast id, so later claimants
see it was already sent instead of submitting it again.

    claims = ProposalClaims("~/.council/claims")
    with claims.claim(proposal_id):
        ...
        claims.mark_submitted(proposal_id, broadcast_id)
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from .errors import ClaimConflict

log = logging.getLogger(__name__)

__all__ = ["ProposalClaims"]


class ProposalClaims:
    def __init__(self, directory: Union[str, Path], *, stale_after: Optional[float] = None) -> None:
        self.directory = Path(directory).expanduser()
        self.stale_after = stale_after
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _path(self, proposal_id: str, suffix: str) -> Path:
        if not proposal_id or any(c in proposal_id for c in "/\\") or proposal_id.startswith("."):
            raise ValueError(f"bad proposal id: {proposal_id!r}")
        return self.directory / f"{proposal_id}.{suffix}"

    def _local_lock(self, proposal_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(proposal_id, threading.Lock())

    def _holder(self) -> str:
        return f"{socket.gethostname()}:{os.getpid()}"

    def _break_if_stale(self, path: Path) -> None:
        if self.stale_after is None:
            return
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_after:
            log.warning("claims: breaking stale claim %s (%.0fs old)", path.name, age)
            path.unlink(missing_ok=True)

    @contextmanager
    def claim(self, proposal_id: str) -> Iterator[None]:
        lock = self._local_lock(proposal_id)
        if not lock.acquire(blocking=False):
            raise ClaimConflict(proposal_id=proposal_id, holder=self._holder())
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self._path(proposal_id, "claim")
            self._break_if_stale(path)
            try:
                fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                raise ClaimConflict(proposal_id=proposal_id, holder=self._read_holder(path)) from None
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"holder": self._holder(), "at": time.time()}, fh)
            try:
                yield
            finally:
                path.unlink(missing_ok=True)
        finally:
            lock.release()

    def _read_holder(self, path: Path) -> Optional[str]:
        try:
            return json.loads(path.read_text(encoding="utf-8")).get("holder")
        except (OSError, ValueError):
            return None

    def mark_submitted(self, proposal_id: str, broadcast_id: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(proposal_id, "submitted")
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"broadcastId": broadcast_id, "at": time.time()}), encoding="utf-8")
        os.replace(tmp, path)

    def submitted(self, proposal_id: str) -> Optional[str]:
        path = self._path(proposal_id, "submitted")
        try:
            return json.loads(path.read_text(encoding="utf-8")).get("broadcastId")
        except FileNotFoundError:
            return None

    def release(self, proposal_id: str) -> bool:
        """Remove a leftover claim file (operator recovery after a crash)."""
        path = self._path(proposal_id, "claim")
        if path.exists():
            path.unlink()
            return True
        return False
