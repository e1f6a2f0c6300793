"""
Directory-backed messaging channel.

Layout:
    <root>/<recipient>/<ns-timestamp>-<nonce>.json   one envelope per file

Files are written to a temporary name and renamed into place, so readers never
see partial envelopes. This lets separate CLI processes (coordinator and
agents on one host, or over a synced directory) exchange messages.

File names only roughly follow arrival order: a slow writer, a second process
or a skewed clock on a synced directory can rename a file into place after
newer-named files were already read. The fetch cursor is therefore the set of
names already consumed (a JSON list), not a high-water mark. It is pruned to
names still present in the box, so it never outgrows the box itself.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from pathlib import Path
from typing import List, Optional, Set, Tuple, Union

from ..errors import CodecError
from ..types import Envelope
from ..wire import envelope_from_json, envelope_to_json

log = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def _consumed(cursor: Optional[str]) -> Set[str]:
    if not cursor:
        return set()
    try:
        names = json.loads(cursor)
    except ValueError:
        names = None
    if not isinstance(names, list):
        log.warning("mailbox: unreadable cursor, reading the box from the start")
        return set()
    return {str(n) for n in names}


class MailboxChannel:
    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser()

    def _box(self, recipient: str) -> Path:
        if not _SAFE_NAME.match(recipient) or recipient in (".", ".."):
            raise ValueError(f"unsafe mailbox name: {recipient!r}")
        return self.root / recipient

    def send(self, recipient: str, envelope: Envelope) -> None:
        box = self._box(recipient)
        box.mkdir(parents=True, exist_ok=True)
        name = f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}.json"
        tmp = box / f".{name}.tmp"
        tmp.write_text(envelope_to_json(envelope), encoding="utf-8")
        os.replace(tmp, box / name)

    def fetch(self, recipient: str, cursor: Optional[str]) -> Tuple[List[Envelope], Optional[str]]:
        box = self._box(recipient)
        if not box.is_dir():
            return [], cursor
        present = sorted(p.name for p in box.iterdir() if p.suffix == ".json" and not p.name.startswith("."))
        seen = _consumed(cursor)
        fresh = [n for n in present if n not in seen]
        out: List[Envelope] = []
        for n in fresh:
            try:
                out.append(envelope_from_json((box / n).read_text(encoding="utf-8")))
            except CodecError as e:
                log.warning("mailbox %s: skipping malformed message %s: %s", recipient, n, e)
        if not present:
            return out, cursor
        # every present name is now consumed; names that left the box cannot come back
        return out, json.dumps(present, separators=(",", ":"))


__all__ = ["MailboxChannel"]
