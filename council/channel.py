"""
Inbox polling over a MessagingChannel.

An Inbox owns one recipient's read cursor. `drain()` performs a single fetch
round; `poll()` is a lazy, endless sequence of such rounds that the caller
stops (quorum reached, deadline passed, operator gave up). The inbox never
decides on its own when to stop.

Fetches go through the retry layer; exhausting it raises ChannelError and
leaves the cursor where it was, so nothing is skipped on a later call.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, List, Optional

from .adapters.interfaces import MessagingChannel
from .errors import ChannelError
from .types import Envelope
from .utils.retry import Idempotency, Retrier, RetryError

log = logging.getLogger(__name__)

__all__ = ["Inbox", "send_envelope"]


def send_envelope(
    channel: MessagingChannel,
    recipient: str,
    envelope: Envelope,
    *,
    retry: Retrier,
) -> None:
    """Send one envelope; a duplicate on retry is harmless for every kind we send."""
    try:
        retry.call(
            channel.send,
            recipient,
            envelope,
            idempotency=Idempotency.IDEMPOTENT,
            label=f"channel.send[{envelope.kind}]",
        )
    except RetryError as e:
        raise ChannelError(
            "send failed after retries",
            recipient=recipient,
            details={"proposal_id": envelope.proposal_ref, "kind": envelope.kind},
        ) from e


class Inbox:
    def __init__(
        self,
        channel: MessagingChannel,
        recipient: str,
        *,
        retry: Optional[Retrier] = None,
        cursor: Optional[str] = None,
    ) -> None:
        self.channel = channel
        self.recipient = recipient
        self.retry = retry or Retrier()
        self.cursor = cursor

    def drain(self, *, kind: Optional[str] = None, proposal_ref: Optional[str] = None) -> List[Envelope]:
        """One fetch round; returns matching envelopes and advances the cursor."""
        try:
            envelopes, cursor = self.retry.call(
                self.channel.fetch, self.recipient, self.cursor, label="channel.fetch"
            )
        except RetryError as e:
            raise ChannelError("fetch failed after retries", recipient=self.recipient) from e
        self.cursor = cursor
        out = [
            env
            for env in envelopes
            if (kind is None or env.kind == kind) and (proposal_ref is None or env.proposal_ref == proposal_ref)
        ]
        if envelopes:
            log.debug("inbox %s: fetched %d, kept %d", self.recipient, len(envelopes), len(out))
        return out

    def poll(
        self,
        *,
        kind: Optional[str] = None,
        proposal_ref: Optional[str] = None,
        interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[List[Envelope]]:
        """Yield one batch per round, sleeping `interval` between rounds."""
        first = True
        while True:
            if not first:
                sleep(interval)
            first = False
            yield self.drain(kind=kind, proposal_ref=proposal_ref)
