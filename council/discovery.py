"""
Identity discovery.

Walks a membership anchor to the set of current members:

    anchor ──children──▶ tokens ──holder──▶ addresses ──public_key──▶ identities

Every lookup goes through the retry layer as an idempotent read. A holder
whose public key cannot be resolved (the address never transacted) is
reported in `unresolved` instead of failing the call, so callers can proceed
with a partial set and re-discover later. Nothing is cached: membership may
change between calls.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List, Optional

from . import metrics
from .adapters.interfaces import MembershipResolver
from .errors import CouncilError, DiscoveryError
from .keys import normalize_public_key
from .types import DiscoveryResult, Identity, UnresolvedHolder
from .utils.retry import Retrier, RetryError

log = logging.getLogger(__name__)

__all__ = ["MembershipDiscovery"]


class MembershipDiscovery:
    def __init__(self, resolver: MembershipResolver, *, retry: Optional[Retrier] = None) -> None:
        self.resolver = resolver
        self.retry = retry or Retrier()

    def discover(self, anchor_id: str) -> DiscoveryResult:
        try:
            tokens = list(self.retry.call(self.resolver.children, anchor_id, label="discovery.children"))
        except RetryError as e:
            raise DiscoveryError("membership anchor unreachable", anchor_id=anchor_id) from e
        log.info("discovery: anchor=%s tokens=%d", anchor_id, len(tokens))

        # Collapse duplicate holders, keeping the first token seen.
        holders: Dict[str, str] = {}
        for token in tokens:
            try:
                address = self.retry.call(self.resolver.holder, token, label="discovery.holder")
            except RetryError as e:
                raise DiscoveryError("membership token holder unreachable", anchor_id=anchor_id, token=token) from e
            if address in holders:
                log.debug("discovery: %s also holds token %s", address, token)
                continue
            holders[address] = token

        identities: List[Identity] = []
        unresolved: List[UnresolvedHolder] = []
        for address, token in holders.items():
            try:
                pk = self.retry.call(self.resolver.public_key, address, label="discovery.public_key")
            except (RetryError, CouncilError) as e:
                log.warning("discovery: public key lookup for %s failed: %s", address, e)
                pk = None
            if pk:
                try:
                    pk = normalize_public_key(pk)
                except ValueError:
                    log.warning("discovery: %s published a malformed public key", address)
                    pk = None
            if not pk:
                unresolved.append(UnresolvedHolder(address=address, membership_token=token))
                continue
            identities.append(Identity(address=address, public_key=pk, membership_token=token))

        if unresolved:
            metrics.DISCOVERY_UNRESOLVED.inc(len(unresolved))
            log.warning(
                "discovery: %d of %d holders have no public key yet: %s",
                len(unresolved),
                len(holders),
                ", ".join(u.address for u in unresolved),
            )
        return DiscoveryResult(identities=frozenset(identities), unresolved=tuple(unresolved))

    def discover_members(self, anchor_id: str) -> FrozenSet[Identity]:
        return self.discover(anchor_id).identities
