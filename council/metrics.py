from __future__ import annotations

"""
Prometheus metrics for council coordination.

Counters cover:
- discovery: holders without a resolvable public key
- proposals: distributed proposals and per-recipient delivery results
- signatures: partial signatures produced and collected, by result
- broadcasts: submissions by result
- state: proposal state transitions

A dedicated registry keeps these out of the process-global default so an
embedding app can choose to merge or expose it directly.
"""


from prometheus_client import CollectorRegistry, Counter, generate_latest

REGISTRY = CollectorRegistry()

# ────────────────────────────────────────────────────────────────────────────────
# Label conventions
#   result (delivery):   "sent" | "failed" | "skipped"
#   result (signature):  "accepted" | "replaced" | "rejected" | "ignored"
#   result (broadcast):  "submitted" | "rejected" | "unavailable"
# ────────────────────────────────────────────────────────────────────────────────

DISCOVERY_UNRESOLVED = Counter(
    "council_discovery_unresolved_total",
    "Holders whose public key could not be resolved during discovery.",
    registry=REGISTRY,
)

PROPOSALS_DISTRIBUTED = Counter(
    "council_proposals_distributed_total",
    "Proposals handed to the messaging channel, by transport (inline/staged).",
    labelnames=("transport",),
    registry=REGISTRY,
)

DELIVERIES = Counter(
    "council_proposal_deliveries_total",
    "Per-recipient proposal deliveries by result.",
    labelnames=("result",),
    registry=REGISTRY,
)

SIGNATURES_PRODUCED = Counter(
    "council_signatures_produced_total",
    "Partial signatures produced by local signing agents.",
    registry=REGISTRY,
)

SIGNATURES_COLLECTED = Counter(
    "council_signatures_collected_total",
    "Partial signatures seen by collectors, by result.",
    labelnames=("result",),
    registry=REGISTRY,
)

BROADCASTS = Counter(
    "council_broadcasts_total",
    "Finalized transaction submissions by result.",
    labelnames=("result",),
    registry=REGISTRY,
)

STATE_TRANSITIONS = Counter(
    "council_proposal_state_transitions_total",
    "Proposal state transitions by target state.",
    labelnames=("state",),
    registry=REGISTRY,
)


def render() -> bytes:
    """Text exposition of the council registry."""
    return generate_latest(REGISTRY)


__all__ = [
    "REGISTRY",
    "DISCOVERY_UNRESOLVED",
    "PROPOSALS_DISTRIBUTED",
    "DELIVERIES",
    "SIGNATURES_PRODUCED",
    "SIGNATURES_COLLECTED",
    "BROADCASTS",
    "STATE_TRANSITIONS",
    "render",
]
