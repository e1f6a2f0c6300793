from __future__ import annotations
"""
council - threshold (M-of-N) multisig coordination over an asynchronous,
end-to-end-encrypted messaging channel.

Flow: discover members from a membership anchor, derive a deterministic
spending policy, distribute an unsigned proposal, collect partial signatures
as they arrive, assemble once quorate and broadcast.

Public surface:
- config, errors, logging, metrics
- discovery, policy, distributor, agent, collector, assembler
- channel, adapters, claims, store, coordinator, cli
"""


from typing import List

from .version import __version__

__all__: List[str] = [
    "__version__",
    "config",
    "errors",
    "logging",
    "metrics",
    "types",
    "keys",
    "wire",
    "discovery",
    "policy",
    "distributor",
    "agent",
    "collector",
    "assembler",
    "channel",
    "adapters",
    "claims",
    "store",
    "coordinator",
    "cli",
]
