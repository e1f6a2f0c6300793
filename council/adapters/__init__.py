"""
Collaborator adapters.

- interfaces: protocols the core depends on
- memory:     in-process implementations (tests, local dry runs)
- mailbox:    directory-backed messaging channel
- rpc:        JSON-RPC membership resolver and broadcaster over httpx
- staging:    HTTP bulk payload staging
"""

from .interfaces import Broadcaster, MembershipResolver, MessagingChannel, Stager

__all__ = ["Broadcaster", "MembershipResolver", "MessagingChannel", "Stager"]
