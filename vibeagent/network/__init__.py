"""
Network layer — backend HTTP client, WebSocket multiplexer, and update merge policies.
"""

from vibeagent.network.http import CloudClient
from vibeagent.network.merge import IncrementalMergePolicy, MergePolicy, RefetchPolicy
from vibeagent.network.websocket import TransportMultiplexer

__all__ = [
    "CloudClient",
    "IncrementalMergePolicy",
    "MergePolicy",
    "RefetchPolicy",
    "TransportMultiplexer",
]
