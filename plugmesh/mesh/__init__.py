"""
Mesh networking for plugmesh.

Provides:
- Leader election and peer removal votes
- HTTP transport to peers (reports, votes, relay toggles)
- Self metering sources
- mDNS/DNS-SD discovery
"""

from .coordination import CoordinationProtocol, Vote, VoteMessage, VoteStage, VoteType
from .transport import PeerClient
from .metering import MeteringSource, ShellyMeteringSource, StaticMeteringSource, get_metering_source
from .discovery import PlugDiscovery, DiscoveredPlug

__all__ = [
    # Coordination
    "CoordinationProtocol",
    "Vote",
    "VoteMessage",
    "VoteStage",
    "VoteType",
    # Transport
    "PeerClient",
    # Metering
    "MeteringSource",
    "ShellyMeteringSource",
    "StaticMeteringSource",
    "get_metering_source",
    # Discovery
    "PlugDiscovery",
    "DiscoveredPlug",
]
