"""
API server for plugmesh.

Provides HTTP endpoints for:
- Peer power reports and coordination votes
- Self metering pushed by the host device
- Status and registry snapshots
"""

from .server import create_app, PlugMeshServer, get_server
from .routes import peer_router, router

__all__ = [
    "create_app",
    "PlugMeshServer",
    "get_server",
    "peer_router",
    "router",
]
