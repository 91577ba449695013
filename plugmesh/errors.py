"""
Error types for plugmesh.

Ingress validation errors become HTTP 400 at the route boundary. The rest
are logged by the component that detects them; only DuplicateNodeError is
a programming error that propagates.
"""

from typing import Optional


class PlugMeshError(Exception):
    """Base exception for plugmesh."""
    pass


class ReportValidationError(PlugMeshError):
    """Malformed or missing ingress parameters."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class OrderingAnomaly(PlugMeshError):
    """An update arrived that is not newer than the last one seen."""

    def __init__(self, node_id: str, timestamp: float, last_seen: float):
        super().__init__(
            f"Update from {node_id} at {timestamp} is not after {last_seen}"
        )
        self.node_id = node_id
        self.timestamp = timestamp
        self.last_seen = last_seen


class CapacityExhaustion(PlugMeshError):
    """Shedding every closed node still leaves the circuit over budget."""

    def __init__(self, remaining_watts: float):
        super().__init__(
            f"Circuit still {remaining_watts:.0f} W over budget after shedding every closed node"
        )
        self.remaining_watts = remaining_watts


class PeerUnreachable(PlugMeshError):
    """A toggle, report or vote request failed or timed out."""

    def __init__(self, peer_id: str, reason: str = ""):
        super().__init__(f"Peer {peer_id} unreachable: {reason}" if reason else f"Peer {peer_id} unreachable")
        self.peer_id = peer_id
        self.reason = reason


class ProtocolAbort(PlugMeshError):
    """A coordination vote exhausted its retry budget."""

    def __init__(self, vote_id: str, stage: int, missing: Optional[set] = None):
        super().__init__(f"Vote {vote_id} aborted at stage {stage}")
        self.vote_id = vote_id
        self.stage = stage
        self.missing = missing or set()


class DuplicateNodeError(PlugMeshError):
    """A node id was registered twice."""
    pass
