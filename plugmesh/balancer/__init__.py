"""
Circuit balancing for plugmesh.

Tracks every plug's draw and decides which plugs to switch off (or back
on) so the shared circuit stays under its limit.
"""

from .consumption import ConsumptionModel, PowerSample
from .registry import NodeRegistry, PlugNode, consumption_tier
from .rebalancer import Rebalancer, RebalanceResult, SwitchControl
from .updates import PeerReport, UpdateOutcome, UpdateProtocol
from .reporter import MeterReading, SelfReporter

__all__ = [
    # Consumption
    "ConsumptionModel",
    "PowerSample",
    # Registry
    "NodeRegistry",
    "PlugNode",
    "consumption_tier",
    # Rebalancer
    "Rebalancer",
    "RebalanceResult",
    "SwitchControl",
    # Updates
    "PeerReport",
    "UpdateOutcome",
    "UpdateProtocol",
    # Reporter
    "MeterReading",
    "SelfReporter",
]
