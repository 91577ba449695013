"""
plugmesh - Distributed circuit load balancing for smart plugs

Plugs sharing one breaker report their draw to each other, elect a
leader, and the leader switches low-priority loads off (and back on)
so the circuit stays under its safe limit.

Example:
    >>> from plugmesh import Config, create_app
    >>> app = create_app(Config(node_id="10.0.0.12:8080", priority=1))
"""

__version__ = "1.0.0"

from .config import Config, get_config
from .balancer import NodeRegistry, PlugNode, Rebalancer, UpdateProtocol
from .mesh import CoordinationProtocol
from .api import create_app, PlugMeshServer

__all__ = [
    "__version__",
    "Config",
    "get_config",
    "NodeRegistry",
    "PlugNode",
    "Rebalancer",
    "UpdateProtocol",
    "CoordinationProtocol",
    "create_app",
    "PlugMeshServer",
]
