"""
Configuration management for plugmesh.

Handles:
- Node identity (network name and priority class)
- Circuit and balancing thresholds
- Coordination (voting / liveness) timing
- Transport and server settings
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".plugmesh"

DEFAULT_API_PORT = 8080


def _known(cls, data: dict) -> dict:
    """Filter to only known fields to handle config evolution."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class BalancerConfig:
    """Thresholds for the consumption model and the rebalancer."""
    significant_watts_threshold: float = 200.0  # Below the draw of a small 5000 BTU air conditioner
    standby_watts_threshold: float = 5.0
    min_significant_change: float = 5.0
    retention_window: float = 300.0  # seconds
    breaker_amps: float = 20.0
    safety_margin: float = 0.8
    mains_voltage: float = 110.0  # Pessimistic mains voltage
    max_priority: int = 5
    default_priority: int = 3  # "general purpose"
    rearm_margin_watts: float = 0.0
    inrush_delay: float = 1.0
    heartbeat_interval: float = 60.0

    @property
    def circuit_limit_watts(self) -> float:
        return self.breaker_amps * self.safety_margin * self.mains_voltage

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "BalancerConfig":
        return cls(**_known(cls, data))


@dataclass
class CoordinationConfig:
    """Timing for leader election and peer removal votes."""
    stage_timeout: float = 2.0
    max_retries: int = 3
    peer_timeout: float = 180.0
    liveness_interval: float = 30.0

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "CoordinationConfig":
        return cls(**_known(cls, data))


@dataclass
class TransportConfig:
    """Outbound HTTP settings shared by reports, votes and toggles."""
    request_timeout: float = 2.0
    toggle_retries: int = 1
    scheme: str = "http"
    relay_path: str = "/relay/0"
    report_path: str = "/updatePlugPower"
    vote_path: str = "/vote"

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "TransportConfig":
        return cls(**_known(cls, data))


@dataclass
class ServerConfig:
    """Configuration for the API server."""
    host: str = "0.0.0.0"
    port: int = DEFAULT_API_PORT
    debug: bool = False

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        return cls(**_known(cls, data))


@dataclass
class Config:
    """
    Main plugmesh configuration.

    Stored at ~/.plugmesh/config.json
    """
    # Node identity; the id doubles as this plug's network address
    node_id: Optional[str] = None
    priority: int = 3

    # Paths
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # Seed peers (ids / addresses)
    peers: List[str] = field(default_factory=list)

    # Components
    balancer: BalancerConfig = field(default_factory=BalancerConfig)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Discovery
    mdns_enabled: bool = False

    # Self metering; None means metering is pushed to /metering
    metering_url: Optional[str] = None
    metering_interval: float = 1.0

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def circuit_limit_watts(self) -> float:
        return self.balancer.circuit_limit_watts

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "priority": self.priority,
            "peers": self.peers,
            "balancer": self.balancer.to_dict(),
            "coordination": self.coordination.to_dict(),
            "transport": self.transport.to_dict(),
            "server": self.server.to_dict(),
            "mdns_enabled": self.mdns_enabled,
            "metering_url": self.metering_url,
            "metering_interval": self.metering_interval,
        }

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def from_dict(cls, data: dict, data_dir: Optional[Path] = None) -> "Config":
        config = cls(
            data_dir=data_dir or DEFAULT_DATA_DIR,
            node_id=data.get("node_id"),
            priority=data.get("priority", 3),
            peers=list(data.get("peers", [])),
            mdns_enabled=data.get("mdns_enabled", False),
            metering_url=data.get("metering_url"),
            metering_interval=data.get("metering_interval", 1.0),
        )

        if "balancer" in data:
            config.balancer = BalancerConfig.from_dict(data["balancer"])
        if "coordination" in data:
            config.coordination = CoordinationConfig.from_dict(data["coordination"])
        if "transport" in data:
            config.transport = TransportConfig.from_dict(data["transport"])
        if "server" in data:
            config.server = ServerConfig.from_dict(data["server"])

        return config

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir)

        with open(config_path, 'r') as f:
            data = json.load(f)

        return cls.from_dict(data, data_dir=data_dir)

    @classmethod
    def exists(cls, data_dir: Optional[Path] = None) -> bool:
        """Check if configuration exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        return (data_dir / "config.json").exists()


# Global config instance
_config: Optional[Config] = None


def get_config(data_dir: Optional[Path] = None) -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load(data_dir)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
