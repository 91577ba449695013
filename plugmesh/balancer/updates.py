"""
Update Protocol - Apply peer power reports to the registry.

Every plug periodically tells every plug (itself included) what it is
drawing. Reports arrive as query parameters:

    /updatePlugPower?sender=kitchen.local&value=812.5&circuitclosed=true&priority=2
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import BalancerConfig
from ..errors import OrderingAnomaly, ReportValidationError
from .registry import NodeRegistry, PlugNode

logger = logging.getLogger(__name__)

# Node ids double as host[:port] addresses
NODE_ID_PATTERN = r"^[A-Za-z0-9._~:\-]+$"


class PeerReport(BaseModel):
    """A validated power report from one plug."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    sender: str = Field(..., min_length=1, pattern=NODE_ID_PATTERN)
    value: float = Field(..., ge=0, allow_inf_nan=False)
    circuitclosed: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0)
    timestamp: Optional[float] = Field(default=None, allow_inf_nan=False)
    leader: Optional[str] = Field(default=None, pattern=NODE_ID_PATTERN)

    @classmethod
    def from_query(cls, params: Mapping[str, str], max_priority: int = 5) -> "PeerReport":
        """
        Parse raw query parameters.

        Raises:
            ReportValidationError: If a field is missing or malformed
        """
        try:
            report = cls.model_validate(dict(params))
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or None
            raise ReportValidationError(f"{field}: {error['msg']}", field=field) from e

        if report.priority is not None and report.priority > max_priority:
            raise ReportValidationError(
                f"priority: must be at most {max_priority}", field="priority"
            )
        return report

    def to_params(self) -> dict[str, str]:
        """Render as query parameters for an outbound report."""
        params = {"sender": self.sender, "value": repr(self.value)}
        if self.circuitclosed is not None:
            params["circuitclosed"] = "true" if self.circuitclosed else "false"
        if self.priority is not None:
            params["priority"] = str(self.priority)
        if self.timestamp is not None:
            params["timestamp"] = repr(self.timestamp)
        if self.leader:
            params["leader"] = self.leader
        return params


class UpdateOutcome(str, Enum):
    CREATED = "created"
    APPLIED = "applied"
    IGNORED = "ignored"


class UpdateProtocol:
    """Apply reports to the registry, creating nodes on first contact."""

    def __init__(
        self,
        registry: NodeRegistry,
        config: Optional[BalancerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.config = config or registry.config
        self.clock = clock

    def apply(self, report: PeerReport, received_at: Optional[float] = None) -> UpdateOutcome:
        """
        Fold one report into the registry.

        Args:
            report: Validated report
            received_at: Local receive time, defaults to now

        Returns:
            What happened to the registry
        """
        now = received_at if received_at is not None else self.clock()
        timestamp = report.timestamp if report.timestamp is not None else now

        node = self.registry.get(report.sender)
        if node is None:
            return self._create(report, timestamp, now)

        if node.last_report_time is not None and timestamp <= node.last_report_time:
            anomaly = OrderingAnomaly(report.sender, timestamp, node.last_report_time)
            logger.warning(f"Ignoring update: {anomaly}")
            return UpdateOutcome.IGNORED

        if report.circuitclosed is not None and node.set_circuit_closed(report.circuitclosed):
            logger.info(f"Node {node.node_id} circuit {'closed' if report.circuitclosed else 'opened'}")

        if node.record_sample(timestamp, report.value):
            logger.debug(f"Node {node.node_id} reported {report.value:.1f} W at {timestamp}")

        if report.priority is not None and report.priority != node.priority:
            self.registry.change_priority(node.node_id, report.priority)

        node.last_seen = now
        node.last_report_time = timestamp
        self.registry.reindex(node)
        self._check_open_draw(node, report.value)
        return UpdateOutcome.APPLIED

    def _create(self, report: PeerReport, timestamp: float, now: float) -> UpdateOutcome:
        priority = report.priority if report.priority is not None else self.config.default_priority
        # Unknown relay state counts as closed
        closed = report.circuitclosed if report.circuitclosed is not None else True

        node = PlugNode(report.sender, priority, self.config, circuit_closed=closed)
        node.record_sample(timestamp, report.value)
        node.last_seen = now
        node.last_report_time = timestamp
        self.registry.add(node)

        logger.info(f"Discovered plug {node.node_id} (priority {priority}, {report.value:.0f} W)")
        self._check_open_draw(node, report.value)
        return UpdateOutcome.CREATED

    def apply_self(
        self,
        node_id: str,
        circuit_closed: bool,
        watts: float,
        timestamp: Optional[float] = None,
    ) -> UpdateOutcome:
        """Apply a reading from this plug's own meter."""
        node = self.registry.get(node_id)
        report = PeerReport(
            sender=node_id,
            value=watts,
            circuitclosed=circuit_closed,
            priority=node.priority if node is not None else None,
            timestamp=timestamp if timestamp is not None else self.clock(),
        )
        return self.apply(report)

    def _check_open_draw(self, node: PlugNode, watts: float) -> None:
        if not node.circuit_closed and watts > self.config.standby_watts_threshold:
            logger.warning(
                f"Plug {node.node_id} reports {watts:.0f} W while switched off"
            )
