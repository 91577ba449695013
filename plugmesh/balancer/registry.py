"""
Node Registry - Every known plug, bucketed by priority class.

Each priority class keeps an ordered list of node ids. Within a bucket
plugs drawing significant power come first, then idle-but-on plugs,
then switched-off plugs; inside a tier the plug that has been settled
longest (oldest threshold crossing) comes first.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Iterator, Optional

from ..config import BalancerConfig
from ..errors import DuplicateNodeError, ReportValidationError
from .consumption import ConsumptionModel

logger = logging.getLogger(__name__)


class PlugNode:
    """A smart plug on the shared circuit, including this one."""

    def __init__(
        self,
        node_id: str,
        priority: int,
        config: Optional[BalancerConfig] = None,
        circuit_closed: bool = True,
        is_self: bool = False,
    ):
        self.node_id = node_id
        self.priority = priority
        self.is_self = is_self
        self.model = ConsumptionModel(config, circuit_closed=circuit_closed)

        # Local receive time, used by the liveness monitor
        self.last_seen: float = time.time()
        # Sender's clock, used for update ordering
        self.last_report_time: Optional[float] = None

    @property
    def circuit_closed(self) -> bool:
        return self.model.circuit_closed

    @property
    def average_consumption(self) -> float:
        return self.model.average_consumption()

    @property
    def peak_consumption(self) -> float:
        return self.model.peak_consumption

    @property
    def last_threshold_crossing(self) -> Optional[float]:
        return self.model.last_threshold_crossing

    @property
    def budget_watts(self) -> float:
        return self.model.budget_watts

    def record_sample(self, timestamp: float, watts: float) -> bool:
        return self.model.record_sample(timestamp, watts)

    def set_circuit_closed(self, closed: bool) -> bool:
        return self.model.set_circuit_closed(closed)

    def to_dict(self) -> dict:
        return {
            "id": self.node_id,
            "priority": self.priority,
            "is_self": self.is_self,
            "tier": consumption_tier(self),
            "last_seen": self.last_seen,
            "last_report_time": self.last_report_time,
            **self.model.to_dict(),
        }

    def __repr__(self) -> str:
        state = "on" if self.circuit_closed else "off"
        return f"PlugNode({self.node_id!r}, p{self.priority}, {state}, {self.average_consumption:.0f}W)"


def consumption_tier(node: PlugNode) -> int:
    """2 = significant draw, 1 = on but idle, 0 = off."""
    if node.average_consumption > node.model.config.significant_watts_threshold:
        return 2
    if node.circuit_closed:
        return 1
    return 0


def sort_key(node: PlugNode) -> tuple[int, float]:
    crossing = node.last_threshold_crossing
    return (-consumption_tier(node), -math.inf if crossing is None else crossing)


class NodeRegistry:
    """
    Known plugs keyed by id, with one sorted bucket per priority class.

    Every id sits in exactly one bucket, the one matching its priority.
    Callers must call reindex() after mutating a node so its bucket
    stays sorted.
    """

    def __init__(self, config: Optional[BalancerConfig] = None):
        self.config = config or BalancerConfig()
        self._nodes: dict[str, PlugNode] = {}
        self._buckets: list[list[str]] = [[] for _ in range(self.config.max_priority + 1)]

    def _check_priority(self, priority: int) -> None:
        if not 0 <= priority <= self.config.max_priority:
            raise ReportValidationError(
                f"priority {priority} outside 0..{self.config.max_priority}",
                field="priority",
            )

    def add(self, node: PlugNode) -> PlugNode:
        if node.node_id in self._nodes:
            raise DuplicateNodeError(f"Node {node.node_id} already registered")
        self._check_priority(node.priority)

        self._nodes[node.node_id] = node
        self._buckets[node.priority].append(node.node_id)
        self.reindex(node)
        return node

    def get(self, node_id: str) -> Optional[PlugNode]:
        return self._nodes.get(node_id)

    def remove(self, node_id: str) -> Optional[PlugNode]:
        node = self._nodes.pop(node_id, None)
        if node is not None:
            self._buckets[node.priority].remove(node_id)
            logger.info(f"Removed node {node_id} from registry")
        return node

    def reindex(self, node: PlugNode) -> None:
        """Re-sort the bucket holding this node."""
        bucket = self._buckets[node.priority]
        bucket.sort(key=lambda node_id: sort_key(self._nodes[node_id]))

    def change_priority(self, node_id: str, priority: int) -> None:
        """Move a node to another priority class."""
        self._check_priority(priority)
        node = self._nodes[node_id]
        if node.priority == priority:
            return

        old = node.priority
        self._buckets[old].remove(node_id)
        node.priority = priority
        self._buckets[priority].append(node_id)
        self.reindex(node)
        logger.info(f"Node {node_id} moved from priority {old} to {priority}")

    def bucket(self, priority: int) -> list[PlugNode]:
        """Nodes of one priority class in sorted order."""
        return [self._nodes[node_id] for node_id in self._buckets[priority]]

    def bucket_ids(self, priority: int) -> list[str]:
        return list(self._buckets[priority])

    @property
    def priorities(self) -> range:
        return range(len(self._buckets))

    @property
    def self_node(self) -> Optional[PlugNode]:
        for node in self._nodes.values():
            if node.is_self:
                return node
        return None

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def total_load(self) -> float:
        """Budgeted watts of every closed circuit."""
        return sum(node.budget_watts for node in self._nodes.values() if node.circuit_closed)

    def snapshot(self) -> dict:
        return {
            "total_load": self.total_load(),
            "buckets": {str(p): self.bucket_ids(p) for p in self.priorities},
            "nodes": [node.to_dict() for node in self],
        }

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[PlugNode]:
        """Nodes in priority order, each bucket in sorted order."""
        for priority in self.priorities:
            yield from self.bucket(priority)
