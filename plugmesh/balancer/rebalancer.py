"""
Rebalancer - Keep the circuit under its limit by toggling plugs.

Only the elected leader runs a rebalance. Over budget, plugs are shed
from the least important priority class upward; with headroom, switched
off plugs are restored from the most important class downward.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ..config import BalancerConfig
from ..errors import CapacityExhaustion, PeerUnreachable
from .registry import NodeRegistry, PlugNode

logger = logging.getLogger(__name__)


class SwitchControl(Protocol):
    """Protocol for opening and closing a plug's relay."""

    async def set_power(self, node_id: str, on: bool) -> bool:
        """Switch a plug on or off. Returns True once confirmed."""
        ...


@dataclass
class RebalanceResult:
    """Outcome of one rebalance cycle."""

    action: str  # "shed", "restore" or "none"
    spare_before: float
    spare_after: float
    selected: list[str] = field(default_factory=list)
    toggled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    exhausted: bool = False

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "spare_before": self.spare_before,
            "spare_after": self.spare_after,
            "selected": self.selected,
            "toggled": self.toggled,
            "failed": self.failed,
            "exhausted": self.exhausted,
        }


class Rebalancer:
    """Shed and restore plugs against the circuit limit."""

    def __init__(
        self,
        registry: NodeRegistry,
        switch: SwitchControl,
        config: Optional[BalancerConfig] = None,
        request_timeout: float = 2.0,
        toggle_retries: int = 1,
    ):
        self.registry = registry
        self.switch = switch
        self.config = config or registry.config
        self.request_timeout = request_timeout
        self.toggle_retries = toggle_retries
        self.last_result: Optional[RebalanceResult] = None

    @property
    def circuit_limit_watts(self) -> float:
        return self.config.circuit_limit_watts

    def spare_capacity(self) -> float:
        return self.circuit_limit_watts - self.registry.total_load()

    def plan_shed(self, deficit: float) -> tuple[list[PlugNode], float]:
        """
        Pick closed plugs to switch off.

        Args:
            deficit: Watts over the limit (positive)

        Returns:
            Tuple of (candidates, remaining deficit). A positive remaining
            deficit means every closed plug was taken and it still was
            not enough.
        """
        remaining = deficit
        candidates: list[PlugNode] = []

        for priority in reversed(self.registry.priorities):
            for node in self.registry.bucket(priority):
                if remaining <= 0:
                    break
                if not node.circuit_closed or node.budget_watts <= 0:
                    continue
                candidates.append(node)
                remaining -= node.budget_watts
            if remaining <= 0:
                break

        if remaining > 0:
            logger.error(str(CapacityExhaustion(remaining)))
            return candidates, remaining

        # Backoff: keep anything small enough to fit in the overshoot
        for node in reversed(list(candidates)):
            if node.budget_watts < -remaining:
                candidates.remove(node)
                remaining += node.budget_watts

        return candidates, remaining

    def plan_restore(self, surplus: float) -> list[PlugNode]:
        """Greedily pick open plugs whose budget fits in the surplus."""
        remaining = surplus - self.config.rearm_margin_watts
        selected: list[PlugNode] = []

        for priority in self.registry.priorities:
            for node in self.registry.bucket(priority):
                if node.circuit_closed:
                    continue
                if node.budget_watts <= remaining:
                    selected.append(node)
                    remaining -= node.budget_watts

        return selected

    async def rebalance(self) -> RebalanceResult:
        """Run one budget check and toggle whatever it selects."""
        spare = self.spare_capacity()
        exhausted = False

        if spare < 0:
            action = "shed"
            nodes, remaining = self.plan_shed(-spare)
            exhausted = remaining > 0
        elif spare > 0:
            action = "restore"
            nodes = self.plan_restore(spare)
        else:
            nodes = []

        if not nodes:
            result = RebalanceResult(action="none", spare_before=spare, spare_after=spare, exhausted=exhausted)
            self.last_result = result
            return result

        on = action == "restore"
        logger.info(
            f"Circuit {spare:+.0f} W against {self.circuit_limit_watts:.0f} W limit, "
            f"{action} {[n.node_id for n in nodes]}"
        )

        outcomes = await asyncio.gather(*(self._toggle(node, on) for node in nodes))

        result = RebalanceResult(
            action=action,
            spare_before=spare,
            spare_after=spare,
            selected=[node.node_id for node in nodes],
            exhausted=exhausted,
        )
        for node, ok in zip(nodes, outcomes):
            if ok:
                node.set_circuit_closed(on)
                self.registry.reindex(node)
                result.toggled.append(node.node_id)
            else:
                result.failed.append(node.node_id)

        result.spare_after = self.spare_capacity()
        self.last_result = result
        return result

    async def _toggle(self, node: PlugNode, on: bool) -> bool:
        reason = ""
        for attempt in range(self.toggle_retries + 1):
            try:
                if await asyncio.wait_for(self.switch.set_power(node.node_id, on), timeout=self.request_timeout):
                    logger.info(f"Switched {node.node_id} {'on' if on else 'off'}")
                    return True
                reason = "toggle not confirmed"
            except asyncio.TimeoutError:
                reason = f"no response within {self.request_timeout}s"
            except PeerUnreachable as e:
                reason = e.reason
            logger.debug(f"Toggle attempt {attempt + 1} for {node.node_id} failed: {reason}")

        logger.warning(str(PeerUnreachable(node.node_id, reason)))
        return False
