"""
Consumption Model - Rolling power history for a single plug.

Turns a noisy stream of timestamped wattage readings into a stable
"is this plug drawing real power" signal, plus the wattage figure the
rebalancer budgets with.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Optional

from ..config import BalancerConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PowerSample:
    """One wattage reading."""

    timestamp: float
    watts: float

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "watts": self.watts}


class ConsumptionModel:
    """
    Time-windowed, decay-weighted view of one plug's draw.

    Samples older than the retention window (measured from the newest
    sample) are pruned on every insert. Recent samples dominate the
    average: each interval is weighted by 1 / 2**(age + 1), where age is
    the number of seconds it ended before the newest sample.

    Peak consumption is only tracked while the circuit is closed. When
    the circuit opens the history is dropped and the peak becomes NaN;
    the last demand estimate is remembered so that a restore can be
    budgeted before the plug is switched back on.
    """

    def __init__(
        self,
        config: Optional[BalancerConfig] = None,
        circuit_closed: bool = True,
    ):
        self.config = config or BalancerConfig()
        self.history: deque[PowerSample] = deque()
        self.circuit_closed = circuit_closed
        self.peak_consumption: float = math.nan
        self.last_threshold_crossing: Optional[float] = None

        # Survive history clears so ordering and noise checks stay continuous
        self._last_time: Optional[float] = None
        self._last_watts: Optional[float] = None
        self._demand_estimate: float = math.nan

    def _significant(self, watts: float) -> bool:
        return watts > self.config.significant_watts_threshold

    def record_sample(self, timestamp: float, watts: float) -> bool:
        """
        Record a wattage reading.

        Args:
            timestamp: Sample time in epoch seconds
            watts: Instantaneous draw

        Returns:
            True if the sample was stored, False if it was rejected as
            out of order or as noise
        """
        if self._last_time is not None and timestamp <= self._last_time:
            logger.debug(f"Rejecting sample at {timestamp}: not after {self._last_time}")
            return False

        if (
            self.history
            and self._last_watts is not None
            and abs(watts - self._last_watts) < self.config.min_significant_change
        ):
            return False

        if self._last_watts is None or self._significant(watts) != self._significant(self._last_watts):
            self.last_threshold_crossing = timestamp

        self.history.append(PowerSample(timestamp, watts))
        self._last_time = timestamp
        self._last_watts = watts

        if self.circuit_closed and (math.isnan(self.peak_consumption) or watts > self.peak_consumption):
            self.peak_consumption = watts

        self._prune(timestamp)

        if self.circuit_closed:
            self._demand_estimate = max(self.average_consumption(), watts)

        return True

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.retention_window
        while self.history and self.history[0].timestamp < cutoff:
            self.history.popleft()

    def average_consumption(self) -> float:
        """Decay-weighted average of the retained history."""
        if not self.history:
            return 0.0
        if len(self.history) == 1:
            return self.history[0].watts

        newest = self.history[-1].timestamp
        weighted = 0.0
        total_weight = 0.0
        samples = list(self.history)
        for previous, sample in zip(samples, samples[1:]):
            dt = sample.timestamp - previous.timestamp
            weight = 2 ** ((newest - sample.timestamp) + 1)
            weighted += sample.watts * dt / weight
            total_weight += dt / weight

        if total_weight == 0:
            return samples[-1].watts
        return weighted / total_weight

    @property
    def average(self) -> float:
        return self.average_consumption()

    def set_circuit_closed(self, closed: bool) -> bool:
        """
        Record a relay state change.

        Returns:
            True if the state actually changed
        """
        if closed == self.circuit_closed:
            return False

        if closed:
            # Freeze the budget at what the load drew before it was shed
            self.peak_consumption = self._demand_estimate
        else:
            self.history.clear()
            self.peak_consumption = math.nan

        self.circuit_closed = closed
        return True

    @property
    def demand_estimate(self) -> float:
        return self._demand_estimate

    @property
    def budget_watts(self) -> float:
        """Wattage used for capacity maths: peak, else demand, else 0."""
        if not math.isnan(self.peak_consumption):
            return self.peak_consumption
        if not math.isnan(self._demand_estimate):
            return self._demand_estimate
        return 0.0

    @property
    def latest_watts(self) -> float:
        if self.history:
            return self.history[-1].watts
        return self._last_watts or 0.0

    @property
    def last_sample_time(self) -> Optional[float]:
        return self._last_time

    def to_dict(self) -> dict:
        return {
            "circuit_closed": self.circuit_closed,
            "average_consumption": self.average_consumption(),
            "peak_consumption": None if math.isnan(self.peak_consumption) else self.peak_consumption,
            "budget_watts": self.budget_watts,
            "latest_watts": self.latest_watts,
            "last_threshold_crossing": self.last_threshold_crossing,
            "samples": len(self.history),
        }
