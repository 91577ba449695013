"""
Self Reporter - Decide when this plug's own readings are published.

Motors and compressors draw a short surge when switched on. An upward
reading is held back for the inrush delay so the surge is not budgeted;
a downward reading, a relay change or the delay expiring publishes the
latest reading straight away. A heartbeat republishes the last reading
periodically so peers know this plug is alive.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeterReading:
    circuit_closed: bool
    watts: float


PublishCallback = Callable[[MeterReading], Awaitable[None]]


class SelfReporter:
    """
    Stabilises self readings before they reach the update protocol.

    Args:
        publish: Awaited with every reading that should be applied and
            broadcast
        inrush_delay: Seconds an upward reading is held back
        heartbeat_interval: Seconds between unconditional republishes
        on_heartbeat: Awaited on every heartbeat tick, defaults to
            republishing the last reading
    """

    def __init__(
        self,
        publish: PublishCallback,
        inrush_delay: float = 1.0,
        heartbeat_interval: float = 60.0,
        on_heartbeat: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.publish = publish
        self.inrush_delay = inrush_delay
        self.heartbeat_interval = heartbeat_interval
        self.on_heartbeat = on_heartbeat

        self.applied: Optional[MeterReading] = None
        self.pending: Optional[MeterReading] = None
        self._timer: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_pending(self) -> bool:
        return self._timer is not None

    async def on_reading(self, circuit_closed: bool, watts: float) -> None:
        """Feed one raw reading from the meter."""
        reading = MeterReading(circuit_closed, watts)

        if self.pending is not None:
            if circuit_closed != self.pending.circuit_closed or watts < self.pending.watts:
                self._cancel_timer()
                await self._apply(reading)
            else:
                # Still climbing; the timer keeps running
                self.pending = reading
            return

        if self.applied is not None and circuit_closed == self.applied.circuit_closed and watts == self.applied.watts:
            return

        if self.applied is not None and watts > self.applied.watts and self.inrush_delay > 0:
            self.pending = reading
            self._timer = asyncio.create_task(self._expire())
            logger.debug(f"Holding {watts:.0f} W reading for {self.inrush_delay}s")
            return

        await self._apply(reading)

    async def _expire(self) -> None:
        await asyncio.sleep(self.inrush_delay)
        self._timer = None
        reading = self.pending
        if reading is not None:
            await self._apply(reading)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _apply(self, reading: MeterReading) -> None:
        self.pending = None
        self.applied = reading
        await self.publish(reading)

    async def flush(self) -> None:
        """Publish any held reading now."""
        if self.pending is not None:
            self._cancel_timer()
            await self._apply(self.pending)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        self._running = False
        self._cancel_timer()
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if self.on_heartbeat is not None:
                    await self.on_heartbeat()
                elif self.applied is not None:
                    await self.publish(self.applied)
            except Exception as e:
                logger.error(f"Heartbeat failed: {e}")
