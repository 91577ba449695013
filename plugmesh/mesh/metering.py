"""
Metering - Read and switch this plug's own relay.

A metering source polls the host device and hands every changed
reading to a callback (normally SelfReporter.on_reading). It also
drives the relay when the leader asks this plug to switch via
/relay/0. Host integrations that push readings instead use the
/metering endpoint and have no switchable relay here.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import aiohttp

from ..balancer.reporter import MeterReading

logger = logging.getLogger(__name__)

ReadingCallback = Callable[[bool, float], Awaitable[None]]


class MeteringSource(ABC):
    """Abstract base class for self metering."""

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last: Optional[MeterReading] = None

    @abstractmethod
    async def read(self) -> Optional[MeterReading]:
        """Take one reading, or None if the meter is unavailable."""
        pass

    @abstractmethod
    async def set_output(self, on: bool) -> Optional[bool]:
        """Switch the local relay. Returns the new state, or None on failure."""
        pass

    async def start(self, callback: ReadingCallback) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(callback))
        logger.info(f"{type(self).__name__} polling every {self.interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.close()

    async def close(self) -> None:
        pass

    async def _poll_loop(self, callback: ReadingCallback) -> None:
        while self._running:
            reading = await self.read()
            if reading is not None and reading != self._last:
                self._last = reading
                try:
                    await callback(reading.circuit_closed, reading.watts)
                except Exception as e:
                    logger.error(f"Metering callback failed: {e}")
            await asyncio.sleep(self.interval)


class ShellyMeteringSource(MeteringSource):
    """Polls and switches a Shelly Gen2 plug over its local RPC API."""

    STATUS_PATH = "/rpc/Switch.GetStatus"
    SET_PATH = "/rpc/Switch.Set"

    def __init__(self, url: str, interval: float = 1.0, timeout: float = 2.0, switch_id: int = 0):
        super().__init__(interval)
        self.url = url if url.startswith(("http://", "https://")) else f"http://{url}"
        self.timeout = timeout
        self.switch_id = switch_id
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def read(self) -> Optional[MeterReading]:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.url.rstrip('/')}{self.STATUS_PATH}",
                params={"id": str(self.switch_id)},
            ) as resp:
                if resp.status != 200:
                    logger.warning(f"Meter at {self.url} returned HTTP {resp.status}")
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Meter at {self.url} unreachable: {e}")
            return None

        return parse_switch_status(data)

    async def set_output(self, on: bool) -> Optional[bool]:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.url.rstrip('/')}{self.SET_PATH}",
                params={"id": str(self.switch_id), "on": "true" if on else "false"},
            ) as resp:
                if resp.status != 200:
                    logger.warning(f"Relay at {self.url} refused switch {'on' if on else 'off'}: HTTP {resp.status}")
                    return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Relay at {self.url} unreachable: {e}")
            return None

        logger.info(f"Relay at {self.url} switched {'on' if on else 'off'}")
        return on


def parse_switch_status(data: dict) -> Optional[MeterReading]:
    """Turn a Switch.GetStatus payload into a reading."""
    try:
        return MeterReading(
            circuit_closed=bool(data["output"]),
            watts=max(float(data.get("apower", 0.0)), 0.0),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Unexpected switch status payload: {e}")
        return None


class StaticMeteringSource(MeteringSource):
    """Fixed reading for bench testing and development."""

    def __init__(self, circuit_closed: bool = True, watts: float = 0.0, interval: float = 1.0):
        super().__init__(interval)
        self.set(circuit_closed, watts)

    def set(self, circuit_closed: bool, watts: float) -> None:
        # Draw resumes at the load figure when the relay closes again
        self.load_watts = watts
        self.reading = MeterReading(circuit_closed, watts if circuit_closed else 0.0)

    async def read(self) -> Optional[MeterReading]:
        return self.reading

    async def set_output(self, on: bool) -> Optional[bool]:
        self.reading = MeterReading(on, self.load_watts if on else 0.0)
        return on


def get_metering_source(url: Optional[str], interval: float = 1.0, timeout: float = 2.0) -> Optional[MeteringSource]:
    """
    Get the metering source for this host.

    Args:
        url: Address of a Shelly Gen2 plug, or None when readings are
            pushed to /metering

    Returns:
        A MeteringSource, or None for push mode
    """
    if not url:
        return None
    return ShellyMeteringSource(url, interval=interval, timeout=timeout)
