"""
FastAPI server for plugmesh.
"""

import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI

from ..balancer.rebalancer import Rebalancer, RebalanceResult, SwitchControl
from ..balancer.registry import NodeRegistry, PlugNode
from ..balancer.reporter import MeterReading, SelfReporter
from ..balancer.updates import PeerReport, UpdateOutcome, UpdateProtocol
from ..config import Config, get_config, set_config
from ..mesh.coordination import CoordinationProtocol, PeerTransport, VoteMessage, VoteType
from ..mesh.discovery import DiscoveredPlug, PlugDiscovery
from ..mesh.metering import MeteringSource, get_metering_source
from ..mesh.transport import PeerClient

logger = logging.getLogger(__name__)

# Global server instance
_server: Optional["PlugMeshServer"] = None


def get_server() -> Optional["PlugMeshServer"]:
    """Get the global server instance."""
    return _server


def default_node_id(config: Config) -> str:
    return f"{socket.gethostname()}:{config.server.port}"


class PlugMeshServer:
    """
    One plug's balancing service.

    Owns every component:
    - Node registry and update protocol
    - Rebalancer (acts only while this node leads)
    - Coordination votes and the liveness monitor
    - Self reporter, metering source and peer broadcast
    - mDNS discovery

    Every event (peer report, self reading, vote message, timer tick)
    runs under one lock, so registry mutations never interleave.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        switch: Optional[SwitchControl] = None,
        transport: Optional[PeerTransport] = None,
        metering: Optional[MeteringSource] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()
        self.node_id = self.config.node_id or default_node_id(self.config)
        self.clock = clock

        self.client = PeerClient(self.config.transport)

        self.registry = NodeRegistry(self.config.balancer)
        self.self_node = self.registry.add(
            PlugNode(self.node_id, self.config.priority, self.config.balancer, is_self=True)
        )
        self.updates = UpdateProtocol(self.registry, self.config.balancer, clock)
        self.rebalancer = Rebalancer(
            self.registry,
            switch or self.client,
            self.config.balancer,
            request_timeout=self.config.transport.request_timeout,
            toggle_retries=self.config.transport.toggle_retries,
        )
        self.coordination = CoordinationProtocol(
            self.node_id,
            self.registry,
            transport or self.client,
            self.config.coordination,
            clock,
        )
        self.coordination.on_leader_change = self._on_leader_change
        self.coordination.on_node_removed = self._on_node_removed

        self.reporter = SelfReporter(
            self._publish_self,
            inrush_delay=self.config.balancer.inrush_delay,
            heartbeat_interval=self.config.balancer.heartbeat_interval,
            on_heartbeat=self._heartbeat,
        )
        self.metering = metering or get_metering_source(
            self.config.metering_url,
            interval=self.config.metering_interval,
            timeout=self.config.transport.request_timeout,
        )
        self.discovery: Optional[PlugDiscovery] = None

        self.peers: set[str] = set(self.config.peers) - {self.node_id}

        self._lock = asyncio.Lock()
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the server and all background services."""
        if self._running:
            return
        self._running = True

        if self.config.mdns_enabled:
            self.discovery = PlugDiscovery(self.node_id, self.config.server.port, self.config.priority)
            self.discovery.on_peer_found = self._on_peer_found
            await self.discovery.start()

        await self.reporter.start()
        if self.metering:
            await self.metering.start(self.handle_metering)

        # Introduce this plug to the seed peers before any election can run
        async with self._lock:
            self.broadcast_self()

        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(
            f"plugmesh node {self.node_id} (priority {self.config.priority}) running, "
            f"circuit limit {self.config.circuit_limit_watts:.0f} W, {len(self.peers)} seed peers"
        )

    async def stop(self) -> None:
        """Stop the server and all background services."""
        logger.info("Stopping plugmesh server...")
        self._running = False

        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self.metering:
            await self.metering.stop()
        await self.reporter.stop()

        if self.discovery:
            await self.discovery.stop()

        for task in list(self._tasks):
            task.cancel()
        await self.client.close()
        logger.info("plugmesh server stopped")

    async def _timer_loop(self) -> None:
        """Vote deadlines every half stage timeout, liveness every interval."""
        coordination = self.config.coordination
        tick = max(coordination.stage_timeout / 2, 0.1)
        started = self.clock()
        next_liveness = started + coordination.stage_timeout

        while self._running:
            await asyncio.sleep(tick)
            try:
                async with self._lock:
                    self.coordination.check_timeouts()
                    now = self.clock()
                    # The first check waits for the seed peers, at most peer_timeout
                    if now >= next_liveness and (
                        self.seeds_reported() or now - started >= coordination.peer_timeout
                    ):
                        self.coordination.check_liveness()
                        next_liveness = self.clock() + coordination.liveness_interval
            except Exception as e:
                logger.error(f"Coordination timer failed: {e}")

    # ==================== Events ====================

    async def handle_report(self, report: PeerReport) -> UpdateOutcome:
        """Apply one peer report."""
        async with self._lock:
            outcome = self.updates.apply(report)
            if report.sender != self.node_id:
                self.peers.add(report.sender)
                if outcome == UpdateOutcome.CREATED:
                    # Answer a newcomer so it learns about this plug without waiting for a heartbeat
                    self._spawn(self._send_report(report.sender, self.self_report().to_params()))
            self._reconcile_leader(report)
        return outcome

    async def handle_vote(self, message: VoteMessage) -> None:
        async with self._lock:
            self.coordination.handle_message(message)

    async def handle_metering(self, circuit_closed: bool, watts: float) -> None:
        """A raw reading from this plug's own meter."""
        await self.reporter.on_reading(circuit_closed, watts)

    async def handle_relay(self, on: bool) -> Optional[bool]:
        """
        Switch this plug's own relay at the leader's request.

        Returns:
            The new relay state, or None if there is no local relay or it
            did not respond
        """
        if self.metering is None:
            return None
        state = await self.metering.set_output(on)
        if state is not None:
            # The leader may be waiting on this request with its event lock held
            self._spawn(self._refresh_metering())
        return state

    async def _refresh_metering(self) -> None:
        reading = await self.metering.read()
        if reading is not None:
            await self.handle_metering(reading.circuit_closed, reading.watts)

    async def rebalance_if_leader(self) -> Optional[RebalanceResult]:
        """Run the budget check if this node is the leader."""
        async with self._lock:
            if not self.coordination.is_leader:
                return None
            return await self.rebalancer.rebalance()

    async def _publish_self(self, reading: MeterReading) -> None:
        async with self._lock:
            self.updates.apply_self(self.node_id, reading.circuit_closed, reading.watts)
            self.broadcast_self()
            if self.coordination.is_leader:
                await self.rebalancer.rebalance()

    async def _heartbeat(self) -> None:
        async with self._lock:
            self.self_node.last_seen = self.clock()
            self.broadcast_self()

    def _reconcile_leader(self, report: PeerReport) -> None:
        if not report.leader:
            return
        if self.coordination.adopt_leader(report.leader):
            return
        if report.leader != self.coordination.leader_id:
            logger.warning(
                f"{report.sender} follows {report.leader}, this node follows "
                f"{self.coordination.leader_id}; calling an election"
            )
            self.coordination.start_vote(VoteType.ELECT_LEADER, "")

    def seeds_reported(self) -> bool:
        """True once every configured seed peer has reported at least once."""
        return all(peer in self.registry for peer in self.config.peers if peer != self.node_id)

    def _on_leader_change(self, leader_id: Optional[str]) -> None:
        if leader_id == self.node_id:
            self._spawn(self.rebalance_if_leader())

    def _on_node_removed(self, node_id: str) -> None:
        self.peers.discard(node_id)

    def _on_peer_found(self, plug: DiscoveredPlug) -> None:
        if plug.node_id != self.node_id:
            self.peers.add(plug.node_id)

    # ==================== Outbound ====================

    def self_report(self) -> PeerReport:
        node = self.self_node
        return PeerReport(
            sender=self.node_id,
            value=node.model.latest_watts,
            circuitclosed=node.circuit_closed,
            priority=node.priority,
            timestamp=self.clock(),
            leader=self.coordination.leader_id,
        )

    def broadcast_self(self) -> None:
        """Send this plug's state to every peer without waiting."""
        params = self.self_report().to_params()
        for peer in sorted(self.peers):
            self._spawn(self._send_report(peer, params))

    async def _send_report(self, peer: str, params: dict) -> None:
        if not await self.client.send_report(peer, params):
            logger.debug(f"Report to {peer} not delivered")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ==================== Status ====================

    def status(self) -> dict:
        """Get server status."""
        last = self.rebalancer.last_result
        return {
            "running": self._running,
            "node_id": self.node_id,
            "priority": self.self_node.priority,
            "leader": self.coordination.leader_id,
            "is_leader": self.coordination.is_leader,
            "circuit_limit_watts": self.config.circuit_limit_watts,
            "total_load": self.registry.total_load(),
            "spare_capacity": self.rebalancer.spare_capacity(),
            "nodes": len(self.registry),
            "peers": sorted(self.peers),
            "votes": [vote.to_dict() for vote in self.coordination.votes.values()],
            "last_rebalance": last.to_dict() if last else None,
        }


def create_app(config: Optional[Config] = None, server: Optional[PlugMeshServer] = None) -> FastAPI:
    """Create the FastAPI application."""
    from .routes import peer_router, router

    global _server

    if config:
        set_config(config)
    if server is not None:
        _server = server

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global _server

        if _server is None:
            _server = PlugMeshServer(get_config())
        await _server.start()

        yield

        await _server.stop()

    app = FastAPI(
        title="plugmesh",
        description="Distributed circuit load balancing for smart plugs",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Peer-to-peer endpoints live at the root
    app.include_router(peer_router)
    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8080,
    config: Optional[Config] = None,
):
    """Run the server with uvicorn."""
    app = create_app(config)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info"
    )
