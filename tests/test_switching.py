"""
Tests for relay toggles travelling from the leader to a peer's device over HTTP.
"""

import asyncio
import socket
from contextlib import asynccontextmanager

import pytest
import uvicorn

from plugmesh.api.server import PlugMeshServer, create_app
from plugmesh.balancer.updates import PeerReport
from plugmesh.config import Config
from plugmesh.mesh.metering import StaticMeteringSource
from plugmesh.mesh.transport import PeerClient


class NullTransport:
    async def send_vote(self, peer_id, message):
        return True

    async def send_report(self, peer_id, params):
        return True


def bound_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    return sock


@asynccontextmanager
async def serving(plug: PlugMeshServer, sock: socket.socket):
    """Run a plug's app on an already bound socket."""
    server = uvicorn.Server(uvicorn.Config(create_app(server=plug), log_level="warning"))
    task = asyncio.create_task(server.serve(sockets=[sock]))
    try:
        for _ in range(200):
            if server.started:
                break
            await asyncio.sleep(0.01)
        assert server.started
        yield
    finally:
        server.should_exit = True
        await task


def make_peer(tmp_path, sock, metering):
    node_id = f"127.0.0.1:{sock.getsockname()[1]}"
    config = Config(data_dir=tmp_path / "peer", node_id=node_id, priority=5)
    plug = PlugMeshServer(config, transport=NullTransport(), metering=metering)
    plug.client.send_report = NullTransport().send_report
    return plug


class TestRelayOverHttp:
    """A toggle leaves the leader's PeerClient and reaches the peer's relay."""

    @pytest.mark.asyncio
    async def test_peer_client_switches_peer_relay(self, tmp_path):
        sock = bound_socket()
        metering = StaticMeteringSource(True, 600.0, interval=0.05)
        peer = make_peer(tmp_path, sock, metering)
        client = PeerClient()

        try:
            async with serving(peer, sock):
                assert await client.set_power(peer.node_id, False) is True
                assert metering.reading.circuit_closed is False

                # The peer's own view follows once the new reading is published
                for _ in range(100):
                    if not peer.self_node.circuit_closed:
                        break
                    await asyncio.sleep(0.02)
                assert peer.self_node.circuit_closed is False

                assert await client.set_power(peer.node_id, True) is True
                assert metering.reading.circuit_closed is True
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_push_mode_peer_refuses_toggle(self, tmp_path):
        sock = bound_socket()
        peer = make_peer(tmp_path, sock, metering=None)
        client = PeerClient()

        try:
            async with serving(peer, sock):
                assert await client.set_power(peer.node_id, False) is False
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_leader_sheds_and_restores_remote_plug(self, tmp_path):
        sock = bound_socket()
        metering = StaticMeteringSource(True, 600.0, interval=0.05)
        peer = make_peer(tmp_path, sock, metering)

        # No switch injected: toggles go through the leader's PeerClient
        leader = PlugMeshServer(
            Config(data_dir=tmp_path / "leader", node_id="leader.local", priority=0),
            transport=NullTransport(),
        )
        leader.client.send_report = NullTransport().send_report
        leader.coordination.leader_id = leader.node_id

        try:
            async with serving(peer, sock):
                await leader.handle_report(PeerReport(
                    sender=peer.node_id, value=600, circuitclosed=True, priority=5, timestamp=1000.0,
                ))
                await leader.handle_report(PeerReport(
                    sender="fridge.local", value=1500, circuitclosed=True, priority=0, timestamp=1000.0,
                ))

                shed = await leader.rebalance_if_leader()

                assert shed.action == "shed"
                assert shed.toggled == [peer.node_id]
                assert metering.reading.circuit_closed is False
                assert leader.registry.get(peer.node_id).circuit_closed is False

                # The fridge leaves the circuit, freeing room for the charger
                leader.registry.remove("fridge.local")
                restore = await leader.rebalance_if_leader()

                assert restore.action == "restore"
                assert restore.toggled == [peer.node_id]
                assert metering.reading.circuit_closed is True
        finally:
            await leader.stop()
