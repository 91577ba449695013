"""
Tests for metering sources, mDNS service parsing and the peer client.
"""

import asyncio

import pytest

from plugmesh.balancer.reporter import MeterReading
from plugmesh.config import TransportConfig
from plugmesh.mesh.discovery import SERVICE_TYPE, parse_service
from plugmesh.mesh.metering import (
    ShellyMeteringSource,
    StaticMeteringSource,
    get_metering_source,
    parse_switch_status,
)
from plugmesh.mesh.transport import PeerClient


class TestMetering:
    """Tests for reading this plug's own meter."""

    def test_parse_switch_status(self):
        reading = parse_switch_status({"id": 0, "output": True, "apower": 812.4, "voltage": 118.2})
        assert reading == MeterReading(True, 812.4)

    def test_negative_power_clamped(self):
        assert parse_switch_status({"output": False, "apower": -0.3}) == MeterReading(False, 0.0)

    def test_malformed_payload(self):
        assert parse_switch_status({"apower": 10}) is None
        assert parse_switch_status({"output": True, "apower": "lots"}) is None

    def test_push_mode_has_no_source(self):
        assert get_metering_source(None) is None
        assert get_metering_source("") is None

    def test_shelly_url_normalised(self):
        source = get_metering_source("10.0.0.12", interval=0.5)
        assert isinstance(source, ShellyMeteringSource)
        assert source.url == "http://10.0.0.12"
        assert source.interval == 0.5

    @pytest.mark.asyncio
    async def test_poll_loop_emits_changes_only(self):
        source = StaticMeteringSource(True, 100.0, interval=0.01)
        seen = []

        async def callback(closed, watts):
            seen.append((closed, watts))

        await source.start(callback)
        await asyncio.sleep(0.05)
        source.set(False, 0.0)
        await asyncio.sleep(0.05)
        await source.stop()

        assert seen == [(True, 100.0), (False, 0.0)]


class TestServiceParsing:
    """Tests for turning mDNS records into peers."""

    def test_node_id_from_properties(self):
        plug = parse_service(
            f"plugmesh-fridge.{SERVICE_TYPE}",
            {b"node_id": b"fridge.local:8080", b"priority": b"1"},
            ["10.0.0.20"],
            "fridge.local.",
            8080,
        )
        assert plug.node_id == "fridge.local:8080"
        assert plug.name == "plugmesh-fridge"
        assert plug.address == "10.0.0.20:8080"
        assert plug.priority == 1

    def test_ipv4_preferred_over_ipv6(self):
        plug = parse_service(f"x.{SERVICE_TYPE}", {}, ["fe80::1", "10.0.0.21"], None, 8081)
        assert plug.host == "10.0.0.21"
        assert plug.node_id == "10.0.0.21:8081"
        assert plug.priority is None

    def test_falls_back_to_server_name(self):
        plug = parse_service(f"x.{SERVICE_TYPE}", {}, [], "heater.local.", 8080)
        assert plug.host == "heater.local"

    def test_unresolvable_service(self):
        assert parse_service(f"x.{SERVICE_TYPE}", {}, [], None, 8080) is None
        assert parse_service(f"x.{SERVICE_TYPE}", {}, ["10.0.0.1"], None, None) is None


class TestPeerClient:
    """Tests for outbound peer requests."""

    def test_url_for_address_id(self):
        client = PeerClient(TransportConfig())
        assert client.url_for("10.0.0.12:8080", "/vote") == "http://10.0.0.12:8080/vote"
        assert client.url_for("https://plug.example/", "/relay/0") == "https://plug.example/relay/0"

    @pytest.mark.asyncio
    async def test_set_power_checks_relay_state(self, monkeypatch):
        client = PeerClient(TransportConfig())
        calls = []

        async def fake_get(peer_id, path, params):
            calls.append((peer_id, path, params))
            return {"ison": False}

        monkeypatch.setattr(client, "_get", fake_get)

        assert await client.set_power("heater.local", False) is True
        assert await client.set_power("heater.local", True) is False
        assert calls[0] == ("heater.local", "/relay/0", {"turn": "off"})

    @pytest.mark.asyncio
    async def test_set_power_without_state_trusts_response(self, monkeypatch):
        client = PeerClient(TransportConfig())

        async def fake_get(peer_id, path, params):
            return {}

        monkeypatch.setattr(client, "_get", fake_get)
        assert await client.set_power("heater.local", True) is True

    @pytest.mark.asyncio
    async def test_unreachable_peer_reports_failure(self):
        client = PeerClient(TransportConfig(request_timeout=1.0))
        try:
            assert await client.send_report("127.0.0.1:1", {"sender": "a", "value": "1"}) is False
            assert await client.set_power("127.0.0.1:1", False) is False
        finally:
            await client.close()


class TestRelaySwitching:
    """Tests for switching the local relay through a metering source."""

    @pytest.mark.asyncio
    async def test_static_source_follows_relay(self):
        source = StaticMeteringSource(True, 600.0)

        assert await source.set_output(False) is False
        assert await source.read() == MeterReading(False, 0.0)
        assert await source.set_output(True) is True
        assert await source.read() == MeterReading(True, 600.0)

    @pytest.mark.asyncio
    async def test_unreachable_shelly_reports_failure(self):
        source = ShellyMeteringSource("127.0.0.1:1", timeout=1.0)
        try:
            assert await source.set_output(False) is None
        finally:
            await source.close()
