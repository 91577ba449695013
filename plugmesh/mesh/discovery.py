"""
mDNS/DNS-SD discovery for plugmesh.

Advertises this plug on the local network and reports other plugs
running plugmesh, so peers need not be listed by hand.
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

# Service type for plugmesh nodes
SERVICE_TYPE = "_plugmesh._tcp.local."


@dataclass
class DiscoveredPlug:
    """A plug found on the local network."""
    node_id: str
    name: str
    host: str
    port: int
    priority: Optional[int] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class PlugDiscovery:
    """
    Advertise this plug and discover peers over mDNS.

    Usage:
        discovery = PlugDiscovery(node_id="10.0.0.12:8080", port=8080, priority=2)
        discovery.on_peer_found = lambda plug: peers.add(plug.node_id)
        await discovery.start()
        # ... later ...
        await discovery.stop()
    """

    def __init__(
        self,
        node_id: str,
        port: int,
        priority: int = 3,
    ):
        self.node_id = node_id
        self.port = port
        self.priority = priority
        self.name = "plugmesh-" + node_id.replace(":", "-").replace(".", "-")

        self._zeroconf: Optional[AsyncZeroconf] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._service_info: Optional[AsyncServiceInfo] = None
        self._plugs: Dict[str, DiscoveredPlug] = {}
        self._tasks: set = set()

        # Callbacks
        self.on_peer_found: Optional[Callable[[DiscoveredPlug], None]] = None
        self.on_peer_lost: Optional[Callable[[str], None]] = None

    async def start(self) -> bool:
        """
        Start advertising and browsing.

        Returns:
            True if started, False if the mDNS socket could not be opened
        """
        try:
            self._zeroconf = AsyncZeroconf()

            properties = {
                b"node_id": self.node_id.encode(),
                b"priority": str(self.priority).encode(),
            }
            self._service_info = AsyncServiceInfo(
                SERVICE_TYPE,
                f"{self.name}.{SERVICE_TYPE}",
                port=self.port,
                properties=properties,
                server=f"{socket.gethostname()}.local.",
            )

            await self._zeroconf.async_register_service(self._service_info)
            logger.info(f"Advertising {self.node_id} as {self.name}")

            self._browser = AsyncServiceBrowser(
                self._zeroconf.zeroconf,
                SERVICE_TYPE,
                handlers=[self._on_service_state_change],
            )
            return True

        except OSError as e:
            logger.error(f"Failed to start mDNS discovery: {e}")
            return False

    async def stop(self) -> None:
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None

        if self._zeroconf:
            if self._service_info:
                await self._zeroconf.async_unregister_service(self._service_info)
            await self._zeroconf.async_close()
            self._zeroconf = None

        logger.info("mDNS discovery stopped")

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change == ServiceStateChange.Added:
            task = asyncio.ensure_future(self._resolve(zeroconf, service_type, name))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif state_change == ServiceStateChange.Removed:
            self._forget(name)

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, 3000):
            return

        plug = parse_service(name, info.properties, info.parsed_addresses(), info.server, info.port)
        if plug is None or plug.node_id == self.node_id:
            return
        self._plugs[plug.node_id] = plug
        logger.info(f"Discovered plug {plug.node_id} at {plug.address}")
        if self.on_peer_found:
            self.on_peer_found(plug)

    def _forget(self, name: str) -> None:
        for node_id, plug in list(self._plugs.items()):
            if plug.name == name.replace(f".{SERVICE_TYPE}", ""):
                del self._plugs[node_id]
                logger.info(f"Plug {node_id} stopped advertising")
                if self.on_peer_lost:
                    self.on_peer_lost(node_id)
                break

    @property
    def plugs(self) -> List[DiscoveredPlug]:
        return list(self._plugs.values())


def parse_service(
    name: str,
    properties: Dict[bytes, Optional[bytes]],
    addresses: List[str],
    server: Optional[str],
    port: Optional[int],
) -> Optional[DiscoveredPlug]:
    """Build a DiscoveredPlug from resolved service data."""
    if port is None:
        return None

    def prop(key: bytes) -> str:
        value = properties.get(key)
        return value.decode() if value else ""

    ipv4 = [a for a in addresses if isinstance(ipaddress.ip_address(a), ipaddress.IPv4Address)]
    if ipv4:
        host = ipv4[0]
    elif server:
        host = server.rstrip(".")
    else:
        return None

    priority = prop(b"priority")
    return DiscoveredPlug(
        node_id=prop(b"node_id") or f"{host}:{port}",
        name=name.replace(f".{SERVICE_TYPE}", ""),
        host=host,
        port=port,
        priority=int(priority) if priority.isdigit() else None,
    )
