"""
Peer Transport - Outbound HTTP to other plugs.

One shared aiohttp session carries power reports, vote messages and
relay toggles. Node ids are network addresses (host or host:port), so a
peer's URL is built straight from its id. Every failure is logged and
reported as False; nothing here raises into an event handler.
"""

import asyncio
import logging
from typing import Dict, Optional

import aiohttp

from ..config import TransportConfig
from ..errors import PeerUnreachable
from .coordination import VoteMessage

logger = logging.getLogger(__name__)


class PeerClient:
    """
    HTTP client for plug-to-plug traffic.

    Implements both the switch-control capability used by the
    rebalancer and the vote transport used by coordination.
    """

    def __init__(self, config: Optional[TransportConfig] = None):
        self.config = config or TransportConfig()
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def url_for(self, peer_id: str, path: str) -> str:
        if peer_id.startswith(("http://", "https://")):
            base = peer_id.rstrip("/")
        else:
            base = f"{self.config.scheme}://{peer_id}"
        return f"{base}{path}"

    async def _get(self, peer_id: str, path: str, params: Dict[str, str]) -> Optional[dict]:
        """GET a peer endpoint; returns the decoded body, or None on failure."""
        session = await self._get_session()
        url = self.url_for(peer_id, path)

        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    error = await resp.text()
                    logger.warning(str(PeerUnreachable(peer_id, f"HTTP {resp.status}: {error[:200]}")))
                    return None
                try:
                    return await resp.json(content_type=None)
                except ValueError:
                    return {}
        except asyncio.TimeoutError:
            logger.warning(str(PeerUnreachable(peer_id, f"no response within {self.config.request_timeout}s")))
        except aiohttp.ClientError as e:
            logger.warning(str(PeerUnreachable(peer_id, str(e))))
        return None

    async def send_report(self, peer_id: str, params: Dict[str, str]) -> bool:
        """Deliver a power report to one peer."""
        return await self._get(peer_id, self.config.report_path, params) is not None

    async def send_vote(self, peer_id: str, message: VoteMessage) -> bool:
        """Deliver one vote stage message to one peer."""
        return await self._get(peer_id, self.config.vote_path, message.to_params()) is not None

    async def set_power(self, node_id: str, on: bool) -> bool:
        """
        Switch a plug's relay.

        Returns:
            True if the plug answered and (when it says) the relay state
            matches the request
        """
        data = await self._get(node_id, self.config.relay_path, {"turn": "on" if on else "off"})
        if data is None:
            return False
        if isinstance(data, dict) and "ison" in data:
            return bool(data["ison"]) == on
        return True
