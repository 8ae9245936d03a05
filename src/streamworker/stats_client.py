"""
HTTP client for the streaming server stats API.
Handles liveness checks, channel roster queries and stats uploads.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import urlparse

import aiohttp

from .config import ServiceConfig
from .logger import get_logger


@dataclass
class ChannelStats:
    """Liveness and metadata for one stream."""
    is_live: bool
    viewers: int = 0
    duration: int = 0
    bitrate: int = 0
    last_bitrate: int = 0
    start_time: Optional[datetime] = None
    origin: Optional[str] = None    # host actually serving the stream, if reported

    @classmethod
    def from_api(cls, data: dict) -> 'ChannelStats':
        start_time = None
        raw_start = data.get('startTime')
        if raw_start:
            try:
                start_time = datetime.fromisoformat(str(raw_start).replace('Z', '+00:00'))
            except ValueError:
                start_time = None

        return cls(
            is_live=bool(data.get('isLive', False)),
            viewers=int(data.get('viewers') or 0),
            duration=int(data.get('duration') or 0),
            bitrate=int(data.get('bitrate') or 0),
            last_bitrate=int(data.get('lastBitrate') or 0),
            start_time=start_time,
            origin=data.get('origin') or None,
        )


@dataclass
class LiveEntry:
    """One published stream in a roster response."""
    app: str
    channel: str
    protocol: str = ""


@dataclass
class ChannelList:
    """Roster of streams currently known to a service."""
    channels: List[str] = field(default_factory=list)
    live: List[LiveEntry] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> 'ChannelList':
        live = [
            LiveEntry(
                app=str(entry.get('app', '')),
                channel=str(entry['channel']),
                protocol=str(entry.get('protocol', '')),
            )
            for entry in data.get('live') or []
            if isinstance(entry, dict) and entry.get('channel')
        ]
        return cls(
            channels=[str(name) for name in data.get('channels') or []],
            live=live,
        )

    def names_for_app(self, app: str) -> List[str]:
        """Stream names published under ``app``, deduplicated, in roster order."""
        if self.live:
            names = [entry.channel for entry in self.live if entry.app == app]
        else:
            names = list(self.channels)
        return list(dict.fromkeys(names))


class StatsClient:
    """
    Stats API client.

    Every query returns None instead of raising when the server is
    unreachable, answers with an error status or sends garbage, so callers
    can simply skip the current tick.
    """

    def __init__(self, timeout: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize stats client.

        Args:
            timeout: Total timeout per request in seconds.
            session: Optional pre-built session (the client won't close it).
        """
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._logger = get_logger('stats_client')

    async def connect(self) -> None:
        """Create the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True

    async def disconnect(self) -> None:
        """Close session."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> 'StatsClient':
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @staticmethod
    def channel_stats_url(service: ServiceConfig, channel: str) -> str:
        host = urlparse(service.rtmp_base).netloc
        return f"{service.stats_base}/channels/{host}/{service.app}/{channel}"

    @staticmethod
    def channel_list_url(service: ServiceConfig) -> str:
        return f"{service.stats_base}/channels/list"

    async def _get_json(self, url: str) -> Optional[Any]:
        if self._session is None:
            await self.connect()

        try:
            async with self._session.get(url) as resp:
                if resp.status == 502:
                    self._logger.warning(f"Bad gateway from {url}")
                    return None
                if resp.status != 200:
                    self._logger.warning(f"API error {resp.status} from {url}")
                    return None
                return await resp.json(content_type=None)

        except aiohttp.ClientConnectorError as e:
            self._logger.warning(f"Connection refused by {url}: {e}")
            return None
        except asyncio.TimeoutError:
            self._logger.warning(f"Timeout requesting {url}")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            self._logger.error(f"Failed to get {url}: {e}")
            return None

    async def get_channel_stats(self, service: ServiceConfig, channel: str) -> Optional[ChannelStats]:
        """
        Get liveness info for one stream.

        Args:
            service: Service the stream is published on.
            channel: Stream name.

        Returns:
            ChannelStats, or None if no usable answer this time.
        """
        data = await self._get_json(self.channel_stats_url(service, channel))
        if not isinstance(data, dict):
            return None

        try:
            return ChannelStats.from_api(data)
        except (TypeError, ValueError) as e:
            self._logger.error(f"Malformed stats for {service.app}/{channel}: {e}")
            return None

    async def get_channel_list(self, service: ServiceConfig) -> Optional[ChannelList]:
        """
        Get the roster of streams known to a service.

        Returns:
            ChannelList, or None if no usable answer this time.
        """
        data = await self._get_json(self.channel_list_url(service))
        if not isinstance(data, dict):
            return None

        try:
            return ChannelList.from_api(data)
        except (TypeError, ValueError, KeyError) as e:
            self._logger.error(f"Malformed channel list from {service.name}: {e}")
            return None

    async def push_stats(self, url: str, token: str, payload: dict) -> bool:
        """
        Upload a stats summary.

        Args:
            url: Endpoint accepting the summary.
            token: Bearer token.
            payload: JSON-serialisable body.

        Returns:
            True if the server accepted it.
        """
        if self._session is None:
            await self.connect()

        headers = {'Authorization': f'Bearer {token}'}
        try:
            async with self._session.post(url, json=payload, headers=headers) as resp:
                if resp.status >= 300:
                    self._logger.warning(f"Stats push rejected: {resp.status}")
                    return False
                return True
        except asyncio.TimeoutError:
            self._logger.warning(f"Timeout pushing stats to {url}")
            return False
        except aiohttp.ClientError as e:
            self._logger.warning(f"Stats push failed: {e}")
            return False
