"""
Stats aggregation for Stream Worker.

Summarizes packaging throughput of online channels together with the
viewer sessions reported by the HTTP layer, and optionally uploads the
summary to a stats server.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .channel import Channel
from .logger import get_logger
from .stats_client import StatsClient


@dataclass
class Subscriber:
    """A viewer session, as recorded by the HTTP layer."""
    protocol: str
    app: str
    channel: str
    ip: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    bytes: int = 0
    connect_created: datetime = field(default_factory=datetime.now)
    connect_updated: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'connectId': self.id,
            'connectCreated': self.connect_created.isoformat(),
            'connectUpdated': self.connect_updated.isoformat(),
            'bytes': self.bytes,
            'ip': self.ip,
            'protocol': self.protocol,
        }


class SubscriberBook:
    """In-memory viewer sessions. Sessions idle longer than ``max_idle`` are dropped."""

    def __init__(self, max_idle: float = 60.0):
        self.max_idle = max_idle
        self._subscribers: Dict[str, Subscriber] = {}

    def __iter__(self):
        return iter(list(self._subscribers.values()))

    def __len__(self) -> int:
        return len(self._subscribers)

    def add(self, protocol: str, app: str, channel: str, ip: str) -> Subscriber:
        subscriber = Subscriber(protocol=protocol, app=app, channel=channel, ip=ip)
        self._subscribers[subscriber.id] = subscriber
        return subscriber

    def get(self, subscriber_id: str) -> Optional[Subscriber]:
        return self._subscribers.get(subscriber_id)

    def touch(self, subscriber_id: str, sent_bytes: int = 0, ip: Optional[str] = None) -> Optional[Subscriber]:
        """Record activity of a viewer session."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return None
        subscriber.bytes += sent_bytes
        subscriber.connect_updated = datetime.now()
        if ip:
            subscriber.ip = ip
        return subscriber

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop idle sessions. Returns how many were dropped."""
        now = now or datetime.now()
        limit = timedelta(seconds=self.max_idle)
        stale = [
            sid for sid, sub in self._subscribers.items()
            if now - sub.connect_updated > limit
        ]
        for sid in stale:
            del self._subscribers[sid]
        return len(stale)


def summarize(
    channels: Iterable[Channel],
    subscribers: Iterable[Subscriber] = (),
    server: Optional[str] = None,
    now: Optional[datetime] = None
) -> List[dict]:
    """
    Build the stats summary.

    Args:
        channels: Online channels (a registry snapshot).
        subscribers: Viewer sessions to join in.
        server: Only include channels whose source URL has this hostname.
        now: Timestamp reported as ``connectUpdated`` of publishers.

    Returns:
        ``[{app, channels: [{channel, publisher, subscribers}]}]`` with one
        channel entry per running packaging task.
    """
    updated = (now or datetime.now()).isoformat()
    subscribers = list(subscribers)
    stats: List[dict] = []
    apps: Dict[str, dict] = {}

    for channel in channels:
        if server is not None and urlparse(channel.url).hostname != server:
            continue

        for running_task in list(channel.running_tasks):
            app = apps.get(channel.app)
            if app is None:
                app = {'app': channel.app, 'channels': []}
                apps[channel.app] = app
                stats.append(app)

            viewers = [
                sub.to_dict() for sub in subscribers
                if sub.app == channel.app
                and sub.channel == channel.name
                and sub.protocol == running_task.protocol
            ]

            app['channels'].append({
                'channel': channel.name,
                'publisher': {
                    'connectId': running_task.id,
                    'connectCreated': running_task.created_at.isoformat(),
                    'connectUpdated': updated,
                    'bytes': running_task.bytes,
                    'protocol': running_task.protocol,
                },
                'subscribers': viewers,
            })

    return stats


class StatsPusher:
    """Periodically uploads the stats summary with a bearer token."""

    def __init__(
        self,
        client: StatsClient,
        url: str,
        token: str,
        channels: Callable[[], Iterable[Channel]],
        subscribers: Optional[SubscriberBook] = None,
        interval: float = 10.0,
        server: Optional[str] = None
    ):
        self.client = client
        self.url = url
        self.token = token
        self.channels = channels
        self.subscribers = subscribers
        self.interval = interval
        self.server = server

        self._logger = get_logger('stats')
        self._stop_event = asyncio.Event()

    async def push_once(self) -> bool:
        if self.subscribers is not None:
            self.subscribers.prune()
        summary = summarize(
            self.channels(),
            self.subscribers if self.subscribers is not None else (),
            server=self.server,
        )
        return await self.client.push_stats(self.url, self.token, {'stats': summary})

    async def run(self) -> None:
        """Push every ``interval`` seconds until ``stop()``."""
        while not self._stop_event.is_set():
            try:
                if not await self.push_once():
                    self._logger.debug("Stats push failed, retrying next period")
            except Exception as e:
                self._logger.error(f"Stats push error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop_event.set()
