"""
Registry of online channels.

Only the discovery loop inserts and removes entries; everything else reads
snapshots.
"""

from typing import Dict, Iterator, Optional, Tuple

from .channel import Channel, ChannelSupervisor
from .errors import StreamWorkerError
from .logger import get_logger


class ChannelRegistry:
    """Online channels keyed by channel id, with their supervisors."""

    def __init__(self):
        self._channels: Dict[str, Channel] = {}
        self._supervisors: Dict[str, ChannelSupervisor] = {}
        self._logger = get_logger('registry')

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self) -> Iterator[Channel]:
        return iter(self.snapshot())

    def get(self, channel_id: str) -> Optional[Channel]:
        return self._channels.get(channel_id)

    def supervisor(self, channel_id: str) -> Optional[ChannelSupervisor]:
        return self._supervisors.get(channel_id)

    def add(self, channel: Channel, supervisor: Optional[ChannelSupervisor] = None) -> None:
        """
        Register an online channel.

        Raises:
            StreamWorkerError: If the id is already registered.
        """
        if channel.id in self._channels:
            raise StreamWorkerError(f"Channel {channel.id} is already online")
        self._channels[channel.id] = channel
        if supervisor is not None:
            self._supervisors[channel.id] = supervisor
        self._logger.debug(f"Registered {channel.label} ({channel.id}), {len(self)} online")

    def remove(self, channel_id: str) -> Tuple[Channel, Optional[ChannelSupervisor]]:
        """
        Unregister a channel.

        Raises:
            StreamWorkerError: If the id is not registered.
        """
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            raise StreamWorkerError(f"Channel {channel_id} is not online")
        supervisor = self._supervisors.pop(channel_id, None)
        self._logger.debug(f"Unregistered {channel.label} ({channel_id}), {len(self)} online")
        return channel, supervisor

    def snapshot(self) -> Tuple[Channel, ...]:
        """Current online channels, as an immutable sequence."""
        return tuple(self._channels.values())

    def supervisors(self) -> Tuple[ChannelSupervisor, ...]:
        return tuple(self._supervisors.values())
