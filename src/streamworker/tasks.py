"""
Task model for Stream Worker.

A channel carries an ordered list of declarative tasks. Each task kind is a
frozen dataclass so kind-specific fields are always present:

- WriteTask: record the ingest stream to disk
- TransferTask: relay the ingest stream verbatim to other servers
- EncodeTask: transcode with a named preset, then relay
- PackageTask: segment into a DASH or HLS manifest for viewers
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Tuple, Union

from .errors import ConfigError


class PackageFormat(Enum):
    """Packaging output formats."""
    MPD = "mpd"
    HLS = "hls"

    @property
    def manifest_name(self) -> str:
        return "index.mpd" if self is PackageFormat.MPD else "index.m3u8"


@dataclass(frozen=True)
class Preset:
    """Named bundle of transcoding parameters."""
    name: str
    scale: int                  # output height, width keeps aspect ratio
    fps: int
    preset: str                 # x264 preset name
    crf: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int


@dataclass(frozen=True)
class WriteTask:
    """Record the ingest stream into one file per path."""
    paths: Tuple[str, ...] = ()

    kind = "write"

    def resolve(self, **values: str) -> 'WriteTask':
        return self


@dataclass(frozen=True)
class TransferTask:
    """Relay the ingest stream to every URL without re-encoding."""
    urls: Tuple[str, ...] = ()

    kind = "transfer"

    def resolve(self, **values: str) -> 'TransferTask':
        return replace(self, urls=_format_urls(self.urls, values))


@dataclass(frozen=True)
class EncodeTask:
    """Transcode the ingest stream with a preset and relay it to every URL."""
    preset: str
    urls: Tuple[str, ...] = ()

    kind = "encode"

    def resolve(self, **values: str) -> 'EncodeTask':
        return replace(self, urls=_format_urls(self.urls, values))


@dataclass(frozen=True)
class PackageTask:
    """Segment the ingest stream into a manifest plus rolling segments."""
    format: PackageFormat

    @property
    def kind(self) -> str:
        return self.format.value

    def resolve(self, **values: str) -> 'PackageTask':
        return self


Task = Union[WriteTask, TransferTask, EncodeTask, PackageTask]


def _format_urls(urls: Tuple[str, ...], values: Dict[str, str]) -> Tuple[str, ...]:
    """Substitute {origin}/{channel}/{app} placeholders, leaving unknown ones as-is."""
    resolved = []
    for url in urls:
        for key, value in values.items():
            url = url.replace('{' + key + '}', value)
        resolved.append(url)
    return tuple(resolved)


def _as_str_tuple(value: Any, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"Task field '{field_name}' must be a list")
    return tuple(str(item) for item in value)


def parse_task(data: Dict[str, Any]) -> Task:
    """
    Build a task from its configuration mapping.

    Args:
        data: Mapping with a ``task`` key and kind-specific fields.
            ``hosts`` is accepted as an alias of ``urls``.

    Returns:
        The matching task instance.

    Raises:
        ConfigError: If the task kind is unknown or fields are malformed.
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Task must be a mapping, got {type(data).__name__}")

    kind = str(data.get('task', '')).strip().lower()
    urls = data.get('urls', data.get('hosts'))

    if kind == 'write':
        return WriteTask(paths=_as_str_tuple(data.get('paths'), 'paths'))
    if kind == 'transfer':
        return TransferTask(urls=_as_str_tuple(urls, 'urls'))
    if kind == 'encode':
        preset = data.get('preset')
        if not preset:
            raise ConfigError("Encode task requires a 'preset'")
        return EncodeTask(preset=str(preset), urls=_as_str_tuple(urls, 'urls'))
    if kind in ('mpd', 'hls'):
        return PackageTask(format=PackageFormat(kind))
    if kind == 'package':
        fmt = str(data.get('format', '')).lower()
        try:
            return PackageTask(format=PackageFormat(fmt))
        except ValueError:
            raise ConfigError(f"Unknown package format: {fmt!r}") from None

    raise ConfigError(f"Unknown task kind: {kind!r}")


def parse_tasks(items: List[Dict[str, Any]]) -> Tuple[Task, ...]:
    """Parse an ordered task list."""
    return tuple(parse_task(item) for item in items or [])


def parse_preset(name: str, data: Dict[str, Any]) -> Preset:
    """Build a preset from its configuration mapping."""
    try:
        return Preset(
            name=name,
            scale=int(data['scale']),
            fps=int(data['fps']),
            preset=str(data.get('preset', 'veryfast')),
            crf=int(data.get('crf', 23)),
            video_bitrate_kbps=int(data.get('video_bitrate_kbps', data.get('vBitrate'))),
            audio_bitrate_kbps=int(data.get('audio_bitrate_kbps', data.get('aBitrate', 128))),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid preset '{name}': {e}") from e


@dataclass
class RunningTask:
    """Throughput record of one packaging branch in the current generation."""
    protocol: str
    path: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)
    bytes: int = 0

    def add_bytes(self, count: int) -> None:
        self.bytes += count
