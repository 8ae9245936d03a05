"""
Configuration module for Stream Worker.
Loads settings from YAML file and provides typed configuration.
"""

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError
from .tasks import Preset, Task, parse_preset, parse_tasks

WILDCARD = "*"


@dataclass
class FfmpegConfig:
    """Transcoder binary and encode presets."""
    path: str = "ffmpeg"
    presets: Dict[str, Preset] = field(default_factory=dict)


@dataclass
class WorkerConfig:
    """Discovery and supervision settings."""
    check_interval: float = 5.0     # seconds between discovery ticks
    backoff_step: float = 10.0      # seconds added per failed connect attempt
    mpd_dir: str = "./mpd"
    hls_dir: str = "./hls"
    process_log_dir: str = "./logs/ffmpeg"
    segment_window: int = 5         # segments kept in a DASH/HLS manifest
    hls_segment_seconds: int = 4


@dataclass
class ChannelSpec:
    """A declared channel of a service. ``name == '*'`` matches any live stream."""
    id: str
    name: str
    tasks: Tuple[Task, ...] = ()

    @property
    def is_wildcard(self) -> bool:
        return self.name == WILDCARD


@dataclass
class ServiceConfig:
    """A streaming server whose channels are watched."""
    name: str
    stats_base: str                 # e.g. https://stats.example.com/api
    rtmp_base: str                  # e.g. rtmp://origin.example.com
    app: str = "live"
    channels: List[ChannelSpec] = field(default_factory=list)


@dataclass
class StatsPushConfig:
    """Optional periodic upload of the aggregated stats summary."""
    enabled: bool = False
    url: str = ""
    token: str = ""
    interval: float = 10.0
    server: Optional[str] = None    # only report channels sourced from this host


@dataclass
class HttpConfig:
    """HTTP client settings."""
    timeout: float = 10.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/worker.log"
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class Config:
    """Main configuration container."""
    ffmpeg: FfmpegConfig = field(default_factory=FfmpegConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    services: List[ServiceConfig] = field(default_factory=list)
    stats_push: StatsPushConfig = field(default_factory=StatsPushConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def _parse_service(data: Dict[str, Any], index: int) -> ServiceConfig:
    for field_name in ('stats_base', 'rtmp_base'):
        if not data.get(field_name):
            raise ConfigError(f"Missing required field: services[{index}].{field_name}")

    channels = []
    for ch_index, ch_data in enumerate(data.get('channels') or []):
        if not ch_data.get('name'):
            raise ConfigError(f"Missing required field: services[{index}].channels[{ch_index}].name")
        channels.append(ChannelSpec(
            # Ids are generated once per process unless pinned in config
            id=str(ch_data.get('id') or uuid.uuid4().hex),
            name=str(ch_data['name']),
            tasks=parse_tasks(ch_data.get('tasks') or []),
        ))

    return ServiceConfig(
        name=str(data.get('name') or f"service{index}"),
        stats_base=str(data['stats_base']).rstrip('/'),
        rtmp_base=str(data['rtmp_base']).rstrip('/'),
        app=str(data.get('app', 'live')),
        channels=channels,
    )


def parse_config(data: Dict[str, Any]) -> Config:
    """
    Build a Config from an already-parsed YAML mapping.

    Raises:
        ConfigError: If required fields are missing or malformed.
    """
    if not data:
        raise ConfigError("Configuration is empty")

    if not data.get('services'):
        raise ConfigError("Missing 'services' section in config")

    ffmpeg_data = data.get('ffmpeg', {}) or {}
    presets = {
        str(name): parse_preset(str(name), preset_data or {})
        for name, preset_data in (ffmpeg_data.get('presets') or {}).items()
    }
    ffmpeg_config = FfmpegConfig(
        path=str(ffmpeg_data.get('path', 'ffmpeg')),
        presets=presets,
    )

    worker_data = data.get('worker', {}) or {}
    worker_config = WorkerConfig(
        check_interval=max(0.1, as_float(worker_data.get('check_interval'), 5.0)),
        backoff_step=max(0.0, as_float(worker_data.get('backoff_step'), 10.0)),
        mpd_dir=worker_data.get('mpd_dir', './mpd'),
        hls_dir=worker_data.get('hls_dir', './hls'),
        process_log_dir=worker_data.get('process_log_dir', './logs/ffmpeg'),
        segment_window=max(1, as_int(worker_data.get('segment_window'), 5)),
        hls_segment_seconds=max(1, as_int(worker_data.get('hls_segment_seconds'), 4)),
    )

    services = [
        _parse_service(service_data or {}, index)
        for index, service_data in enumerate(data['services'])
    ]

    push_data = data.get('stats_push', {}) or {}
    push_config = StatsPushConfig(
        enabled=as_bool(push_data.get('enabled'), False),
        url=push_data.get('url', ''),
        token=push_data.get('token', ''),
        interval=max(1.0, as_float(push_data.get('interval'), 10.0)),
        server=push_data.get('server'),
    )
    if push_config.enabled and not push_config.url:
        raise ConfigError("Missing required field: stats_push.url")

    http_data = data.get('http', {}) or {}
    http_config = HttpConfig(timeout=max(1.0, as_float(http_data.get('timeout'), 10.0)))

    logging_data = data.get('logging', {}) or {}
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/worker.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
    )

    return Config(
        ffmpeg=ffmpeg_config,
        worker=worker_config,
        services=services,
        stats_push=push_config,
        http=http_config,
        logging=logging_config,
    )


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ConfigError: If required fields are missing.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    return parse_config(data)


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Stream Worker Configuration

ffmpeg:
  path: /usr/bin/ffmpeg
  presets:
    540p:
      scale: 540
      fps: 30
      preset: superfast
      crf: 27
      video_bitrate_kbps: 1024
      audio_bitrate_kbps: 128

worker:
  check_interval: 5       # Seconds between live status checks
  backoff_step: 10        # Reconnect delay grows by this much per failed attempt
  mpd_dir: ./mpd
  hls_dir: ./hls
  process_log_dir: ./logs/ffmpeg
  segment_window: 5
  hls_segment_seconds: 4

services:
  - name: origin
    stats_base: https://stats.example.com/api
    rtmp_base: rtmp://origin.example.com
    app: live
    channels:
      - name: test1
        tasks:
          - task: write
            paths: [/recordings/]
          - task: transfer
            urls: [rtmp://relay.example.com/live/test1]
          - task: encode
            preset: 540p
            urls: ["rtmp://{origin}/encode/test1_540p"]
          - task: mpd
          - task: hls
      - name: "*"           # Any other live stream on this service
        tasks:
          - task: hls

stats_push:
  enabled: false
  url: https://stats.example.com/api/push
  token: YOUR_TOKEN
  interval: 10

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/worker.log
  max_size_mb: 10
  backup_count: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
