import asyncio
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from streamworker.channel import Channel
from streamworker.pipeline import FfmpegCommands, PipelineBuilder
from streamworker.stats_client import ChannelStats
from streamworker.tasks import PackageFormat, Preset


FAKE_FFMPEG = textwrap.dedent(
    """
    import os
    import signal
    import sys
    import time

    args = sys.argv[1:]
    source = args[args.index("-i") + 1]
    target = args[-1]

    if source != "-":
        role = "ingest"
    elif target == "-":
        role = "encode"
    elif target.endswith(("index.mpd", "index.m3u8")):
        role = "package"
    else:
        role = "transfer"

    if role in os.environ.get("FAKE_FFMPEG_IGNORE_TERM", "").split(","):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    slow_role, _, slow_seconds = os.environ.get("FAKE_FFMPEG_SLOW_EXIT", "").partition(":")
    if role == slow_role:
        def exit_slowly(signum, frame):
            time.sleep(float(slow_seconds))
            sys.exit(0)
        signal.signal(signal.SIGTERM, exit_slowly)

    record = os.environ.get("FAKE_FFMPEG_RECORD")
    if record:
        with open(record, "a") as f:
            f.write(f"{role} {source if role == 'ingest' else target}\\n")

    sys.stderr.write(f"fake ffmpeg {role} starting\\n")
    sys.stderr.flush()

    if role == "ingest":
        if "fail" in source:
            sys.stderr.write("Connection refused\\n")
            sys.exit(1)
        deadline = time.time() + float(os.environ.get("FAKE_FFMPEG_INGEST_SECONDS", "30"))
        try:
            while time.time() < deadline:
                sys.stdout.buffer.write(b"x" * 4096)
                sys.stdout.buffer.flush()
                time.sleep(0.02)
        except BrokenPipeError:
            sys.exit(1)
        sys.exit(0)

    if role == "package":
        with open(target, "w") as f:
            f.write("manifest\\n")

    die_after = 8192 if "die" in target else None
    seen = 0
    while True:
        chunk = sys.stdin.buffer.read1(65536)
        if not chunk:
            break
        seen += len(chunk)
        if role == "encode":
            try:
                sys.stdout.buffer.write(chunk)
                sys.stdout.buffer.flush()
            except BrokenPipeError:
                sys.exit(1)
        if die_after is not None and seen >= die_after:
            sys.exit(3)
    while "hang" in target:
        time.sleep(1)
    sys.exit(0)
    """
)


@pytest.fixture
def fake_ffmpeg(tmp_path: Path, monkeypatch) -> Path:
    """An executable that mimics the ffmpeg roles of a pipeline."""
    script = tmp_path / "bin" / "ffmpeg"
    script.parent.mkdir()
    script.write_text(f"#!{sys.executable}\n{FAKE_FFMPEG}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    record = tmp_path / "spawned.txt"
    monkeypatch.setenv("FAKE_FFMPEG_RECORD", str(record))
    return script


def spawned_roles(tmp_path: Path) -> list:
    record = tmp_path / "spawned.txt"
    if not record.exists():
        return []
    return [line.split(" ", 1)[0] for line in record.read_text().splitlines()]


@pytest.fixture
def presets():
    return {
        "540p": Preset(
            name="540p", scale=540, fps=30, preset="superfast", crf=27,
            video_bitrate_kbps=1024, audio_bitrate_kbps=128,
        )
    }


@pytest.fixture
def builder(fake_ffmpeg: Path, tmp_path: Path, presets) -> PipelineBuilder:
    return PipelineBuilder(
        commands=FfmpegCommands(str(fake_ffmpeg)),
        presets=presets,
        output_dirs={
            PackageFormat.MPD: tmp_path / "mpd",
            PackageFormat.HLS: tmp_path / "hls",
        },
        log_dir=tmp_path / "logs",
    )


def make_channel(tasks=(), name="alpha", url=None, channel_id="chan1") -> Channel:
    return Channel(
        id=channel_id,
        name=name,
        app="live",
        service="origin",
        url=url or f"rtmp://origin.test/live/{name}",
        tasks=tuple(tasks),
    )


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()



class FakeStatsClient:
    """Stand-in for StatsClient answering from in-memory tables."""

    def __init__(self):
        # (service name, channel name) -> ChannelStats, None or an exception
        self.answers = {}
        # service name -> ChannelList or None
        self.rosters = {}
        self.stats_calls = []
        self.pushed = []
        self.connected = False

    def set_live(self, service: str, name: str, live: bool = True, origin=None) -> None:
        self.answers[(service, name)] = ChannelStats(is_live=live, origin=origin)

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def get_channel_stats(self, service, channel: str):
        self.stats_calls.append((service.name, channel))
        answer = self.answers.get((service.name, channel), ChannelStats(is_live=False))
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def get_channel_list(self, service):
        return self.rosters.get(service.name)

    async def push_stats(self, url: str, token: str, payload: dict) -> bool:
        self.pushed.append((url, token, payload))
        return True
