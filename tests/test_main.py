import asyncio
from pathlib import Path

import pytest

from streamworker.channel import ChannelState
from streamworker.config import parse_config
from streamworker.main import StreamWorkerApp, main, resolve_ffmpeg

from conftest import FakeStatsClient, spawned_roles, wait_until


def make_config(tmp_path: Path, ffmpeg: str, push: bool = False):
    data = {
        "ffmpeg": {"path": ffmpeg},
        "worker": {
            "check_interval": 0.1,
            "backoff_step": 60,
            "mpd_dir": str(tmp_path / "mpd"),
            "hls_dir": str(tmp_path / "hls"),
            "process_log_dir": str(tmp_path / "logs"),
        },
        "services": [{
            "name": "origin",
            "stats_base": "https://stats.test/api",
            "rtmp_base": "rtmp://origin.test",
            "channels": [{"id": "alpha-id", "name": "alpha", "tasks": [{"task": "mpd"}]}],
        }],
    }
    if push:
        data["stats_push"] = {"enabled": True, "url": "https://stats.test/api/push", "token": "t", "interval": 1}
    return parse_config(data)


def test_resolve_ffmpeg(fake_ffmpeg: Path, tmp_path: Path):
    assert resolve_ffmpeg(str(fake_ffmpeg)) == str(fake_ffmpeg)
    with pytest.raises(FileNotFoundError):
        resolve_ffmpeg(str(tmp_path / "nope" / "ffmpeg"))


async def test_missing_ffmpeg_is_fatal(tmp_path: Path):
    config = make_config(tmp_path, str(tmp_path / "nope" / "ffmpeg"))
    with pytest.raises(FileNotFoundError):
        StreamWorkerApp(config, client=FakeStatsClient())


async def test_main_reports_missing_config(tmp_path: Path):
    assert await main([str(tmp_path / "missing.yaml")]) == 1


async def test_channel_lifecycle(fake_ffmpeg: Path, tmp_path: Path):
    client = FakeStatsClient()
    app = StreamWorkerApp(make_config(tmp_path, str(fake_ffmpeg)), client=client)
    output_dir = tmp_path / "mpd" / "alpha-id"

    await app.start()
    try:
        assert client.connected
        assert (tmp_path / "hls").is_dir()

        client.set_live("origin", "alpha")
        assert await wait_until(lambda: "alpha-id" in app.registry)
        channel = app.registry.get("alpha-id")
        supervisor = app.registry.supervisor("alpha-id")
        assert await wait_until(lambda: len(channel.running_tasks) == 1)
        assert channel.running_tasks[0].protocol == "mpd"
        assert output_dir.is_dir()

        client.set_live("origin", "alpha", live=False)
        assert await wait_until(lambda: "alpha-id" not in app.registry)
        await asyncio.wait_for(supervisor.wait(), 5)

        assert channel.state is ChannelState.STOPPED
        assert not output_dir.exists()
    finally:
        await app.shutdown()

    assert not client.connected


async def test_shutdown_stops_every_pipeline(fake_ffmpeg: Path, tmp_path: Path):
    client = FakeStatsClient()
    app = StreamWorkerApp(make_config(tmp_path, str(fake_ffmpeg), push=True), client=client)

    await app.start()
    client.set_live("origin", "alpha")
    assert await wait_until(lambda: "alpha-id" in app.registry)
    channel = app.registry.get("alpha-id")
    assert await wait_until(lambda: len(channel.running_tasks) == 1)
    assert await wait_until(lambda: len(client.pushed) > 0)

    await app.shutdown()

    assert len(app.registry) == 0
    assert channel.state is ChannelState.STOPPED
    assert not (tmp_path / "mpd" / "alpha-id").exists()
    url, token, payload = client.pushed[0]
    assert url == "https://stats.test/api/push"
    assert "stats" in payload


async def test_quick_return_gets_its_own_output_dir(fake_ffmpeg: Path, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_SLOW_EXIT", "package:1.0")
    client = FakeStatsClient()
    app = StreamWorkerApp(make_config(tmp_path, str(fake_ffmpeg)), client=client)
    output_dir = tmp_path / "mpd" / "alpha-id"

    await app.start()
    try:
        client.set_live("origin", "alpha")
        assert await wait_until(lambda: "alpha-id" in app.registry)
        old_channel = app.registry.get("alpha-id")
        old_supervisor = app.registry.supervisor("alpha-id")
        assert await wait_until(lambda: len(old_channel.running_tasks) == 1)
        assert await wait_until(lambda: len(spawned_roles(tmp_path)) == 2)

        client.set_live("origin", "alpha", live=False)
        assert await wait_until(lambda: "alpha-id" not in app.registry)
        client.set_live("origin", "alpha")

        assert await wait_until(lambda: "alpha-id" in app.registry, timeout=10)
        assert old_supervisor.done
        new_channel = app.registry.get("alpha-id")
        assert new_channel is not old_channel
        assert await wait_until(lambda: len(new_channel.running_tasks) == 1)

        # The old packager's cleanup ran before the new one started
        await asyncio.sleep(0.3)
        assert output_dir.is_dir()
        assert new_channel.connect_attempts == 0
        assert new_channel.state is ChannelState.RUNNING
    finally:
        await app.shutdown()


async def test_shutdown_waits_for_channels_already_going_offline(fake_ffmpeg: Path, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_SLOW_EXIT", "package:0.5")
    client = FakeStatsClient()
    app = StreamWorkerApp(make_config(tmp_path, str(fake_ffmpeg)), client=client)

    await app.start()
    client.set_live("origin", "alpha")
    assert await wait_until(lambda: "alpha-id" in app.registry)
    channel = app.registry.get("alpha-id")
    supervisor = app.registry.supervisor("alpha-id")
    assert await wait_until(lambda: len(channel.running_tasks) == 1)
    assert await wait_until(lambda: len(spawned_roles(tmp_path)) == 2)

    client.set_live("origin", "alpha", live=False)
    assert await wait_until(lambda: "alpha-id" not in app.registry)
    assert not supervisor.done

    await app.shutdown()

    assert supervisor.done
    assert channel.state is ChannelState.STOPPED
    assert not (tmp_path / "mpd" / "alpha-id").exists()
