import socket

import pytest
from aiohttp import web

from streamworker.config import ServiceConfig
from streamworker.stats_client import ChannelList, LiveEntry, StatsClient


def make_service(base: str) -> ServiceConfig:
    return ServiceConfig(
        name="origin",
        stats_base=base.rstrip("/"),
        rtmp_base="rtmp://origin.test:1935",
        app="live",
    )


@pytest.fixture
async def stats_server(aiohttp_server):
    received = {}

    async def channel_stats(request):
        name = request.match_info["name"]
        received["host"] = request.match_info["host"]
        if name == "alpha":
            return web.json_response({
                "isLive": True, "viewers": 3, "duration": 60, "bitrate": 4000,
                "lastBitrate": 3900, "startTime": "2026-10-18T10:00:00Z",
                "origin": "edge1.test",
            })
        if name == "beta":
            return web.json_response({"isLive": False})
        if name == "gateway":
            return web.Response(status=502)
        if name == "garbage":
            return web.Response(text="<html>oops</html>", content_type="text/html")
        return web.Response(status=404)

    async def channel_list(request):
        return web.json_response({
            "channels": ["alpha", "beta"],
            "live": [
                {"app": "live", "channel": "alpha", "protocol": "rtmp"},
                {"app": "live", "channel": "alpha", "protocol": "hls"},
                {"app": "other", "channel": "gamma", "protocol": "rtmp"},
            ],
        })

    async def push(request):
        received["auth"] = request.headers.get("Authorization")
        received["body"] = await request.json()
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_get("/api/channels/list", channel_list)
    app.router.add_get("/api/channels/{host}/{app}/{name}", channel_stats)
    app.router.add_post("/api/push", push)
    server = await aiohttp_server(app)
    server.received = received
    return server


async def test_channel_stats_live(stats_server):
    service = make_service(str(stats_server.make_url("/api")))
    async with StatsClient(timeout=5) as client:
        stats = await client.get_channel_stats(service, "alpha")

    assert stats.is_live
    assert stats.viewers == 3
    assert stats.origin == "edge1.test"
    assert stats.start_time.year == 2026
    assert stats_server.received["host"] == "origin.test:1935"


async def test_channel_stats_offline(stats_server):
    service = make_service(str(stats_server.make_url("/api")))
    async with StatsClient(timeout=5) as client:
        stats = await client.get_channel_stats(service, "beta")

    assert stats is not None
    assert not stats.is_live
    assert stats.origin is None


@pytest.mark.parametrize("name", ["gateway", "garbage", "unknown"])
async def test_bad_answers_mean_no_data(stats_server, name):
    service = make_service(str(stats_server.make_url("/api")))
    async with StatsClient(timeout=5) as client:
        assert await client.get_channel_stats(service, name) is None


async def test_connection_refused_means_no_data():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    service = make_service(f"http://127.0.0.1:{port}/api")
    async with StatsClient(timeout=5) as client:
        assert await client.get_channel_stats(service, "alpha") is None
        assert await client.get_channel_list(service) is None


async def test_channel_list(stats_server):
    service = make_service(str(stats_server.make_url("/api")))
    async with StatsClient(timeout=5) as client:
        roster = await client.get_channel_list(service)

    assert roster.channels == ["alpha", "beta"]
    assert roster.names_for_app("live") == ["alpha"]
    assert roster.names_for_app("other") == ["gamma"]


def test_names_fall_back_to_channels_without_live_entries():
    roster = ChannelList(channels=["a", "b", "a"])
    assert roster.names_for_app("live") == ["a", "b"]

    roster = ChannelList(channels=["a"], live=[LiveEntry(app="live", channel="z")])
    assert roster.names_for_app("live") == ["z"]


async def test_push_stats_sends_bearer_token(stats_server):
    async with StatsClient(timeout=5) as client:
        ok = await client.push_stats(str(stats_server.make_url("/api/push")), "s3cret", {"stats": []})

    assert ok
    assert stats_server.received["auth"] == "Bearer s3cret"
    assert stats_server.received["body"] == {"stats": []}


async def test_push_stats_rejected(stats_server):
    async with StatsClient(timeout=5) as client:
        assert not await client.push_stats(str(stats_server.make_url("/api/nowhere")), "t", {})
