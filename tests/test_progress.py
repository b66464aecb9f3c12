"""Tests for progress sinks."""

import asyncio
import json
from unittest.mock import AsyncMock

from sitevector.services.progress import (
    CallbackSink,
    MultiSink,
    PipelineCounters,
    ProgressChannel,
    ProgressEvent,
    RedisProgressSink,
)


def event(stage, percent=0.0, session_id="session-1"):
    return ProgressEvent(
        stage=stage,
        message=f"{stage} update",
        percent=percent,
        counters=PipelineCounters(website_id="website-1", session_id=session_id),
    )


async def test_channel_iteration_stops_at_terminal_event():
    channel = ProgressChannel()
    for item in (event("discovery", 10), event("extraction", 40), event("completed", 100), event("discovery")):
        await channel.emit(item)

    stages = [e.stage async for e in channel]

    assert stages == ["discovery", "extraction", "completed"]


async def test_channel_blocks_when_full():
    channel = ProgressChannel(maxsize=1)
    await channel.emit(event("discovery"))

    with_timeout = asyncio.wait_for(channel.emit(event("extraction")), timeout=0.05)
    try:
        await with_timeout
        blocked = False
    except asyncio.TimeoutError:
        blocked = True

    assert blocked
    assert (await channel.get()).stage == "discovery"


async def test_callback_sink_accepts_sync_and_async_callbacks():
    received = []

    async def async_callback(e):
        received.append(("async", e.stage))

    await CallbackSink(lambda e: received.append(("sync", e.stage))).emit(event("discovery"))
    await CallbackSink(async_callback).emit(event("chunking"))

    assert received == [("sync", "discovery"), ("async", "chunking")]


async def test_multi_sink_fans_out_in_order():
    received = []
    sink = MultiSink(
        CallbackSink(lambda e: received.append("first")),
        CallbackSink(lambda e: received.append("second")),
    )

    await sink.emit(event("embedding"))

    assert received == ["first", "second"]


async def test_redis_sink_stores_latest_event():
    client = AsyncMock()
    sink = RedisProgressSink(client, ttl=600)

    await sink.emit(event("extraction", percent=37.25))

    client.setex.assert_awaited_once()
    key, ttl, payload = client.setex.await_args.args
    assert key == "crawl_progress:session-1"
    assert ttl == 600
    data = json.loads(payload)
    assert data["stage"] == "extraction"
    assert data["percent"] == 37.2
    assert data["counters"]["website_id"] == "website-1"


async def test_redis_sink_skips_events_without_session():
    client = AsyncMock()

    await RedisProgressSink(client).emit(event("discovery", session_id=None))

    client.setex.assert_not_awaited()


async def test_redis_sink_get_and_clear():
    client = AsyncMock()
    client.get.return_value = json.dumps({"stage": "completed"})
    sink = RedisProgressSink(client)

    assert await sink.get("abc") == {"stage": "completed"}
    client.get.assert_awaited_once_with("crawl_progress:abc")

    client.get.return_value = None
    assert await sink.get("abc") is None

    await sink.clear("abc")
    client.delete.assert_awaited_once_with("crawl_progress:abc")


def test_event_to_dict_is_json_ready():
    data = event("failed", percent=12.345).to_dict()

    assert data["percent"] == 12.3
    assert isinstance(data["timestamp"], str)
    assert data["counters"]["errors"] == []
    assert event("failed").is_terminal
    assert not event("chunking").is_terminal
    json.dumps(data)


async def test_default_channel_never_blocks_an_undrained_run():
    channel = ProgressChannel()

    async def run():
        for i in range(500):
            await channel.emit(event("extraction", i / 5))
        await channel.emit(event("completed", 100))

    await asyncio.wait_for(run(), timeout=1)
    stages = [e.stage async for e in channel]

    assert len(stages) == 501
    assert stages[-1] == "completed"
