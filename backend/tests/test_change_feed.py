import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from arang_chat.domain.support_chat.errors import SubscriptionError
from arang_chat.infra.change_feed import LocalChangeFeed, RedisChangeFeed, encode_row
from conftest import START


class Recorder:
    def __init__(self):
        self.rows = []

    async def __call__(self, row):
        self.rows.append(row)


class FakePubSub:
    def __init__(self, messages, *, error=None):
        self.messages = messages
        self.error = error
        self.subscribed = asyncio.Event()
        self.subscribed.set()
        self.channels = []
        self.closed = False
        self.finished = asyncio.Event()

    async def subscribe(self, channel):
        await self.subscribed.wait()
        self.channels.append(channel)

    async def listen(self):
        for message in self.messages:
            yield message
        self.finished.set()
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def _redis_client(pubsub=None):
    client = MagicMock()
    client.publish = AsyncMock(return_value=1)
    client.pubsub.return_value = pubsub
    return client


@pytest.mark.anyio
async def test_local_feed_delivers_in_publish_order_after_publish_returns():
    feed = LocalChangeFeed()
    recorder = Recorder()
    feed.subscribe("messages", None, recorder)

    await feed.publish("messages", {"id": "1"})
    await feed.publish("messages", {"id": "2"})
    assert recorder.rows == []

    await feed.drain()
    assert [row["id"] for row in recorder.rows] == ["1", "2"]


@pytest.mark.anyio
async def test_local_feed_applies_table_and_filters():
    feed = LocalChangeFeed()
    recorder = Recorder()
    feed.subscribe("messages", {"session_id": "s-1"}, recorder)

    await feed.publish("messages", {"id": "1", "session_id": "s-2"})
    await feed.publish("chat_sessions", {"id": "2", "session_id": "s-1"})
    await feed.publish("messages", {"id": "3", "session_id": "s-1"})
    await feed.drain()

    assert [row["id"] for row in recorder.rows] == ["3"]


@pytest.mark.anyio
async def test_local_feed_stops_after_unsubscribe():
    feed = LocalChangeFeed()
    recorder = Recorder()
    subscription = feed.subscribe("messages", None, recorder)

    await feed.publish("messages", {"id": "1"})
    feed.unsubscribe(subscription)
    feed.unsubscribe(subscription)
    await feed.publish("messages", {"id": "2"})
    await feed.drain()

    assert recorder.rows == []
    assert subscription.closed is True
    assert feed.active_count == 0


@pytest.mark.anyio
async def test_local_feed_survives_failing_callback():
    feed = LocalChangeFeed()
    seen = []

    async def flaky(row):
        seen.append(row["id"])
        if row["id"] == "1":
            raise RuntimeError("listener bug")

    feed.subscribe("messages", None, flaky)
    await feed.publish("messages", {"id": "1"})
    await feed.publish("messages", {"id": "2"})
    await feed.drain()

    assert seen == ["1", "2"]


def test_encode_row_serializes_timestamps():
    payload = json.loads(encode_row({"id": "1", "created_at": START}))

    assert payload == {"id": "1", "created_at": START.isoformat()}


@pytest.mark.anyio
async def test_redis_feed_publishes_per_table_channel():
    client = _redis_client()
    feed = RedisChangeFeed(client, channel_prefix="test:changes")

    await feed.publish("messages", {"id": "1", "created_at": START})

    channel, payload = client.publish.await_args.args
    assert channel == "test:changes:messages"
    assert json.loads(payload)["created_at"] == START.isoformat()


@pytest.mark.anyio
async def test_redis_publish_failure_does_not_raise():
    client = _redis_client()
    client.publish.side_effect = redis.ConnectionError("down")
    feed = RedisChangeFeed(client)

    await feed.publish("messages", {"id": "1"})


@pytest.mark.anyio
async def test_redis_feed_delivers_matching_rows():
    pubsub = FakePubSub(
        [
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": "not json"},
            {"type": "message", "data": json.dumps({"id": "1", "session_id": "s-2"})},
            {"type": "message", "data": json.dumps({"id": "2", "session_id": "s-1"})},
        ]
    )
    feed = RedisChangeFeed(_redis_client(pubsub), channel_prefix="test:changes")
    recorder = Recorder()

    subscription = feed.subscribe("messages", {"session_id": "s-1"}, recorder)
    await asyncio.wait_for(pubsub.finished.wait(), timeout=1)

    assert pubsub.channels == ["test:changes:messages"]
    assert [row["id"] for row in recorder.rows] == ["2"]

    feed.unsubscribe(subscription)
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert pubsub.closed is True
    assert feed.active_count == 0


@pytest.mark.anyio
async def test_redis_connection_loss_reports_subscription_error():
    pubsub = FakePubSub([], error=redis.ConnectionError("connection reset"))
    feed = RedisChangeFeed(_redis_client(pubsub))
    errors = []

    feed.subscribe("messages", None, Recorder(), on_error=errors.append)
    await asyncio.wait_for(pubsub.finished.wait(), timeout=1)
    for _ in range(3):
        await asyncio.sleep(0)

    assert len(errors) == 1
    assert isinstance(errors[0], SubscriptionError)
    assert "ConnectionError" in errors[0].detail
    assert pubsub.closed is True


@pytest.mark.anyio
async def test_local_feed_subscription_is_ready_immediately():
    feed = LocalChangeFeed()

    subscription = feed.subscribe("messages", None, Recorder())

    await asyncio.wait_for(subscription.wait_ready(), timeout=1)
    subscription.close()


@pytest.mark.anyio
async def test_redis_subscription_is_ready_only_after_channel_subscribe():
    pubsub = FakePubSub([{"type": "subscribe", "data": 1}])
    pubsub.subscribed.clear()
    feed = RedisChangeFeed(_redis_client(pubsub), channel_prefix="test:changes")

    subscription = feed.subscribe("messages", None, Recorder())

    with pytest.raises(asyncio.TimeoutError):
        await subscription.wait_ready(timeout=0.05)
    assert pubsub.channels == []

    pubsub.subscribed.set()
    await subscription.wait_ready(timeout=1)

    assert pubsub.channels == ["test:changes:messages"]
    feed.unsubscribe(subscription)


@pytest.mark.anyio
async def test_closing_unready_subscription_releases_waiters():
    pubsub = FakePubSub([])
    pubsub.subscribed.clear()
    feed = RedisChangeFeed(_redis_client(pubsub))
    subscription = feed.subscribe("messages", None, Recorder())

    feed.unsubscribe(subscription)

    await asyncio.wait_for(subscription.wait_ready(), timeout=1)
    assert feed.active_count == 0
