from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Protocol

import redis.asyncio as redis

from arang_chat.domain.support_chat.errors import SubscriptionError
from arang_chat.infra.query import Filters, Row, row_matches

logger = logging.getLogger(__name__)

OnInsert = Callable[[Row], Awaitable[None]]
OnError = Callable[[SubscriptionError], None]


class Subscription:
    """Owned handle for one live change-feed listener.

    ``close`` is synchronous and idempotent: it cancels the listener task and
    detaches the handle from its feed exactly once. ``wait_ready`` returns
    once the feed is listening (or the listener has stopped), so rows
    inserted after it returns reach ``on_insert``.
    """

    def __init__(
        self,
        *,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        on_error: OnError | None,
        on_close: Callable[["Subscription"], None],
    ) -> None:
        self.subscription_id = str(uuid.uuid4())
        self.table = table
        self.filters = dict(filters or {})
        self.on_insert = on_insert
        self.on_error = on_error
        self._on_close = on_close
        self._closed = False
        self._task: asyncio.Task | None = None
        self._ready = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    def mark_ready(self) -> None:
        self._ready.set()

    async def wait_ready(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._ready.wait(), timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.mark_ready()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._on_close(self)

    def report_error(self, reason: str) -> None:
        logger.warning(
            "change_feed_subscription_error",
            extra={"extra": {"table": self.table, "reason": reason, "subscription_id": self.subscription_id}},
        )
        if self.on_error is None:
            return
        try:
            self.on_error(SubscriptionError(detail=f"Chat connection issue ({reason}). Please refresh."))
        except Exception:  # noqa: BLE001
            logger.exception("change_feed_error_handler_failed")

    async def deliver(self, row: Row) -> None:
        if self._closed or not row_matches(self.filters, row):
            return
        try:
            await self.on_insert(row)
        except Exception:  # noqa: BLE001
            logger.exception(
                "change_feed_callback_failed",
                extra={"extra": {"table": self.table, "subscription_id": self.subscription_id}},
            )


class ChangeFeed(Protocol):
    async def publish(self, table: str, row: Row) -> None: ...

    def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        *,
        on_error: OnError | None = None,
    ) -> Subscription: ...

    def unsubscribe(self, handle: Subscription) -> None: ...


class LocalChangeFeed(ChangeFeed):
    """In-process feed. Each subscription owns a queue drained by one pump
    task, so events for a subscription are delivered in publish order and
    always on a later loop iteration than the publishing call."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}
        self._queues: Dict[str, asyncio.Queue[Row]] = {}

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, table: str, row: Row) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.table != table:
                continue
            queue = self._queues.get(subscription.subscription_id)
            if queue is not None:
                queue.put_nowait(dict(row))

    def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        *,
        on_error: OnError | None = None,
    ) -> Subscription:
        subscription = Subscription(
            table=table,
            filters=filters,
            on_insert=on_insert,
            on_error=on_error,
            on_close=self._detach,
        )
        queue: asyncio.Queue[Row] = asyncio.Queue()
        self._subscriptions[subscription.subscription_id] = subscription
        self._queues[subscription.subscription_id] = queue
        subscription.attach(asyncio.create_task(self._pump(subscription, queue)))
        subscription.mark_ready()
        return subscription

    def unsubscribe(self, handle: Subscription) -> None:
        handle.close()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to its callback."""
        while True:
            pending = [queue for queue in self._queues.values() if queue._unfinished_tasks]
            if not pending:
                return
            await asyncio.gather(*(queue.join() for queue in pending))

    def _detach(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)
        queue = self._queues.pop(subscription.subscription_id, None)
        if queue is None:
            return
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()

    async def _pump(self, subscription: Subscription, queue: asyncio.Queue[Row]) -> None:
        while True:
            row = await queue.get()
            try:
                await subscription.deliver(row)
            finally:
                queue.task_done()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    raise TypeError(f"Unsupported type for change feed payload: {type(value).__name__}")


def encode_row(row: Row) -> str:
    return json.dumps(row, default=_json_default, ensure_ascii=False)


class RedisChangeFeed(ChangeFeed):
    """Cross-process feed over redis pub/sub, one channel per table."""

    def __init__(self, client: redis.Redis, *, channel_prefix: str = "arang:changes") -> None:
        self.client = client
        self.channel_prefix = channel_prefix
        self._subscriptions: Dict[str, Subscription] = {}

    def channel_for(self, table: str) -> str:
        return f"{self.channel_prefix}:{table}"

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, table: str, row: Row) -> None:
        try:
            await self.client.publish(self.channel_for(table), encode_row(row))
        except redis.RedisError:
            # Writers never fail because the live feed is unavailable.
            logger.warning("change_feed_publish_failed", extra={"extra": {"table": table}}, exc_info=True)

    def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        *,
        on_error: OnError | None = None,
    ) -> Subscription:
        subscription = Subscription(
            table=table,
            filters=filters,
            on_insert=on_insert,
            on_error=on_error,
            on_close=lambda handle: self._subscriptions.pop(handle.subscription_id, None),
        )
        self._subscriptions[subscription.subscription_id] = subscription
        subscription.attach(asyncio.create_task(self._listen(subscription)))
        return subscription

    def unsubscribe(self, handle: Subscription) -> None:
        handle.close()

    async def _listen(self, subscription: Subscription) -> None:
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(self.channel_for(subscription.table))
            subscription.mark_ready()
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    row = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("change_feed_payload_invalid", extra={"extra": {"table": subscription.table}})
                    continue
                await subscription.deliver(row)
        except asyncio.CancelledError:
            raise
        except (redis.RedisError, OSError) as exc:
            subscription.report_error(type(exc).__name__)
        finally:
            subscription.mark_ready()
            try:
                await pubsub.aclose()
            except (redis.RedisError, OSError):
                logger.debug("change_feed_pubsub_close_failed", exc_info=True)
