from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from arang_chat.domain.profiles.directory import ProfileDirectory, profile_label
from arang_chat.domain.support_chat.errors import MarkReadFailed
from arang_chat.domain.support_chat.schemas import ChatRole, ChatUserSummary, MessageRecord
from arang_chat.domain.support_chat.session_resolver import SESSIONS_TABLE
from arang_chat.domain.support_chat.synchronizer import MESSAGES_TABLE
from arang_chat.infra.change_feed import Subscription
from arang_chat.infra.gateway import GatewayError, PersistenceGateway
from arang_chat.infra.identity import CurrentUser
from arang_chat.infra.metrics import metrics
from arang_chat.infra.query import In, Order, Row

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER_NAME = "Pelanggan Tidak Dikenal"


def summarize_customer(
    customer_id: str,
    display_name: str,
    messages: Sequence[MessageRecord],
    *,
    admin_name: str = "Admin",
    empty_preview: str = "Belum ada riwayat pesan",
) -> ChatUserSummary:
    """Build one inbox row from a customer's messages, newest first.

    The row shows the newest unread customer message if there is one, else
    the newest customer message, else the newest message of any author.
    """
    if not messages:
        return ChatUserSummary(customer_id=customer_id, display_name=display_name, last_message=empty_preview)

    from_customer = [message for message in messages if message.sender_type is ChatRole.customer]
    unread = [message for message in from_customer if message.is_unread]
    if unread:
        shown = unread[0]
    elif from_customer:
        shown = from_customer[0]
    else:
        shown = messages[0]
    shown_from_customer = shown.sender_type is ChatRole.customer

    return ChatUserSummary(
        customer_id=customer_id,
        display_name=display_name,
        last_message=shown.content,
        last_message_at=messages[0].created_at,
        last_message_id=shown.id,
        last_message_sender_name=display_name if shown_from_customer else admin_name,
        from_customer=shown_from_customer,
        unread=bool(unread),
        last_customer_message_at=from_customer[0].created_at if from_customer else None,
    )


def mark_global_latest(summaries: Iterable[ChatUserSummary]) -> List[ChatUserSummary]:
    """Flag every customer whose last customer message is the newest one
    across the roster."""
    items = list(summaries)
    stamps = [item.last_customer_message_at for item in items if item.last_customer_message_at is not None]
    latest = max(stamps) if stamps else None
    return [
        item.model_copy(
            update={
                "is_most_recent_globally": latest is not None and item.last_customer_message_at == latest,
            }
        )
        for item in items
    ]


def _rank_key(item: ChatUserSummary) -> tuple:
    stamp = item.last_message_at.timestamp() if item.last_message_at is not None else 0.0
    return (
        not item.is_most_recent_globally,
        item.last_message_at is None,
        -stamp,
        not item.from_customer,
        not item.unread,
        item.display_name.casefold(),
    )


def rank_summaries(summaries: Iterable[ChatUserSummary]) -> List[ChatUserSummary]:
    return sorted(summaries, key=_rank_key)


def filter_by_name(summaries: Iterable[ChatUserSummary], term: str | None) -> List[ChatUserSummary]:
    needle = (term or "").strip().casefold()
    if not needle:
        return list(summaries)
    return [item for item in summaries if needle in item.display_name.casefold()]


class InboxAggregator:
    """Admin inbox: one ranked row per customer, rebuilt on every insert
    into the messages table."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        directory: ProfileDirectory,
        *,
        viewer: CurrentUser,
        admin_name: str = "Admin",
        empty_preview: str = "Belum ada riwayat pesan",
        on_change: Callable[[List[ChatUserSummary]], Any] | None = None,
        on_alert: Callable[[Row], Any] | None = None,
    ) -> None:
        self.gateway = gateway
        self.directory = directory
        self.viewer = viewer
        self.admin_name = admin_name
        self.empty_preview = empty_preview
        self.on_change = on_change
        self.on_alert = on_alert
        self.items: List[ChatUserSummary] = []
        self.new_message_count = 0
        self._subscription: Subscription | None = None
        self._generation = 0
        self._applied_generation = 0

    async def refresh(self) -> List[ChatUserSummary]:
        """Rebuild the roster. A refresh that finishes after a newer one
        was applied keeps the newer roster."""
        self._generation += 1
        generation = self._generation
        started = time.perf_counter()
        customers = await self.directory.customers()
        summaries: List[ChatUserSummary] = []
        for profile in customers:
            customer_id = profile["id"]
            display_name = profile_label(profile) or UNKNOWN_CUSTOMER_NAME
            messages = await self._customer_messages(customer_id)
            summaries.append(
                summarize_customer(
                    customer_id,
                    display_name,
                    messages,
                    admin_name=self.admin_name,
                    empty_preview=self.empty_preview,
                )
            )
        if generation < self._applied_generation:
            logger.debug("chat_inbox_stale_refresh_dropped", extra={"extra": {"generation": generation}})
            return list(self.items)
        self._applied_generation = generation
        self.items = rank_summaries(mark_global_latest(summaries))
        metrics.record_inbox_refresh(time.perf_counter() - started)
        self._changed()
        return list(self.items)

    def search(self, term: str | None) -> List[ChatUserSummary]:
        return filter_by_name(self.items, term)

    def find(self, customer_id: str) -> Optional[ChatUserSummary]:
        return next((item for item in self.items if item.customer_id == customer_id), None)

    async def start(self) -> List[ChatUserSummary]:
        if self._subscription is None:
            self._subscription = self.gateway.subscribe(MESSAGES_TABLE, None, self._on_insert)
            metrics.record_subscription("inbox", 1)
            await self._subscription.wait_ready()
        return await self.refresh()

    def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        self.gateway.unsubscribe(subscription)
        metrics.record_subscription("inbox", -1)

    async def __aenter__(self) -> "InboxAggregator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    async def mark_as_read(self, customer_id: str, message_id: str) -> bool:
        try:
            row = await self.gateway.update(MESSAGES_TABLE, {"id": message_id}, {"read": True})
        except GatewayError as exc:
            self._warn(MarkReadFailed(), message_id=message_id, error=type(exc).__name__)
            return False
        if row is None:
            self._warn(MarkReadFailed(detail="Message not found or not writable."), message_id=message_id)
            return False

        self.new_message_count = max(0, self.new_message_count - 1)
        logger.info("chat_message_marked_read", extra={"extra": {"customer_id": customer_id, "message_id": message_id}})
        await self._refresh_quietly()
        return True

    async def mark_all_as_read(self, viewer: CurrentUser | None = None) -> int:
        """Flag every message addressed to ``viewer`` as read.

        Explicit ``False`` and legacy ``NULL`` flags are cleared in two
        passes because equality filters cannot match both.
        """
        viewer = viewer or self.viewer
        try:
            scope = await self._addressed_to(viewer)
            updated = 0
            if scope is not None:
                for unread_flag in (False, None):
                    rows = await self.gateway.update_many(
                        MESSAGES_TABLE,
                        {**scope, "read": unread_flag},
                        {"read": True},
                    )
                    updated += len(rows)
        except GatewayError as exc:
            self._warn(MarkReadFailed(), viewer_id=viewer.id, error=type(exc).__name__)
            return 0

        self.new_message_count = 0
        logger.info("chat_messages_marked_read", extra={"extra": {"viewer_id": viewer.id, "count": updated}})
        await self._refresh_quietly()
        return updated

    async def _addressed_to(self, viewer: CurrentUser) -> Dict[str, Any] | None:
        if viewer.role is ChatRole.admin:
            return {"sender_type": ChatRole.customer.value}
        sessions = await self.gateway.find(SESSIONS_TABLE, {"customer_id": viewer.id})
        if not sessions:
            return None
        return {"session_id": In(row["id"] for row in sessions), "sender_type": ChatRole.admin.value}

    async def _customer_messages(self, customer_id: str) -> List[MessageRecord]:
        sessions = await self.gateway.find(SESSIONS_TABLE, {"customer_id": customer_id})
        if not sessions:
            return []
        rows = await self.gateway.find(
            MESSAGES_TABLE,
            {"session_id": In(row["id"] for row in sessions)},
            order=Order("created_at", descending=True),
        )
        return [MessageRecord.from_row(row) for row in rows]

    async def _on_insert(self, row: Row) -> None:
        if row.get("sender_id") != self.viewer.id and row.get("read") is not True:
            self.new_message_count += 1
            if self.on_alert is not None:
                try:
                    self.on_alert(row)
                except Exception:  # noqa: BLE001
                    logger.exception("chat_inbox_alert_listener_failed")
        await self._refresh_quietly()

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except (GatewayError, ValidationError) as exc:
            logger.warning("chat_inbox_refresh_failed", extra={"extra": {"error": type(exc).__name__}})

    def _warn(self, error: MarkReadFailed, /, **context: Any) -> None:
        logger.warning("chat_mark_read_failed", extra={"extra": {"detail": error.detail, **context}})

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(list(self.items))
        except Exception:  # noqa: BLE001
            logger.exception("chat_inbox_listener_failed")
