from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError

from arang_chat.domain.support_chat.errors import SendFailed
from arang_chat.domain.support_chat.schemas import ChatRole, DisplayMessage, MessageRecord, OrderInfo
from arang_chat.domain.support_chat.session_resolver import SessionResolver
from arang_chat.infra.gateway import GatewayError, PersistenceGateway
from arang_chat.infra.metrics import metrics
from arang_chat.infra.query import Order, Row
from arang_chat.shared.clock import Clock, new_id, utcnow

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
TEMP_ID_PREFIX = "temp-"


class AdminNotifier(Protocol):
    async def notify_admins_of_customer_message(self, message: MessageRecord) -> bool: ...


@dataclass(frozen=True)
class SenderNames:
    """Per-room display names. Names are resolved at render time and are
    never stored on the message rows."""

    viewer_id: str
    admin_name: Optional[str]
    customer_name: Optional[str]
    support_fallback: str = "Dukungan"
    self_fallback: str = "Anda"
    customer_fallback: str = "Pelanggan"

    def for_message(self, sender_id: str, sender_type: ChatRole) -> str:
        if sender_type is ChatRole.admin:
            return self.admin_name or self.support_fallback
        if self.customer_name:
            return self.customer_name
        return self.self_fallback if sender_id == self.viewer_id else self.customer_fallback


@dataclass
class _PendingSend:
    temp_id: str
    content: str
    created_at: datetime


class MessageSynchronizer:
    """Owns the visible message list of one open chat room.

    Three sources feed the list: the bulk history load, the viewer's own
    optimistic sends and the live change feed. Duplicates collapse by id, and
    the viewer's own echo is dropped while its optimistic copy is pending.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        viewer_id: str,
        viewer_role: ChatRole,
        names: SenderNames,
        resolver: SessionResolver | None = None,
        notifier: AdminNotifier | None = None,
        clock: Clock = utcnow,
        echo_tolerance_seconds: float = 2.0,
        on_change: Callable[[List[DisplayMessage]], Any] | None = None,
        on_alert: Callable[[DisplayMessage], Any] | None = None,
    ) -> None:
        self.gateway = gateway
        self.viewer_id = viewer_id
        self.viewer_role = viewer_role
        self.names = names
        self.resolver = resolver
        self.notifier = notifier
        self.clock = clock
        self.echo_tolerance_seconds = echo_tolerance_seconds
        self.on_change = on_change
        self.on_alert = on_alert
        self.session_id: str | None = None
        self.messages: List[DisplayMessage] = []
        self._pending: Dict[str, _PendingSend] = {}
        self._tasks: set[asyncio.Task] = set()

    def display(self, record: MessageRecord, *, pending: bool = False) -> DisplayMessage:
        return DisplayMessage(
            id=record.id,
            session_id=record.session_id,
            sender_id=record.sender_id,
            sender_type=record.sender_type,
            sender_name=self.names.for_message(record.sender_id, record.sender_type),
            content=record.content,
            created_at=record.created_at,
            is_admin=record.sender_type is ChatRole.admin,
            order_info=record.order_info,
            read=record.read,
            pending=pending,
        )

    async def load_history(self, session_id: str) -> List[DisplayMessage]:
        if session_id != self.session_id:
            self._pending.clear()
        self.session_id = session_id
        rows = await self.gateway.find(MESSAGES_TABLE, {"session_id": session_id}, order=Order("created_at"))
        loaded = [self.display(MessageRecord.from_row(row)) for row in rows]
        loaded_ids = {message.id for message in loaded}
        # Optimistic copies and feed rows that arrived while the query ran.
        carried = [
            message
            for message in self.messages
            if message.session_id == session_id and message.id not in loaded_ids
        ]
        self.messages = loaded + carried
        self._changed()
        return list(self.messages)

    async def send(
        self,
        content: str,
        *,
        order_info: OrderInfo | None = None,
    ) -> DisplayMessage:
        text = (content or "").strip()
        if not text:
            raise ValueError("message content must not be empty")
        if self.session_id is None:
            raise SendFailed(detail="No chat session is open.")

        session_id = self.session_id
        temp_id = f"{TEMP_ID_PREFIX}{new_id()}"
        now = self.clock()
        optimistic = DisplayMessage(
            id=temp_id,
            session_id=session_id,
            sender_id=self.viewer_id,
            sender_type=self.viewer_role,
            sender_name=self.names.for_message(self.viewer_id, self.viewer_role),
            content=text,
            created_at=now,
            is_admin=self.viewer_role is ChatRole.admin,
            order_info=order_info,
            read=False,
            pending=True,
        )
        self._pending[temp_id] = _PendingSend(temp_id=temp_id, content=text, created_at=now)
        self.messages.append(optimistic)
        self._changed()

        payload: Row = {
            "session_id": session_id,
            "sender_id": self.viewer_id,
            "sender_type": self.viewer_role.value,
            "content": text,
            "order_info": order_info.to_row() if order_info is not None else None,
            "read": False,
        }
        try:
            row = await self.gateway.insert(MESSAGES_TABLE, payload)
        except GatewayError as exc:
            self._rollback(temp_id)
            metrics.record_chat_message(self.viewer_role.value, "failed")
            logger.warning(
                "chat_send_failed",
                extra={"extra": {"session_id": session_id, "error": type(exc).__name__}},
            )
            raise SendFailed() from exc
        except BaseException:
            self._rollback(temp_id)
            raise

        if row is None:
            self._rollback(temp_id)
            metrics.record_chat_message(self.viewer_role.value, "rejected")
            logger.warning("chat_send_rejected", extra={"extra": {"session_id": session_id}})
            raise SendFailed()

        record = MessageRecord.from_row(row)
        confirmed = self._reconcile(temp_id, record)
        metrics.record_chat_message(self.viewer_role.value, "sent")
        self._run_side_effects(record)
        return confirmed

    async def on_remote_insert(self, row: Row) -> None:
        try:
            record = MessageRecord.from_row(row)
        except ValidationError:
            logger.warning("chat_feed_row_invalid", extra={"extra": {"session_id": self.session_id}})
            return
        if record.session_id != self.session_id:
            return
        if any(message.id == record.id for message in self.messages):
            metrics.record_feed_suppressed("id")
            return
        if record.sender_id == self.viewer_id and self._matches_pending(record):
            metrics.record_feed_suppressed("echo")
            logger.debug("chat_echo_suppressed", extra={"extra": {"message_id": record.id}})
            return

        message = self.display(record)
        self.messages.append(message)
        self._changed()
        if record.sender_id != self.viewer_id and record.sender_type is self.viewer_role.other:
            self._alert(message)

    def _matches_pending(self, record: MessageRecord) -> bool:
        for pending in self._pending.values():
            if pending.content != record.content:
                continue
            delta = abs((record.created_at - pending.created_at).total_seconds())
            if delta < self.echo_tolerance_seconds:
                return True
        return False

    def _rollback(self, temp_id: str) -> None:
        self._pending.pop(temp_id, None)
        before = len(self.messages)
        self.messages = [message for message in self.messages if message.id != temp_id]
        if len(self.messages) != before:
            self._changed()

    def _reconcile(self, temp_id: str, record: MessageRecord) -> DisplayMessage:
        self._pending.pop(temp_id, None)
        confirmed = self.display(record)
        index = next((i for i, message in enumerate(self.messages) if message.id == temp_id), None)
        if index is None:
            logger.debug("chat_reconcile_target_gone", extra={"extra": {"message_id": record.id}})
            return confirmed
        if any(message.id == record.id for message in self.messages):
            del self.messages[index]
        else:
            self.messages[index] = self.messages[index].model_copy(
                update={"id": record.id, "created_at": record.created_at, "read": record.read, "pending": False}
            )
        self._changed()
        return confirmed

    def _run_side_effects(self, record: MessageRecord) -> None:
        if record.sender_type is ChatRole.customer and self.notifier is not None:
            self._spawn(self._notify_admins(record))
        if self.resolver is not None:
            self._spawn(self.resolver.touch(record.session_id, record.created_at))

    async def _notify_admins(self, record: MessageRecord) -> None:
        delivered = await self.notifier.notify_admins_of_customer_message(record)
        if not delivered:
            logger.warning("chat_admin_notification_failed", extra={"extra": {"message_id": record.id}})

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "chat_side_effect_failed",
                extra={"extra": {"session_id": self.session_id, "error": type(exc).__name__}},
            )

    async def wait_side_effects(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(list(self.messages))
        except Exception:  # noqa: BLE001
            logger.exception("chat_change_listener_failed")

    def _alert(self, message: DisplayMessage) -> None:
        if self.on_alert is None:
            return
        try:
            self.on_alert(message)
        except Exception:  # noqa: BLE001
            logger.exception("chat_alert_listener_failed")
