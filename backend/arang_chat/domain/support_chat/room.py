from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from arang_chat.domain.profiles.directory import ProfileDirectory
from arang_chat.domain.support_chat.errors import HistoryLoadFailed, NoActiveSession, SendFailed, SubscriptionError
from arang_chat.domain.support_chat.schemas import (
    ChatRole,
    ChatRoomSnapshot,
    ChatSessionRecord,
    ConnectionState,
    DisplayMessage,
    OrderInfo,
)
from arang_chat.domain.support_chat.session_resolver import SessionResolver
from arang_chat.domain.support_chat.synchronizer import (
    MESSAGES_TABLE,
    AdminNotifier,
    MessageSynchronizer,
    SenderNames,
)
from arang_chat.infra.change_feed import Subscription
from arang_chat.infra.gateway import GatewayError, PersistenceGateway
from arang_chat.infra.identity import CurrentUser
from arang_chat.infra.metrics import metrics
from arang_chat.shared.clock import Clock, utcnow

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"


class ChatRoomController:
    """Binds one mounted conversation to its session, history and live feed.

    ``open`` starts listening before it loads history. The subscription is
    released by ``close`` on every exit path; ``close`` is synchronous and
    idempotent.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        resolver: SessionResolver,
        directory: ProfileDirectory,
        *,
        viewer: CurrentUser,
        notifier: AdminNotifier | None = None,
        clock: Clock = utcnow,
        echo_tolerance_seconds: float = 2.0,
        support_name: str = "Dukungan",
        self_name: str = "Anda",
        customer_name: str = "Pelanggan",
        on_change: Callable[[List[DisplayMessage]], Any] | None = None,
        on_alert: Callable[[DisplayMessage], Any] | None = None,
        on_connectivity_error: Callable[[SubscriptionError], Any] | None = None,
    ) -> None:
        self.gateway = gateway
        self.resolver = resolver
        self.directory = directory
        self.viewer = viewer
        self.notifier = notifier
        self.clock = clock
        self.echo_tolerance_seconds = echo_tolerance_seconds
        self.support_name = support_name
        self.self_name = self_name
        self.customer_name = customer_name
        self.on_change = on_change
        self.on_alert = on_alert
        self.on_connectivity_error = on_connectivity_error

        self.connection_state = ConnectionState.idle
        self.connectivity_error: SubscriptionError | None = None
        self.session: ChatSessionRecord | None = None
        self.partner_id: str | None = None
        self.partner_name: str = support_name
        self.viewer_role: ChatRole = viewer.role
        self.synchronizer: MessageSynchronizer | None = None
        self._subscription: Subscription | None = None

    @property
    def messages(self) -> List[DisplayMessage]:
        return list(self.synchronizer.messages) if self.synchronizer is not None else []

    async def __aenter__(self) -> "ChatRoomController":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    async def open(self, partner_id: Optional[str] = None, viewer_role: ChatRole | None = None) -> ChatRoomSnapshot:
        self.close()
        role = viewer_role or self.viewer.role
        if role is ChatRole.admin and not partner_id:
            raise ValueError("admin chat rooms need the customer id")

        self.viewer_role = role
        self.partner_id = partner_id if role is ChatRole.admin else None
        self.connectivity_error = None
        self.connection_state = ConnectionState.loading
        try:
            if role is ChatRole.customer:
                session = await self.resolver.resolve_for_customer(self.viewer.id)
                partner_name = self.support_name
            else:
                session = await self.resolver.resolve_for_admin(self.viewer.id, partner_id)
                partner_name = await self._partner_name(partner_id)
            self.session = session
            self.partner_name = partner_name

            synchronizer = self._synchronizer_for(session, role, partner_name)
            # Listen first: rows inserted while history loads come through the feed.
            self._subscription = self.gateway.subscribe(
                MESSAGES_TABLE,
                {"session_id": session.id},
                synchronizer.on_remote_insert,
                on_error=self._on_subscription_error,
            )
            metrics.record_subscription("room", 1)
            await self._subscription.wait_ready()
            await synchronizer.load_history(session.id)
        except NoActiveSession:
            self.close()
            self.session = None
            self.connection_state = ConnectionState.no_session
            raise
        except GatewayError as exc:
            self.close()
            self.connection_state = ConnectionState.error
            logger.warning(
                "chat_room_open_failed",
                extra={"extra": {"viewer_role": role.value, "error": type(exc).__name__}},
            )
            raise HistoryLoadFailed() from exc
        except BaseException:
            self.close()
            self.connection_state = ConnectionState.error
            raise

        self.connection_state = ConnectionState.ready
        logger.info(
            "chat_room_opened",
            extra={"extra": {"session_id": session.id, "viewer_role": role.value}},
        )
        return self.snapshot()

    def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        self.gateway.unsubscribe(subscription)
        metrics.record_subscription("room", -1)
        self.connection_state = ConnectionState.idle
        logger.debug("chat_room_closed", extra={"extra": {"session_id": self.session.id if self.session else None}})

    async def send(self, content: str, pinned_order_id: str | None = None) -> DisplayMessage:
        if self.synchronizer is None or self.session is None or self.synchronizer.session_id != self.session.id:
            raise SendFailed(detail="No chat session is open.")
        order_info = await self._pinned_order(pinned_order_id) if pinned_order_id else None
        return await self.synchronizer.send(content, order_info=order_info)

    def snapshot(self) -> ChatRoomSnapshot:
        return ChatRoomSnapshot(
            session=self.session,
            partner_name=self.partner_name,
            connection_state=self.connection_state,
            messages=self.messages,
        )

    async def wait_side_effects(self) -> None:
        if self.synchronizer is not None:
            await self.synchronizer.wait_side_effects()

    def _synchronizer_for(self, session: ChatSessionRecord, role: ChatRole, partner_name: str) -> MessageSynchronizer:
        if role is ChatRole.admin:
            names = SenderNames(
                viewer_id=self.viewer.id,
                admin_name=self.viewer.display_name,
                customer_name=partner_name,
                support_fallback=self.support_name,
                self_fallback=self.self_name,
                customer_fallback=self.customer_name,
            )
        else:
            names = SenderNames(
                viewer_id=self.viewer.id,
                admin_name=self.support_name,
                customer_name=self.viewer.display_name,
                support_fallback=self.support_name,
                self_fallback=self.self_name,
                customer_fallback=self.customer_name,
            )

        current = self.synchronizer
        if current is not None and current.session_id == session.id and current.viewer_role is role:
            # Same conversation: keep sends that are still in flight.
            current.names = names
            return current

        self.synchronizer = MessageSynchronizer(
            self.gateway,
            viewer_id=self.viewer.id,
            viewer_role=role,
            names=names,
            resolver=self.resolver,
            notifier=self.notifier,
            clock=self.clock,
            echo_tolerance_seconds=self.echo_tolerance_seconds,
            on_change=self.on_change,
            on_alert=self.on_alert,
        )
        return self.synchronizer

    async def _partner_name(self, partner_id: str) -> str:
        try:
            name = await self.directory.display_name(partner_id)
        except GatewayError:
            logger.warning("chat_partner_lookup_failed", extra={"extra": {"partner_id": partner_id}})
            name = None
        return name or self.customer_name

    async def _pinned_order(self, order_id: str) -> OrderInfo | None:
        try:
            rows = await self.gateway.find(ORDERS_TABLE, {"id": order_id, "user_id": self.viewer.id}, limit=1)
        except GatewayError:
            logger.warning("chat_pinned_order_lookup_failed", extra={"extra": {"order_id": order_id}})
            return None
        if not rows:
            logger.info("chat_pinned_order_unknown", extra={"extra": {"order_id": order_id}})
            return None
        order = rows[0]
        order_date = order.get("date")
        return OrderInfo(
            order_id=order["id"],
            order_total=order.get("total"),
            order_status=order.get("status"),
            order_date=order_date.isoformat() if isinstance(order_date, datetime) else order_date,
        )

    def _on_subscription_error(self, error: SubscriptionError) -> None:
        self.connectivity_error = error
        self.connection_state = ConnectionState.error
        if self.on_connectivity_error is None:
            return
        try:
            self.on_connectivity_error(error)
        except Exception:  # noqa: BLE001
            logger.exception("chat_connectivity_listener_failed")
