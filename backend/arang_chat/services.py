from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arang_chat.domain.profiles.directory import ProfileDirectory
from arang_chat.domain.support_chat.errors import SubscriptionError
from arang_chat.domain.support_chat.inbox import InboxAggregator
from arang_chat.domain.support_chat.notifier import AdminChatNotifier
from arang_chat.domain.support_chat.room import ChatRoomController
from arang_chat.domain.support_chat.schemas import ChatUserSummary, DisplayMessage
from arang_chat.domain.support_chat.session_resolver import SessionResolver
from arang_chat.infra.change_feed import ChangeFeed, LocalChangeFeed, RedisChangeFeed
from arang_chat.infra.db import get_session_factory
from arang_chat.infra.gateway import InMemoryGateway, PersistenceGateway, SqlGateway
from arang_chat.infra.identity import CurrentUser, ProxyIdentityProvider
from arang_chat.infra.metrics import Metrics, configure_metrics
from arang_chat.infra.notifications import resolve_push_adapter, resolve_whatsapp_adapter
from arang_chat.infra.redis import get_redis_client

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    app_settings: Any
    gateway: PersistenceGateway
    feed: ChangeFeed
    directory: ProfileDirectory
    resolver: SessionResolver
    notifier: AdminChatNotifier
    identity: ProxyIdentityProvider
    metrics: Metrics
    session_factory: async_sessionmaker[AsyncSession] | None = None

    def chat_room(
        self,
        viewer: CurrentUser,
        *,
        on_change: Callable[[List[DisplayMessage]], Any] | None = None,
        on_alert: Callable[[DisplayMessage], Any] | None = None,
        on_connectivity_error: Callable[[SubscriptionError], Any] | None = None,
    ) -> ChatRoomController:
        app_settings = self.app_settings
        return ChatRoomController(
            self.gateway,
            self.resolver,
            self.directory,
            viewer=viewer,
            notifier=self.notifier,
            echo_tolerance_seconds=app_settings.chat_echo_tolerance_seconds,
            support_name=app_settings.chat_support_display_name,
            self_name=app_settings.chat_self_display_name,
            customer_name=app_settings.chat_customer_display_name,
            on_change=on_change,
            on_alert=on_alert,
            on_connectivity_error=on_connectivity_error,
        )

    def inbox(
        self,
        viewer: CurrentUser,
        *,
        on_change: Callable[[List[ChatUserSummary]], Any] | None = None,
        on_alert: Callable[[dict], Any] | None = None,
    ) -> InboxAggregator:
        return InboxAggregator(
            self.gateway,
            self.directory,
            viewer=viewer,
            admin_name=self.app_settings.chat_admin_display_name,
            empty_preview=self.app_settings.chat_empty_inbox_preview,
            on_change=on_change,
            on_alert=on_alert,
        )


def build_change_feed(app_settings) -> ChangeFeed:
    if app_settings.change_feed_mode == "redis":
        client = get_redis_client(app_settings)
        if client is None:
            raise RuntimeError("CHANGE_FEED_MODE=redis requires REDIS_URL")
        return RedisChangeFeed(client, channel_prefix=app_settings.redis_channel_prefix)
    return LocalChangeFeed()


def build_app_services(
    app_settings,
    *,
    metrics: Metrics | None = None,
    gateway: PersistenceGateway | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    session_factory = None
    if gateway is None:
        feed = build_change_feed(app_settings)
        if app_settings.gateway_mode == "memory":
            gateway = InMemoryGateway(feed=feed)
        else:
            session_factory = get_session_factory(app_settings)
            gateway = SqlGateway(session_factory, feed=feed)
    else:
        feed = getattr(gateway, "feed", None) or LocalChangeFeed()
    logger.info(
        "app_services_built",
        extra={"extra": {"gateway": type(gateway).__name__, "feed": type(feed).__name__}},
    )

    directory = ProfileDirectory(gateway)
    return AppServices(
        app_settings=app_settings,
        gateway=gateway,
        feed=feed,
        directory=directory,
        resolver=SessionResolver(gateway, default_topic=app_settings.chat_default_topic),
        notifier=AdminChatNotifier(
            gateway,
            directory,
            push=resolve_push_adapter(app_settings),
            whatsapp=resolve_whatsapp_adapter(app_settings),
            admin_numbers=app_settings.admin_whatsapp_numbers,
            public_base_url=app_settings.public_base_url,
            preview_chars=app_settings.notification_preview_chars,
            whatsapp_preview_chars=app_settings.whatsapp_preview_chars,
            customer_fallback=app_settings.chat_customer_display_name,
        ),
        identity=ProxyIdentityProvider(
            directory,
            proxy_secret=app_settings.auth_proxy_secret,
            secret_header=app_settings.auth_secret_header,
            user_header=app_settings.auth_user_header,
        ),
        metrics=metrics_client,
        session_factory=session_factory,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
