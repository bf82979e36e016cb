from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Protocol

from arang_chat.domain.profiles.directory import ProfileDirectory
from arang_chat.domain.support_chat.schemas import ChatRole, MessageRecord
from arang_chat.domain.support_chat.session_resolver import SESSIONS_TABLE
from arang_chat.infra.gateway import PersistenceGateway
from arang_chat.infra.metrics import metrics
from arang_chat.infra.notifications import DeliveryResult

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Pesan Baru"


class PushAdapter(Protocol):
    async def send_push(self, *, token: str, title: str, body: str, data: Dict[str, str]) -> DeliveryResult: ...


class WhatsAppAdapter(Protocol):
    async def send_text(self, *, to_number: str, body: str) -> DeliveryResult: ...


def preview(content: str, limit: int) -> str:
    if len(content) <= limit:
        return content
    return f"{content[:limit]}..."


class AdminChatNotifier:
    """Alerts the support team about a new customer message.

    The assigned admin gets a push when they have a token. Otherwise every
    admin with a token gets one, followed by a WhatsApp message to the
    configured admin numbers.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        directory: ProfileDirectory,
        *,
        push: PushAdapter,
        whatsapp: WhatsAppAdapter,
        admin_numbers: Iterable[str] = (),
        public_base_url: str = "http://localhost:5173",
        preview_chars: int = 50,
        whatsapp_preview_chars: int = 100,
        customer_fallback: str = "Pelanggan",
    ) -> None:
        self.gateway = gateway
        self.directory = directory
        self.push = push
        self.whatsapp = whatsapp
        self.admin_numbers: List[str] = list(admin_numbers)
        self.public_base_url = public_base_url.rstrip("/")
        self.preview_chars = preview_chars
        self.whatsapp_preview_chars = whatsapp_preview_chars
        self.customer_fallback = customer_fallback

    def chat_url(self, session_id: str) -> str:
        return f"{self.public_base_url}/admin/chat?session={session_id}"

    def circuit_states(self) -> Dict[str, Dict[str, Any]]:
        states: Dict[str, Dict[str, Any]] = {}
        for channel, adapter in (("push", self.push), ("whatsapp", self.whatsapp)):
            breaker = getattr(adapter, "breaker", None)
            states[channel] = breaker.snapshot() if breaker is not None else {"state": "disabled"}
        return states

    async def notify_admins_of_customer_message(self, message: MessageRecord) -> bool:
        if message.sender_type is not ChatRole.customer:
            return False
        try:
            customer = await self.directory.get(message.sender_id)
            customer_name = (customer or {}).get("name") or self.customer_fallback
            sessions = await self.gateway.find(SESSIONS_TABLE, {"id": message.session_id}, limit=1)
            admin_id = sessions[0].get("admin_id") if sessions else None

            body = f"{customer_name}: {preview(message.content, self.preview_chars)}"
            data = {
                "type": "chat",
                "sessionId": message.session_id,
                "customerId": message.sender_id,
                "customerName": customer_name,
            }

            if admin_id:
                admin = await self.directory.get(admin_id)
                token = (admin or {}).get("fcm_token")
                if token:
                    result = await self._push(token, body, data)
                    logger.info(
                        "chat_notification_assigned_admin",
                        extra={"extra": {"session_id": message.session_id, "status": result.status}},
                    )
                    return result.status != "failed"

            admins = await self.directory.admins()
            for admin in admins:
                token = admin.get("fcm_token")
                if token:
                    await self._push(token, body, data)
        except Exception:  # noqa: BLE001
            logger.exception("chat_notification_failed", extra={"extra": {"message_id": message.id}})
            return False

        await self._whatsapp(message, customer_name)
        return True

    async def _push(self, token: str, body: str, data: Dict[str, str]) -> DeliveryResult:
        result = await self.push.send_push(token=token, title=NOTIFICATION_TITLE, body=body, data=data)
        metrics.record_notification("push", result.status)
        return result

    async def _whatsapp(self, message: MessageRecord, customer_name: str) -> None:
        if not self.admin_numbers:
            return
        text = (
            f"\U0001F4E8 Pesan baru dari {customer_name}:\n"
            f"\"{preview(message.content, self.whatsapp_preview_chars)}\"\n\n"
            f"Klik untuk melihat: {self.chat_url(message.session_id)}"
        )
        sent = 0
        for number in self.admin_numbers:
            try:
                result = await self.whatsapp.send_text(to_number=number, body=text)
            except Exception:  # noqa: BLE001
                # WhatsApp delivery never fails the notification.
                logger.warning("chat_whatsapp_notification_failed", exc_info=True)
                metrics.record_notification("whatsapp", "failed")
                continue
            metrics.record_notification("whatsapp", result.status)
            if result.ok:
                sent += 1
        logger.info(
            "chat_whatsapp_notifications_sent",
            extra={"extra": {"session_id": message.session_id, "sent": sent, "total": len(self.admin_numbers)}},
        )
