from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime

from arang_chat.domain.support_chat.errors import NoActiveSession, SessionCreationFailed
from arang_chat.domain.support_chat.schemas import LIVE_SESSION_STATUSES, ChatSessionRecord, SessionStatus
from arang_chat.infra.gateway import GatewayConflict, GatewayError, PersistenceGateway
from arang_chat.infra.query import In, Order

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "chat_sessions"


class SessionResolver:
    """Find-or-create the single live session between a customer and support.

    Customer creation is serialized per customer inside this process; across
    processes the store's unique index on live sessions rejects the loser,
    which then re-reads the winner's row.
    """

    def __init__(self, gateway: PersistenceGateway, *, default_topic: str = "Pertanyaan Umum") -> None:
        self.gateway = gateway
        self.default_topic = default_topic
        self._customer_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, customer_id: str) -> asyncio.Lock:
        lock = self._customer_locks.get(customer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._customer_locks[customer_id] = lock
        return lock

    async def _find_live(self, customer_id: str, order: Order) -> ChatSessionRecord | None:
        rows = await self.gateway.find(
            SESSIONS_TABLE,
            {"customer_id": customer_id, "status": In(LIVE_SESSION_STATUSES)},
            order=order,
            limit=1,
        )
        return ChatSessionRecord.from_row(rows[0]) if rows else None

    async def live_session(self, customer_id: str) -> ChatSessionRecord | None:
        return await self._find_live(customer_id, Order("created_at", descending=True))

    async def get(self, session_id: str) -> ChatSessionRecord | None:
        rows = await self.gateway.find(SESSIONS_TABLE, {"id": session_id}, limit=1)
        return ChatSessionRecord.from_row(rows[0]) if rows else None

    async def resolve_for_customer(self, customer_id: str) -> ChatSessionRecord:
        recency = Order("last_message_at", descending=True, nulls_last=True)
        lock = self._lock_for(customer_id)
        async with lock:
            try:
                existing = await self._find_live(customer_id, recency)
                if existing is not None:
                    return existing
                try:
                    created = await self.gateway.insert(
                        SESSIONS_TABLE,
                        {
                            "customer_id": customer_id,
                            "status": SessionStatus.open.value,
                            "topic": self.default_topic,
                        },
                    )
                except GatewayConflict:
                    winner = await self._find_live(customer_id, recency)
                    if winner is None:
                        raise
                    logger.info("chat_session_create_raced", extra={"extra": {"session_id": winner.id}})
                    return winner
            except GatewayError as exc:
                logger.warning(
                    "chat_session_resolve_failed",
                    extra={"extra": {"customer_id": customer_id, "error": type(exc).__name__}},
                )
                raise SessionCreationFailed() from exc

        if created is None:
            # The store accepted the write but did not hand the row back.
            logger.error("chat_session_insert_returned_nothing", extra={"extra": {"customer_id": customer_id}})
            raise SessionCreationFailed()
        session = ChatSessionRecord.from_row(created)
        logger.info("chat_session_created", extra={"extra": {"session_id": session.id, "customer_id": customer_id}})
        return session

    async def resolve_for_admin(self, admin_id: str, customer_id: str) -> ChatSessionRecord:
        try:
            session = await self.live_session(customer_id)
        except GatewayError as exc:
            raise SessionCreationFailed() from exc
        if session is None:
            raise NoActiveSession()
        if session.admin_id is not None or session.status is not SessionStatus.open:
            return session

        try:
            claimed = await self.gateway.update(
                SESSIONS_TABLE,
                {"id": session.id, "admin_id": None, "status": SessionStatus.open.value},
                {"admin_id": admin_id, "status": SessionStatus.active.value},
            )
            if claimed is not None:
                logger.info("chat_session_claimed", extra={"extra": {"session_id": session.id, "admin_id": admin_id}})
                return ChatSessionRecord.from_row(claimed)
            current = await self.get(session.id)
        except GatewayError as exc:
            raise SessionCreationFailed(detail="Failed to claim session, please retry.") from exc

        if current is not None and current.admin_id is not None:
            logger.info(
                "chat_session_claim_lost",
                extra={"extra": {"session_id": session.id, "admin_id": admin_id, "winner": current.admin_id}},
            )
            return current
        logger.error("chat_session_claim_failed", extra={"extra": {"session_id": session.id}})
        raise SessionCreationFailed(detail="Failed to claim session, please retry.")

    async def touch(self, session_id: str, last_message_at: datetime) -> ChatSessionRecord | None:
        """Record a new message on a live session.

        Assigned sessions move to ``active``. Unassigned ones keep their status
        so an admin can still claim them.
        """
        live = In(LIVE_SESSION_STATUSES)
        row = await self.gateway.update(
            SESSIONS_TABLE,
            {"id": session_id, "admin_id": None, "status": live},
            {"last_message_at": last_message_at},
        )
        if row is None:
            row = await self.gateway.update(
                SESSIONS_TABLE,
                {"id": session_id, "status": live},
                {"last_message_at": last_message_at, "status": SessionStatus.active.value},
            )
        return ChatSessionRecord.from_row(row) if row is not None else None

    async def close_session(self, session_id: str) -> ChatSessionRecord | None:
        row = await self.gateway.update(
            SESSIONS_TABLE,
            {"id": session_id, "status": In(LIVE_SESSION_STATUSES)},
            {"status": SessionStatus.closed.value},
        )
        if row is None:
            logger.info("chat_session_close_noop", extra={"extra": {"session_id": session_id}})
            return None
        logger.info("chat_session_closed", extra={"extra": {"session_id": session_id}})
        return ChatSessionRecord.from_row(row)
