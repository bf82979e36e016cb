from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from arang_chat.infra.db import Base
from arang_chat.shared.clock import new_id, utcnow

_LIVE_STATUS_PREDICATE = sa.text("status IN ('open', 'active', 'pending')")


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(sa.String(36), nullable=False)
    admin_id: Mapped[str | None] = mapped_column(sa.String(36))
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="open")
    topic: Mapped[str | None] = mapped_column(sa.String(255))
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    last_message_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))

    __table_args__ = (
        sa.Index("ix_chat_sessions_customer_id", "customer_id"),
        sa.Index(
            "uq_chat_sessions_live_customer",
            "customer_id",
            unique=True,
            sqlite_where=_LIVE_STATUS_PREDICATE,
            postgresql_where=_LIVE_STATUS_PREDICATE,
        ),
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(sa.String(36), nullable=False)
    sender_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    content: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    order_info: Mapped[dict | None] = mapped_column(sa.JSON())
    # NULL on legacy rows; treated as unread.
    read: Mapped[bool | None] = mapped_column(sa.Boolean())
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        sa.Index("ix_messages_session_created", "session_id", "created_at"),
        sa.Index("ix_messages_sender_type_read", "sender_type", "read"),
    )
