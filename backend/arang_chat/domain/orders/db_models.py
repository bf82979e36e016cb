from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from arang_chat.infra.db import Base
from arang_chat.shared.clock import new_id, utcnow


class Order(Base):
    """Storefront orders. Only looked up to pin an order to a chat message."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(sa.String(36), nullable=False)
    total: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="pending")
    date: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (sa.Index("ix_orders_user_id", "user_id"),)
