"""support chat

Revision ID: 0001_support_chat
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_support_chat"
down_revision = None
branch_labels = None
depends_on = None

LIVE_STATUS_PREDICATE = sa.text("status IN ('open', 'active', 'pending')")


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255)),
        sa.Column("email", sa.String(length=320)),
        sa.Column("phone", sa.String(length=32)),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="customer"),
        sa.Column("fcm_token", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_profiles_role", "profiles", ["role"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("total", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])

    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("admin_id", sa.String(length=36)),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("topic", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_chat_sessions_customer_id", "chat_sessions", ["customer_id"])
    # At most one live session per customer.
    op.create_index(
        "uq_chat_sessions_live_customer",
        "chat_sessions",
        ["customer_id"],
        unique=True,
        sqlite_where=LIVE_STATUS_PREDICATE,
        postgresql_where=LIVE_STATUS_PREDICATE,
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(length=36),
            sa.ForeignKey("chat_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.String(length=36), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("order_info", sa.JSON()),
        sa.Column("read", sa.Boolean()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_messages_session_created", "messages", ["session_id", "created_at"])
    op.create_index("ix_messages_sender_type_read", "messages", ["sender_type", "read"])


def downgrade() -> None:
    op.drop_index("ix_messages_sender_type_read", table_name="messages")
    op.drop_index("ix_messages_session_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("uq_chat_sessions_live_customer", table_name="chat_sessions")
    op.drop_index("ix_chat_sessions_customer_id", table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_profiles_role", table_name="profiles")
    op.drop_table("profiles")
